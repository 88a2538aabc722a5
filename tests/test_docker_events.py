"""Unit tests for utils/docker_events.py"""

import pytest

from utils.docker_events import image_from_event


class TestImageFromEvent:
    """Tests for mapping Docker events to used images"""

    @pytest.mark.parametrize("action", ["create", "destroy"])
    def test_container_events_use_image_attribute(self, action):
        event = {
            "Type": "container",
            "Action": action,
            "Actor": {"ID": "c0ffee", "Attributes": {"image": "ubuntu:22.04", "name": "builder"}},
            "id": "c0ffee",
        }

        assert image_from_event(event) == "ubuntu:22.04"

    @pytest.mark.parametrize("action", ["import", "load", "pull", "push", "save", "tag"])
    def test_image_events_use_event_id(self, action):
        event = {"Type": "image", "Action": action, "Actor": {"ID": "sha256:abc"}, "id": "sha256:abc"}

        assert image_from_event(event) == "sha256:abc"

    def test_image_event_falls_back_to_actor_id(self):
        event = {"Type": "image", "Action": "pull", "Actor": {"ID": "alpine:3.19"}}

        assert image_from_event(event) == "alpine:3.19"

    @pytest.mark.parametrize("event", [
        {"Type": "container", "Action": "start", "Actor": {"Attributes": {"image": "ubuntu"}}},
        {"Type": "image", "Action": "delete", "id": "sha256:abc"},
        {"Type": "network", "Action": "connect", "Actor": {}},
        {"Type": "container", "Action": "destroy", "Actor": {"Attributes": {}}},
        {"Type": "container", "Action": "destroy"},
        {},
        "not an event",
    ])
    def test_irrelevant_or_malformed_events_are_ignored(self, event):
        assert image_from_event(event) is None
