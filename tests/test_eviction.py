"""Unit tests for utils/eviction.py"""

import re

import pytest

from conftest import make_record

from utils.error_utils import DeleteOutcome
from utils.eviction import execute_eviction, plan_eviction, reconcile_state
from utils.image_models import ImageNode

NOW = 1_000_000.0


def node(image_id, last_used_at, ancestor_count=0, parent_id=None, tags=()):
    return ImageNode(
        record=make_record(image_id, parent_id=parent_id, tags=tags),
        last_used_at=last_used_at,
        ancestor_count=ancestor_count,
    )


def nodes_of(*nodes):
    return {n.id: n for n in nodes}


class TestPlanEviction:
    """Tests for candidate ordering and exclusions"""

    def test_orders_least_recently_used_first(self):
        nodes = nodes_of(node("new", 300.0), node("old", 100.0), node("mid", 200.0))

        plan = plan_eviction(nodes, NOW)

        assert plan.candidate_ids == ["old", "mid", "new"]

    def test_ties_prefer_deepest_image(self):
        """Equally stale images are evicted deepest first"""
        nodes = nodes_of(
            node("base", 100.0, ancestor_count=0),
            node("leaf", 100.0, ancestor_count=2),
            node("middle", 100.0, ancestor_count=1),
            node("older", 50.0, ancestor_count=0),
        )

        plan = plan_eviction(nodes, NOW)

        assert plan.candidate_ids == ["older", "leaf", "middle", "base"]

    def test_keep_pattern_excludes_matching_label(self):
        """An image whose label matches a keep pattern is never a candidate, however stale"""
        nodes = nodes_of(
            node("postgres", 1.0, tags=["postgres:13"]),
            node("app", 500.0, tags=["myapp:latest"]),
        )

        plan = plan_eviction(nodes, NOW, keep_patterns=[r"^postgres:"])

        assert plan.candidate_ids == ["app"]
        assert plan.kept == ["postgres"]

    def test_keep_pattern_matches_any_label(self):
        nodes = nodes_of(node("multi", 1.0, tags=["myapp:latest", "registry.local:5000/myapp:stable"]))

        plan = plan_eviction(nodes, NOW, keep_patterns=[re.compile(r":stable$")])

        assert plan.candidate_ids == []

    def test_keep_pattern_can_match_untagged_images(self):
        nodes = nodes_of(node("dangling", 1.0), node("tagged", 2.0, tags=["app:v1"]))

        plan = plan_eviction(nodes, NOW, keep_patterns=[r"^<none>:<none>$"])

        assert plan.candidate_ids == ["tagged"]

    def test_min_age_excludes_recent_images(self):
        """Images used within the minimum age are protected"""
        nodes = nodes_of(
            node("ancient", NOW - 7200),
            node("boundary", NOW - 3600),
            node("recent", NOW - 60),
        )

        plan = plan_eviction(nodes, NOW, min_age=3600)

        assert plan.candidate_ids == ["ancient", "boundary"]
        assert plan.too_young == ["recent"]

    def test_plan_keeps_full_node_map(self):
        nodes = nodes_of(node("keep", 1.0, tags=["keep:me"]), node("young", NOW))

        plan = plan_eviction(nodes, NOW, keep_patterns=["^keep:"], min_age=60)

        assert plan.candidates == []
        assert plan.nodes is nodes


class TestExecuteEviction:
    """Tests for chunked deletion against a space threshold"""

    def _populate(self, fake_docker, count=5, size=100):
        for i in range(count):
            fake_docker.add(f"img{i}", size=size)
        return [f"img{i}" for i in range(count)]

    def test_no_deletion_when_under_threshold(self, fake_docker):
        candidates = self._populate(fake_docker)

        report = execute_eviction(fake_docker, candidates, threshold=500)

        assert report.deleted == []
        assert fake_docker.delete_calls == []
        assert report.space_before == report.space_after == 500

    def test_stops_once_under_threshold(self, fake_docker):
        """Deletion proceeds oldest first and stops at the first check under the threshold"""
        candidates = self._populate(fake_docker)

        report = execute_eviction(fake_docker, candidates, threshold=300)

        assert report.deleted == ["img0", "img1"]
        assert fake_docker.delete_calls == ["img0", "img1"]
        assert report.space_after == 300
        assert set(fake_docker.records) == {"img2", "img3", "img4"}

    def test_deletes_in_chunks_between_checks(self, fake_docker):
        """With chunks of 2, space is only rechecked every two deletions"""
        candidates = self._populate(fake_docker)

        report = execute_eviction(fake_docker, candidates, threshold=250, chunk_size=2)

        assert report.deleted == ["img0", "img1", "img2", "img3"]
        # initial check plus one per chunk
        assert fake_docker.space_queries == 3
        assert report.space_after == 100

    def test_exhausted_candidates_end_pass_without_error(self, fake_docker):
        self._populate(fake_docker)

        report = execute_eviction(fake_docker, ["img0"], threshold=100)

        assert report.deleted == ["img0"]
        assert report.space_after == 400
        assert report.space_after > report.threshold

    def test_empty_candidate_list_over_threshold(self, fake_docker):
        self._populate(fake_docker)

        report = execute_eviction(fake_docker, [], threshold=100)

        assert report.deleted == []
        assert report.space_after == 500

    def test_confirmed_failure_moves_on_to_next_candidate(self, fake_docker):
        """A failed deletion is logged and the next candidate is still attempted"""
        candidates = self._populate(fake_docker)
        fake_docker.delete_errors["img0"] = DeleteOutcome.NOT_DELETED

        report = execute_eviction(fake_docker, candidates, threshold=400)

        assert fake_docker.delete_calls == ["img0", "img1"]
        assert report.failed == ["img0"]
        assert report.deleted == ["img1"]
        assert "img0" in fake_docker.records

    def test_unknown_outcome_forces_space_recheck(self, fake_docker):
        """An unknown outcome triggers an immediate space query within the chunk"""
        candidates = self._populate(fake_docker)
        fake_docker.delete_errors["img0"] = DeleteOutcome.UNKNOWN

        report = execute_eviction(fake_docker, candidates, threshold=300, chunk_size=3)

        # initial, after the unknown outcome, after the chunk
        assert fake_docker.space_queries == 3
        assert report.failed == ["img0"]
        assert report.deleted == ["img1", "img2"]

    def test_rejects_non_positive_chunk_size(self, fake_docker):
        with pytest.raises(ValueError):
            execute_eviction(fake_docker, [], threshold=0, chunk_size=0)


class TestReconcileState:
    """Tests for the state persisted after a pass"""

    def test_drops_deleted_images_only(self):
        nodes = nodes_of(
            node("parent", 100.0),
            node("child", 150.0, ancestor_count=1, parent_id="parent"),
            node("gone", 10.0),
        )

        state = reconcile_state(nodes, ["gone"])

        assert set(state) == {"parent", "child"}
        assert state["child"].parent_id == "parent"
        assert state["child"].last_used_at == 150.0
        assert state["parent"].parent_id is None

    def test_keeps_real_parent_even_when_missing_from_pass(self):
        nodes = nodes_of(node("orphan", 1.0, parent_id="sha256:absent"))

        state = reconcile_state(nodes, [])

        assert state["orphan"].parent_id == "sha256:absent"
