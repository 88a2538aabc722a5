"""Map Docker daemon events to the image they show was just used."""

from typing import Any, Dict, Optional

from utils.logging_utils import get_logger

logger = get_logger(__name__)

CONTAINER_ACTIONS = frozenset({"create", "destroy"})
IMAGE_ACTIONS = frozenset({"import", "load", "pull", "push", "save", "tag"})


def image_from_event(event: Dict[str, Any]) -> Optional[str]:
    """Return the image name or ID an event refers to, or None if it is irrelevant.

    Container events name the image in the actor attributes; image events
    carry it as the event ID.
    """
    if not isinstance(event, dict):
        logger.debug("Skipping malformed event")
        return None

    event_type = event.get("Type")
    action = event.get("Action")
    actor = event.get("Actor") or {}

    if event_type == "container" and action in CONTAINER_ACTIONS:
        image = (actor.get("Attributes") or {}).get("image")
        if not image:
            logger.debug("Skipping container event without an image attribute")
            return None
        return image

    if event_type == "image" and action in IMAGE_ACTIONS:
        image = event.get("id") or actor.get("ID")
        if not image:
            logger.debug("Skipping image event without an ID")
            return None
        return image

    logger.debug(f"Skipping irrelevant event ({event_type} {action})")
    return None
