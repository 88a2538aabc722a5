"""
Eviction planning and execution.

The planner ranks images least recently used first, preferring deeper images
when equally stale, and removes images protected by keep patterns or a
minimum age. The executor deletes candidates in chunks until Docker reports
that image storage is back under the threshold.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Pattern, Sequence, Set, Union

from humanfriendly import format_size

from utils.error_utils import DeleteError
from utils.image_models import ImageNode, PersistedImage
from utils.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class EvictionPlan:
    """Ordered deletion candidates plus the full node map they came from."""

    candidates: List[ImageNode]
    nodes: Mapping[str, ImageNode]
    kept: List[str] = field(default_factory=list)
    too_young: List[str] = field(default_factory=list)

    @property
    def candidate_ids(self) -> List[str]:
        return [node.id for node in self.candidates]


@dataclass
class EvictionReport:
    """What happened during the deletion phase of a pass."""

    threshold: int
    space_before: int
    space_after: int
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def compile_keep_patterns(patterns: Optional[Iterable[Union[str, Pattern]]]) -> List[Pattern]:
    """Compile keep patterns, passing already-compiled ones through."""
    compiled = []
    for pattern in patterns or []:
        compiled.append(pattern if isinstance(pattern, re.Pattern) else re.compile(pattern))
    return compiled


def eviction_order(nodes: Iterable[ImageNode]) -> List[ImageNode]:
    """Least recently used first; among equals, the most derived image first."""
    return sorted(nodes, key=lambda node: (node.last_used_at, -node.ancestor_count, node.id))


def matches_keep_pattern(node: ImageNode, keep_patterns: Sequence[Pattern]) -> bool:
    for label in node.record.labels:
        for pattern in keep_patterns:
            if pattern.search(label):
                return True
    return False


def plan_eviction(
    nodes: Mapping[str, ImageNode],
    now: float,
    keep_patterns: Optional[Iterable[Union[str, Pattern]]] = None,
    min_age: Optional[float] = None,
) -> EvictionPlan:
    """Rank images for eviction and drop the protected ones.

    Args:
        nodes: Polyforest with propagated last-used instants
        now: Current instant
        keep_patterns: Regexes searched in each repository:tag label
        min_age: Seconds; images used more recently than now - min_age are kept

    Returns:
        EvictionPlan with candidates oldest/deepest first
    """
    patterns = compile_keep_patterns(keep_patterns)
    plan = EvictionPlan(candidates=[], nodes=nodes)

    for node in eviction_order(nodes.values()):
        if patterns and matches_keep_pattern(node, patterns):
            logger.debug(f"Skipping image {node.id} ({', '.join(node.record.labels)}): matches a keep pattern")
            plan.kept.append(node.id)
            continue

        if min_age is not None and node.last_used_at > now - min_age:
            logger.debug(f"Skipping image {node.id}: used within the minimum age")
            plan.too_young.append(node.id)
            continue

        plan.candidates.append(node)

    if plan.kept:
        logger.info(f"Keeping {len(plan.kept)} image(s) that match keep patterns")

    return plan


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def execute_eviction(collaborator, candidate_ids: Sequence[str], threshold: int, chunk_size: int = 1) -> EvictionReport:
    """Delete candidates in chunks until image storage is within the threshold.

    Space is re-measured after every chunk. A deletion that fails is logged and
    the image is treated as not deleted; when the outcome is unknown, space is
    re-measured straight away before moving on.

    Args:
        collaborator: Object providing space_usage() and delete_image(image_id)
        candidate_ids: Image IDs in eviction order
        threshold: Maximum bytes images may use
        chunk_size: Number of deletions between space measurements

    Returns:
        EvictionReport

    Raises:
        CollaboratorError: If measuring space usage fails
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got: {chunk_size}")

    space = collaborator.space_usage()
    report = EvictionReport(threshold=threshold, space_before=space, space_after=space)

    if space <= threshold:
        logger.info(
            f"Docker images are using {format_size(space)}, which is within the limit of {format_size(threshold)}."
        )
        return report

    logger.info(
        f"Docker images are currently using {format_size(space)} but the limit is {format_size(threshold)}. "
        "Some images will be deleted."
    )

    for chunk in _chunks(list(candidate_ids), chunk_size):
        for image_id in chunk:
            logger.info(f"Deleting image {image_id}...")
            try:
                collaborator.delete_image(image_id)
            except DeleteError as e:
                logger.error(f"Unable to delete image {image_id}: {e.message}")
                report.failed.append(image_id)
                if e.possibly_deleted:
                    space = collaborator.space_usage()
                    report.space_after = space
                    if space <= threshold:
                        break
                continue
            report.deleted.append(image_id)
            logger.info(f"Deleted image {image_id}")

        space = collaborator.space_usage()
        report.space_after = space
        if space <= threshold:
            logger.info(
                f"Docker images are now using {format_size(space)}, which is within the limit of {format_size(threshold)}."
            )
            return report

    logger.warning(
        f"Docker images are still using {format_size(space)}, over the limit of {format_size(threshold)}, "
        "but no more images can be deleted."
    )
    return report


def reconcile_state(nodes: Mapping[str, ImageNode], deleted: Iterable[str]) -> Dict[str, PersistedImage]:
    """Build the state to persist: every node of this pass except deleted ones."""
    deleted_ids: Set[str] = set(deleted)
    return {
        image_id: PersistedImage(parent_id=node.parent_id, last_used_at=node.last_used_at)
        for image_id, node in nodes.items()
        if image_id not in deleted_ids
    }
