"""
Image polyforest construction and last-used timestamp bookkeeping.

Images form a polyforest through their parent links: every image has at most
one parent, and any number of images may share a parent. This module builds
that structure from the flat records reported by Docker, assigns each node
its initial last-used instant, and then propagates usage from descendants to
ancestors so that a parent is never considered staler than its children.
"""

from typing import Dict, Iterable, Mapping, Optional, Set

from utils.image_models import ImageNode, ImageRecord, PersistedImage
from utils.logging_utils import get_logger

logger = get_logger(__name__)


def build_polyforest(records: Mapping[str, ImageRecord]) -> Dict[str, ImageNode]:
    """Arrange image records into a polyforest and count each node's ancestors.

    For every record that has not been placed yet, walk up the parent links
    collecting unplaced ancestors until reaching a placed node, a record with
    no parent, a parent missing from ``records``, or a parent already collected
    in the same walk. The collected chain is then placed root-first so that
    each parent exists in the output before its child.

    A record whose parent cannot be resolved becomes a root for this pass.
    That only affects ranking, so it is logged and not raised.

    Args:
        records: Map from image ID to record

    Returns:
        Map from image ID to node, timestamps not yet populated
    """
    nodes: Dict[str, ImageNode] = {}

    for record in records.values():
        chain = []
        chain_ids: Set[str] = set()
        current: Optional[ImageRecord] = record

        while current is not None and current.id not in nodes:
            chain.append(current)
            chain_ids.add(current.id)

            parent_id = current.parent_id
            if not parent_id:
                break

            parent = records.get(parent_id)
            if parent is None:
                logger.debug(f"Parent {parent_id} of image {current.id} is not present; treating it as a root")
                break
            if parent.id in chain_ids:
                logger.warning(f"Image {current.id} has a cyclic parent link to {parent_id}; treating it as a root")
                break

            current = parent

        # Root first, so the parent of each node is already placed.
        for chain_record in reversed(chain):
            parent_node = nodes.get(chain_record.parent_id) if chain_record.parent_id else None
            nodes[chain_record.id] = ImageNode(
                record=chain_record,
                ancestor_count=parent_node.ancestor_count + 1 if parent_node else 0,
                tree_parent_id=parent_node.id if parent_node else None,
            )

    return nodes


def resolve_last_used(
    nodes: Mapping[str, ImageNode],
    prior_state: Mapping[str, PersistedImage],
    image_ids_in_use: Iterable[str],
    is_first_run: bool,
    now: float,
) -> None:
    """Assign every node its baseline last-used instant, in place.

    The baseline is the persisted value when there is one. Otherwise, on the
    first pass since the process started, it is the image's creation time, so
    images that predate the daemon look old. On later passes an unknown image
    has just appeared and gets ``now``. Images used by a container are raised
    to at least ``now``.
    """
    in_use = set(image_ids_in_use)

    for node in nodes.values():
        prior = prior_state.get(node.id)
        if prior is not None:
            baseline = prior.last_used_at
        elif is_first_run:
            baseline = node.record.created_at
        else:
            baseline = now

        if node.id in in_use:
            baseline = max(baseline, now)

        node.last_used_at = baseline


def propagate_last_used(nodes: Mapping[str, ImageNode]) -> None:
    """Make every ancestor at least as recently used as all of its descendants.

    Breadth-first from the leaves towards the roots. The graph has no cycles
    and no converging paths, so a frontier and a next frontier are enough: a
    node may be visited once per child, but each visit only raises its
    timestamp.
    """
    parents = {node.tree_parent_id for node in nodes.values() if node.tree_parent_id}
    frontier = {image_id for image_id in nodes if image_id not in parents}

    while frontier:
        next_frontier = set()

        for image_id in frontier:
            node = nodes[image_id]
            if node.tree_parent_id is None:
                continue
            parent = nodes.get(node.tree_parent_id)
            if parent is None:
                continue
            parent.last_used_at = max(parent.last_used_at, node.last_used_at)
            next_frontier.add(parent.id)

        frontier = next_frontier
