"""
One vacuum pass: collect, rank, evict, remember.

A pass rebuilds the image polyforest from scratch out of Docker's current
records and the persisted state, deletes the stalest images until storage is
under the threshold, and saves the new state. Passes never overlap; the
caller runs them one after another.
"""

import time
from typing import Callable, Iterable, Optional, Pattern, Union

from utils.eviction import EvictionPlan, execute_eviction, plan_eviction, reconcile_state
from utils.image_models import PassResult
from utils.logging_utils import get_logger
from utils.polyforest import build_polyforest, propagate_last_used, resolve_last_used
from utils.state_store import StateStore

logger = get_logger(__name__)


def build_plan(
    collaborator,
    state_store: StateStore,
    is_first_run: bool,
    keep_patterns: Optional[Iterable[Union[str, Pattern]]] = None,
    min_age: Optional[float] = None,
    now: Optional[float] = None,
) -> EvictionPlan:
    """Collect records and rank them, without deleting anything.

    Raises:
        CollaboratorError: If Docker cannot be queried
    """
    records = collaborator.list_image_records()
    image_ids_in_use = collaborator.image_ids_in_use()
    prior_state = state_store.load()
    if now is None:
        now = time.time()

    nodes = build_polyforest(records)
    resolve_last_used(nodes, prior_state, image_ids_in_use, is_first_run, now)
    propagate_last_used(nodes)

    return plan_eviction(nodes, now, keep_patterns=keep_patterns, min_age=min_age)


def run_pass(
    collaborator,
    state_store: StateStore,
    is_first_run: bool,
    threshold: int,
    keep_patterns: Optional[Iterable[Union[str, Pattern]]] = None,
    chunk_size: int = 1,
    min_age: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> PassResult:
    """Run one full vacuum pass.

    Args:
        collaborator: DockerClient or an object with the same methods
        state_store: Where the per-image state is loaded from and saved to
        is_first_run: True for the first pass since the process started
        threshold: Maximum bytes Docker images may use
        keep_patterns: Regexes for repository:tag labels that are never deleted
        chunk_size: Deletions between space measurements
        min_age: Seconds; images used more recently are never deleted
        clock: Source of the current instant

    Returns:
        PassResult

    Raises:
        CollaboratorError: If Docker cannot be queried
        PersistenceError: If the new state cannot be saved
    """
    plan = build_plan(
        collaborator,
        state_store,
        is_first_run,
        keep_patterns=keep_patterns,
        min_age=min_age,
        now=clock(),
    )
    logger.debug(f"{len(plan.candidates)} of {len(plan.nodes)} images are eligible for deletion")

    report = execute_eviction(collaborator, plan.candidate_ids, threshold, chunk_size=chunk_size)

    state = reconcile_state(plan.nodes, report.deleted)
    state_store.save(state)

    return PassResult(
        threshold=threshold,
        space_before=report.space_before,
        space_after=report.space_after,
        candidates=plan.candidate_ids,
        deleted=report.deleted,
        failed=report.failed,
        state=state,
    )
