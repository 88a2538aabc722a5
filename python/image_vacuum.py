#!/usr/bin/env python3
"""
image-vacuum: least-recently-used eviction of Docker images.

Keeps the space used by Docker images under a threshold. A vacuum pass runs
once at startup and again after every Docker event that shows an image being
used; each pass deletes the least recently used images until the threshold is
met.

Usage examples:
  # Keep images under 10 GB (the default)
  python image_vacuum.py

  # Keep images under 30% of the filesystem, never touching postgres or redis
  python image_vacuum.py --threshold 30% --keep '^postgres:' --keep '^redis:'

  # Show what would be deleted, without deleting anything
  python image_vacuum.py --dry-run
"""

import argparse
import signal
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from humanfriendly import format_size
from tabulate import tabulate

from utils.config_manager import ConfigManager, ConfigValidationError
from utils.docker_client import DockerClient
from utils.docker_events import image_from_event
from utils.error_utils import CollaboratorError, VacuumError
from utils.eviction import EvictionPlan
from utils.image_models import PassResult
from utils.logging_utils import get_logger, log_exception, setup_logging
from utils.retry_utils import RestartBackoff
from utils.state_store import StateStore
from utils.vacuum import build_plan, run_pass

logger = get_logger("image_vacuum")


class VacuumDaemon:
    """Runs vacuum passes at startup and whenever Docker reports image usage."""

    def __init__(self, config: ConfigManager, docker_client: DockerClient, state_store: StateStore):
        self.config = config
        self.docker_client = docker_client
        self.state_store = state_store
        self.first_pass_done = False
        self.backoff = RestartBackoff(
            initial_delay=config.get_retry_initial_delay(),
            max_delay=config.get_retry_max_delay(),
            exponential_base=config.get_retry_exponential_base(),
            jitter=config.get_retry_jitter(),
        )

    def resolve_threshold(self) -> int:
        threshold = self.config.get_threshold()
        if threshold.is_percentage:
            return threshold.resolve(self.docker_client.filesystem_capacity())
        return threshold.resolve()

    def vacuum(self) -> PassResult:
        """Run one pass and log how it ended."""
        result = run_pass(
            self.docker_client,
            self.state_store,
            is_first_run=not self.first_pass_done,
            threshold=self.resolve_threshold(),
            keep_patterns=self.config.get_keep_patterns(),
            chunk_size=self.config.get_deletion_chunk_size(),
            min_age=self.config.get_min_age(),
        )
        self.first_pass_done = True
        self.backoff.reset()

        if result.deleted or result.failed:
            logger.info(f"Deleted {len(result.deleted)} image(s), {len(result.failed)} deletion(s) failed")
        if not result.under_threshold:
            logger.warning(
                f"Docker images remain over the limit by {format_size(result.space_after - result.threshold)}"
            )
        return result

    def handle_event(self, event: Dict[str, Any]) -> bool:
        """Record the image an event refers to as used and vacuum.

        Returns:
            True if a pass ran
        """
        image = image_from_event(event)
        if image is None:
            return False

        try:
            image_id = self.docker_client.image_id(image)
        except CollaboratorError as e:
            # The image may already be gone; nothing to record.
            logger.warning(f"Unable to resolve image {image}: {e.message}")
            return False

        logger.info("Waking up...")
        logger.info(f"Updating last-used timestamp for image {image_id}...")
        self.state_store.touch(image_id, None, time.time())
        self.vacuum()
        logger.info("Going back to sleep...")
        return True

    def run(self) -> None:
        """Vacuum once, then vacuum after every relevant event until the stream fails.

        Raises:
            VacuumError: If a pass fails or the event stream ends
        """
        logger.info("Performing an initial vacuum on startup...")
        self.vacuum()

        logger.info("Listening for Docker events...")
        events = self.docker_client.events()
        try:
            for event in events:
                logger.debug(f"Incoming event: {event}")
                self.handle_event(event)
        finally:
            events.close()

    def serve_forever(self) -> None:
        """Run, restarting with backoff whenever a pass or the event stream fails."""
        while True:
            try:
                self.run()
            except VacuumError as e:
                log_exception(logger, f"Vacuum failed ({e.category.value} error): {e}", e)
                self.backoff.wait()


def format_plan(plan: EvictionPlan) -> str:
    """Render the eviction ranking as a grid, first row deleted first."""
    headers = ["#", "Image ID", "Tags", "Last Used", "Ancestors"]
    rows: List[List[Any]] = []
    for rank, node in enumerate(plan.candidates, 1):
        rows.append([
            rank,
            node.id.replace("sha256:", "")[:12],
            ", ".join(node.record.labels),
            datetime.fromtimestamp(node.last_used_at).strftime("%Y-%m-%d %H:%M:%S"),
            node.ancestor_count,
        ])
    return tabulate(rows, headers=headers, tablefmt="grid")


def dry_run(config: ConfigManager, docker_client: DockerClient, state_store: StateStore) -> None:
    """Print the eviction ranking and current usage without deleting or saving anything."""
    plan = build_plan(
        docker_client,
        state_store,
        is_first_run=True,
        keep_patterns=config.get_keep_patterns(),
        min_age=config.get_min_age(),
    )
    threshold = config.get_threshold()
    capacity = docker_client.filesystem_capacity() if threshold.is_percentage else None
    space = docker_client.space_usage()

    print(format_plan(plan))
    print(f"\nDRY RUN: {len(plan.candidates)} of {len(plan.nodes)} images are eligible for deletion")
    print(f"   Kept by pattern: {len(plan.kept)}")
    print(f"   Too recently used: {len(plan.too_young)}")
    print(f"   Space used: {format_size(space)} (limit: {format_size(threshold.resolve(capacity))})")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Least-recently-used eviction of Docker images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "-t", "--threshold",
        help="Maximum space for Docker images, e.g. '10 GB' or '30%%' of the filesystem (default: 10 GB)",
    )
    parser.add_argument(
        "-k", "--keep", action="append", metavar="REGEX",
        help="Never delete images whose repository:tag matches REGEX (repeatable)",
    )
    parser.add_argument("--deletion-chunk-size", type=int, help="Images deleted between space checks (default: 1)")
    parser.add_argument("--min-age", help="Never delete images used more recently than this, e.g. '2 days'")
    parser.add_argument("--config", help="Path to config.yaml (default: CONFIG_FILE env var or ./config.yaml)")
    parser.add_argument("--state-file", help="Path of the state file")
    parser.add_argument("--dry-run", action="store_true", help="Show the eviction ranking without deleting anything")
    parser.add_argument("--once", action="store_true", help="Run a single vacuum pass and exit")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Build the configuration, applying command-line overrides before validating.

    Raises:
        ConfigValidationError: If the resulting configuration is invalid
    """
    config = ConfigManager(config_file=args.config, validate=False)
    config.override("vacuum", "threshold", args.threshold)
    config.override("vacuum", "keep", args.keep)
    config.override("vacuum", "deletion_chunk_size", args.deletion_chunk_size)
    config.override("vacuum", "min_age", args.min_age)
    config.override("state", "path", args.state_file)
    config.validate_config()
    return config


def _terminate(signum, frame):
    raise KeyboardInterrupt


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    setup_logging()

    try:
        config = load_config(args)
    except ConfigValidationError as e:
        logger.error(str(e))
        return 1

    setup_logging(config.get_log_level())

    if args.print_config:
        config.print_config()
        return 0

    docker_client = DockerClient()
    state_store = StateStore(config.get_state_path())
    signal.signal(signal.SIGTERM, _terminate)

    try:
        if args.dry_run:
            dry_run(config, docker_client, state_store)
            return 0

        daemon = VacuumDaemon(config, docker_client, state_store)
        if args.once:
            daemon.vacuum()
            return 0
        daemon.serve_forever()
    except VacuumError as e:
        log_exception(logger, str(e), e)
        return 1
    except KeyboardInterrupt:
        logger.info("Exiting...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
