"""
Docker client for the vacuum engine.

This module wraps the Docker Engine API (through the docker SDK) behind the
small surface the engine needs: list images, find images used by containers,
measure image storage, and delete one image at a time. Docker's error
taxonomy is collapsed here into the engine's error kinds.
"""

import shutil
from typing import Any, Dict, Iterator, Optional, Set

import docker
import requests
import urllib3

from utils.error_utils import CollaboratorError, DeleteError, DeleteOutcome, create_docker_connection_error
from utils.image_models import ImageRecord, RepoTag
from utils.logging_utils import get_logger

logger = get_logger(__name__)

# HTTP statuses for which Docker guarantees the image was left in place
NOT_DELETED_STATUSES = (404, 409)

# urllib3 errors escape the SDK when a streamed response breaks mid-read
DOCKER_ERRORS = (
    docker.errors.DockerException,
    requests.exceptions.RequestException,
    urllib3.exceptions.HTTPError,
)


class DockerClient:
    """Standardized Docker client for image operations."""

    def __init__(self, api: Optional[Any] = None):
        """Initialize DockerClient.

        Args:
            api: A docker.APIClient (defaults to one built from the environment on first use)
        """
        self._api = api

    @property
    def api(self):
        if self._api is None:
            try:
                self._api = docker.from_env().api
            except DOCKER_ERRORS as e:
                raise create_docker_connection_error("connect to the Docker daemon", e) from e
        return self._api

    def _call(self, operation: str, method: str, *args, **kwargs):
        try:
            return getattr(self.api, method)(*args, **kwargs)
        except DOCKER_ERRORS as e:
            raise create_docker_connection_error(operation, e) from e

    def list_image_records(self) -> Dict[str, ImageRecord]:
        """Return every image, intermediate images included, keyed by ID."""
        records = {}
        for item in self._call("list images", "images", all=True):
            image_id = item["Id"]
            repo_tags = tuple(RepoTag.parse(label) for label in item.get("RepoTags") or [])
            records[image_id] = ImageRecord(
                id=image_id,
                parent_id=item.get("ParentId") or None,
                created_at=float(item.get("Created") or 0),
                repo_tags=repo_tags or (RepoTag.untagged(),),
            )
        logger.debug(f"Found {len(records)} images")
        return records

    def image_ids_in_use(self) -> Set[str]:
        """Return the IDs of images referenced by any container, running or not."""
        containers = self._call("list containers", "containers", all=True)
        return {container["ImageID"] for container in containers if container.get("ImageID")}

    def space_usage(self) -> int:
        """Return the number of bytes used by Docker images."""
        usage = self._call("measure disk usage", "df")
        layers_size = usage.get("LayersSize") if isinstance(usage, dict) else None
        if layers_size is None:
            raise CollaboratorError(
                "Unable to determine the disk space used by Docker images.",
                details={"response": usage},
            )
        return int(layers_size)

    def delete_image(self, image_id: str) -> None:
        """Delete a single image.

        Raises:
            DeleteError: NOT_DELETED when Docker refused the deletion, UNKNOWN otherwise
        """
        try:
            self.api.remove_image(image_id, force=True, noprune=True)
        except docker.errors.APIError as e:
            outcome = DeleteOutcome.NOT_DELETED if e.status_code in NOT_DELETED_STATUSES else DeleteOutcome.UNKNOWN
            raise DeleteError(
                image_id,
                outcome,
                f"Docker refused to delete image {image_id}: {e.explanation or e}"
                if outcome is DeleteOutcome.NOT_DELETED
                else f"Deletion of image {image_id} failed with an unknown outcome: {e}",
                details={"status_code": e.status_code},
            ) from e
        except DOCKER_ERRORS as e:
            raise DeleteError(
                image_id,
                DeleteOutcome.UNKNOWN,
                f"Deletion of image {image_id} failed with an unknown outcome: {e}",
            ) from e

    def image_id(self, image: str) -> str:
        """Resolve an image name or reference to its ID."""
        return self._call(f"inspect image {image}", "inspect_image", image)["Id"]

    def filesystem_capacity(self) -> int:
        """Return the size in bytes of the filesystem holding Docker's data root."""
        info = self._call("query daemon info", "info")
        root_dir = info.get("DockerRootDir")
        if not root_dir:
            raise CollaboratorError("Docker did not report its root directory.")
        try:
            return shutil.disk_usage(root_dir).total
        except OSError as e:
            raise CollaboratorError(
                f"Unable to determine the capacity of the filesystem holding {root_dir}",
                suggestions=["Percentage thresholds need the daemon's data root to be visible locally"],
                details={"error_message": str(e)},
            ) from e

    def events(self) -> Iterator[Dict[str, Any]]:
        """Stream decoded Docker events until the daemon closes the stream."""
        stream = self._call("listen for events", "events", decode=True)
        try:
            for event in stream:
                yield event
        except DOCKER_ERRORS as e:
            raise create_docker_connection_error("listen for events", e) from e
        finally:
            stream.close()
        raise CollaboratorError("The Docker event stream unexpectedly terminated.")
