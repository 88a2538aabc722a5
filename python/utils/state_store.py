"""
Persistence of per-image usage state between vacuum passes.

The state file is the only memory the daemon has across restarts: for every
image seen during the last pass it records the parent ID and the last-used
instant. It is written atomically so a crash mid-write never leaves a
truncated file behind.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

import yaml

from utils.error_utils import create_state_error
from utils.image_models import PersistedImage
from utils.logging_utils import get_logger

logger = get_logger(__name__)

STATE_FILE_ENV = "IMAGE_VACUUM_STATE_FILE"


def default_state_path() -> Path:
    """$XDG_DATA_HOME/image-vacuum/state.yml, or ~/.local/share/image-vacuum/state.yml"""
    data_home = os.environ.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / "image-vacuum" / "state.yml"


class StateStore:
    """Loads and saves the map from image ID to PersistedImage."""

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize the state store.

        Args:
            path: State file location (defaults to IMAGE_VACUUM_STATE_FILE or the user data directory)
        """
        if path is None:
            env_path = os.environ.get(STATE_FILE_ENV)
            path = Path(env_path) if env_path else default_state_path()
        self.path = Path(path)

    def load(self) -> Dict[str, PersistedImage]:
        """
        Load the state from disk.

        A missing or unreadable file yields an empty map; the daemon then starts
        over as if it had never run.

        Returns:
            Map from image ID to PersistedImage
        """
        logger.debug(f"Attempting to load the state from {self.path}...")
        try:
            with open(self.path, "r") as f:
                document = yaml.safe_load(f)
        except FileNotFoundError:
            logger.debug(f"No state file at {self.path}. Proceeding with initial state.")
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.debug(f"Unable to load state from {self.path}. Proceeding with initial state. Details: {e}")
            return {}

        if not isinstance(document, dict) or not isinstance(document.get("images"), dict):
            logger.debug(f"State file {self.path} has an unexpected layout. Proceeding with initial state.")
            return {}

        images = {}
        for image_id, entry in document["images"].items():
            try:
                images[str(image_id)] = PersistedImage.from_dict(entry)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed state entry for image {image_id}: {e}")
        return images

    def save(self, images: Dict[str, PersistedImage]) -> Path:
        """
        Persist the state to disk, replacing the previous file atomically.

        Args:
            images: Map from image ID to PersistedImage

        Returns:
            Path to the saved state file

        Raises:
            PersistenceError: If the file cannot be written
        """
        logger.debug(f"Persisting the state to {self.path}...")
        payload = {"images": {image_id: image.to_dict() for image_id, image in sorted(images.items())}}

        temp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.path.parent, prefix=".state-", suffix=".yml", delete=False
            ) as f:
                temp_path = f.name
                yaml.safe_dump(payload, f, default_flow_style=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            raise create_state_error("save", str(self.path), e) from e

        return self.path

    def touch(self, image_id: str, parent_id: Optional[str], now: float) -> None:
        """Record that an image was just used.

        Args:
            image_id: Image that was used
            parent_id: Its parent, kept from the existing entry when known
            now: Current instant
        """
        images = self.load()
        existing = images.get(image_id)
        if existing is not None and parent_id is None:
            parent_id = existing.parent_id
        images[image_id] = PersistedImage(parent_id=parent_id, last_used_at=now)
        self.save(images)
