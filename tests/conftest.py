"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory stand-in for the Docker daemon.
"""
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from utils.error_utils import DeleteError, DeleteOutcome  # noqa: E402
from utils.image_models import ImageRecord, RepoTag  # noqa: E402
from utils.state_store import StateStore  # noqa: E402


def make_record(image_id: str, parent_id: Optional[str] = None, created_at: float = 0.0,
                tags: Iterable[str] = ()) -> ImageRecord:
    """Build an ImageRecord, untagged unless tags are given"""
    repo_tags = tuple(RepoTag.parse(tag) for tag in tags) or (RepoTag.untagged(),)
    return ImageRecord(id=image_id, parent_id=parent_id, created_at=created_at, repo_tags=repo_tags)


class FakeDocker:
    """In-memory Docker daemon: space usage is the sum of the sizes of remaining images"""

    def __init__(self):
        self.records: Dict[str, ImageRecord] = {}
        self.sizes: Dict[str, int] = {}
        self.in_use: set = set()
        self.delete_errors: Dict[str, DeleteOutcome] = {}
        self.delete_calls: List[str] = []
        self.space_queries = 0

    def add(self, image_id: str, size: int = 100, parent_id: Optional[str] = None,
            created_at: float = 0.0, tags: Iterable[str] = ()) -> ImageRecord:
        record = make_record(image_id, parent_id=parent_id, created_at=created_at, tags=tags)
        self.records[image_id] = record
        self.sizes[image_id] = size
        return record

    def list_image_records(self) -> Dict[str, ImageRecord]:
        return dict(self.records)

    def image_ids_in_use(self):
        return set(self.in_use)

    def space_usage(self) -> int:
        self.space_queries += 1
        return sum(self.sizes.values())

    def delete_image(self, image_id: str) -> None:
        self.delete_calls.append(image_id)
        outcome = self.delete_errors.get(image_id)
        if outcome is not None:
            raise DeleteError(image_id, outcome, f"simulated failure deleting {image_id}")
        self.records.pop(image_id, None)
        self.sizes.pop(image_id, None)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def state_store(tmp_path):
    return StateStore(tmp_path / "image-vacuum" / "state.yml")
