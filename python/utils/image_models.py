"""
Data types shared by the vacuum engine.

Instants are POSIX timestamps in seconds (floats), sizes are byte counts.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

UNTAGGED = "<none>"


@dataclass(frozen=True)
class RepoTag:
    """A repository:tag label attached to an image."""

    repository: str
    tag: str

    @property
    def label(self) -> str:
        return f"{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, label: str) -> "RepoTag":
        """Split a label on its last colon so registry ports survive.

        "localhost:5000/app:v1" -> RepoTag("localhost:5000/app", "v1")
        """
        repository, sep, tag = label.rpartition(":")
        if not sep or "/" in tag:
            return cls(label, UNTAGGED)
        return cls(repository, tag)

    @classmethod
    def untagged(cls) -> "RepoTag":
        return cls(UNTAGGED, UNTAGGED)


@dataclass(frozen=True)
class ImageRecord:
    """An image as reported by the Docker daemon for one pass."""

    id: str
    parent_id: Optional[str]
    created_at: float
    repo_tags: Tuple[RepoTag, ...] = (RepoTag(UNTAGGED, UNTAGGED),)

    @property
    def labels(self) -> List[str]:
        return [repo_tag.label for repo_tag in self.repo_tags]


@dataclass
class ImageNode:
    """A node of the image polyforest, rebuilt every pass."""

    record: ImageRecord
    last_used_at: float = 0.0
    ancestor_count: int = 0  # 0 for images with no parent or a missing parent
    tree_parent_id: Optional[str] = None  # parent within this pass's forest, None for roots

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def parent_id(self) -> Optional[str]:
        return self.record.parent_id


@dataclass(frozen=True)
class PersistedImage:
    """What is remembered about an image between passes and restarts."""

    parent_id: Optional[str]
    last_used_at: float

    def to_dict(self) -> Dict[str, object]:
        return {"parent_id": self.parent_id, "last_used_since_epoch": self.last_used_at}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "PersistedImage":
        parent_id = data.get("parent_id")
        return cls(
            parent_id=str(parent_id) if parent_id else None,
            last_used_at=float(data["last_used_since_epoch"]),
        )


@dataclass
class PassResult:
    """Summary of a single vacuum pass."""

    threshold: int
    space_before: int
    space_after: int
    candidates: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    state: Dict[str, PersistedImage] = field(default_factory=dict)

    @property
    def under_threshold(self) -> bool:
        return self.space_after <= self.threshold
