"""
Error types raised by the vacuum engine and its collaborators.

The engine distinguishes failures that abort a pass (the Docker daemon could
not be queried, the state could not be saved) from per-image deletion
failures, which are logged and skipped.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    COLLABORATOR = "collaborator"
    DELETION = "deletion"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class DeleteOutcome(Enum):
    """What is known about an image after a failed deletion request"""
    NOT_DELETED = "not_deleted"  # the daemon refused, e.g. not found or conflict
    UNKNOWN = "unknown"  # the request may or may not have taken effect


class VacuumError(Exception):
    """Base class for errors with actionable guidance for users"""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, suggestions: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        """Initialize the error

        Args:
            message: Primary error message
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class CollaboratorError(VacuumError):
    """Listing, inspecting or measuring images failed. Fatal to the current pass."""

    category = ErrorCategory.COLLABORATOR


class DeleteError(VacuumError):
    """Deleting a single image failed. Never fatal to a pass."""

    category = ErrorCategory.DELETION

    def __init__(self, image_id: str, outcome: DeleteOutcome, message: str,
                 details: Optional[Dict[str, Any]] = None):
        self.image_id = image_id
        self.outcome = outcome
        super().__init__(message, details=details)

    @property
    def possibly_deleted(self) -> bool:
        return self.outcome is DeleteOutcome.UNKNOWN


class PersistenceError(VacuumError):
    """Loading or saving the on-disk state failed."""

    category = ErrorCategory.PERSISTENCE


def create_docker_connection_error(operation: str, error: Exception) -> CollaboratorError:
    """Create actionable error for Docker daemon failures"""
    error_str = str(error).lower()

    suggestions = [
        "Check that the Docker daemon is running (docker info)",
        "Verify DOCKER_HOST points at the right daemon, if set",
        "Verify the current user may access the Docker socket",
    ]

    if "permission denied" in error_str:
        suggestions.insert(0, "Add the user to the 'docker' group or run as root")

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if the Docker daemon is under heavy load")

    return CollaboratorError(
        message=f"Docker operation failed: {operation}",
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error),
        },
    )


def create_state_error(operation: str, path: str, error: Exception) -> PersistenceError:
    """Create actionable error for state file failures"""
    suggestions = [
        f"Verify the directory containing {path} exists and is writable",
        "Check that the filesystem is not full or read-only",
        "Point state.path in config.yaml (or IMAGE_VACUUM_STATE_FILE) at a writable location",
    ]

    return PersistenceError(
        message=f"Unable to {operation} the state file {path}",
        suggestions=suggestions,
        details={
            "path": path,
            "error_type": type(error).__name__,
            "error_message": str(error),
        },
    )
