"""Enums shared by the store, the API layer and the CLI."""

from enum import Enum


class RecordKind(str, Enum):
    """Kind of TestFlight submission."""

    CRASH = "crash"
    FEEDBACK = "feedback"

    @property
    def label(self) -> str:
        """Capitalized name for messages ("Crash #3 marked as fixed")."""
        return self.value.capitalize()


class SubmissionStatus(str, Enum):
    """Triage status of a submission."""

    NEW = "new"
    INVESTIGATING = "investigating"
    FIXED = "fixed"
    WONTFIX = "wontfix"
    DUPLICATE = "duplicate"

    @property
    def is_terminal(self) -> bool:
        """Whether the status ends the triage workflow."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SubmissionStatus.FIXED, SubmissionStatus.WONTFIX, SubmissionStatus.DUPLICATE}
)
UNFIXED_STATUSES = frozenset({SubmissionStatus.NEW, SubmissionStatus.INVESTIGATING})


class AttachmentState(str, Enum):
    """Download state of a submission's attachment."""

    PENDING = "pending"  # Not downloaded yet; retried on every sync
    DOWNLOADED = "downloaded"  # Present on disk at attachment_path
    UNAVAILABLE = "unavailable"  # Past the retention horizon, never retried
