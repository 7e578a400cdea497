"""Enums for sync operations."""

from enum import Enum

from asc_crash_fetcher.schemas.enums import RecordKind


class OutputFormat(str, Enum):
    """Output format for CLI commands."""

    TEXT = "text"
    """Human-readable text output."""

    JSON = "json"
    """Machine-readable JSON output."""


class SyncScope(str, Enum):
    """Which record kinds a sync pulls."""

    ALL = "all"
    """Crashes and feedback."""

    CRASHES = "crashes"
    """Crash submissions only (--no-feedback)."""

    FEEDBACK = "feedback"
    """Screenshot feedback only (--no-crashes)."""

    @classmethod
    def from_flags(cls, *, no_crashes: bool, no_feedback: bool) -> "SyncScope | None":
        """Scope for the CLI skip flags (None when both kinds are skipped)."""
        if no_crashes and no_feedback:
            return None
        if no_crashes:
            return cls.FEEDBACK
        if no_feedback:
            return cls.CRASHES
        return cls.ALL

    @property
    def kinds(self) -> tuple[RecordKind, ...]:
        """Record kinds in sync order."""
        if self is SyncScope.CRASHES:
            return (RecordKind.CRASH,)
        if self is SyncScope.FEEDBACK:
            return (RecordKind.FEEDBACK,)
        return (RecordKind.CRASH, RecordKind.FEEDBACK)
