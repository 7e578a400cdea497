"""Result objects for sync operations.

Structured results provide consistent interfaces for logging, CLI text
output and the ``--format json`` document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from asc_crash_fetcher.db.models import Submission
from asc_crash_fetcher.schemas.enums import RecordKind


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class NewRecord:
    """A submission seen for the first time during this sync."""

    kind: RecordKind
    local_id: int
    remote_id: str
    bundle_id: str
    created_date: datetime | None = None
    device_model: str | None = None
    os_version: str | None = None
    tester_comment: str | None = None
    attachment_path: str | None = None

    @classmethod
    def from_submission(cls, submission: Submission, bundle_id: str) -> NewRecord:
        """Snapshot a stored submission (after its download attempt)."""
        return cls(
            kind=submission.kind,
            local_id=submission.id,
            remote_id=submission.remote_id,
            bundle_id=bundle_id,
            created_date=submission.created_date,
            device_model=submission.device_model,
            os_version=submission.os_version,
            tester_comment=submission.tester_comment,
            attachment_path=submission.attachment_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        path_key = "log_path" if self.kind == RecordKind.CRASH else "screenshot_path"
        return {
            "id": self.local_id,
            "submission_id": self.remote_id,
            "app": self.bundle_id,
            "created_at": _iso(self.created_date),
            "device_model": self.device_model,
            "os_version": self.os_version,
            "tester_comment": self.tester_comment,
            path_key: self.attachment_path,
        }


@dataclass
class RecoveredAttachment:
    """An attachment downloaded for a submission known from an earlier sync."""

    kind: RecordKind
    local_id: int
    path: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        path_key = "log_path" if self.kind == RecordKind.CRASH else "screenshot_path"
        return {"id": self.local_id, path_key: self.path}


@dataclass
class PendingAttachment:
    """An attachment that is still missing after this sync (retried next time)."""

    kind: RecordKind
    local_id: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"kind": self.kind.value, "id": self.local_id, "reason": self.reason}


@dataclass
class KindTotals:
    """Post-sync totals for one record kind."""

    total: int = 0
    unfixed: int = 0


@dataclass
class AppSyncResult:
    """Result of syncing a single app."""

    bundle_id: str
    """Bundle identifier from config."""

    name: str | None = None
    """Display name (from config or App Store Connect)."""

    started_at: datetime | None = None
    completed_at: datetime | None = None

    new_records: list[NewRecord] = field(default_factory=list)
    recovered: list[RecoveredAttachment] = field(default_factory=list)
    pending: list[PendingAttachment] = field(default_factory=list)
    expired: list[PendingAttachment] = field(default_factory=list)
    """Attachments marked unavailable because the retention horizon passed."""

    records_seen: int = 0
    """Remote records walked across all pulled kinds."""

    error: str | None = None
    """Why this app's sync stopped early (API failure or unknown app)."""

    @property
    def success(self) -> bool:
        """Check if the app synced without an app-level error."""
        return self.error is None

    @property
    def duration_seconds(self) -> float:
        """Time taken to sync this app."""
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def new_of(self, kind: RecordKind) -> list[NewRecord]:
        """New records of one kind."""
        return [r for r in self.new_records if r.kind == kind]

    def recovered_of(self, kind: RecordKind) -> list[RecoveredAttachment]:
        """Recovered attachments of one kind."""
        return [r for r in self.recovered if r.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "app": self.bundle_id,
            "name": self.name,
            "success": self.success,
            "error": self.error,
            "records_seen": self.records_seen,
            "new": len(self.new_records),
            "recovered": len(self.recovered),
            "pending": [p.to_dict() for p in self.pending],
            "expired": [p.to_dict() for p in self.expired],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class SyncReport:
    """Result of one sync run across all selected apps."""

    app_results: list[AppSyncResult] = field(default_factory=list)
    totals: dict[RecordKind, KindTotals] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def _collect_new(self, kind: RecordKind) -> list[NewRecord]:
        return [r for app in self.app_results for r in app.new_of(kind)]

    def _collect_recovered(self, kind: RecordKind) -> list[RecoveredAttachment]:
        return [r for app in self.app_results for r in app.recovered_of(kind)]

    @property
    def new_crashes(self) -> list[NewRecord]:
        """Crash submissions discovered by this sync."""
        return self._collect_new(RecordKind.CRASH)

    @property
    def recovered_logs(self) -> list[RecoveredAttachment]:
        """Crash logs downloaded for previously known crashes."""
        return self._collect_recovered(RecordKind.CRASH)

    @property
    def new_feedbacks(self) -> list[NewRecord]:
        """Feedback submissions discovered by this sync."""
        return self._collect_new(RecordKind.FEEDBACK)

    @property
    def recovered_screenshots(self) -> list[RecoveredAttachment]:
        """Screenshots downloaded for previously known feedback."""
        return self._collect_recovered(RecordKind.FEEDBACK)

    @property
    def errors(self) -> list[dict[str, str]]:
        """Per-app failures."""
        return [
            {"app": r.bundle_id, "error": r.error} for r in self.app_results if r.error is not None
        ]

    @property
    def pending(self) -> list[PendingAttachment]:
        """Attachments still missing after this sync."""
        return [p for app in self.app_results for p in app.pending]

    @property
    def has_failures(self) -> bool:
        """True if any app failed (partial success)."""
        return bool(self.errors)

    def total(self, kind: RecordKind) -> KindTotals:
        """Totals for a kind (zeros if not computed)."""
        return self.totals.get(kind, KindTotals())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        crash = self.total(RecordKind.CRASH)
        feedback = self.total(RecordKind.FEEDBACK)
        return {
            "new_crashes": [r.to_dict() for r in self.new_crashes],
            "recovered_logs": [r.to_dict() for r in self.recovered_logs],
            "new_feedbacks": [r.to_dict() for r in self.new_feedbacks],
            "recovered_screenshots": [r.to_dict() for r in self.recovered_screenshots],
            "crash_total": crash.total,
            "crash_unfixed": crash.unfixed,
            "feedback_total": feedback.total,
            "feedback_unfixed": feedback.unfixed,
            "pending": [p.to_dict() for p in self.pending],
            "errors": self.errors,
            "apps": [r.to_dict() for r in self.app_results],
            "duration_seconds": round(self.duration_seconds, 2),
        }
