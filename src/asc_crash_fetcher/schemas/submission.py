"""Submission schemas for create, read, filter and stats operations."""

from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, Field

from .base import SchemaBase
from .enums import AttachmentState, RecordKind, SubmissionStatus


class SubmissionCreate(SchemaBase):
    """Fields set once, when a remote submission is first seen locally."""

    remote_id: str = Field(min_length=1, description="Remote submission id (unique per app)")
    created_date: datetime | None = Field(default=None, description="Remote creation time (UTC)")
    device_model: str | None = None
    os_version: str | None = None
    app_platform: str | None = None
    device_family: str | None = None
    locale: str | None = None
    connection_type: str | None = None
    battery_pct: int | None = None
    tester_email: str | None = None
    tester_comment: str | None = None
    build_bundle_id: str | None = None
    build_id: str | None = None

    def to_columns(self) -> dict[str, Any]:
        """Column values for an INSERT."""
        return self.model_dump()


class CrashSubmissionCreate(SubmissionCreate):
    """Crash-specific creation fields."""

    architecture: str | None = None
    app_uptime_ms: int | None = None


class FeedbackSubmissionCreate(SubmissionCreate):
    """Feedback-specific creation fields."""

    attachment_url: str | None = Field(
        default=None, description="Pre-signed URL of the first screenshot"
    )


class SubmissionRead(SchemaBase):
    """Schema for reading a submission with computed fields."""

    id: int
    kind: RecordKind
    app_id: int
    bundle_id: str | None = None
    remote_id: str
    created_date: datetime | None
    device_model: str | None
    os_version: str | None
    app_platform: str | None
    device_family: str | None
    locale: str | None
    connection_type: str | None
    battery_pct: int | None
    tester_email: str | None
    tester_comment: str | None
    build_bundle_id: str | None
    build_id: str | None
    attachment_state: AttachmentState
    attachment_path: str | None
    status: SubmissionStatus
    notes: str | None
    duplicate_of: int | None
    fixed_at: datetime | None
    first_seen_at: datetime
    updated_at: datetime

    @classmethod
    def from_orm(cls, obj: Any) -> Self:
        """Convert a submission row, flattening the owning app's bundle id."""
        read = cls.model_validate(obj)
        app = getattr(obj, "app", None)
        if app is not None:
            read.bundle_id = app.bundle_id
        return read


class CrashRead(SubmissionRead):
    """Crash submission as shown by `show` and `list`."""

    architecture: str | None
    app_uptime_ms: int | None


class FeedbackRead(SubmissionRead):
    """Feedback submission as shown by `show` and `list`."""

    attachment_url: str | None
    mime_type: str | None


READ_SCHEMAS: dict[RecordKind, type[CrashRead] | type[FeedbackRead]] = {
    RecordKind.CRASH: CrashRead,
    RecordKind.FEEDBACK: FeedbackRead,
}


class SubmissionFilter(BaseModel):
    """Filters for listing submissions."""

    statuses: list[SubmissionStatus] | None = Field(
        default=None, description="Only these statuses (None = all)"
    )
    since: datetime | None = Field(default=None, description="Only created at or after this time")
    bundle_id: str | None = Field(default=None, description="Only this app")
    limit: int = Field(default=50, ge=1, description="Max results, newest first")


class SubmissionStats(BaseModel):
    """Aggregate counts for one record kind."""

    kind: RecordKind
    total: int = 0
    unfixed: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_device: list[tuple[str, int]] = Field(default_factory=list)
    by_os: list[tuple[str, int]] = Field(default_factory=list)


class StatusChangeRead(SchemaBase):
    """One entry of a submission's triage history."""

    from_status: SubmissionStatus
    to_status: SubmissionStatus
    notes: str | None
    duplicate_of: int | None
    changed_at: datetime
