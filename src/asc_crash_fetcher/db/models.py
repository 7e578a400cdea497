"""SQLAlchemy ORM models for the crash triage database."""

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    declared_attr,
    mapped_column,
    relationship,
)

from asc_crash_fetcher.schemas.enums import (
    TERMINAL_STATUSES,
    UNFIXED_STATUSES,
    AttachmentState,
    RecordKind,
    SubmissionStatus,
)

__all__ = [
    "TERMINAL_STATUSES",
    "UNFIXED_STATUSES",
    "App",
    "AttachmentState",
    "Base",
    "CrashSubmission",
    "FeedbackSubmission",
    "RecordKind",
    "StatusChange",
    "Submission",
    "SubmissionStatus",
    "SyncCursor",
    "utcnow",
]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form SQLite round-trips)."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ------------------------------------------------------------------------------
# App model
# ------------------------------------------------------------------------------
class App(Base):
    """Monitored app, keyed by bundle identifier."""

    __tablename__ = "apps"

    id: Mapped[int] = mapped_column(primary_key=True)
    bundle_id: Mapped[str] = mapped_column(String(255), unique=True)
    asc_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    def __repr__(self) -> str:
        return f"<App(id={self.id}, bundle_id='{self.bundle_id}')>"


# ------------------------------------------------------------------------------
# Submission models
# ------------------------------------------------------------------------------
class SubmissionMixin:
    """Columns shared by crash and feedback submissions."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    @declared_attr
    def app_id(cls) -> Mapped[int]:
        return mapped_column(ForeignKey("apps.id", ondelete="CASCADE"))

    # --------------------------------------------------------------------------
    # Remote fields (set once on first sight)
    # --------------------------------------------------------------------------
    remote_id: Mapped[str] = mapped_column(String(128))
    created_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    device_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    app_platform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    device_family: Mapped[str | None] = mapped_column(String(50), nullable=True)
    locale: Mapped[str | None] = mapped_column(String(50), nullable=True)
    connection_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    battery_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tester_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tester_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    build_bundle_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    build_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # --------------------------------------------------------------------------
    # Attachment
    # --------------------------------------------------------------------------
    attachment_state: Mapped[AttachmentState] = mapped_column(default=AttachmentState.PENDING)
    attachment_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # --------------------------------------------------------------------------
    # Triage
    # --------------------------------------------------------------------------
    status: Mapped[SubmissionStatus] = mapped_column(default=SubmissionStatus.NEW)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    fixed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # --------------------------------------------------------------------------
    # Metadata
    # --------------------------------------------------------------------------
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    @declared_attr
    def app(cls) -> Mapped["App"]:
        return relationship("App", lazy="joined")

    @property
    def has_attachment(self) -> bool:
        """Check if the attachment is on disk."""
        return self.attachment_state == AttachmentState.DOWNLOADED

    @property
    def is_unfixed(self) -> bool:
        """Check if the record still needs attention."""
        return self.status in UNFIXED_STATUSES


class CrashSubmission(SubmissionMixin, Base):
    """TestFlight crash submission; the attachment is the crash log."""

    __tablename__ = "crash_submissions"

    architecture: Mapped[str | None] = mapped_column(String(50), nullable=True)
    app_uptime_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duplicate_of: Mapped[int | None] = mapped_column(
        ForeignKey("crash_submissions.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("app_id", "remote_id", name="uq_crash_app_remote"),
        Index("ix_crash_submissions_status", "status"),
        Index("ix_crash_submissions_created_date", "created_date"),
        Index("ix_crash_submissions_app_id", "app_id"),
    )

    kind = RecordKind.CRASH

    def __repr__(self) -> str:
        return f"<CrashSubmission(id={self.id}, remote_id='{self.remote_id}')>"


class FeedbackSubmission(SubmissionMixin, Base):
    """TestFlight screenshot feedback; the attachment is a screenshot or video."""

    __tablename__ = "feedback_submissions"

    attachment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    duplicate_of: Mapped[int | None] = mapped_column(
        ForeignKey("feedback_submissions.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("app_id", "remote_id", name="uq_feedback_app_remote"),
        Index("ix_feedback_submissions_status", "status"),
        Index("ix_feedback_submissions_created_date", "created_date"),
        Index("ix_feedback_submissions_app_id", "app_id"),
    )

    kind = RecordKind.FEEDBACK

    def __repr__(self) -> str:
        return f"<FeedbackSubmission(id={self.id}, remote_id='{self.remote_id}')>"


Submission = CrashSubmission | FeedbackSubmission

SUBMISSION_MODELS: dict[RecordKind, type[CrashSubmission] | type[FeedbackSubmission]] = {
    RecordKind.CRASH: CrashSubmission,
    RecordKind.FEEDBACK: FeedbackSubmission,
}


# ------------------------------------------------------------------------------
# StatusChange model
# ------------------------------------------------------------------------------
class StatusChange(Base):
    """Append-only history of triage transitions.

    Reopening a record keeps its notes here even after the record moves on.
    """

    __tablename__ = "status_changes"

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[RecordKind] = mapped_column()
    submission_id: Mapped[int] = mapped_column()
    from_status: Mapped[SubmissionStatus] = mapped_column()
    to_status: Mapped[SubmissionStatus] = mapped_column()
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    duplicate_of: Mapped[int | None] = mapped_column(nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    __table_args__ = (Index("ix_status_changes_record", "kind", "submission_id"),)

    def __repr__(self) -> str:
        return (
            f"<StatusChange(id={self.id}, {self.kind.value}#{self.submission_id}, "
            f"{self.from_status.value}->{self.to_status.value})>"
        )


# ------------------------------------------------------------------------------
# SyncCursor model
# ------------------------------------------------------------------------------
class SyncCursor(Base):
    """Pagination progress of the latest pull, per app and record kind.

    ``next_url`` is non-null while a pull is in progress (or was interrupted).
    """

    __tablename__ = "sync_cursors"

    id: Mapped[int] = mapped_column(primary_key=True)
    app_id: Mapped[int] = mapped_column(ForeignKey("apps.id", ondelete="CASCADE"))
    kind: Mapped[RecordKind] = mapped_column()
    next_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    pages_fetched: Mapped[int] = mapped_column(default=0)
    records_seen: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("app_id", "kind", name="uq_cursor_app_kind"),)

    @property
    def interrupted(self) -> bool:
        """True if the last pull started but never completed."""
        return self.started_at is not None and (
            self.completed_at is None or self.completed_at < self.started_at
        )

    def __repr__(self) -> str:
        return f"<SyncCursor(app_id={self.app_id}, kind={self.kind.value})>"
