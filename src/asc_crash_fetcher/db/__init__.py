"""Persistent store: SQLite via async SQLAlchemy."""

from asc_crash_fetcher.db.engine import (
    dispose_engine,
    get_engine,
    get_session,
    get_session_factory,
    migrate,
    open_database,
)
from asc_crash_fetcher.db.models import (
    SUBMISSION_MODELS,
    App,
    AttachmentState,
    Base,
    CrashSubmission,
    FeedbackSubmission,
    RecordKind,
    StatusChange,
    Submission,
    SubmissionStatus,
    SyncCursor,
)
from asc_crash_fetcher.db.repositories import (
    AppRepository,
    BaseRepository,
    SubmissionRepository,
    SyncCursorRepository,
)

__all__ = [
    # Models
    "SUBMISSION_MODELS",
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
    # Engine
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "migrate",
    "open_database",
    # Repositories
    "AppRepository",
    "BaseRepository",
    "SubmissionRepository",
    "SyncCursorRepository",
]
