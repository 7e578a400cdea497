"""Pydantic schemas for asc-crash-fetcher.

This module provides API payload decoding and local input/output models.
"""

from .asc_api import (
    AppResource,
    CrashLogDocument,
    CrashSubmissionResource,
    Page,
    PagedLinks,
    ScreenshotSubmissionResource,
)
from .base import SchemaBase
from .enums import (
    TERMINAL_STATUSES,
    UNFIXED_STATUSES,
    AttachmentState,
    RecordKind,
    SubmissionStatus,
)
from .submission import (
    READ_SCHEMAS,
    CrashRead,
    CrashSubmissionCreate,
    FeedbackRead,
    FeedbackSubmissionCreate,
    StatusChangeRead,
    SubmissionCreate,
    SubmissionFilter,
    SubmissionRead,
    SubmissionStats,
)

__all__ = [
    # API payloads
    "AppResource",
    "CrashLogDocument",
    "CrashSubmissionResource",
    "Page",
    "PagedLinks",
    "ScreenshotSubmissionResource",
    # Base
    "SchemaBase",
    # Enums
    "TERMINAL_STATUSES",
    "UNFIXED_STATUSES",
    "AttachmentState",
    "RecordKind",
    "SubmissionStatus",
    # Submissions
    "READ_SCHEMAS",
    "CrashRead",
    "CrashSubmissionCreate",
    "FeedbackRead",
    "FeedbackSubmissionCreate",
    "StatusChangeRead",
    "SubmissionCreate",
    "SubmissionFilter",
    "SubmissionRead",
    "SubmissionStats",
]
