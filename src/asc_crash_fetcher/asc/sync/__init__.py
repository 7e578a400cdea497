"""Sync module - App Store Connect to local store synchronization.

Services:
- SyncOrchestrator: Multi-app sync (pull, reconcile, recover attachments)
- AttachmentFetcher: Crash log and screenshot downloads with atomic writes
- CommitManager: Commit boundaries for database resilience
"""

from .attachments import (
    AttachmentFetcher,
    AttachmentRef,
    Downloaded,
    FetchOutcome,
    TransientFailure,
    Unavailable,
    is_within_retention,
)
from .commit_manager import CommitManager
from .enums import OutputFormat, SyncScope
from .orchestrator import SyncOrchestrator
from .results import (
    AppSyncResult,
    KindTotals,
    NewRecord,
    PendingAttachment,
    RecoveredAttachment,
    SyncReport,
)

__all__ = [
    # Orchestration
    "SyncOrchestrator",
    "SyncScope",
    "OutputFormat",
    # Results
    "AppSyncResult",
    "KindTotals",
    "NewRecord",
    "PendingAttachment",
    "RecoveredAttachment",
    "SyncReport",
    # Attachments
    "AttachmentFetcher",
    "AttachmentRef",
    "Downloaded",
    "FetchOutcome",
    "TransientFailure",
    "Unavailable",
    "is_within_retention",
    # Commit management
    "CommitManager",
]
