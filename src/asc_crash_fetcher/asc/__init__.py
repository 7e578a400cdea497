"""App Store Connect API module.

This module provides:
- TokenSigner: ES256 bearer tokens for the API
- AscClient: Async API client with retry and pagination
- Sync: SyncOrchestrator, AttachmentFetcher, SyncReport
"""

from .auth import TokenSigner, load_private_key, sign
from .client import AscClient
from .sync import (
    AttachmentFetcher,
    OutputFormat,
    SyncOrchestrator,
    SyncReport,
    SyncScope,
)

__all__ = [
    # Auth
    "TokenSigner",
    "load_private_key",
    "sign",
    # Client
    "AscClient",
    # Sync
    "AttachmentFetcher",
    "OutputFormat",
    "SyncOrchestrator",
    "SyncReport",
    "SyncScope",
]
