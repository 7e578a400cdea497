"""Repository pattern implementation for database access.

This module provides repository classes that encapsulate all database
access logic, providing a clean abstraction over SQLAlchemy models.
"""

from .app import AppRepository
from .base import BaseRepository
from .submission import SubmissionRepository
from .sync_cursor import SyncCursorRepository

__all__ = [
    "AppRepository",
    "BaseRepository",
    "SubmissionRepository",
    "SyncCursorRepository",
]
