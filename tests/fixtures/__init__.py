"""Test fixtures for asc-crash-fetcher."""

from .asc_responses import (
    APP_ASC_ID,
    APP_RESOURCE,
    BUNDLE_ID,
    CRASH_LOG_TEXT,
    NOT_FOUND_ERROR,
    RATE_LIMIT_ERROR,
    UNAUTHORIZED_ERROR,
    apps_document,
    crash_log_document,
    crash_resource,
    screenshot_resource,
    submissions_page,
)

__all__ = [
    # Mock App Store Connect API responses
    "APP_ASC_ID",
    "APP_RESOURCE",
    "BUNDLE_ID",
    "CRASH_LOG_TEXT",
    "NOT_FOUND_ERROR",
    "RATE_LIMIT_ERROR",
    "UNAUTHORIZED_ERROR",
    "apps_document",
    "crash_log_document",
    "crash_resource",
    "screenshot_resource",
    "submissions_page",
]
