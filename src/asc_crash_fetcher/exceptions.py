"""Exception hierarchy for asc-crash-fetcher.

Propagation policy:
- CredentialError and storage I/O errors abort a whole sync run.
- ApiError is contained per app and surfaced in the sync report.
- AttachmentError is never fatal; the record stays pending.
- ValidationError is raised for integrity violations the caller can fix.
"""

from typing import Any


class CrashFetcherError(Exception):
    """Base exception for all asc-crash-fetcher errors."""

    pass


class ConfigError(CrashFetcherError):
    """Raised when config.toml is missing, unreadable or invalid."""

    pass


class CredentialError(CrashFetcherError):
    """Raised when the API private key cannot be loaded or used for signing."""

    pass


class ApiError(CrashFetcherError):
    """Raised when an App Store Connect API request fails.

    Attributes:
        status: HTTP status code (None for transport-level failures)
        errors: Decoded JSON:API ``errors`` array, when the body had one
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.errors = errors or []

    @property
    def detail(self) -> str | None:
        """First human-readable error detail from the payload, if any."""
        for error in self.errors:
            detail = error.get("detail") or error.get("title")
            if detail:
                return str(detail)
        return None


class ApiRetryableError(ApiError):
    """Raised for a retryable failure (429, 5xx, transport).

    Retried inside the client; callers only see it once all attempts are spent.

    Attributes:
        retry_after: Seconds the server asked us to wait, if it said so
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        errors: list[dict[str, Any]] | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, errors=errors)
        self.retry_after = retry_after


class PayloadError(ApiError):
    """Raised when a response body does not match the expected document shape."""

    pass


class StoreError(CrashFetcherError):
    """Base class for persistent store errors."""

    pass


class ValidationError(StoreError):
    """Raised when a requested change would violate a store invariant."""

    pass


class RecordNotFoundError(ValidationError):
    """Raised when a local record id does not exist."""

    def __init__(self, kind: str, local_id: int) -> None:
        super().__init__(f"{kind} #{local_id} not found")
        self.kind = kind
        self.local_id = local_id


class AttachmentError(CrashFetcherError):
    """Raised when an attachment cannot be written to disk."""

    pass


class AppNotFoundError(ApiError):
    """Raised when the API key cannot see an app with the configured bundle id."""

    def __init__(self, bundle_id: str) -> None:
        super().__init__(f"app '{bundle_id}' not found in App Store Connect")
        self.bundle_id = bundle_id
