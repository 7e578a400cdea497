"""Async App Store Connect API client using httpx.

This module provides a typed async interface to the TestFlight feedback
endpoints: authenticated requests, bounded retry of transient failures, and
lazy traversal of JSON:API pagination links.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from asc_crash_fetcher import __version__
from asc_crash_fetcher.config import RetryConfig, get_settings
from asc_crash_fetcher.db.models import RecordKind
from asc_crash_fetcher.exceptions import ApiError, ApiRetryableError, PayloadError
from asc_crash_fetcher.logging import get_logger
from asc_crash_fetcher.schemas.asc_api import (
    AppResource,
    AscModel,
    CrashLogDocument,
    CrashSubmissionResource,
    Page,
    ScreenshotSubmissionResource,
)

from .auth import TokenSigner

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
ResourceT = TypeVar("ResourceT", bound=AscModel)

Sleep = Callable[[float], Awaitable[None]]

USER_AGENT = f"asc-crash-fetcher/{__version__}"

CRASH_FIELDS = (
    "createdDate,comment,email,deviceModel,osVersion,locale,timeZone,architecture,"
    "connectionType,appUptimeInMilliseconds,diskBytesAvailable,diskBytesTotal,"
    "batteryPercentage,appPlatform,devicePlatform,deviceFamily,buildBundleId,build,tester"
)
SCREENSHOT_FIELDS = (
    "createdDate,comment,email,deviceModel,osVersion,locale,timeZone,connectionType,"
    "batteryPercentage,appPlatform,devicePlatform,deviceFamily,buildBundleId,screenshots,"
    "build,tester"
)

SUBMISSION_ENDPOINTS: dict[RecordKind, tuple[str, str, type[AscModel]]] = {
    RecordKind.CRASH: (
        "betaFeedbackCrashSubmissions",
        CRASH_FIELDS,
        CrashSubmissionResource,
    ),
    RecordKind.FEEDBACK: (
        "betaFeedbackScreenshotSubmissions",
        SCREENSHOT_FIELDS,
        ScreenshotSubmissionResource,
    ),
}


def is_retryable_status(status: int) -> bool:
    """429 and 5xx are transient; every other error status is final."""
    return status == 429 or status >= 500


def is_followable_link(url: str | None) -> bool:
    """Pagination links are only followed when absolute http(s) URLs."""
    if not url:
        return False
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


def _error_objects(response: httpx.Response) -> list[dict[str, Any]]:
    """Decode the JSON:API ``errors`` array of an error response, if present."""
    try:
        body = response.json()
    except ValueError:
        return []
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return []
    return [e for e in errors if isinstance(e, dict)]


def _describe(response: httpx.Response) -> str:
    return f"{response.request.method} {response.request.url.path} -> HTTP {response.status_code}"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After", "")
    return float(value) if value.isdigit() else None


class wait_retry_after(wait_base):
    """Exponential backoff, stretched to the server's Retry-After when that is longer.

    Both are capped at ``max_delay_seconds``.
    """

    def __init__(self, config: RetryConfig) -> None:
        self._backoff = wait_exponential(
            multiplier=config.base_delay_seconds, max=config.max_delay_seconds
        )
        self._max_delay = config.max_delay_seconds

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, ApiRetryableError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return min(delay, self._max_delay)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "{} (attempt {}), retrying in {:.1f}s", error, retry_state.attempt_number, delay
    )


class AscClient:
    """Async App Store Connect API client.

    Usage:
        signer = TokenSigner(issuer_id, key_id, pem)
        async with AscClient(signer) as client:
            async for crash in client.iter_crash_submissions(app.id):
                print(crash.id)

    Retry policy:
        Transport errors, HTTP 429 and HTTP 5xx are retried with exponential
        backoff (honoring ``Retry-After``) up to ``retry.max_attempts``; other
        error statuses raise ApiError at once.
    """

    def __init__(
        self,
        signer: TokenSigner,
        *,
        base_url: str | None = None,
        retry: RetryConfig | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        timeout: float | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            signer: Token signer shared by every request of this client
            base_url: API root (uses settings if None)
            retry: Retry policy (uses settings if None)
            page_size: Records per page (uses settings if None)
            max_pages: Page ceiling per collection walk (uses settings if None)
            timeout: Per-request timeout in seconds (uses settings if None)
            http: Pre-built httpx client (e.g. with a MockTransport); not closed by us
            sleep: Backoff sleep function (injectable for tests)
        """
        settings = get_settings()
        self._signer = signer
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._retry = retry or settings.retry
        self._page_size = page_size or settings.sync.page_size
        self._max_pages = max_pages or settings.sync.max_pages
        self._timeout = timeout or settings.request_timeout_seconds
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep

    @property
    def _client(self) -> httpx.AsyncClient:
        """Get or create the httpx client instance."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            )
        return self._http

    @property
    def page_size(self) -> int:
        """Records requested per page."""
        return self._page_size

    async def close(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> AscClient:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------
    def url_for(self, path: str, params: dict[str, Any] | None = None) -> str:
        """Absolute URL for an API path (absolute URLs pass through)."""
        url = path if path.startswith(("http://", "https://")) else f"{self._base_url}{path}"
        if params:
            return str(httpx.URL(url, params=params))
        return url

    async def _send(self, method: str, url: str) -> httpx.Response:
        """One authenticated attempt; retryable failures raise ApiRetryableError."""
        headers = {"Authorization": f"Bearer {self._signer.token()}"}
        try:
            response = await self._client.request(method, url, headers=headers)
        except httpx.TransportError as e:
            raise ApiRetryableError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        if is_retryable_status(status):
            raise ApiRetryableError(
                _describe(response),
                status=status,
                errors=_error_objects(response),
                retry_after=_retry_after(response),
            )
        if response.is_error:
            raise ApiError(
                _describe(response),
                status=status,
                errors=_error_objects(response),
            )

        logger.debug("{} {} -> {}", method, url, status)
        return response

    async def request(self, method: str, url: str) -> httpx.Response:
        """Send an authenticated request, retrying transient failures.

        Args:
            method: HTTP method
            url: Absolute URL (see url_for)

        Returns:
            Successful (2xx/3xx) response with the body read

        Raises:
            ApiRetryableError: If 429/5xx/transport failures exhausted all attempts.
            ApiError: On any other error status.
            CredentialError: If a token cannot be signed.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_retry_after(self._retry),
            retry=retry_if_exception_type(ApiRetryableError),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(self._send, method, url)

    def decode(self, response: httpx.Response, model: type[ModelT]) -> ModelT:
        """Validate a response body against a document model.

        Raises:
            PayloadError: If the body is not JSON or misses required members.
        """
        try:
            return model.model_validate_json(response.content)
        except PydanticValidationError as e:
            raise PayloadError(
                f"unexpected payload from {response.request.url.path}: "
                f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}",
                status=response.status_code,
            ) from e

    async def get_document(
        self, path: str, model: type[ModelT], params: dict[str, Any] | None = None
    ) -> ModelT:
        """GET a single document and decode it."""
        response = await self.request("GET", self.url_for(path, params))
        return self.decode(response, model)

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------
    async def iter_pages(
        self,
        path: str,
        model: type[ResourceT],
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[Page[ResourceT]]:
        """Walk a paginated collection, yielding each decoded page.

        The walk ends when ``links.next`` is missing or not an absolute
        http(s) URL, when a link repeats an already visited URL, or after
        ``max_pages`` pages. Every call starts a fresh walk.
        """
        page_model = Page[model]  # type: ignore[valid-type]
        url = self.url_for(path, params)
        visited: set[str] = set()
        pages = 0

        while True:
            visited.add(url)
            response = await self.request("GET", url)
            page = self.decode(response, page_model)
            pages += 1
            yield page

            next_url = page.links.next
            if not next_url:
                return
            if not is_followable_link(next_url):
                logger.warning("Ignoring non-absolute pagination link: {}", next_url)
                return
            if next_url in visited:
                logger.warning("Pagination link repeats a visited page, stopping: {}", next_url)
                return
            if pages >= self._max_pages:
                logger.warning(
                    "Hit {} page limit, stopping pagination of {}", self._max_pages, path
                )
                return
            url = next_url

    async def fetch_all(
        self,
        path: str,
        model: type[ResourceT],
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[ResourceT]:
        """Lazily yield every record of a paginated collection.

        Args:
            path: API path (e.g. "/v1/apps")
            model: Resource model for the records of this endpoint
            params: Query parameters for the first page

        Yields:
            Decoded records, page by page
        """
        async for page in self.iter_pages(path, model, params):
            for record in page.data:
                yield record

    # -------------------------------------------------------------------------
    # Apps
    # -------------------------------------------------------------------------
    async def list_apps(self) -> list[AppResource]:
        """List every app visible to the API key."""
        params = {"fields[apps]": "name,bundleId", "limit": self._page_size}
        return [app async for app in self.fetch_all("/v1/apps", AppResource, params)]

    async def find_app(self, bundle_id: str) -> AppResource | None:
        """Find the remote app for a bundle id.

        Returns:
            AppResource or None if the key cannot see such an app
        """
        params = {"filter[bundleId]": bundle_id, "fields[apps]": "name,bundleId"}
        page = await self.get_document("/v1/apps", Page[AppResource], params)
        for app in page.data:
            if app.attributes.bundle_id in (None, bundle_id):
                return app
        return None

    # -------------------------------------------------------------------------
    # Feedback submissions
    # -------------------------------------------------------------------------
    def _submission_query(
        self, kind: RecordKind, app_asc_id: str
    ) -> tuple[str, type[AscModel], dict[str, Any]]:
        resource, fields, model = SUBMISSION_ENDPOINTS[kind]
        params = {
            f"fields[{resource}]": fields,
            "sort": "-createdDate",
            "limit": self._page_size,
        }
        return f"/v1/apps/{app_asc_id}/{resource}", model, params

    def submission_pages(self, kind: RecordKind, app_asc_id: str) -> AsyncIterator[Page[Any]]:
        """Pages of crash or screenshot submissions for an app, newest first."""
        return self.iter_pages(*self._submission_query(kind, app_asc_id))

    def iter_crash_submissions(self, app_asc_id: str) -> AsyncIterator[CrashSubmissionResource]:
        """Crash submissions for an app, newest first."""
        path, model, params = self._submission_query(RecordKind.CRASH, app_asc_id)
        return self.fetch_all(path, model, params)  # type: ignore[return-value]

    def iter_screenshot_submissions(
        self, app_asc_id: str
    ) -> AsyncIterator[ScreenshotSubmissionResource]:
        """Screenshot feedback submissions for an app, newest first."""
        path, model, params = self._submission_query(RecordKind.FEEDBACK, app_asc_id)
        return self.fetch_all(path, model, params)  # type: ignore[return-value]

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------
    async def get_crash_log(self, remote_id: str) -> str | None:
        """Get the crash log text of a crash submission.

        Returns:
            Log text, or None if the log is not available (yet)
        """
        try:
            document = await self.get_document(
                f"/v1/betaFeedbackCrashSubmissions/{remote_id}/crashLog",
                CrashLogDocument,
                {"fields[betaCrashLogs]": "logText"},
            )
        except ApiError as e:
            if e.status == 404:
                return None
            raise
        return document.data.attributes.log_text or None

    @asynccontextmanager
    async def download(self, url: str) -> AsyncIterator[httpx.Response]:
        """Stream a pre-signed attachment URL (sent without the bearer token).

        Usage:
            async with client.download(url) as response:
                async for chunk in response.aiter_bytes():
                    ...

        Raises:
            ApiError: On an error status, an unusable URL, or any httpx failure
                while streaming (transport, decoding, redirects).
        """
        try:
            async with self._client.stream("GET", url) as response:
                if response.is_error:
                    await response.aread()
                    raise ApiError(_describe(response), status=response.status_code)
                yield response
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            location = url.split("?", 1)[0]
            raise ApiError(f"download of {location} failed: {e}") from e
