"""Attachment Fetcher - crash logs and screenshots to stable on-disk paths.

Files are written to a hidden temporary file in the destination directory
and renamed into place only after the whole body was written and its size
verified, so a final path never holds a partial attachment.

Layout (deterministic, keyed by local id):
    <logs_dir>/<id>.ips            crash log text
    <screenshots_dir>/<id>.<ext>   screenshot, ext from the response MIME type
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from asc_crash_fetcher.db.models import RecordKind
from asc_crash_fetcher.exceptions import ApiError, AttachmentError
from asc_crash_fetcher.logging import get_logger

if TYPE_CHECKING:
    from asc_crash_fetcher.asc.client import AscClient

logger = get_logger(__name__)

DEFAULT_RETENTION = timedelta(days=120)
CRASH_LOG_EXTENSION = "ips"

MIME_EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/heic": "heic",
    "image/webp": "webp",
    "video/quicktime": "mov",
    "video/mp4": "mp4",
}

# Statuses meaning "not there (any more)" rather than "try again later"
_GONE_STATUSES = frozenset({403, 404, 410})


# ------------------------------------------------------------------------------
# Outcomes
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Downloaded:
    """The attachment is complete at ``path``."""

    path: Path
    size: int
    mime_type: str | None = None


@dataclass(frozen=True)
class Unavailable:
    """The remote has no attachment for the record (yet, or any more)."""

    reason: str


@dataclass(frozen=True)
class TransientFailure:
    """The download failed in a way worth retrying on the next sync."""

    reason: str


FetchOutcome = Downloaded | Unavailable | TransientFailure


@dataclass(frozen=True)
class AttachmentRef:
    """What the fetcher needs to know about one record."""

    kind: RecordKind
    local_id: int
    remote_id: str
    url: str | None = None


# ------------------------------------------------------------------------------
# Pure helpers
# ------------------------------------------------------------------------------
def is_within_retention(
    first_seen: datetime,
    now: datetime,
    horizon: timedelta = DEFAULT_RETENTION,
) -> bool:
    """Whether the remote may still hold the attachment.

    Naive datetimes are taken as UTC.
    """
    if first_seen.tzinfo is None:
        first_seen = first_seen.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now - first_seen <= horizon


def mime_to_ext(mime_type: str | None) -> str:
    """File extension for a MIME type (``bin`` when unknown)."""
    if not mime_type:
        return "bin"
    essence = mime_type.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(essence, "bin")


def attachment_path(directory: Path, local_id: int, extension: str) -> Path:
    """Final path of a record's attachment."""
    return directory / f"{local_id}.{extension}"


def existing_attachment(directory: Path, local_id: int) -> Path | None:
    """Find a complete (non-empty) attachment already on disk, any extension."""
    if not directory.is_dir():
        return None
    for candidate in sorted(directory.glob(f"{local_id}.*")):
        if candidate.is_file() and candidate.stat().st_size > 0:
            return candidate
    return None


# ------------------------------------------------------------------------------
# Atomic writes
# ------------------------------------------------------------------------------
def _open_temp(directory: Path, local_id: int) -> tuple[int, Path]:
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=directory, prefix=f".{local_id}.", suffix=".part")
    return fd, Path(name)


def _sync_to_disk(fh: BinaryIO) -> None:
    fh.flush()
    os.fsync(fh.fileno())


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove temp file {}: {}", path, e)


def write_atomic(
    dest: Path,
    chunks: Iterable[bytes],
    *,
    local_id: int,
    expected_size: int | None = None,
) -> int:
    """Write chunks to ``dest`` atomically.

    Returns:
        Number of bytes written

    Raises:
        AttachmentError: On I/O failure, an empty body, or a size mismatch.
            The temporary file is removed and ``dest`` is left untouched.
    """
    fd, tmp = _open_temp(dest.parent, local_id)
    try:
        size = 0
        with os.fdopen(fd, "wb") as fh:
            for chunk in chunks:
                fh.write(chunk)
                size += len(chunk)
            _sync_to_disk(fh)
        _verify_size(dest, size, expected_size)
        os.replace(tmp, dest)
    except OSError as e:
        _discard(tmp)
        raise AttachmentError(f"failed to write {dest}: {e}") from e
    except AttachmentError:
        _discard(tmp)
        raise
    return size


async def write_atomic_stream(
    dest: Path,
    chunks: AsyncIterator[bytes],
    *,
    local_id: int,
    expected_size: int | None = None,
) -> int:
    """Async-iterator variant of write_atomic (for streamed downloads).

    Any exception while consuming ``chunks`` removes the temp file and
    propagates unchanged. The final flush and fsync run in a worker thread.
    """
    fd, tmp = _open_temp(dest.parent, local_id)
    try:
        size = 0
        with os.fdopen(fd, "wb") as fh:
            async for chunk in chunks:
                fh.write(chunk)
                size += len(chunk)
            await asyncio.to_thread(_sync_to_disk, fh)
        _verify_size(dest, size, expected_size)
        os.replace(tmp, dest)
    except OSError as e:
        _discard(tmp)
        raise AttachmentError(f"failed to write {dest}: {e}") from e
    except BaseException:
        _discard(tmp)
        raise
    return size


def _verify_size(dest: Path, size: int, expected_size: int | None) -> None:
    if size == 0:
        raise AttachmentError(f"empty body for {dest.name}")
    if expected_size is not None and size != expected_size:
        raise AttachmentError(
            f"incomplete body for {dest.name}: got {size} of {expected_size} bytes"
        )


# ------------------------------------------------------------------------------
# Fetcher
# ------------------------------------------------------------------------------
class AttachmentFetcher:
    """Downloads record attachments without ever raising partial files.

    ``fetch`` converts API and filesystem failures into outcomes; only
    credential failures (which abort a sync) propagate.
    """

    def __init__(self, client: AscClient, *, logs_dir: Path, screenshots_dir: Path) -> None:
        """Initialize the fetcher.

        Args:
            client: API client (crash logs are authenticated, screenshots are not)
            logs_dir: Destination directory for crash logs
            screenshots_dir: Destination directory for screenshots
        """
        self._client = client
        self._logs_dir = logs_dir
        self._screenshots_dir = screenshots_dir

    def directory_for(self, kind: RecordKind) -> Path:
        """Destination directory for a record kind."""
        return self._logs_dir if kind == RecordKind.CRASH else self._screenshots_dir

    async def fetch(self, ref: AttachmentRef) -> FetchOutcome:
        """Download one record's attachment.

        Returns:
            Downloaded, Unavailable or TransientFailure
        """
        try:
            if ref.kind == RecordKind.CRASH:
                return await self._fetch_crash_log(ref)
            return await self._fetch_screenshot(ref)
        except ApiError as e:
            if e.status in _GONE_STATUSES:
                return Unavailable(f"HTTP {e.status}")
            return TransientFailure(str(e))
        except AttachmentError as e:
            return TransientFailure(str(e))

    async def _fetch_crash_log(self, ref: AttachmentRef) -> FetchOutcome:
        text = await self._client.get_crash_log(ref.remote_id)
        if text is None:
            return Unavailable("crash log not available yet")

        data = text.encode("utf-8")
        dest = attachment_path(self._logs_dir, ref.local_id, CRASH_LOG_EXTENSION)
        size = await asyncio.to_thread(
            write_atomic, dest, [data], local_id=ref.local_id, expected_size=len(data)
        )
        return Downloaded(path=dest.resolve(), size=size, mime_type="text/plain")

    async def _fetch_screenshot(self, ref: AttachmentRef) -> FetchOutcome:
        if not ref.url:
            return Unavailable("no screenshot url")

        async with self._client.download(ref.url) as response:
            mime_type = response.headers.get("Content-Type")
            length = response.headers.get("Content-Length")
            encoded = response.headers.get("Content-Encoding", "identity") != "identity"
            expected = int(length) if length and length.isdigit() and not encoded else None
            dest = attachment_path(self._screenshots_dir, ref.local_id, mime_to_ext(mime_type))
            size = await write_atomic_stream(
                dest,
                response.aiter_bytes(),
                local_id=ref.local_id,
                expected_size=expected,
            )
        essence = mime_type.split(";", 1)[0].strip() if mime_type else None
        return Downloaded(path=dest.resolve(), size=size, mime_type=essence)
