"""Logging for asc-crash-fetcher, built on loguru.

Every record can carry two pieces of sync context:

- ``app``: bundle id of the app being synced, set for a whole block with
  ``app_context`` (it follows the sync into download tasks, client retries
  and commits);
- ``record``: ``<kind>#<local id>`` of the submission a message is about,
  bound with ``bind_record``.

The console shows them as ``[com.example.app crash#14]``. With
``--format json`` the console sink emits one JSON object per line instead,
so stderr is as machine-readable as stdout. Library logs (SQLAlchemy, httpx)
are routed in through ``InterceptHandler``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger, Record

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

CONTEXT_KEYS = ("app", "record")

_configured = False


class InterceptHandler(logging.Handler):
    """Routes standard library log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        from types import FrameType

        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        # Skip logging's own frames so loguru reports the real caller
        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _context_tag(record: Record) -> str:
    """Format placeholders for whichever sync context the record carries."""
    fields = [f"{{extra[{key}]}}" for key in CONTEXT_KEYS if key in record["extra"]]
    return f" [{' '.join(fields)}]" if fields else ""


def _origin(record: Record) -> str:
    # Intercepted stdlib records have no bound name; fall back to the module
    return "{extra[name]}" if "name" in record["extra"] else "{name}"


def _console_format(record: Record) -> str:
    return (
        "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | "
        f"<cyan>{_origin(record)}</cyan><magenta>{_context_tag(record)}</magenta> - "
        "<level>{message}</level>\n{exception}"
    )


def _file_format(record: Record) -> str:
    return (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
        f"{_origin(record)}:{{function}}:{{line}}{_context_tag(record)} | "
        "{message}\n{exception}"
    )


def setup_logging(
    level: LogLevel = "INFO",
    *,
    verbose: bool = False,
    quiet: bool = False,
    json_output: bool = False,
    log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> Logger:
    """Configure the console sink (stderr) and the optional rotating file sink.

    Args:
        level: Base log level from settings
        verbose: Use DEBUG (wins over ``quiet``)
        quiet: Use WARNING
        json_output: Emit console records as JSON lines (``--format json``)
        log_file: Also log everything at DEBUG to this file
        rotation: When to rotate the log file (e.g. "10 MB", "1 day")
        retention: How long to keep rotated files
        serialize: Write the log file as JSON lines

    Returns:
        The configured loguru logger
    """
    global _configured

    effective_level: LogLevel
    if verbose:
        effective_level = "DEBUG"
    elif quiet:
        effective_level = "WARNING"
    else:
        effective_level = level

    logger.remove()

    if json_output:
        logger.add(sys.stderr, level=effective_level, serialize=True, colorize=False)
    else:
        logger.add(
            sys.stderr,
            level=effective_level,
            format=_console_format,
            colorize=None,
            backtrace=True,
            diagnose=False,
        )

    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            format=_file_format,
            rotation=rotation,
            retention=retention,
            compression="gz",
            serialize=serialize,
            diagnose=False,
        )

    _intercept_stdlib_logging(effective_level)

    _configured = True
    return logger


def _intercept_stdlib_logging(level: LogLevel) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    sqlalchemy_level = logging.INFO if level in ("TRACE", "DEBUG") else logging.WARNING
    logging.getLogger("sqlalchemy.engine").setLevel(sqlalchemy_level)

    # httpx logs one INFO line per request; only wanted with --verbose
    httpx_level = logging.DEBUG if level in ("TRACE", "DEBUG") else logging.WARNING
    logging.getLogger("httpx").setLevel(httpx_level)
    logging.getLogger("httpcore").setLevel(httpx_level)


def get_logger(name: str) -> Logger:
    """Get a logger with the module name bound.

    Usage:
        logger = get_logger(__name__)
    """
    return logger.bind(name=name)


@contextmanager
def app_context(bundle_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with the app being synced.

    Usage:
        with app_context("com.example.myapp"):
            await self._pull(...)  # client and commit logs carry the app too
    """
    with logger.contextualize(app=bundle_id):
        yield


def bind_record(bundle_id: str, kind: str, local_id: int) -> Logger:
    """Logger for messages about one submission (``record="crash#14"``)."""
    return logger.bind(name="asc_crash_fetcher.sync", app=bundle_id, record=f"{kind}#{local_id}")


def is_configured() -> bool:
    return _configured


def reset_logging() -> None:
    """Remove all sinks (used by tests)."""
    global _configured
    logger.remove()
    _configured = False
