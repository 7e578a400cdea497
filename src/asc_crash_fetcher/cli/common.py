"""Common CLI state, option types and helpers.

It provides:
- `CliState`: global options (data dir, output format) passed through ctx.obj
- `run_async_command`: Unified async execution with error handling for CLI commands
- `open_store`: Database session bound to the data directory
- Output helpers for text and JSON
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from sqlalchemy.ext.asyncio import AsyncSession

from asc_crash_fetcher.asc import TokenSigner
from asc_crash_fetcher.asc.sync.enums import OutputFormat
from asc_crash_fetcher.config import (
    DATABASE_FILE_NAME,
    LOGS_DIR_NAME,
    SCREENSHOTS_DIR_NAME,
    FetcherConfig,
    get_settings,
    resolve_data_dir,
)
from asc_crash_fetcher.db import dispose_engine, get_session, open_database

# Shared console instance for CLI output
console = Console()

T = TypeVar("T")


@dataclass
class CliState:
    """Global options, stored on the typer context."""

    data_dir_override: Path | None = None
    output_format: OutputFormat = OutputFormat.TEXT

    @property
    def data_dir(self) -> Path:
        """Resolved data directory."""
        return resolve_data_dir(self.data_dir_override)

    @property
    def json(self) -> bool:
        """Whether output should be machine-readable."""
        return self.output_format == OutputFormat.JSON

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / LOGS_DIR_NAME

    @property
    def screenshots_dir(self) -> Path:
        return self.data_dir / SCREENSHOTS_DIR_NAME

    def load_config(self) -> FetcherConfig:
        """Load config.toml from the data directory (ConfigError if invalid)."""
        return FetcherConfig.load(self.data_dir)


def get_state(ctx: typer.Context) -> CliState:
    """CLI state from the context (defaults when the callback did not run)."""
    root = ctx.find_root()
    if not isinstance(root.obj, CliState):
        root.obj = CliState()
    return root.obj


def run_async_command(
    coro: Coroutine[object, object, T],
    *,
    error_prefix: str = "Error",
) -> T:
    """Execute async code from synchronous CLI command with unified error handling.

    Uses asyncio.run() for clean event loop management. Catches exceptions,
    prints user-friendly error messages, and exits with code 1.

    Args:
        coro: Async coroutine to execute
        error_prefix: Prefix for error messages (default: "Error")

    Returns:
        Result from the coroutine

    Raises:
        typer.Exit: Re-raised from deliberate exits, or raised with code 1 on error
    """
    try:
        return asyncio.run(coro)
    except typer.Exit:
        # Re-raise deliberate exits (e.g., from validation helpers)
        raise
    except Exception as e:
        console.print(f"[red]{error_prefix}:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


@asynccontextmanager
async def open_store(state: CliState) -> AsyncIterator[AsyncSession]:
    """Open (and migrate) the data directory's database for one command."""
    await open_database(state.database_path)
    try:
        async with get_session() as session:
            yield session
    finally:
        await dispose_engine()


def build_signer(config: FetcherConfig) -> TokenSigner:
    """Token signer for the configured API key (CredentialError if the key is bad)."""
    token = get_settings().token
    return TokenSigner(
        config.api.issuer_id,
        config.api.key_id,
        config.api.private_key,
        lifetime=token.lifetime,
        refresh_margin=token.refresh_margin,
    )


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------


def print_error(message: str) -> None:
    """Print an error line in red."""
    console.print(f"[red]Error:[/red] {escape(message)}")


def print_json(data: Any) -> None:
    """Print a JSON document to stdout."""
    console.print_json(json.dumps(data, default=str))


def fail(message: str) -> typer.Exit:
    """Print an error and build the exit to raise."""
    print_error(message)
    return typer.Exit(1)


def parse_date(date_str: str | None) -> datetime | None:
    """Parse a date string into a naive UTC datetime (as stored).

    Supports formats:
    - YYYY-MM-DD
    - YYYY-MM-DDTHH:MM:SS
    - ISO format with timezone

    Raises:
        typer.BadParameter: If the date string is invalid
    """
    if date_str is None:
        return None

    formats = [
        "%Y-%m-%d",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%SZ",
        "%Y-%m-%dT%H:%M:%S%z",
    ]

    for fmt in formats:
        try:
            dt = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        if dt.tzinfo is not None:
            dt = dt.astimezone(UTC).replace(tzinfo=None)
        return dt

    raise typer.BadParameter(
        f"Invalid date format: {date_str}. Use YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS format."
    )


def format_date(value: datetime | None) -> str:
    """Short display form of a stored timestamp."""
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


# Typer requires function calls as default arguments, which triggers B008.
# Using Annotated with a centralized type alias keeps the noqa in one place.

AppFilterOption = Annotated[
    str | None,
    typer.Option(
        "--app",
        "-a",
        help="Only this app (bundle id)",
    ),
]
"""Optional app filtering option.

Usage:
    def stats(app: AppFilterOption = None) -> None:
"""

RecordIdArgument = Annotated[
    int,
    typer.Argument(help="Local record id (as shown by `list`)"),
]
"""Required positional local id.

Usage:
    def show(record_id: RecordIdArgument) -> None:
"""
