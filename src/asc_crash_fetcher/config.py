"""Configuration for asc-crash-fetcher.

Two layers:
- Settings: process-level knobs from environment variables / .env
  (retry policy, sync behavior, logging).
- FetcherConfig: the operator's config.toml in the data directory
  (API credentials and the list of monitored apps).
"""

import os
import tomllib
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from asc_crash_fetcher.exceptions import ConfigError

CONFIG_FILE_NAME = "config.toml"
DATABASE_FILE_NAME = "crashes.db"
LOGS_DIR_NAME = "logs"
SCREENSHOTS_DIR_NAME = "screenshots"
LOCAL_DATA_DIR = Path("asc-crashes")
GLOBAL_DATA_DIR_NAME = ".asc-crashes"


class RetryConfig(BaseModel):
    """Configuration for retrying transient API failures.

    Applies to transport errors, HTTP 429 and HTTP 5xx responses.
    """

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Total attempts per request (including the first)",
    )
    base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff before the first retry; doubles on each attempt",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff sleep",
    )


class TokenConfig(BaseModel):
    """Configuration for API token signing."""

    lifetime_minutes: int = Field(
        default=20,
        ge=1,
        le=20,
        description="Validity window of issued tokens (App Store Connect allows 20 max)",
    )
    refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Re-sign when the cached token expires within this margin",
    )

    @property
    def lifetime(self) -> timedelta:
        """Token lifetime as a timedelta."""
        return timedelta(minutes=self.lifetime_minutes)

    @property
    def refresh_margin(self) -> timedelta:
        """Refresh margin as a timedelta."""
        return timedelta(seconds=self.refresh_margin_seconds)


class SyncConfig(BaseModel):
    """Configuration for sync behavior."""

    retention_days: int = Field(
        default=120,
        ge=1,
        description="Days after first sight before the remote may discard an attachment",
    )
    page_size: int = Field(
        default=200,
        ge=1,
        le=200,
        description="Records requested per API page",
    )
    max_pages: int = Field(
        default=50,
        ge=1,
        description="Safety ceiling on pages fetched per app and record kind",
    )
    download_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Attachment downloads in flight at once",
    )
    commit_batch_size: int = Field(
        default=1,
        ge=1,
        le=100,
        description="Records per store commit (1 = commit every record)",
    )

    @property
    def retention_horizon(self) -> timedelta:
        """Retention horizon as a timedelta."""
        return timedelta(days=self.retention_days)


class LoggingConfig(BaseModel):
    """Configuration for logging behavior.

    Controls file logging, rotation, and output format.
    """

    log_file: str | None = Field(
        default=None,
        description="Optional path for file logging (enables rotation)",
    )
    rotation: str = Field(
        default="10 MB",
        description="When to rotate log file (e.g., '10 MB', '1 day')",
    )
    retention: str = Field(
        default="7 days",
        description="How long to keep rotated logs",
    )
    serialize: bool = Field(
        default=False,
        description="If True, output JSON format to file",
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ASC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # --------------------------------------------------------------------------
    # Storage
    # --------------------------------------------------------------------------
    data_dir: Path | None = Field(
        default=None,
        description="Data directory override (config.toml, crashes.db, attachments)",
    )

    # --------------------------------------------------------------------------
    # App Store Connect API
    # --------------------------------------------------------------------------
    api_base_url: str = Field(
        default="https://api.appstoreconnect.apple.com",
        description="App Store Connect API root",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request HTTP timeout",
    )

    # --------------------------------------------------------------------------
    # Application
    # --------------------------------------------------------------------------
    environment: Literal["development", "production"] = Field(
        default="production",
        description="Application environment (development echoes SQL)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # --------------------------------------------------------------------------
    # Nested sections
    # --------------------------------------------------------------------------
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry policy for transient API failures",
    )
    token: TokenConfig = Field(
        default_factory=TokenConfig,
        description="API token signing configuration",
    )
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Sync behavior configuration",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration (file output, rotation)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# ------------------------------------------------------------------------------
# config.toml
# ------------------------------------------------------------------------------
class ApiCredentials(BaseModel):
    """The [api] table of config.toml."""

    issuer_id: str = Field(min_length=1)
    key_id: str = Field(min_length=1)
    private_key: str = Field(
        min_length=1,
        description="Inline PEM, or a path to the .p8 file",
    )


class AppEntry(BaseModel):
    """One [[apps]] entry of config.toml."""

    bundle_id: str = Field(min_length=1)
    name: str | None = None


class FetcherConfig(BaseModel):
    """Operator configuration loaded from ``<data_dir>/config.toml``."""

    api: ApiCredentials
    apps: list[AppEntry] = Field(default_factory=list)

    @classmethod
    def load(cls, data_dir: Path) -> "FetcherConfig":
        """Load and validate config from a data directory.

        The private key is resolved to PEM text (inline or from a file).

        Raises:
            ConfigError: If the file is missing, not valid TOML, fails
                validation, or lists no apps.
        """
        path = data_dir / CONFIG_FILE_NAME
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigError(
                f"No config found. Run `asc-crash-fetcher init` first.\nLooked in: {data_dir}"
            ) from None
        except OSError as e:
            raise ConfigError(f"could not read {path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"invalid TOML in {path}: {e}") from e

        try:
            config = cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError(f"invalid config in {path}: {e}") from e

        if not config.apps:
            raise ConfigError(
                f"no [[apps]] entries in {path}. Add at least one:\n\n"
                '[[apps]]\nbundle_id = "com.example.myapp"\n'
            )

        config.api.private_key = resolve_private_key(config.api.private_key, data_dir)
        return config

    def select_apps(self, bundle_id: str | None = None) -> list[AppEntry]:
        """Apps to sync, optionally narrowed to a single bundle id."""
        if bundle_id is None:
            return list(self.apps)
        return [a for a in self.apps if a.bundle_id == bundle_id]


def resolve_private_key(value: str, relative_to: Path) -> str:
    """Resolve a private key value that is either inline PEM or a file path.

    Relative paths are resolved against the data directory; ``~`` is expanded.
    """
    if value.lstrip().startswith("-----BEGIN"):
        return value

    path = Path(os.path.expanduser(value))
    if not path.is_absolute():
        path = relative_to / path

    if not path.exists():
        raise ConfigError(
            f"private_key '{value}' is not a PEM string and file not found at {path}"
        )
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"could not read key file {path}: {e}") from e


def resolve_data_dir(explicit: Path | None = None) -> Path:
    """Resolve the data directory.

    Priority: explicit ``--data-dir`` > ASC_DATA_DIR > ``./asc-crashes/``
    (when it holds a config.toml) > ``~/.asc-crashes/``.
    """
    if explicit is not None:
        return explicit

    from_env = get_settings().data_dir
    if from_env is not None:
        return from_env

    if (LOCAL_DATA_DIR / CONFIG_FILE_NAME).exists():
        return LOCAL_DATA_DIR.resolve()

    return Path.home() / GLOBAL_DATA_DIR_NAME


def init_data_dir(global_: bool) -> Path:
    """Directory that ``init`` creates: ``~/.asc-crashes`` or ``./asc-crashes``."""
    if global_:
        return Path.home() / GLOBAL_DATA_DIR_NAME
    return LOCAL_DATA_DIR


CONFIG_TEMPLATE = """\
# asc-crash-fetcher configuration
#
# API credentials from App Store Connect:
#   https://appstoreconnect.apple.com/access/integrations/api

[api]
issuer_id = "YOUR_ISSUER_ID"
key_id    = "YOUR_KEY_ID"
private_key = "path/to/AuthKey_XXXXXXXX.p8"

# Add one or more apps to monitor for TestFlight crashes.
# Use `asc-crash-fetcher apps` to verify your key works.

[[apps]]
bundle_id = "com.example.myapp"
# name = "My App"  # optional friendly label
"""
