"""
FeedMark Configuration System
=============================

Settings are read from ``FEEDMARK_*`` environment variables (nested sections
use ``__``, e.g. ``FEEDMARK_TRANSPORT__PROXY``), then from ``.env``, then
from the field defaults below.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.exceptions import ConfigurationError, ErrorCode
from ..utils.validators import parse_no_proxy, host_bypasses_proxy

PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")


class DtdProcessing(str, Enum):
    """What to do with a feed document that declares a DTD."""
    PROHIBIT = "prohibit"
    ALLOW = "allow"
    IGNORE = "ignore"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TransportSettings(BaseModel):
    """HTTP transport used by the feed client.

    Frozen so one instance can be shared by concurrent fetches.
    """
    model_config = ConfigDict(frozen=True)

    proxy: Optional[str] = Field(default=None, description="Proxy URL for feed requests")
    no_proxy: str = Field(default="", description="Hosts bypassing the proxy, comma or semicolon separated")
    dtd_processing: DtdProcessing = Field(default=DtdProcessing.PROHIBIT, description="DTD policy for feed XML")
    request_timeout: int = Field(default=30, ge=1, le=300, description="Request timeout in seconds")
    parallel_fetches: int = Field(default=4, ge=1, le=32, description="Concurrent fetches for async runs")
    user_agent: str = Field(default="FeedMark/1.0 (+rss-source-importer)", description="User-Agent header")

    @field_validator("proxy")
    @classmethod
    def blank_proxy_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @property
    def no_proxy_hosts(self) -> List[str]:
        return parse_no_proxy(self.no_proxy)

    def proxy_for(self, url: str) -> Optional[str]:
        """Proxy to use for ``url``, or None when the request goes direct."""
        if self.proxy and not host_bypasses_proxy(urlparse(url).hostname, self.no_proxy_hosts):
            return self.proxy
        return None

    def proxy_problem(self) -> Optional[str]:
        if not self.proxy:
            return None
        parsed = urlparse(self.proxy)
        if parsed.scheme not in PROXY_SCHEMES or not parsed.hostname:
            return f"Invalid proxy URL: {self.proxy}"
        return None


class FilteringSettings(BaseModel):
    """Keyword matching and watermark sanity checks."""
    case_sensitive_keywords: bool = Field(
        default=True,
        description="Match source keywords against entry tokens case-sensitively",
    )
    future_skew_warning_hours: int = Field(
        default=24,
        ge=0,
        description="Warn when a new watermark is this far ahead of the clock",
    )


class DatabaseSettings(BaseModel):
    path: str = Field(default="data/feedmark.db", description="SQLite file holding the sources table")
    pool_size: int = Field(default=5, ge=1, le=20, description="Pooled SQLite connections")


class LoggingSettings(BaseModel):
    """Where log records go and how they are rendered."""
    level: LogLevel = Field(default=LogLevel.INFO)
    file_path: Optional[str] = Field(default="logs/feedmark.log", description="Rotating JSON log; empty disables it")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Rotate past this size")
    backup_count: int = Field(default=5, ge=1, le=20, description="Rotated files kept")
    structured_logging: bool = Field(default=False, description="JSON on the console as well")
    console_logging: bool = Field(default=True, description="Log to stderr")


def _ensure_parent_dir(path: str, label: str) -> Optional[str]:
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return f"Invalid {label} path: {e}"
    return None


class FeedMarkSettings(BaseSettings):
    """Root settings object; one section per concern."""

    model_config = SettingsConfigDict(
        env_prefix="FEEDMARK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    transport: TransportSettings = Field(default_factory=TransportSettings)
    filtering: FilteringSettings = Field(default_factory=FilteringSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    app_name: str = "FeedMark"
    version: str = "1.0.0"
    debug: bool = Field(default=False, description="Force DEBUG logging")

    def validate_configuration(self) -> None:
        """Check paths and the proxy, creating the database and log directories.

        Raises:
            ConfigurationError: listing every problem found
        """
        problems = [
            _ensure_parent_dir(self.database.path, "database"),
            _ensure_parent_dir(self.logging.file_path, "log file") if self.logging.file_path else None,
            self.transport.proxy_problem(),
        ]
        problems = [p for p in problems if p]

        if problems:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(problems)}",
                error_code=ErrorCode.CONFIG_INVALID,
            )

    def get_effective_log_level(self) -> str:
        return LogLevel.DEBUG.value if self.debug else self.logging.level.value


def load_settings() -> FeedMarkSettings:
    """Build and validate settings from the environment.

    Raises:
        ConfigurationError: If a value cannot be parsed or fails validation
    """
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = FeedMarkSettings()
    except ValueError as e:
        raise ConfigurationError(f"Failed to initialize settings: {e}") from e

    settings.validate_configuration()
    return settings


_settings: Optional[FeedMarkSettings] = None


def get_settings(reload: bool = False) -> FeedMarkSettings:
    """Process-wide settings, loaded on first call or when ``reload`` is set."""
    global _settings

    if _settings is None or reload:
        _settings = load_settings()

    return _settings
