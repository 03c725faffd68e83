# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer.settings",
#   "purpose": "Configuration models, environment overrides, and YAML loading for the toolchain core",
#   "sections": [
#     {"id": "paths", "name": "Directory defaults", "anchor": "PTH", "kind": "constants"},
#     {"id": "enums", "name": "Settings enums", "anchor": "ENM", "kind": "api"},
#     {"id": "models", "name": "Configuration models", "anchor": "MOD", "kind": "api"},
#     {"id": "cache", "name": "Default config cache", "anchor": "CCH", "kind": "helpers"},
#     {"id": "env", "name": "Environment overrides", "anchor": "ENV", "kind": "api"},
#     {"id": "yaml", "name": "YAML loading", "anchor": "YML", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models and loaders for the Typst toolchain core.

The editor integration hands the core a small settings snapshot (where the
Tinymist binary comes from and which formatter to use).  Everything else is
tunable through :class:`ResolvedConfig`: download timeouts, the preview pool
capacity and port window, the readiness polling cadence, and logging.  Values
come from defaults, an optional YAML file, and ``TYPST_SUPPORT_*``
environment variables, in that order of increasing precedence.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "APP_NAME",
    "DATA_ROOT",
    "LOG_DIR",
    "BinarySource",
    "FormatterMode",
    "ToolSettings",
    "DownloadConfiguration",
    "PreviewPoolConfiguration",
    "ReadinessConfiguration",
    "LoggingConfiguration",
    "ResolvedConfig",
    "EnvironmentOverrides",
    "get_default_config",
    "invalidate_default_config_cache",
    "load_raw_yaml",
    "load_config",
]

LOGGER = logging.getLogger("TypstSupport.settings")

# --- Directory defaults ---------------------------------------------------------

APP_NAME = "TypstSupport"
DATA_ROOT = Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))
LOG_DIR = Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))


# --- Settings enums -------------------------------------------------------------


class BinarySource(str, enum.Enum):
    """Where the Tinymist binary comes from."""

    AUTOMATIC = "automatic"
    CUSTOM = "custom"


class FormatterMode(str, enum.Enum):
    """Formatter the language service should use for document formatting."""

    TYPSTYLE = "typstyle"
    TYPSTFMT = "typstfmt"


# --- Configuration models -------------------------------------------------------


class ToolSettings(BaseModel):
    """Settings snapshot supplied by the editor integration."""

    binary_source: BinarySource = Field(default=BinarySource.AUTOMATIC)
    custom_binary_path: str = Field(
        default="",
        description="Absolute path to a user-provided tinymist binary; used when binary_source is custom",
    )
    formatter: FormatterMode = Field(default=FormatterMode.TYPSTYLE)

    def initialization_options(self) -> Dict[str, str]:
        """Return the language service initialization options for this snapshot."""

        return {"formatterMode": self.formatter.value}

    model_config = {"validate_assignment": True, "extra": "forbid"}


class DownloadConfiguration(BaseModel):
    """HTTP settings for fetching the Tinymist release archive.

    Transfers are never retried: a failed download is reported to the user
    and the next document-open event triggers a fresh attempt.
    """

    releases_url: str = Field(
        default="https://github.com/Myriad-Dreamin/tinymist/releases/download",
        description="Base URL of the release download endpoint",
    )
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0)
    read_timeout_sec: float = Field(default=30.0, gt=0.0, le=600.0)
    download_timeout_sec: float = Field(
        default=600.0,
        gt=0.0,
        le=7200.0,
        description="Wall-clock limit for the whole transfer and extraction",
    )
    chunk_size: int = Field(default=4096, ge=512, le=1_048_576)
    user_agent: str = Field(default="TypstSupport")

    @field_validator("releases_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    model_config = {"validate_assignment": True}


class PreviewPoolConfiguration(BaseModel):
    """Capacity, port window, and lifecycle timeouts for preview helpers."""

    max_servers: int = Field(default=10, ge=1, le=64)
    starting_port: int = Field(default=23625, ge=1024, le=65535)
    port_probe_attempts: int = Field(default=10, ge=1, le=1000)
    boot_timeout_sec: float = Field(default=5.0, gt=0.0, le=120.0)
    boot_poll_interval_sec: float = Field(default=0.1, gt=0.0, le=5.0)
    listening_marker: str = Field(default="listening", min_length=1)
    graceful_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0)
    kill_timeout_sec: float = Field(default=2.0, gt=0.0, le=60.0)
    os_kill_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0)
    sweep_interval_sec: float = Field(default=60.0, gt=0.0, le=3600.0)
    shutdown_join_timeout_sec: float = Field(default=2.0, gt=0.0, le=60.0)
    shutdown_deadline_sec: float = Field(default=10.0, gt=0.0, le=300.0)
    background_workers: int = Field(default=4, ge=1, le=32)

    model_config = {"validate_assignment": True}


class ReadinessConfiguration(BaseModel):
    """Polling cadence used while waiting for the language service."""

    poll_interval_sec: float = Field(default=0.3, gt=0.0, le=10.0)
    timeout_sec: float = Field(default=15.0, gt=0.0, le=600.0)

    model_config = {"validate_assignment": True}


class LoggingConfiguration(BaseModel):
    """Logging-related configuration for the toolchain core."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(default=20, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(default=14, ge=1, description="Retention period for log files")
    log_dir: Optional[Path] = Field(default=None)

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper

    model_config = {"validate_assignment": True}


class ResolvedConfig(BaseModel):
    """Materialised configuration combining defaults, YAML, and environment."""

    tool: ToolSettings = Field(default_factory=ToolSettings)
    download: DownloadConfiguration = Field(default_factory=DownloadConfiguration)
    preview: PreviewPoolConfiguration = Field(default_factory=PreviewPoolConfiguration)
    readiness: ReadinessConfiguration = Field(default_factory=ReadinessConfiguration)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)
    data_dir: Path = Field(default=DATA_ROOT, description="Root for downloaded binaries")

    @classmethod
    def from_defaults(cls) -> "ResolvedConfig":
        """Construct a configuration populated with defaults and environment overrides."""

        config = cls()
        _apply_env_overrides(config)
        return config

    model_config = {"validate_assignment": True, "extra": "forbid"}


# --- Default config cache -------------------------------------------------------

_DEFAULT_CONFIG_LOCK = threading.RLock()
_DEFAULT_CONFIG_CACHE: Optional[ResolvedConfig] = None


def get_default_config(*, copy: bool = False) -> ResolvedConfig:
    """Return a memoised :class:`ResolvedConfig` constructed from defaults."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        if _DEFAULT_CONFIG_CACHE is None:
            _DEFAULT_CONFIG_CACHE = ResolvedConfig.from_defaults()
        cached = _DEFAULT_CONFIG_CACHE
    if copy:
        return cached.model_copy(deep=True)
    return cached


def invalidate_default_config_cache() -> None:
    """Invalidate the cached default configuration."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        _DEFAULT_CONFIG_CACHE = None


# --- Environment overrides ------------------------------------------------------


class EnvironmentOverrides(BaseSettings):
    """Pydantic settings model exposing environment-derived overrides."""

    data_dir: Optional[Path] = Field(default=None, alias="TYPST_SUPPORT_DATA_DIR")
    log_level: Optional[str] = Field(default=None, alias="TYPST_SUPPORT_LOG_LEVEL")
    log_dir: Optional[Path] = Field(default=None, alias="TYPST_SUPPORT_LOG_DIR")
    binary_source: Optional[BinarySource] = Field(default=None, alias="TYPST_SUPPORT_BINARY_SOURCE")
    custom_binary_path: Optional[str] = Field(
        default=None, alias="TYPST_SUPPORT_CUSTOM_BINARY_PATH"
    )
    download_timeout_sec: Optional[float] = Field(
        default=None, alias="TYPST_SUPPORT_DOWNLOAD_TIMEOUT_SEC"
    )

    model_config = SettingsConfigDict(
        env_prefix="TYPST_SUPPORT_", case_sensitive=False, extra="ignore"
    )


def _apply_env_overrides(config: ResolvedConfig) -> None:
    """Mutate ``config`` in place with any ``TYPST_SUPPORT_*`` values present."""

    try:
        env = EnvironmentOverrides()
        if env.data_dir is not None:
            config.data_dir = env.data_dir.expanduser()
        if env.log_level is not None:
            config.logging.level = env.log_level
        if env.log_dir is not None:
            config.logging.log_dir = env.log_dir.expanduser()
        if env.binary_source is not None:
            config.tool.binary_source = env.binary_source
        if env.custom_binary_path is not None:
            config.tool.custom_binary_path = env.custom_binary_path
        if env.download_timeout_sec is not None:
            config.download.download_timeout_sec = env.download_timeout_sec
    except ValidationError as exc:
        raise ConfigError(f"Invalid TYPST_SUPPORT_* environment override: {exc}") from exc

    applied = env.model_dump(exclude_none=True)
    if applied:
        LOGGER.debug("applied environment overrides", extra={"stage": "config", "keys": sorted(applied)})


# --- YAML loading ---------------------------------------------------------------


def load_raw_yaml(config_path: Path) -> Mapping[str, Any]:
    """Read a YAML configuration file and return its top-level mapping."""

    normalized_path = Path(os.path.expanduser(str(config_path)))

    if not normalized_path.exists():
        raise ConfigError(f"Configuration file not found: {normalized_path}")

    try:
        with normalized_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{normalized_path}' contains invalid YAML") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the root")
    return data


def load_config(config_path: Path) -> ResolvedConfig:
    """Load and validate a YAML configuration, then apply environment overrides."""

    raw = load_raw_yaml(config_path)
    try:
        config = ResolvedConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"Configuration file '{config_path}' is invalid: {exc}") from exc
    _apply_env_overrides(config)
    return config
