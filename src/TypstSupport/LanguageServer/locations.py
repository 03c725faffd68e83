"""Resolve where the Tinymist binary lives and where to fetch it from."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .notifier import LoggingNotifier, Notifier
from .platforms import PlatformDescriptor
from .settings import BinarySource, DownloadConfiguration, ResolvedConfig, ToolSettings
from .validation import PathValidation, validate_binary_file
from .versions import REQUIRED_VERSION, ToolVersion

__all__ = ["LocationSource", "BinaryLocation", "BinaryLocationResolver"]

LOGGER = logging.getLogger("TypstSupport.LanguageServer.locations")

LANGUAGE_SERVER_DIRNAME = "language-server"


class LocationSource(str, enum.Enum):
    DOWNLOADED = "downloaded"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class BinaryLocation:
    """Where the binary is expected on disk and where its archive is published."""

    local_path: Path
    remote_url: str
    version_tag: str
    source: LocationSource

    @property
    def is_custom(self) -> bool:
        return self.source is LocationSource.CUSTOM


class BinaryLocationResolver:
    """Compute :class:`BinaryLocation` values from settings, platform, and version.

    Nothing is cached: every call re-reads the settings snapshot so a changed
    custom path takes effect on the next lookup.  An invalid custom path
    produces a warning through the notifier and falls back to the managed
    download location.
    """

    def __init__(
        self,
        settings_provider: Callable[[], ToolSettings],
        *,
        data_dir: Path,
        platform: Optional[PlatformDescriptor] = None,
        version: ToolVersion = REQUIRED_VERSION,
        download_config: Optional[DownloadConfiguration] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._data_dir = Path(data_dir)
        self._platform = platform or PlatformDescriptor.detect()
        self._version = version
        self._download_config = download_config or DownloadConfiguration()
        self._notifier = notifier or LoggingNotifier()

    @classmethod
    def from_config(
        cls,
        config: ResolvedConfig,
        *,
        platform: Optional[PlatformDescriptor] = None,
        notifier: Optional[Notifier] = None,
    ) -> "BinaryLocationResolver":
        return cls(
            lambda: config.tool,
            data_dir=config.data_dir,
            platform=platform,
            download_config=config.download,
            notifier=notifier,
        )

    @property
    def platform(self) -> PlatformDescriptor:
        return self._platform

    def download_url(self) -> str:
        """Release archive URL for the pinned version and host platform."""

        return (
            f"{self._download_config.releases_url}/{self._version.to_path_string()}/"
            f"{self._platform.archive_name}"
        )

    def managed_binary_path(self) -> Path:
        """Path of the automatically downloaded binary."""

        return (
            self._data_dir
            / LANGUAGE_SERVER_DIRNAME
            / self._version.to_path_string()
            / self._platform.binary_name
        )

    def resolve(self) -> BinaryLocation:
        settings = self._settings_provider()
        if settings.binary_source is BinarySource.CUSTOM:
            custom_path = settings.custom_binary_path
            result: PathValidation = validate_binary_file(custom_path)
            if result.ok:
                return BinaryLocation(
                    local_path=Path(custom_path).expanduser(),
                    remote_url=self.download_url(),
                    version_tag=self._version.to_path_string(),
                    source=LocationSource.CUSTOM,
                )
            LOGGER.warning(
                "custom binary rejected",
                extra={"stage": "resolve", "path": custom_path, "reason": result.message},
            )
            self._notifier.warn(
                f"Your specified Tinymist binary ({custom_path}) is invalid: {result.message}."
                "\n\n Falling back to automatically downloaded Tinymist."
            )

        return BinaryLocation(
            local_path=self.managed_binary_path(),
            remote_url=self.download_url(),
            version_tag=self._version.to_path_string(),
            source=LocationSource.DOWNLOADED,
        )

    def binary_path(self) -> Path:
        return self.resolve().local_path
