"""Command-line options for ``tinymist preview``."""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

__all__ = ["InvertStrategy", "InvertColors", "PreviewMode", "PreviewOptions", "LOOPBACK_HOST"]

LOOPBACK_HOST = "127.0.0.1"


class InvertStrategy(str, enum.Enum):
    ALWAYS = "always"
    NEVER = "never"
    AUTO = "auto"


@dataclass(frozen=True, slots=True)
class InvertColors:
    """Colour inversion for the preview; either one strategy or one per element kind."""

    strategy: Optional[InvertStrategy] = None
    rest: Optional[InvertStrategy] = None
    image: Optional[InvertStrategy] = None

    @classmethod
    def by_element(cls, rest: InvertStrategy, image: InvertStrategy) -> "InvertColors":
        return cls(rest=rest, image=image)

    def to_flag(self) -> str:
        if self.strategy is not None:
            return f"--invert-colors={self.strategy.value}"
        payload = {
            "rest": (self.rest or InvertStrategy.NEVER).value,
            "image": (self.image or InvertStrategy.NEVER).value,
        }
        return f"--invert-colors={json.dumps(payload)}"


class PreviewMode(str, enum.Enum):
    DOCUMENT = "document"
    SLIDE = "slide"


@dataclass(frozen=True)
class PreviewOptions:
    """Flags passed to ``tinymist preview``; unset values emit no flag."""

    partial_rendering: bool = False
    invert_colors: Optional[Union[InvertColors, InvertStrategy]] = None
    root: Optional[Path] = None
    inputs: Dict[str, str] = field(default_factory=dict)
    task_id: Optional[uuid.UUID] = None
    font_paths: Sequence[Path] = ()
    ignore_system_fonts: bool = False
    package_path: Optional[Path] = None
    package_cache_path: Optional[Path] = None
    cert: Optional[Path] = None
    preview_mode: Optional[PreviewMode] = None
    host: str = ""
    open_in_browser: bool = False
    data_plane_port: Optional[int] = None
    control_plane_port: Optional[int] = None

    def with_ports(self, data_plane_port: int, control_plane_port: int) -> "PreviewOptions":
        return replace(
            self, data_plane_port=data_plane_port, control_plane_port=control_plane_port
        )

    def to_command_list(self, binary: Union[str, Path] = "tinymist") -> List[str]:
        """Build ``[binary, "preview", *flags]``; the document path is appended by the caller."""

        command = [str(binary), "preview"]

        if self.partial_rendering:
            command.append("--partial-rendering")

        if isinstance(self.invert_colors, InvertStrategy):
            command.append(InvertColors(strategy=self.invert_colors).to_flag())
        elif self.invert_colors is not None:
            command.append(self.invert_colors.to_flag())

        if self.root is not None:
            command += ["--root", str(self.root)]
        for key, value in self.inputs.items():
            command += ["--input", f"{key}={value}"]
        for font_path in self.font_paths:
            command += ["--font-path", str(font_path)]
        if self.ignore_system_fonts:
            command.append("--ignore-system-fonts")
        if self.package_path is not None:
            command += ["--package-path", str(self.package_path)]
        if self.package_cache_path is not None:
            command += ["--package-cache-path", str(self.package_cache_path)]
        if self.cert is not None:
            command += ["--cert", str(self.cert)]
        if self.preview_mode is not None:
            command += ["--preview-mode", self.preview_mode.value]
        if self.task_id is not None:
            command += ["--task-id", str(self.task_id)]
        if self.host:
            command += ["--host", self.host]

        if not self.open_in_browser:
            command.append("--no-open")

        if self.data_plane_port is not None:
            command += ["--data-plane-host", f"{LOOPBACK_HOST}:{self.data_plane_port}"]
        if self.control_plane_port is not None:
            command += ["--control-plane-host", f"{LOOPBACK_HOST}:{self.control_plane_port}"]
        return command
