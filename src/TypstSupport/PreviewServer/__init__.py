"""Per-document ``tinymist preview`` helper processes."""

from .options import InvertColors, InvertStrategy, PreviewMode, PreviewOptions
from .pool import ProcessPool, ServerInfo
from .ports import PortAllocation, PortAllocator, PortProbeOutcome
from .teardown import TeardownReport, TeardownStage

__all__ = [
    "InvertColors",
    "InvertStrategy",
    "PreviewMode",
    "PreviewOptions",
    "ProcessPool",
    "ServerInfo",
    "PortAllocation",
    "PortAllocator",
    "PortProbeOutcome",
    "TeardownReport",
    "TeardownStage",
]
