# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.LanguageServer",
#   "purpose": "Package initialization for TypstSupport.LanguageServer",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for provisioning the Tinymist language server binary.

Exports are resolved lazily so that importing a leaf module (for example
:mod:`TypstSupport.LanguageServer.errors` from the preview pool) does not
drag in the manager, which itself depends on the preview pool.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict

_EXPORTS: Dict[str, str] = {
    "ArchiveFetcher": "fetcher",
    "DownloadProgress": "fetcher",
    "classify_download_error": "fetcher",
    "AcquisitionScheduler": "scheduler",
    "AcquisitionState": "scheduler",
    "DownloadStatus": "scheduler",
    "StatusKind": "scheduler",
    "BinaryLocation": "locations",
    "BinaryLocationResolver": "locations",
    "PlatformDescriptor": "platforms",
    "ToolVersion": "versions",
    "REQUIRED_VERSION": "versions",
    "ReadinessWaiter": "readiness",
    "ServiceState": "readiness",
    "ToolchainManager": "manager",
    "LanguageServiceStarter": "manager",
    "ResolvedConfig": "settings",
    "ToolSettings": "settings",
    "get_default_config": "settings",
    "load_config": "settings",
    "validate_binary_file": "validation",
    "validate_binary_execution": "validation",
    "TypstSupportError": "errors",
    "DownloadFailure": "errors",
    "DownloadCancelled": "errors",
    "PreviewServerStartError": "errors",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import exports on first access."""

    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    value = getattr(import_module(f"{__name__}.{module_name}"), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
