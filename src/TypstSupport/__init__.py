# === NAVMAP v1 ===
# {
#   "module": "TypstSupport",
#   "purpose": "Package initialization for the Typst toolchain core",
#   "sections": []
# }
# === /NAVMAP ===

"""Typst toolchain core: binary acquisition and preview process supervision.

The package is split the way the editor integration is split:

- :mod:`TypstSupport.LanguageServer` provisions the Tinymist binary exactly
  once, validates custom overrides, and waits for the language service.
- :mod:`TypstSupport.PreviewServer` keeps a bounded pool of per-document
  preview helper processes alive on dynamically allocated ports.
- :mod:`TypstSupport.concurrency` hosts the executor factory shared by both.
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
