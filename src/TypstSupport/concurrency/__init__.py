# === NAVMAP v1 ===
# {
#   "module": "TypstSupport.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across TypstSupport components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across TypstSupport components.

Exposes :func:`create_executor`, the thread pool factory used for archive
downloads and preview helper boots.
"""

from .executors import create_executor

__all__ = ["create_executor"]
