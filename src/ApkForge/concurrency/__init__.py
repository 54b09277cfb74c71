# === NAVMAP v1 ===
# {
#   "module": "ApkForge.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across ApkForge components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across ApkForge components.

Currently exposes :func:`create_executor`, which sizes the thread pool that
fetches and expands packages while the ordered applier runs alongside it.
"""

from .executors import create_executor

__all__ = ["create_executor"]
