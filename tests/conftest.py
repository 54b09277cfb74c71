# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest configuration for the suite",
#   "sections": [
#     {"id": "sys-path", "name": "sys.path bootstrap", "anchor": "PTH", "kind": "setup"},
#     {"id": "reset-logging", "name": "_reset_apkforge_logging", "anchor": "function-reset-apkforge-logging", "kind": "fixture"}
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Adds ``src`` to ``sys.path`` so the suite runs against a checkout without an
editable install, and keeps logging handlers installed by CLI tests from
leaking into later tests.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _reset_apkforge_logging():
    yield
    logger = logging.getLogger("ApkForge")
    for handler in list(logger.handlers):
        if getattr(handler, "_apkforge_managed", False):
            logger.removeHandler(handler)
    logger.propagate = True
