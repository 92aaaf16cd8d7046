from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Keep telemetry written during import-time SETTINGS resolution out of the real home.
SANDBOX_HOME = ROOT / ".test_place" / "docweave-home"
os.environ.setdefault("DOCWEAVE_HOME", str(SANDBOX_HOME))
SANDBOX_HOME.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("PYTEST_DEBUG_TEMPROOT", str(Path("/tmp/docweave-pytest").resolve()))
Path(os.environ["PYTEST_DEBUG_TEMPROOT"]).mkdir(parents=True, exist_ok=True)


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    from docweave.utils import config

    config._CONFIG_CACHE.clear()
    yield
    config._CONFIG_CACHE.clear()
