"""Packaged resources for docweave."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from typing import Any, Dict

__all__ = ["load_schema"]


@lru_cache(maxsize=None)
def load_schema(name: str) -> Dict[str, Any]:
    """Return a JSON schema shipped with the package."""

    entry = resources.files(__name__) / f"{name}.schema.json"
    return json.loads(entry.read_text("utf-8"))
