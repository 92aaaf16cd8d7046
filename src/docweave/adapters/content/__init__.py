"""Content source adapters and factory."""

from __future__ import annotations

from pathlib import Path

import requests

from docweave.domain.documents.value_objects import AdapterConfig, UpdateConfigError
from docweave.ports.content_source import ContentSource

from .file_source import FileContentSource
from .http_source import HttpContentSource
from .templates import PLACEHOLDER_TEMPLATE, render_fallback


def build_content_source(
    project_root: Path,
    config: AdapterConfig,
    *,
    session: requests.Session | None = None,
) -> ContentSource:
    options = dict(config.options)
    if config.type == "file":
        root = Path(str(options.get("root", ".docweave/templates")))
        if not root.is_absolute():
            root = project_root / root
        return FileContentSource(root, suffix=str(options.get("suffix", ".md")))
    if config.type == "http":
        if not options.get("endpoint") and not options.get("url"):
            raise UpdateConfigError("content_source.options.endpoint is required for the http source")
        return HttpContentSource(options, session=session)
    raise UpdateConfigError(f"content source type '{config.type}' is not supported")


__all__ = [
    "FileContentSource",
    "HttpContentSource",
    "PLACEHOLDER_TEMPLATE",
    "build_content_source",
    "render_fallback",
]
