"""Content source rendering per-type templates from a directory."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from docweave.ports.content_source import ContentSource, GenerationError

from .templates import substitute


class FileContentSource(ContentSource):
    """Reads ``<root>/<doc_type>.md`` and fills ``${placeholders}`` from the context."""

    def __init__(self, root: Path, *, suffix: str = ".md") -> None:
        self._root = root
        self._suffix = suffix

    def template_path(self, doc_type: str) -> Path:
        return self._root / f"{doc_type}{self._suffix}"

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        path = self.template_path(doc_type)
        try:
            template = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise GenerationError(f"no template for document type '{doc_type}' at {path}") from exc
        except OSError as exc:
            raise GenerationError(f"template {path} is unreadable: {exc}") from exc
        return substitute(template, doc_type, context)
