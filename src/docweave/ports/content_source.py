"""Port for producing fresh document renderings."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from docweave.domain.documents.errors import GenerationError


class ContentSource(ABC):
    """Produces the candidate text for one document type."""

    @abstractmethod
    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        """Return a full markdown rendering or raise :class:`GenerationError`."""


__all__ = ["ContentSource", "GenerationError"]
