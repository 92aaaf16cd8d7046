"""Port for resolving which documents an upstream change touches."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

from docweave.domain.documents.errors import ChangeSetError


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ChangeSet:
    impacted_documents: Tuple[str, ...]
    risk_level: RiskLevel
    rationale: str = ""
    changed_sources: Tuple[str, ...] = ()
    ref: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref": self.ref,
            "impactedDocuments": list(self.impacted_documents),
            "riskLevel": self.risk_level.value,
            "rationale": self.rationale,
            "changedSources": list(self.changed_sources),
            "details": dict(self.details),
        }


class ChangeImpactAnalyzer(ABC):
    @abstractmethod
    def analyze(self, ref: str) -> ChangeSet:
        """Resolve ``ref`` into a :class:`ChangeSet` or raise :class:`ChangeSetError`."""


__all__ = ["ChangeImpactAnalyzer", "ChangeSet", "ChangeSetError", "RiskLevel"]
