"""Per-document and per-run outcomes of an update."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from docweave.domain.documents.merge import MergeResult
from docweave.domain.documents.registry import StatusReport
from docweave.ports.change_impact import ChangeSet

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2


class DocumentOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    PLANNED = "planned"
    FAILED = "failed"


@dataclass
class DocumentUpdateResult:
    path: str
    outcome: DocumentOutcome
    status: Optional[StatusReport] = None
    trigger: Optional[str] = None
    merge: Optional[MergeResult] = None
    version_before: Optional[int] = None
    version_after: Optional[int] = None
    fallback_source: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return self.fallback_source is not None

    @property
    def drift_detected(self) -> bool:
        return bool(self.status and self.status.drift_detected)

    @property
    def conflict_count(self) -> int:
        return len(self.merge.inline_conflicts) if self.merge is not None else 0

    @property
    def suppressed(self) -> bool:
        return self.merge is not None and self.merge.suppressed

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "path": self.path,
            "outcome": self.outcome.value,
            "trigger": self.trigger,
            "status": self.status.status.value if self.status else None,
            "staleReason": self.status.reason if self.status else None,
            "driftDetected": self.drift_detected,
            "versionBefore": self.version_before,
            "versionAfter": self.version_after,
            "fallbackUsed": self.fallback_used,
            "fallbackSource": self.fallback_source,
            "warnings": list(self.warnings),
        }
        if self.merge is not None:
            payload["merge"] = self.merge.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class UpdateRunResult:
    generated_at: str
    project_root: Path
    dry_run: bool = False
    force: bool = False
    since: Optional[str] = None
    change_set: Optional[ChangeSet] = None
    documents: List[DocumentUpdateResult] = field(default_factory=list)
    fatal_error: Optional[Dict[str, Any]] = None
    queue: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    report_path: Optional[Path] = None
    summary_path: Optional[Path] = None

    @property
    def exit_code(self) -> int:
        if self.fatal_error is not None:
            return EXIT_FAILED
        if any(doc.outcome is DocumentOutcome.FAILED for doc in self.documents):
            return EXIT_PARTIAL
        return EXIT_OK

    def failed(self) -> List[DocumentUpdateResult]:
        return [doc for doc in self.documents if doc.outcome is DocumentOutcome.FAILED]

    def counts(self) -> Dict[str, int]:
        def _count(*outcomes: DocumentOutcome) -> int:
            return sum(1 for doc in self.documents if doc.outcome in outcomes)

        merges = [doc.merge for doc in self.documents if doc.merge is not None]
        return {
            "processed": len(self.documents) - _count(DocumentOutcome.SKIPPED),
            "updated": _count(DocumentOutcome.UPDATED, DocumentOutcome.CREATED),
            "created": _count(DocumentOutcome.CREATED),
            "unchanged": _count(DocumentOutcome.UNCHANGED),
            "skipped": _count(DocumentOutcome.SKIPPED),
            "planned": _count(DocumentOutcome.PLANNED),
            "failed": _count(DocumentOutcome.FAILED),
            "conflicts": sum(doc.conflict_count for doc in self.documents),
            "suppressed": sum(1 for doc in self.documents if doc.suppressed),
            "fallbacks": sum(1 for doc in self.documents if doc.fallback_used),
            "drift": sum(1 for doc in self.documents if doc.drift_detected),
            "sectionsPreserved": sum(len(merge.sections_preserved) for merge in merges),
            "linesAdded": sum(merge.lines_added for merge in merges),
            "linesRemoved": sum(merge.lines_removed for merge in merges),
        }


__all__ = [
    "DocumentOutcome",
    "DocumentUpdateResult",
    "EXIT_FAILED",
    "EXIT_OK",
    "EXIT_PARTIAL",
    "UpdateRunResult",
]
