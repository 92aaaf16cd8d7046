"""Update orchestration: worker pool, request queue and reports."""

from .queue import RequestQueue
from .report import UpdateReportWriter, build_report_payload, render_markdown
from .results import DocumentOutcome, DocumentUpdateResult, UpdateRunResult
from .service import DocumentUpdateService

__all__ = [
    "DocumentOutcome",
    "DocumentUpdateResult",
    "DocumentUpdateService",
    "RequestQueue",
    "UpdateReportWriter",
    "UpdateRunResult",
    "build_report_payload",
    "render_markdown",
]
