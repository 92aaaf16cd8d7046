"""Update run reports: JSON payload, Markdown summary and history."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

from docweave.ports.change_impact import RiskLevel

from .results import UpdateRunResult

LATEST_JSON = "update.json"
LATEST_MARKDOWN = "update.md"


def build_report_payload(run: UpdateRunResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "generated_at": run.generated_at,
        "project_root": str(run.project_root),
        "dry_run": run.dry_run,
        "force": run.force,
        "since": run.since,
        "exit_code": run.exit_code,
        "duration_ms": round(run.duration_ms, 3),
        "summary": run.counts(),
        "change_set": run.change_set.to_dict() if run.change_set is not None else None,
        "failed": [
            {"path": doc.path, "error": doc.error} for doc in run.failed()
        ],
        "documents": [doc.to_dict() for doc in run.documents],
        "queue": run.queue,
        "recommendations": recommendations(run),
    }
    if run.fatal_error is not None:
        payload["fatal_error"] = run.fatal_error
    return payload


def recommendations(run: UpdateRunResult) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    counts = run.counts()
    if run.fatal_error is not None:
        items.append(
            {
                "priority": "high",
                "type": "run_aborted",
                "message": run.fatal_error.get("message", "update aborted"),
                "actions": [run.fatal_error.get("remediation") or "Inspect the error and rerun the update"],
            }
        )
    if counts["failed"]:
        items.append(
            {
                "priority": "high",
                "type": "failed_updates",
                "message": f"{counts['failed']} document update(s) failed and need manual intervention",
                "actions": ["Review error messages", "Check file permissions", "Rerun `docweave update`"],
            }
        )
    if run.change_set is not None and run.change_set.risk_level is RiskLevel.HIGH:
        items.append(
            {
                "priority": "high",
                "type": "risk_assessment",
                "message": "High-risk upstream changes detected; review the updated documents thoroughly",
                "actions": ["Review all updated documents", "Validate technical accuracy"],
            }
        )
    if counts["conflicts"]:
        items.append(
            {
                "priority": "high",
                "type": "conflicts",
                "message": f"{counts['conflicts']} section conflict(s) were written inline and need a human decision",
                "actions": ["Search for docweave:conflict-start markers", "Keep one side and delete the block markers"],
            }
        )
    if counts["suppressed"]:
        items.append(
            {
                "priority": "medium",
                "type": "suppressed_documents",
                "message": f"{counts['suppressed']} document(s) carry <!-- do not update --> and were left untouched",
                "actions": ["Remove the marker when the document should follow its sources again"],
            }
        )
    if counts["sectionsPreserved"]:
        items.append(
            {
                "priority": "medium",
                "type": "preserved_content",
                "message": f"{counts['sectionsPreserved']} preserved section(s) were kept verbatim; review them for consistency",
                "actions": ["Check preserved sections for outdated information"],
            }
        )
    if counts["fallbacks"]:
        items.append(
            {
                "priority": "medium",
                "type": "fallback_content",
                "message": f"{counts['fallbacks']} document(s) were generated from fallback content",
                "actions": ["Check the content source", "Rerun with --force once it is reachable"],
            }
        )
    if counts["drift"]:
        items.append(
            {
                "priority": "low",
                "type": "drift",
                "message": f"{counts['drift']} document(s) were edited outside preserved sections",
                "actions": ["Wrap hand-written sections in <!-- manual-edit --> markers"],
            }
        )
    return items


def render_markdown(payload: Dict[str, Any]) -> str:
    summary = payload["summary"]
    lines: List[str] = ["# Documentation update report", ""]
    lines.append(f"Generated at {payload['generated_at']}")
    mode = "dry run" if payload.get("dry_run") else "write"
    lines.append(f"Mode: {mode}; exit code {payload['exit_code']}")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    for key in ("processed", "updated", "unchanged", "skipped", "planned", "failed", "conflicts", "suppressed", "fallbacks"):
        lines.append(f"- {key}: {summary[key]}")
    lines.append(f"- lines: +{summary['linesAdded']} / -{summary['linesRemoved']}")

    change_set = payload.get("change_set")
    if change_set:
        lines.extend(["", "## Change set", ""])
        lines.append(f"- ref: {change_set['ref']}")
        lines.append(f"- risk: {change_set['riskLevel']}")
        if change_set.get("rationale"):
            lines.append(f"- rationale: {change_set['rationale']}")

    if payload.get("fatal_error"):
        lines.extend(["", "## Aborted", "", f"{payload['fatal_error']['code']}: {payload['fatal_error']['message']}"])

    documents = payload.get("documents") or []
    if documents:
        lines.extend(["", "## Documents", ""])
        lines.append("| Document | Outcome | Version | Preserved | Updated | Added | Removed | Conflicts |")
        lines.append("|---|---|---|---|---|---|---|---|")
        for doc in documents:
            merge = doc.get("merge") or {}
            version = _version_cell(doc.get("versionBefore"), doc.get("versionAfter"))
            lines.append(
                "| {path} | {outcome}{fallback} | {version} | {preserved} | {updated} | {added} | {removed} | {conflicts} |".format(
                    path=doc["path"],
                    outcome=doc["outcome"],
                    fallback=" (fallback)" if doc.get("fallbackUsed") else "",
                    version=version,
                    preserved=len(merge.get("sectionsPreserved", [])),
                    updated=len(merge.get("sectionsUpdated", [])),
                    added=len(merge.get("sectionsAdded", [])),
                    removed=len(merge.get("sectionsRemoved", [])),
                    conflicts=len(merge.get("conflicts", [])),
                )
            )

    failed = payload.get("failed") or []
    if failed:
        lines.extend(["", "## Failures", ""])
        for entry in failed:
            error = entry.get("error") or {}
            lines.append(f"- {entry['path']}: {error.get('code', 'ERROR')} {error.get('message', '')}".rstrip())

    recommendations_list = payload.get("recommendations") or []
    if recommendations_list:
        lines.extend(["", "## Recommendations", ""])
        for item in recommendations_list:
            lines.append(f"- **{item['priority']}** {item['message']}")
    return "\n".join(lines) + "\n"


class UpdateReportWriter:
    """Writes the latest report pair plus a timestamped history copy."""

    def __init__(self, report_dir: Path) -> None:
        self._dir = report_dir

    def write(self, run: UpdateRunResult) -> Tuple[Path, Path]:
        payload = build_report_payload(run)
        self._dir.mkdir(parents=True, exist_ok=True)
        json_path = self._dir / LATEST_JSON
        markdown_path = self._dir / LATEST_MARKDOWN
        data = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        json_path.write_text(data, encoding="utf-8")
        markdown_path.write_text(render_markdown(payload), encoding="utf-8")

        history_dir = self._dir / "history"
        history_dir.mkdir(parents=True, exist_ok=True)
        slug = _slugify_timestamp(run.generated_at)
        candidate = history_dir / f"{slug}.json"
        counter = 1
        while candidate.exists():
            candidate = history_dir / f"{slug}_{counter}.json"
            counter += 1
        candidate.write_text(data, encoding="utf-8")

        run.report_path = json_path
        run.summary_path = markdown_path
        return json_path, markdown_path


def _version_cell(before: Any, after: Any) -> str:
    if after is None or after == before:
        return "-" if before is None else str(before)
    return f"{before or 0} → {after}"


def _slugify_timestamp(timestamp: str) -> str:
    if not timestamp:
        return "unknown"
    slug = timestamp.replace(":", "").replace("-", "").replace(" ", "_")
    return slug.replace("/", "_").replace(".", "_")


__all__ = ["UpdateReportWriter", "build_report_payload", "recommendations", "render_markdown"]
