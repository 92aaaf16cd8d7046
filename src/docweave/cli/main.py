"""Command line entrypoint for docweave."""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, Dict, Iterable, List

from docweave import __version__
from docweave.app.update import DocumentOutcome, DocumentUpdateService, UpdateRunResult, build_report_payload
from docweave.app.update.results import EXIT_FAILED
from docweave.domain.documents.errors import DocweaveError
from docweave.settings import SETTINGS
from docweave.utils.telemetry import iter_events as telemetry_iter
from docweave.utils.telemetry import last_run as telemetry_last_run
from docweave.utils.telemetry import record_structured_event
from docweave.utils.telemetry import summarize as telemetry_summarize

HELP_OVERVIEW = dedent(
    """
    Keep generated documentation current without losing hand-written sections.

    Typical flow:
      docweave register docs/API.md --dependency 'src/api/**'
      docweave update --change-set changes.json
      docweave status
    """
).strip()


def _default_project_path(path_arg: str | None) -> Path:
    if path_arg:
        return Path(path_arg).expanduser().resolve()
    return Path(os.getcwd())


def _build_service(args: argparse.Namespace) -> DocumentUpdateService:
    project_path = _default_project_path(getattr(args, "path", None) or getattr(args, "project", None))
    config_arg = getattr(args, "config", None)
    config_path = Path(config_arg).expanduser().resolve() if config_arg else None
    return DocumentUpdateService.from_project(project_path, config_path=config_path, settings=SETTINGS)


def _print_error(exc: DocweaveError) -> None:
    print(f"{exc.code}: {exc.message}", file=sys.stderr)
    if exc.remediation:
        print(f"hint: {exc.remediation}", file=sys.stderr)


def _parse_since(value: str) -> datetime:
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from exc
    return parsed.replace(tzinfo=timezone.utc)


def _print_run(run: UpdateRunResult) -> None:
    counts = run.counts()
    mode = "dry run" if run.dry_run else "update"
    print(
        f"{mode}: processed={counts['processed']} updated={counts['updated']} "
        f"unchanged={counts['unchanged']} skipped={counts['skipped']} "
        f"planned={counts['planned']} failed={counts['failed']}"
    )
    if run.fatal_error is not None:
        print(f"aborted: {run.fatal_error['code']}: {run.fatal_error['message']}", file=sys.stderr)
    for doc in run.documents:
        if doc.outcome is DocumentOutcome.SKIPPED:
            continue
        line = f"  - {doc.path}: {doc.outcome.value}"
        if doc.version_after is not None and doc.version_after != doc.version_before:
            line += f" (v{doc.version_before or 0} -> v{doc.version_after})"
        if doc.conflict_count:
            line += f", {doc.conflict_count} conflict(s)"
        if doc.suppressed:
            line += ", suppressed by <!-- do not update -->"
        if doc.fallback_used:
            line += f", fallback={doc.fallback_source}"
        print(line)
        if doc.error:
            print(f"      {doc.error.get('code')}: {doc.error.get('message')}", file=sys.stderr)
        for warning in doc.warnings:
            print(f"      warning: {warning}")
    if run.report_path is not None:
        print(f"report: {run.report_path}")


def _update_cmd(args: argparse.Namespace) -> int:
    try:
        service = _build_service(args)
    except DocweaveError as exc:
        _print_error(exc)
        record_structured_event(SETTINGS, "docweave.cli.update", status="failed", payload={"error": exc.code})
        return EXIT_FAILED
    try:
        run = service.update(
            force=args.force,
            dry_run=args.dry_run,
            since=args.since,
            change_set_ref=args.change_set,
            documents=args.document or None,
        )
    finally:
        service.close()
    if args.json:
        print(json.dumps(build_report_payload(run), ensure_ascii=False, indent=2))
    else:
        _print_run(run)
    record_structured_event(
        SETTINGS,
        "docweave.cli.update",
        status="ok" if run.exit_code == 0 else "failed",
        payload={"exitCode": run.exit_code, "dryRun": run.dry_run},
    )
    return run.exit_code


def _status_cmd(args: argparse.Namespace) -> int:
    try:
        service = _build_service(args)
        try:
            reports = service.status()
        finally:
            service.close()
    except DocweaveError as exc:
        _print_error(exc)
        return EXIT_FAILED
    if args.json:
        print(json.dumps([report.to_dict() for report in reports], ensure_ascii=False, indent=2))
    elif not reports:
        print("no tracked documents")
    else:
        for report in reports:
            version = f"v{report.version}" if report.version is not None else "unregistered"
            line = f"{report.path}: {report.status.value} ({version})"
            if report.reason:
                line += f" - {report.reason}"
            print(line)
    stale = sum(1 for report in reports if report.stale)
    record_structured_event(SETTINGS, "docweave.cli.status", payload={"documents": len(reports), "stale": stale})
    return 0


def _register_cmd(args: argparse.Namespace) -> int:
    try:
        service = _build_service(args)
        try:
            record = service.register_document(args.document, dependencies=args.dependency)
        finally:
            service.close()
    except DocweaveError as exc:
        _print_error(exc)
        record_structured_event(SETTINGS, "docweave.cli.register", status="failed", payload={"error": exc.code})
        return 1
    if args.json:
        print(json.dumps({"path": record.path, **record.to_dict()}, ensure_ascii=False, indent=2))
    else:
        print(f"registered {record.path} at version {record.version}")
    record_structured_event(SETTINGS, "docweave.cli.register", status="ok", payload={"path": record.path})
    return 0


def _unregister_cmd(args: argparse.Namespace) -> int:
    try:
        service = _build_service(args)
        try:
            record = service.unregister_document(args.document)
        finally:
            service.close()
    except DocweaveError as exc:
        _print_error(exc)
        record_structured_event(SETTINGS, "docweave.cli.unregister", status="failed", payload={"error": exc.code})
        return 1
    print(f"unregistered {record.path} (last version {record.version})")
    record_structured_event(SETTINGS, "docweave.cli.unregister", status="ok", payload={"path": record.path})
    return 0


def _history_cmd(args: argparse.Namespace) -> int:
    try:
        service = _build_service(args)
        try:
            entries = service.history(args.document)
        finally:
            service.close()
    except DocweaveError as exc:
        _print_error(exc)
        return EXIT_FAILED
    if args.limit and args.limit > 0:
        entries = entries[-args.limit:]
    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False, indent=2))
        return 0
    if not entries:
        print("no history recorded")
        return 0
    for entry in entries:
        conflicts = f", {entry.conflict_count} conflict(s)" if entry.conflict_count else ""
        print(
            f"[{entry.timestamp}] {entry.path}: v{entry.from_version} -> v{entry.to_version} "
            f"({entry.trigger}{conflicts})"
        )
    return 0


def _events_cmd(args: argparse.Namespace) -> int:
    events: Iterable[Dict[str, Any]]
    if args.last_run:
        events = [evt for evt in telemetry_last_run(SETTINGS) if not args.prefix or evt["event"].startswith(args.prefix)]
    else:
        events = telemetry_iter(SETTINGS, prefix=args.prefix)
    if args.recent and args.recent > 0:
        events = deque(events, maxlen=args.recent)
    selected: List[Dict[str, Any]] = list(events)
    if args.tail:
        for evt in selected:
            print(json.dumps(evt, ensure_ascii=False))
        return 0
    print(json.dumps(telemetry_summarize(selected), indent=2, ensure_ascii=False))
    return 0


def _add_project_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--path", help="Project root (default: current directory)")
    parser.add_argument("--config", help="Configuration file (default: .docweave/config.yaml)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docweave",
        description=HELP_OVERVIEW,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"docweave {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    update_cmd = sub.add_parser("update", help="Regenerate stale documents and merge them with on-disk edits")
    update_cmd.add_argument("project", nargs="?", help="Project root (same as --path)")
    _add_project_arguments(update_cmd)
    update_cmd.add_argument("--force", action="store_true", help="Update every selected document regardless of status")
    update_cmd.add_argument("--dry-run", action="store_true", help="Compute merges without writing files or the registry")
    update_cmd.add_argument(
        "--since",
        type=_parse_since,
        metavar="YYYY-MM-DD",
        help="Only update documents whose dependencies changed on or after this date",
    )
    update_cmd.add_argument(
        "--change-set",
        metavar="REF",
        help="Change description to analyse (JSON/YAML file or owner/repo#number)",
    )
    update_cmd.add_argument(
        "--document",
        action="append",
        default=[],
        metavar="PATH",
        help="Limit the run to this document (repeatable)",
    )
    update_cmd.add_argument("--json", action="store_true", help="Emit the run report as JSON")
    update_cmd.set_defaults(func=_update_cmd)

    status_cmd = sub.add_parser("status", help="Show staleness and drift of tracked documents")
    _add_project_arguments(status_cmd)
    status_cmd.add_argument("--json", action="store_true", help="Emit status as JSON")
    status_cmd.set_defaults(func=_status_cmd)

    register_cmd = sub.add_parser("register", help="Start tracking an existing document")
    register_cmd.add_argument("document", help="Document path relative to the project root")
    _add_project_arguments(register_cmd)
    register_cmd.add_argument(
        "--dependency",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Source path or glob the document depends on (repeatable)",
    )
    register_cmd.add_argument("--json", action="store_true", help="Emit the new record as JSON")
    register_cmd.set_defaults(func=_register_cmd)

    unregister_cmd = sub.add_parser("unregister", help="Stop tracking a document")
    unregister_cmd.add_argument("document", help="Document path relative to the project root")
    _add_project_arguments(unregister_cmd)
    unregister_cmd.set_defaults(func=_unregister_cmd)

    history_cmd = sub.add_parser("history", help="Show the version history of tracked documents")
    _add_project_arguments(history_cmd)
    history_cmd.add_argument("--document", help="Only show entries for this document")
    history_cmd.add_argument("--limit", type=int, default=0, help="Show the last N entries")
    history_cmd.add_argument("--json", action="store_true", help="Emit history as JSON")
    history_cmd.set_defaults(func=_history_cmd)

    events_cmd = sub.add_parser("events", help="Inspect local telemetry events")
    events_cmd.add_argument("--recent", type=int, default=0, help="Limit to the last N events")
    events_cmd.add_argument("--tail", action="store_true", help="Print raw events instead of a summary")
    events_cmd.add_argument("--prefix", help="Only include events whose name starts with this prefix")
    events_cmd.add_argument("--last-run", action="store_true", help="Only include events from the most recent update run")
    events_cmd.set_defaults(func=_events_cmd)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
