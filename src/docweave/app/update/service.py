"""Application service orchestrating document updates."""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from docweave.adapters.content import build_content_source, render_fallback
from docweave.adapters.impact import build_change_impact_analyzer
from docweave.domain.documents.editor import DocumentWriter, content_hash, ensure_trailing_newline
from docweave.domain.documents.errors import (
    ChangeSetError,
    DocweaveError,
    GenerationError,
    RegistryCommitError,
    RegistryCorruptionError,
    RequestTimeoutError,
)
from docweave.domain.documents.merge import MergeEngine, MergeResult
from docweave.domain.documents.registry import (
    DocumentRecord,
    DocumentRegistry,
    DocumentStatus,
    JsonFileRegistryStore,
    RegistryStore,
    StatusReport,
    VersionHistoryEntry,
    isoformat,
    utc_now,
)
from docweave.domain.documents.sections import parse_lenient
from docweave.domain.documents.snapshots import SnapshotStore
from docweave.domain.documents.value_objects import DocumentSpec, UpdateConfig, UpdateConfigError
from docweave.ports.change_impact import ChangeImpactAnalyzer, ChangeSet
from docweave.ports.content_source import ContentSource
from docweave.settings import RuntimeSettings, load_settings
from docweave.utils.config import load_update_config
from docweave.utils.telemetry import record_structured_event

from .queue import RequestQueue
from .report import UpdateReportWriter
from .results import DocumentOutcome, DocumentUpdateResult, UpdateRunResult

COMPONENT = "update"

FALLBACK_LAST_CANDIDATE = "last_candidate"
FALLBACK_TEMPLATE = "fallback_template"
FALLBACK_PLACEHOLDER = "placeholder"


class DocumentUpdateService:
    """Drives stale documents through generate, merge, write and commit.

    Documents are processed on a bounded worker pool. Updates of the same path
    are serialized on a per-path lock, so a second request always merges
    against the text the first one committed.
    """

    def __init__(
        self,
        project_root: Path,
        config: UpdateConfig,
        *,
        content_source: ContentSource,
        analyzer: Optional[ChangeImpactAnalyzer] = None,
        registry_store: Optional[RegistryStore] = None,
        queue: Optional[RequestQueue] = None,
        writer: Optional[DocumentWriter] = None,
        snapshots: Optional[SnapshotStore] = None,
        merge_engine: Optional[MergeEngine] = None,
        report_writer: Optional[UpdateReportWriter] = None,
        settings: Optional[RuntimeSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._root = project_root
        self._config = config
        self._content_source = content_source
        self._analyzer = analyzer
        self._store = registry_store or JsonFileRegistryStore(config.registry_path(project_root))
        self._queue = queue or RequestQueue.from_config(config.request_queue)
        self._writer = writer or DocumentWriter()
        self._snapshots = snapshots or SnapshotStore(config.state_path(project_root) / "snapshots")
        self._engine = merge_engine or MergeEngine()
        self._reports = report_writer or UpdateReportWriter(config.report_path(project_root))
        self._settings = settings or load_settings()
        self._clock = clock
        self._registry: Optional[DocumentRegistry] = None
        self._registry_lock = threading.Lock()
        self._path_locks: Dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()
        self._correlation_id: Optional[str] = None

    @classmethod
    def from_project(
        cls,
        project_root: Path,
        *,
        config: Optional[UpdateConfig] = None,
        config_path: Optional[Path] = None,
        session: requests.Session | None = None,
        settings: Optional[RuntimeSettings] = None,
    ) -> "DocumentUpdateService":
        if config is None:
            config, _ = load_update_config(project_root, config_path)
        content_source = build_content_source(project_root, config.content_source, session=session)
        analyzer = build_change_impact_analyzer(
            project_root, config.change_impact, config.documents, session=session
        )
        return cls(project_root, config, content_source=content_source, analyzer=analyzer, settings=settings)

    @property
    def config(self) -> UpdateConfig:
        return self._config

    @property
    def registry(self) -> DocumentRegistry:
        with self._registry_lock:
            if self._registry is None:
                self._registry = DocumentRegistry.load(self._store)
            return self._registry

    def reload_registry(self) -> DocumentRegistry:
        with self._registry_lock:
            self._registry = DocumentRegistry.load(self._store)
            return self._registry

    def close(self) -> None:
        self._queue.close()

    # ------------------------------------------------------------------ runs

    def update(
        self,
        *,
        force: bool = False,
        dry_run: bool = False,
        since: Optional[datetime] = None,
        change_set_ref: Optional[str] = None,
        documents: Optional[Sequence[str]] = None,
        write_report: bool = True,
    ) -> UpdateRunResult:
        started = time.perf_counter()
        self._correlation_id = uuid.uuid4().hex
        run = UpdateRunResult(
            generated_at=isoformat(self._clock()),
            project_root=self._root,
            dry_run=dry_run,
            force=force,
            since=isoformat(since) if since is not None else None,
        )
        self._event(
            "update.started",
            {"force": force, "dryRun": dry_run, "since": run.since, "changeSet": change_set_ref},
        )
        try:
            self.reload_registry()
            if change_set_ref:
                run.change_set = self._resolve_change_set(change_set_ref, dry_run=dry_run)
            specs = self._select(documents, since=since, change_set=run.change_set)
        except (RegistryCorruptionError, UpdateConfigError, ChangeSetError, RegistryCommitError) as exc:
            run.fatal_error = exc.to_dict()
            self._event("update.aborted", exc.to_dict(), level="error", status="failed")
        else:
            run.documents = self._run_pool(specs, force=force, dry_run=dry_run, change_set=run.change_set)

        run.queue = self._queue.status()
        run.duration_ms = (time.perf_counter() - started) * 1000
        if write_report:
            self._reports.write(run)
        self._event(
            "update.finished",
            {"summary": run.counts(), "exitCode": run.exit_code},
            level="error" if run.exit_code == 2 else "warn" if run.exit_code == 1 else "info",
            status="ok" if run.exit_code == 0 else "failed",
            duration_ms=run.duration_ms,
        )
        return run

    def update_document(
        self,
        path: str,
        *,
        force: bool = False,
        dry_run: bool = False,
        change_set: Optional[ChangeSet] = None,
    ) -> DocumentUpdateResult:
        """Update one document; per-document failures come back as ``FAILED`` results."""

        return self._update_isolated(self._spec_for(path), force=force, dry_run=dry_run, change_set=change_set)

    def status(self) -> List[StatusReport]:
        reports: List[StatusReport] = []
        now = self._clock()
        for spec in self._known_specs():
            on_disk = self._writer.read(spec.resolve_path(self._root))
            reports.append(
                self.registry.check_status(
                    spec.path, on_disk, age_threshold=self._config.age_threshold, now=now
                )
            )
        return reports

    def history(self, path: Optional[str] = None) -> List[VersionHistoryEntry]:
        return self.registry.history(self._spec_for(path).path if path else None)

    def register_document(self, path: str, *, dependencies: Sequence[str] = ()) -> DocumentRecord:
        """Start tracking an existing file; its current text becomes the baseline."""

        spec = self._spec_for(path)
        target = spec.resolve_path(self._root)
        with self._lock_for(spec.path):
            text = self._writer.read(target)
            if text is None:
                raise DocweaveError(f"{target} does not exist", code="DOC_FILE_MISSING")
            parsed = parse_lenient(text)
            record = self.registry.register(
                spec.path,
                text,
                dependencies=list(spec.dependencies) + list(dependencies),
                preserved_section_titles=parsed.protected_titles(),
                now=self._clock(),
            )
            self._snapshots.store_baseline(spec.path, text)
        self._event("document.registered", {"path": spec.path, "version": record.version})
        return record

    def unregister_document(self, path: str) -> DocumentRecord:
        spec = self._spec_for(path)
        with self._lock_for(spec.path):
            record = self.registry.unregister(spec.path)
            self._snapshots.forget(spec.path)
        self._event("document.unregistered", {"path": spec.path, "version": record.version})
        return record

    # ------------------------------------------------------------- internals

    def _run_pool(
        self,
        specs: Sequence[DocumentSpec],
        *,
        force: bool,
        dry_run: bool,
        change_set: Optional[ChangeSet],
    ) -> List[DocumentUpdateResult]:
        if not specs:
            return []
        workers = min(self._config.workers, len(specs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="docweave-update") as pool:
            futures = [
                pool.submit(self._update_isolated, spec, force=force, dry_run=dry_run, change_set=change_set)
                for spec in specs
            ]
            return [future.result() for future in futures]

    def _update_isolated(
        self,
        spec: DocumentSpec,
        *,
        force: bool,
        dry_run: bool,
        change_set: Optional[ChangeSet],
    ) -> DocumentUpdateResult:
        started = time.perf_counter()
        try:
            result = self._update(spec, force=force, dry_run=dry_run, change_set=change_set)
        except DocweaveError as exc:
            result = self._failed(spec, exc.to_dict())
        except Exception as exc:  # noqa: BLE001 - one document must not sink the batch
            result = self._failed(
                spec, {"code": "DOC_UPDATE_FAILED", "message": f"{type(exc).__name__}: {exc}", "remediation": None}
            )
        level = "error" if result.outcome is DocumentOutcome.FAILED else "warn" if result.warnings else "info"
        self._event(
            "document.processed",
            {
                "path": result.path,
                "outcome": result.outcome.value,
                "trigger": result.trigger,
                "versionBefore": result.version_before,
                "versionAfter": result.version_after,
                "conflicts": result.conflict_count,
                "fallback": result.fallback_source,
                "error": result.error,
            },
            level=level,
            status="failed" if result.outcome is DocumentOutcome.FAILED else "ok",
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return result

    def _failed(self, spec: DocumentSpec, error: Dict[str, Any]) -> DocumentUpdateResult:
        record = self._registry.get(spec.path) if self._registry is not None else None
        version = record.version if record is not None else None
        return DocumentUpdateResult(
            path=spec.path,
            outcome=DocumentOutcome.FAILED,
            version_before=version,
            version_after=version,
            error=error,
        )

    def _update(
        self,
        spec: DocumentSpec,
        *,
        force: bool,
        dry_run: bool,
        change_set: Optional[ChangeSet],
    ) -> DocumentUpdateResult:
        registry = self.registry
        target = spec.resolve_path(self._root)
        with self._lock_for(spec.path):
            now = self._clock()
            on_disk = self._writer.read(target)
            record = registry.get(spec.path)
            status = registry.check_status(spec.path, on_disk, age_threshold=self._config.age_threshold, now=now)
            in_change_set = change_set is not None and spec.path in change_set.impacted_documents
            trigger = _trigger(status, force=force, in_change_set=in_change_set)
            result = DocumentUpdateResult(
                path=spec.path,
                outcome=DocumentOutcome.SKIPPED,
                status=status,
                trigger=trigger,
                version_before=record.version if record is not None else None,
                version_after=record.version if record is not None else None,
            )
            if status.drift_detected:
                self._event("document.drift", {"path": spec.path, "version": status.version}, level="warn")
            if trigger is None:
                return result

            candidate, fallback_source = self._candidate(spec, change_set)
            result.fallback_source = fallback_source
            merge = self._engine.merge(self._snapshots.baseline(spec.path), candidate, on_disk)
            result.merge = merge
            result.warnings.extend(merge.warnings)
            for warning in merge.warnings:
                self._event("document.parse_recovered", {"path": spec.path, "detail": warning}, level="warn")
            missing = _missing_preserved(record, on_disk)
            if missing:
                result.warnings.append("preserved sections no longer present: " + ", ".join(missing))
                self._event(
                    "document.preserved_missing", {"path": spec.path, "titles": missing}, level="warn"
                )

            if dry_run:
                result.outcome = DocumentOutcome.PLANNED
                return result

            final_text = ensure_trailing_newline(merge.merged_text)
            if record is not None and on_disk == final_text and content_hash(final_text) == record.content_hash:
                registry.touch(spec.path, dependencies=spec.dependencies or None, now=now)
                self._store_snapshots(spec.path, candidate, fallback_source)
                result.outcome = DocumentOutcome.UNCHANGED
                return result

            if on_disk != final_text:
                self._writer.write(target, final_text)
            self._store_snapshots(spec.path, candidate, fallback_source)
            committed = self._commit(spec, record, final_text, merge, trigger, now)
            result.version_after = committed.version
            result.outcome = DocumentOutcome.CREATED if record is None else DocumentOutcome.UPDATED
            return result

    def _commit(
        self,
        spec: DocumentSpec,
        record: Optional[DocumentRecord],
        text: str,
        merge: MergeResult,
        trigger: str,
        now: datetime,
    ) -> DocumentRecord:
        registry = self.registry
        dependencies = spec.dependencies or (record.dependencies if record is not None else ())

        def _apply() -> DocumentRecord:
            if record is None:
                return registry.register(
                    spec.path,
                    text,
                    dependencies=dependencies,
                    preserved_section_titles=merge.preserved_titles,
                    trigger=trigger,
                    conflict_count=len(merge.inline_conflicts),
                    now=now,
                )
            return registry.commit(
                spec.path,
                text,
                conflict_count=len(merge.inline_conflicts),
                trigger=trigger,
                dependencies=dependencies,
                preserved_section_titles=merge.preserved_titles,
                now=now,
            )

        try:
            return _apply()
        except RegistryCommitError as exc:
            self._event("registry.commit_retry", {"path": spec.path, "error": exc.message}, level="warn")
            return _apply()

    def _candidate(self, spec: DocumentSpec, change_set: Optional[ChangeSet]) -> Tuple[str, Optional[str]]:
        context = _generation_context(spec, change_set)
        try:
            text = self._queue.submit(
                self._content_source.generate,
                spec.doc_type,
                context,
                timeout=self._config.request_queue.timeout_seconds,
            )
            return text, None
        except RequestTimeoutError as exc:
            error = GenerationError(f"content source timed out for {spec.path}: {exc.message}")
        except GenerationError as exc:
            error = exc

        self._event("document.generation_failed", {"path": spec.path, **error.to_dict()}, level="warn")
        last = self._snapshots.candidate(spec.path)
        if last:
            return last, FALLBACK_LAST_CANDIDATE
        if spec.fallback_template:
            template_path = Path(spec.fallback_template)
            if not template_path.is_absolute():
                template_path = self._root / template_path
            try:
                template = template_path.read_text(encoding="utf-8")
            except OSError as exc:
                self._event(
                    "document.fallback_template_unreadable",
                    {"path": spec.path, "template": str(template_path), "error": str(exc)},
                    level="warn",
                )
            else:
                return render_fallback(spec.doc_type, context, template), FALLBACK_TEMPLATE
        return render_fallback(spec.doc_type, context), FALLBACK_PLACEHOLDER

    def _store_snapshots(self, path: str, candidate: str, fallback_source: Optional[str]) -> None:
        self._snapshots.store_baseline(path, candidate)
        if fallback_source is None:
            self._snapshots.store_candidate(path, candidate)

    def _resolve_change_set(self, ref: str, *, dry_run: bool) -> ChangeSet:
        if self._analyzer is None:
            raise ChangeSetError(f"no change impact analyzer configured to resolve '{ref}'")
        try:
            change_set = self._queue.submit(
                self._analyzer.analyze, ref, timeout=self._config.request_queue.timeout_seconds
            )
        except RequestTimeoutError as exc:
            raise ChangeSetError(f"change set '{ref}' could not be resolved: {exc.message}") from exc
        if not dry_run:
            self.registry.record_dependency_changes(change_set.changed_sources, when=self._clock())
        self._event(
            "update.change_set",
            {
                "ref": change_set.ref,
                "riskLevel": change_set.risk_level.value,
                "impacted": list(change_set.impacted_documents),
                "changedSources": len(change_set.changed_sources),
            },
        )
        return change_set

    def _select(
        self,
        documents: Optional[Sequence[str]],
        *,
        since: Optional[datetime],
        change_set: Optional[ChangeSet],
    ) -> List[DocumentSpec]:
        if documents:
            specs = [self._spec_for(path) for path in documents]
        else:
            specs = self._known_specs()
        if since is None:
            return specs
        impacted = set(change_set.impacted_documents) if change_set is not None else set()
        return [
            spec
            for spec in specs
            if spec.path in impacted
            or self.registry.dependencies_changed_since(self._dependencies(spec), since)
        ]

    def _known_specs(self) -> List[DocumentSpec]:
        specs = list(self._config.documents)
        configured = {spec.path for spec in specs}
        for record in self.registry.records():
            if record.path not in configured:
                specs.append(DocumentSpec.from_dict({"path": record.path}, index=len(specs)))
        return specs

    def _spec_for(self, path: str) -> DocumentSpec:
        relative = _relative_path(self._root, path)
        spec = self._config.document(relative)
        if spec is not None:
            return spec
        return DocumentSpec.from_dict({"path": relative}, index=0)

    def _dependencies(self, spec: DocumentSpec) -> Sequence[str]:
        if spec.dependencies:
            return spec.dependencies
        record = self.registry.get(spec.path)
        return record.dependencies if record is not None else ()

    def _lock_for(self, path: str) -> threading.Lock:
        with self._path_locks_guard:
            lock = self._path_locks.get(path)
            if lock is None:
                lock = self._path_locks[path] = threading.Lock()
            return lock

    def _event(
        self,
        event: str,
        payload: Dict[str, Any],
        *,
        level: str = "info",
        status: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ) -> None:
        record_structured_event(
            self._settings,
            f"docweave.{event}",
            payload=payload,
            level=level,
            status=status,
            component=COMPONENT,
            correlation_id=self._correlation_id,
            duration_ms=duration_ms,
        )


def _trigger(status: StatusReport, *, force: bool, in_change_set: bool) -> Optional[str]:
    if force:
        return "force"
    if in_change_set:
        return "change_set"
    if status.status is DocumentStatus.MISSING:
        return "missing"
    if status.stale:
        return status.reason or "stale"
    return None


def _missing_preserved(record: Optional[DocumentRecord], on_disk: Optional[str]) -> List[str]:
    if record is None or not record.preserved_section_titles or on_disk is None:
        return []
    present = {section.title for section in parse_lenient(on_disk).sections}
    return [title for title in record.preserved_section_titles if title not in present]


def _generation_context(spec: DocumentSpec, change_set: Optional[ChangeSet]) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(spec.context)
    context.setdefault("path", spec.path)
    context.setdefault("dependencies", list(spec.dependencies))
    if change_set is not None:
        context.setdefault("change_ref", change_set.ref)
        context.setdefault("risk_level", change_set.risk_level.value)
        context.setdefault("rationale", change_set.rationale)
    return context


def _relative_path(root: Path, path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            candidate = candidate.resolve().relative_to(root.resolve())
        except ValueError:
            return candidate.as_posix()
    return candidate.as_posix()


__all__ = ["DocumentUpdateService"]
