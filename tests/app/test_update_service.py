from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest

from docweave.app.update import DocumentOutcome, DocumentUpdateService, RequestQueue
from docweave.domain.documents.editor import content_hash
from docweave.domain.documents.errors import DocweaveError, GenerationError
from docweave.domain.documents.registry import MemoryRegistryStore, RegistryStore
from docweave.domain.documents.sections import normalize
from docweave.domain.documents.value_objects import DocumentSpec, QueueConfig, UpdateConfig
from docweave.ports.change_impact import ChangeImpactAnalyzer, ChangeSet, RiskLevel
from docweave.ports.content_source import ContentSource
from docweave.settings import RuntimeSettings
from docweave.utils.telemetry import iter_events

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

GUIDE = "# Guide\n\n## Intro\n\nOld intro.\n\n## Custom\n\n<!-- preserve -->\nHand notes.\n"
API_V1 = "# API\n\n## Endpoints\n\nGET /users\n\n## Usage\n\nCall it.\n"
API_V2 = "# API\n\n## Endpoints\n\nGET /users\nPOST /users\n\n## Usage\n\nCall it.\n"


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubSource(ContentSource):
    def __init__(self, texts: Mapping[str, Any]) -> None:
        self.texts: Dict[str, Any] = dict(texts)
        self.calls: List[str] = []

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        self.calls.append(doc_type)
        value = self.texts[doc_type]
        if isinstance(value, Exception):
            raise value
        return value


class CountingSource(ContentSource):
    def __init__(self) -> None:
        self.count = 0
        self._lock = threading.Lock()

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        with self._lock:
            self.count += 1
            run = self.count
        return f"# Guide\n\n## Intro\n\nRun {run}.\n"


class BlockingSource(ContentSource):
    def __init__(self) -> None:
        self.release = threading.Event()

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        self.release.wait(timeout=5)
        return "# Late\n"


class SlowSource(ContentSource):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        time.sleep(self.seconds)
        return API_V1


class FlakySource(ContentSource):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise GenerationError("content service answered 503", retryable=True)
        return API_V1


class FailingStore(MemoryRegistryStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.failed_writes = 0

    def write(self, payload: Dict[str, Any]) -> None:
        if self.fail:
            self.failed_writes += 1
            raise OSError("registry volume is read-only")
        super().write(payload)


class StubAnalyzer(ChangeImpactAnalyzer):
    def __init__(self, change_set: ChangeSet) -> None:
        self.change_set = change_set
        self.refs: List[str] = []

    def analyze(self, ref: str) -> ChangeSet:
        self.refs.append(ref)
        return self.change_set


def make_settings(base: Path) -> RuntimeSettings:
    home = base / "home"
    return RuntimeSettings(home_dir=home, state_dir=home / "state", log_dir=home / "logs")


def make_service(
    root: Path,
    source: ContentSource,
    *,
    documents: Optional[List[Dict[str, Any]]] = None,
    clock: Optional[Clock] = None,
    timeout: float = 5.0,
    analyzer: Optional[ChangeImpactAnalyzer] = None,
    queue: Optional[RequestQueue] = None,
    registry_store: Optional[RegistryStore] = None,
) -> DocumentUpdateService:
    entries = documents or [{"path": "docs/API.md", "doc_type": "api", "dependencies": ["src/api/*"]}]
    config = UpdateConfig(
        documents=tuple(DocumentSpec.from_dict(entry, index=index) for index, entry in enumerate(entries)),
        request_queue=QueueConfig(min_delay_seconds=0.0, timeout_seconds=timeout),
    )
    return DocumentUpdateService(
        root,
        config,
        content_source=source,
        analyzer=analyzer,
        registry_store=registry_store,
        queue=queue or RequestQueue(min_delay=0.0),
        settings=make_settings(root),
        clock=clock or Clock(),
    )


def _guide_service(root: Path, source: ContentSource, clock: Optional[Clock] = None) -> DocumentUpdateService:
    target = root / "docs" / "GUIDE.md"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(GUIDE, encoding="utf-8")
    service = make_service(root, source, documents=[{"path": "docs/GUIDE.md"}], clock=clock)
    service.register_document("docs/GUIDE.md")
    return service


def test_first_run_creates_document_and_report(tmp_path: Path) -> None:
    service = make_service(tmp_path, StubSource({"api": API_V1}))

    run = service.update()

    assert run.exit_code == 0
    [doc] = run.documents
    assert doc.outcome is DocumentOutcome.CREATED
    assert doc.trigger == "missing"
    assert doc.version_after == 1
    written = (tmp_path / "docs" / "API.md").read_text(encoding="utf-8")
    assert written == normalize(API_V1)
    assert service.registry.get("docs/API.md").content_hash == content_hash(written)

    report = json.loads((tmp_path / "reports" / "docweave" / "update.json").read_text(encoding="utf-8"))
    assert report["summary"]["created"] == 1
    assert report["documents"][0]["outcome"] == "created"
    assert (tmp_path / "reports" / "docweave" / "update.md").exists()
    assert len(list((tmp_path / "reports" / "docweave" / "history").glob("*.json"))) == 1
    service.close()


def test_rerun_is_idempotent(tmp_path: Path) -> None:
    service = make_service(tmp_path, StubSource({"api": API_V1}))
    service.update()
    before = (tmp_path / "docs" / "API.md").read_text(encoding="utf-8")

    skipped = service.update()
    forced = service.update(force=True)

    assert skipped.documents[0].outcome is DocumentOutcome.SKIPPED
    assert forced.documents[0].outcome is DocumentOutcome.UNCHANGED
    assert forced.documents[0].version_after == 1
    assert (tmp_path / "docs" / "API.md").read_text(encoding="utf-8") == before
    assert len(service.registry.history("docs/API.md")) == 1
    service.close()


def test_human_edit_survives_regeneration_and_versions_increase(tmp_path: Path) -> None:
    source = StubSource({"api": API_V1})
    service = make_service(tmp_path, source)
    service.update()
    target = tmp_path / "docs" / "API.md"
    target.write_text(normalize(API_V1).replace("Call it.", "Call it with a token."), encoding="utf-8")
    source.texts["api"] = API_V2

    run = service.update(force=True)
    again = service.update(force=True)

    text = target.read_text(encoding="utf-8")
    assert run.documents[0].outcome is DocumentOutcome.UPDATED
    assert "POST /users" in text
    assert "Call it with a token." in text
    assert run.documents[0].merge.sections_kept == ("usage",)
    assert again.documents[0].outcome is DocumentOutcome.UNCHANGED
    versions = [(entry.from_version, entry.to_version) for entry in service.registry.history("docs/API.md")]
    assert versions == [(0, 1), (1, 2)]
    assert service.registry.get("docs/API.md").content_hash == content_hash(text)
    service.close()


def test_preserved_section_dropped_by_candidate_is_kept(tmp_path: Path) -> None:
    source = StubSource({"guide": "# Guide\n\n## Intro\n\nNew intro.\n"})
    service = _guide_service(tmp_path, source)

    run = service.update(force=True)

    [doc] = run.documents
    assert doc.outcome is DocumentOutcome.UPDATED
    assert (doc.version_before, doc.version_after) == (1, 2)
    assert doc.merge.sections_preserved == ("custom",)
    assert doc.merge.sections_removed == ()
    text = (tmp_path / "docs" / "GUIDE.md").read_text(encoding="utf-8")
    assert text == "# Guide\n\n## Intro\n\nNew intro.\n\n## Custom\n\n<!-- preserve -->\nHand notes.\n"
    service.close()


def test_conflicting_edit_is_recorded_and_still_committed(tmp_path: Path) -> None:
    source = StubSource({"guide": "# Guide\n\n## Intro\n\nNew intro.\n"})
    service = _guide_service(tmp_path, source)
    target = tmp_path / "docs" / "GUIDE.md"
    target.write_text(GUIDE.replace("Old intro.", "Edited intro."), encoding="utf-8")

    run = service.update(force=True)

    [doc] = run.documents
    assert doc.version_after == 2
    assert doc.conflict_count == 1
    assert doc.drift_detected
    text = target.read_text(encoding="utf-8")
    assert "Edited intro." in text and "New intro." in text
    assert "<!-- docweave:conflict-start -->" in text
    assert service.registry.history("docs/GUIDE.md")[-1].conflict_count == 1
    assert run.counts()["conflicts"] == 1
    assert run.exit_code == 0
    service.close()


def test_dry_run_on_stale_document_writes_nothing(tmp_path: Path) -> None:
    clock = Clock()
    source = StubSource({"guide": "# Guide\n\n## Intro\n\nNew intro.\n"})
    service = _guide_service(tmp_path, source, clock=clock)
    clock.advance(days=31)

    run = service.update(dry_run=True)

    [doc] = run.documents
    assert doc.outcome is DocumentOutcome.PLANNED
    assert doc.trigger == "age"
    assert doc.merge is not None and "intro" in doc.merge.sections_updated
    assert (tmp_path / "docs" / "GUIDE.md").read_text(encoding="utf-8") == GUIDE
    assert service.registry.get("docs/GUIDE.md").version == 1
    assert len(service.registry.history()) == 1
    service.close()


def test_concurrent_updates_of_one_path_are_serialized(tmp_path: Path) -> None:
    service = _guide_service(tmp_path, CountingSource())
    results = []

    def _worker() -> None:
        results.append(service.update_document("docs/GUIDE.md", force=True))

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(result.version_after for result in results) == [2, 3]
    text = (tmp_path / "docs" / "GUIDE.md").read_text(encoding="utf-8")
    assert "Run 2." in text
    assert "Hand notes." in text
    assert service.registry.get("docs/GUIDE.md").content_hash == content_hash(text)
    service.close()


def test_timed_out_source_falls_back_to_placeholder(tmp_path: Path) -> None:
    source = BlockingSource()
    service = make_service(tmp_path, source, timeout=0.05)
    try:
        run = service.update()
    finally:
        source.release.set()
        service.close()

    [doc] = run.documents
    assert run.exit_code == 0
    assert doc.outcome is DocumentOutcome.CREATED
    assert doc.fallback_source == "placeholder"
    assert run.counts()["fallbacks"] == 1
    assert "waiting for regeneration" in (tmp_path / "docs" / "API.md").read_text(encoding="utf-8")
    events = [evt["event"] for evt in iter_events(make_settings(tmp_path))]
    assert "docweave.document.generation_failed" in events


def test_generation_failure_reuses_last_good_candidate(tmp_path: Path) -> None:
    source = StubSource({"api": API_V1})
    service = make_service(tmp_path, source)
    service.update()
    source.texts["api"] = GenerationError("service down")

    run = service.update(force=True)

    assert run.documents[0].fallback_source == "last_candidate"
    assert run.documents[0].outcome is DocumentOutcome.UNCHANGED
    service.close()


def test_generation_failure_uses_configured_fallback_template(tmp_path: Path) -> None:
    template = tmp_path / "templates" / "fallback.md"
    template.parent.mkdir(parents=True)
    template.write_text("# ${title}\n\nFallback body for ${path}.\n", encoding="utf-8")
    source = StubSource({"api": GenerationError("service down")})
    documents = [{"path": "docs/API.md", "doc_type": "api", "fallback_template": "templates/fallback.md"}]
    service = make_service(tmp_path, source, documents=documents)

    run = service.update()

    assert run.documents[0].fallback_source == "fallback_template"
    text = (tmp_path / "docs" / "API.md").read_text(encoding="utf-8")
    assert "Fallback body for docs/API.md." in text
    service.close()


def test_one_failing_document_does_not_sink_the_batch(tmp_path: Path) -> None:
    source = StubSource({"api": API_V1, "broken": ValueError("boom")})
    documents = [{"path": "docs/API.md", "doc_type": "api"}, {"path": "docs/BROKEN.md", "doc_type": "broken"}]
    service = make_service(tmp_path, source, documents=documents)

    run = service.update()

    outcomes = {doc.path: doc.outcome for doc in run.documents}
    assert outcomes == {"docs/API.md": DocumentOutcome.CREATED, "docs/BROKEN.md": DocumentOutcome.FAILED}
    assert run.exit_code == 1
    [failed] = run.failed()
    assert failed.error["code"] == "DOC_UPDATE_FAILED"
    assert not (tmp_path / "docs" / "BROKEN.md").exists()
    service.close()


def test_corrupt_registry_aborts_the_run(tmp_path: Path) -> None:
    registry = tmp_path / ".docweave" / "registry.json"
    registry.parent.mkdir(parents=True)
    registry.write_text("{broken", encoding="utf-8")
    service = make_service(tmp_path, StubSource({"api": API_V1}))

    run = service.update()

    assert run.exit_code == 2
    assert run.documents == []
    assert run.fatal_error["code"] == "REGISTRY_CORRUPTED"
    assert not (tmp_path / "docs" / "API.md").exists()
    report = json.loads((tmp_path / "reports" / "docweave" / "update.json").read_text(encoding="utf-8"))
    assert report["recommendations"][0]["type"] == "run_aborted"
    service.close()


def test_change_set_triggers_impacted_documents(tmp_path: Path) -> None:
    clock = Clock()
    source = StubSource({"api": API_V1, "web": "# Web\n"})
    documents = [
        {"path": "docs/API.md", "doc_type": "api", "dependencies": ["src/api/*"]},
        {"path": "docs/WEB.md", "doc_type": "web", "dependencies": ["src/web/*"]},
    ]
    change_set = ChangeSet(
        impacted_documents=("docs/API.md",),
        risk_level=RiskLevel.HIGH,
        rationale="1 file(s) changed",
        changed_sources=("src/api/users.py",),
        ref="changes.json",
    )
    analyzer = StubAnalyzer(change_set)
    service = make_service(tmp_path, source, documents=documents, clock=clock, analyzer=analyzer)
    service.update()
    clock.advance(hours=1)
    source.texts["api"] = API_V2

    run = service.update(change_set_ref="changes.json")

    outcomes = {doc.path: (doc.outcome, doc.trigger) for doc in run.documents}
    assert outcomes["docs/API.md"] == (DocumentOutcome.UPDATED, "change_set")
    assert outcomes["docs/WEB.md"] == (DocumentOutcome.SKIPPED, None)
    assert analyzer.refs == ["changes.json"]
    assert run.change_set is change_set
    assert service.registry.dependencies_changed_since(["src/api/*"], clock.now) == ["src/api/users.py"]
    service.close()


def test_since_limits_run_to_documents_with_recent_dependency_changes(tmp_path: Path) -> None:
    clock = Clock()
    source = StubSource({"api": API_V1, "web": "# Web\n"})
    documents = [
        {"path": "docs/API.md", "doc_type": "api", "dependencies": ["src/api/*"]},
        {"path": "docs/WEB.md", "doc_type": "web", "dependencies": ["src/web/*"]},
    ]
    service = make_service(tmp_path, source, documents=documents, clock=clock)
    service.update()
    clock.advance(days=1)
    service.registry.record_dependency_changes(["src/api/users.py"], when=clock.now)
    source.texts["api"] = API_V2

    run = service.update(since=clock.now - timedelta(hours=1))

    assert [doc.path for doc in run.documents] == ["docs/API.md"]
    assert run.documents[0].trigger == "dependency_changed"
    assert run.documents[0].outcome is DocumentOutcome.UPDATED
    service.close()


def test_register_and_unregister_existing_file(tmp_path: Path) -> None:
    service = _guide_service(tmp_path, StubSource({}))

    record = service.registry.get("docs/GUIDE.md")
    assert record.version == 1
    assert record.preserved_section_titles == ("custom",)
    assert [status.status.value for status in service.status()] == ["current"]

    removed = service.unregister_document("docs/GUIDE.md")
    assert removed.version == 1
    assert service.registry.get("docs/GUIDE.md") is None
    with pytest.raises(DocweaveError) as excinfo:
        service.register_document("docs/MISSING.md")
    assert excinfo.value.code == "DOC_FILE_MISSING"
    service.close()


def test_update_emits_structured_events(tmp_path: Path) -> None:
    service = make_service(tmp_path, StubSource({"api": API_V1}))
    service.update()
    service.close()

    events = list(iter_events(make_settings(tmp_path)))
    names = [evt["event"] for evt in events]
    assert names[0] == "docweave.update.started"
    assert "docweave.document.processed" in names
    assert names[-1] == "docweave.update.finished"
    assert len({evt.get("correlationId") for evt in events}) == 1


def test_time_spent_waiting_for_the_queue_does_not_trigger_fallbacks(tmp_path: Path) -> None:
    documents = [{"path": f"docs/D{index}.md", "doc_type": "api"} for index in range(3)]
    service = make_service(tmp_path, SlowSource(0.4), documents=documents, timeout=1.0)

    run = service.update()
    service.close()

    assert run.exit_code == 0
    assert [doc.fallback_source for doc in run.documents] == [None, None, None]
    assert run.queue["timedOut"] == 0
    assert run.queue["multiplier"] == 1.0


def test_transient_generation_error_is_retried(tmp_path: Path) -> None:
    source = FlakySource(failures=1)
    service = make_service(tmp_path, source, queue=RequestQueue(min_delay=0.0, max_retries=2))

    run = service.update()
    service.close()

    [doc] = run.documents
    assert doc.outcome is DocumentOutcome.CREATED
    assert doc.fallback_source is None
    assert source.calls == 2
    assert run.queue["retried"] == 1


def test_exhausted_retries_fall_back_to_placeholder(tmp_path: Path) -> None:
    source = FlakySource(failures=10)
    service = make_service(tmp_path, source, queue=RequestQueue(min_delay=0.0, max_retries=1))

    run = service.update()
    service.close()

    [doc] = run.documents
    assert run.exit_code == 0
    assert doc.fallback_source == "placeholder"
    assert source.calls == 2


def test_registry_commit_failure_after_write_is_isolated_and_flagged_as_drift(tmp_path: Path) -> None:
    store = FailingStore()
    source = StubSource({"api": API_V1})
    service = make_service(tmp_path, source, registry_store=store)
    assert service.update().exit_code == 0

    source.texts["api"] = API_V2
    store.fail = True
    run = service.update(force=True)

    [doc] = run.documents
    assert run.exit_code == 1
    assert doc.outcome is DocumentOutcome.FAILED
    assert doc.error["code"] == "REGISTRY_COMMIT_FAILED"
    assert doc.version_after == 1
    assert store.failed_writes == 2
    assert "POST /users" in (tmp_path / "docs" / "API.md").read_text(encoding="utf-8")

    store.fail = False
    followup = service.update()
    service.close()

    [again] = followup.documents
    assert again.outcome is DocumentOutcome.SKIPPED
    assert again.drift_detected
    assert again.to_dict()["driftDetected"] is True
    assert followup.counts()["drift"] == 1
    assert service.registry.get("docs/API.md").version == 1
    names = [evt["event"] for evt in iter_events(make_settings(tmp_path))]
    assert "docweave.registry.commit_retry" in names


def test_malformed_markers_are_recovered_without_sinking_the_batch(tmp_path: Path) -> None:
    broken = tmp_path / "docs" / "BROKEN.md"
    broken.parent.mkdir(parents=True)
    broken.write_text("# Broken\n\n<!-- manual-edit -->\nmine\n", encoding="utf-8")
    documents = [{"path": "docs/BROKEN.md", "doc_type": "api"}, {"path": "docs/API.md", "doc_type": "api"}]
    service = make_service(tmp_path, StubSource({"api": API_V1}), documents=documents)

    run = service.update()
    service.close()

    assert run.exit_code == 0
    by_path = {doc.path: doc for doc in run.documents}
    assert by_path["docs/API.md"].outcome is DocumentOutcome.CREATED
    recovered = by_path["docs/BROKEN.md"]
    assert recovered.outcome is DocumentOutcome.CREATED
    assert recovered.conflict_count == 1
    assert any("opaque section" in warning for warning in recovered.warnings)
    assert "mine" in broken.read_text(encoding="utf-8")
    events = [
        evt for evt in iter_events(make_settings(tmp_path)) if evt["event"] == "docweave.document.parse_recovered"
    ]
    assert [evt["payload"]["path"] for evt in events] == ["docs/BROKEN.md"]
    assert events[0]["level"] == "warn"


def test_document_level_do_not_update_is_suppressed_not_conflicted(tmp_path: Path) -> None:
    frozen = "<!-- do not update -->\n# API\n\n## Endpoints\n\nHand-maintained.\n"
    target = tmp_path / "docs" / "API.md"
    target.parent.mkdir(parents=True)
    target.write_text(frozen, encoding="utf-8")
    service = make_service(tmp_path, StubSource({"api": API_V2}))

    run = service.update()
    service.close()

    [doc] = run.documents
    assert doc.suppressed
    assert doc.conflict_count == 0
    assert run.counts()["suppressed"] == 1
    assert run.counts()["conflicts"] == 0
    assert target.read_text(encoding="utf-8") == frozen
    assert service.registry.history("docs/API.md")[-1].conflict_count == 0
