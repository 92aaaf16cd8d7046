from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from docweave.domain.documents.editor import content_hash
from docweave.domain.documents.errors import (
    AlreadyRegistered,
    NotRegistered,
    RegistryCommitError,
    RegistryCorruptionError,
)
from docweave.domain.documents.registry import (
    DocumentRegistry,
    DocumentStatus,
    JsonFileRegistryStore,
    MemoryRegistryStore,
    RegistryStore,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStore(RegistryStore):
    def __init__(self) -> None:
        self.payload: Optional[Dict[str, Any]] = None
        self.fail = False

    def read(self) -> Optional[Dict[str, Any]]:
        return self.payload

    def write(self, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise OSError("disk full")
        self.payload = payload


def test_register_then_commit_increments_version() -> None:
    store = MemoryRegistryStore()
    registry = DocumentRegistry.load(store)

    first = registry.register("docs/API.md", "v1\n", dependencies=["src/api/*"], now=T0)
    second = registry.commit("docs/API.md", "v2\n", conflict_count=1, trigger="force", now=T0 + timedelta(hours=1))

    assert first.version == 1
    assert second.version == 2
    assert second.content_hash == content_hash("v2\n")
    assert second.dependencies == ("src/api/*",)
    assert store.writes == 2
    history = registry.history("docs/API.md")
    assert [(entry.from_version, entry.to_version) for entry in history] == [(0, 1), (1, 2)]
    assert history[-1].conflict_count == 1
    assert history[-1].trigger == "force"


def test_register_twice_and_commit_unknown_fail() -> None:
    registry = DocumentRegistry.load(MemoryRegistryStore())
    registry.register("docs/API.md", "text\n")

    with pytest.raises(AlreadyRegistered):
        registry.register("docs/API.md", "text\n")
    with pytest.raises(NotRegistered):
        registry.commit("docs/OTHER.md", "text\n")


def test_failed_persist_rolls_back_state() -> None:
    store = FlakyStore()
    registry = DocumentRegistry.load(store)
    registry.register("docs/API.md", "v1\n", now=T0)
    store.fail = True

    with pytest.raises(RegistryCommitError):
        registry.commit("docs/API.md", "v2\n", now=T0)

    record = registry.get("docs/API.md")
    assert record.version == 1
    assert record.content_hash == content_hash("v1\n")
    assert len(registry.history()) == 1
    assert store.payload["documents"]["docs/API.md"]["version"] == 1


def test_touch_refreshes_timestamp_without_new_version() -> None:
    registry = DocumentRegistry.load(MemoryRegistryStore())
    registry.register("docs/API.md", "v1\n", now=T0)

    touched = registry.touch("docs/API.md", now=T0 + timedelta(days=40))

    assert touched.version == 1
    assert touched.last_updated_at == T0 + timedelta(days=40)
    assert len(registry.history()) == 1


def test_check_status_covers_every_state() -> None:
    registry = DocumentRegistry.load(MemoryRegistryStore())
    registry.register("docs/API.md", "v1\n", dependencies=["src/api/*"], now=T0)
    threshold = timedelta(days=30)

    missing = registry.check_status("docs/API.md", None, age_threshold=threshold, now=T0)
    current = registry.check_status("docs/API.md", "v1\n", age_threshold=threshold, now=T0)
    drift = registry.check_status("docs/API.md", "edited\n", age_threshold=threshold, now=T0)
    aged = registry.check_status("docs/API.md", "v1\n", age_threshold=threshold, now=T0 + timedelta(days=31))
    unknown = registry.check_status("docs/NEW.md", "x\n", age_threshold=threshold, now=T0)

    assert missing.status is DocumentStatus.MISSING
    assert current.status is DocumentStatus.CURRENT and not current.stale
    assert drift.status is DocumentStatus.DRIFT_DETECTED and drift.drift_detected
    assert aged.status is DocumentStatus.STALE and aged.reason == "age"
    assert unknown.status is DocumentStatus.MISSING and unknown.version is None


def test_dependency_change_after_last_update_marks_stale() -> None:
    registry = DocumentRegistry.load(MemoryRegistryStore())
    registry.register("docs/API.md", "v1\n", dependencies=["src/api/*"], now=T0)
    registry.record_dependency_changes(["src/web/app.js"], when=T0 + timedelta(hours=1))

    assert not registry.check_status("docs/API.md", "v1\n", age_threshold=None, now=T0).stale

    registry.record_dependency_changes(["src/api/users.py"], when=T0 + timedelta(hours=2))
    report = registry.check_status("docs/API.md", "edited\n", age_threshold=None, now=T0)

    assert report.status is DocumentStatus.STALE
    assert report.reason == "dependency_changed"
    assert report.dependency == "src/api/users.py"
    assert report.drift_detected


def test_dependencies_changed_since_filters_by_date() -> None:
    registry = DocumentRegistry.load(MemoryRegistryStore())
    registry.record_dependency_changes(["src/api/old.py"], when=T0)
    registry.record_dependency_changes(["src/api/new.py"], when=T0 + timedelta(days=5))

    changed = registry.dependencies_changed_since(["src/api/*"], T0 + timedelta(days=1))

    assert changed == ["src/api/new.py"]


def test_json_store_round_trip(tmp_path: Path) -> None:
    path = tmp_path / ".docweave" / "registry.json"
    registry = DocumentRegistry.load(JsonFileRegistryStore(path))
    registry.register("docs/API.md", "v1\n", preserved_section_titles=["notes"], now=T0)

    reloaded = DocumentRegistry.load(JsonFileRegistryStore(path))

    assert reloaded.get("docs/API.md") == registry.get("docs/API.md")
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["documents"]["docs/API.md"]["lastUpdated"] == "2024-03-01T12:00:00Z"
    assert payload["documents"]["docs/API.md"]["preservedSectionTitles"] == ["notes"]


def test_corrupt_registry_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RegistryCorruptionError):
        DocumentRegistry.load(JsonFileRegistryStore(path))
    with pytest.raises(RegistryCorruptionError):
        DocumentRegistry.load(MemoryRegistryStore({"documents": "nope", "history": []}))
    with pytest.raises(RegistryCorruptionError):
        DocumentRegistry.load(
            MemoryRegistryStore(
                {
                    "documents": {
                        "docs/API.md": {"contentHash": "0" * 64, "version": 1, "lastUpdated": "yesterday"}
                    },
                    "history": [],
                }
            )
        )
