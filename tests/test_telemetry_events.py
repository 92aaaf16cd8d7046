from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest

from docweave.settings import RuntimeSettings
from docweave.utils.telemetry import iter_events, last_run, record_structured_event, summarize


def _settings(tmp_path: Path) -> RuntimeSettings:
    home = tmp_path / "home"
    return RuntimeSettings(home_dir=home, state_dir=home / "state", log_dir=home / "logs")


def test_events_are_appended_as_json_lines(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    record_structured_event(settings, "docweave.update.started", payload={"force": True}, component="update")
    record_structured_event(
        settings, "docweave.document.processed", level="warn", status="ok", correlation_id="abc", duration_ms=1.5
    )

    lines = settings.telemetry_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event"] == "docweave.update.started"
    assert first["payload"] == {"force": True}
    assert first["component"] == "update"
    events = list(iter_events(settings))
    assert events[1]["correlationId"] == "abc"
    assert summarize(events) == {
        "total": 2,
        "runs": 1,
        "by_event": {"docweave.update.started": 1, "docweave.document.processed": 1},
        "by_level": {"info": 1, "warn": 1},
        "by_component": {"update": 1},
        "error_codes": {},
    }


def test_invalid_events_are_rejected(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    with pytest.raises(ValueError):
        record_structured_event(settings, "", payload={})
    with pytest.raises(ValueError):
        record_structured_event(settings, "docweave.x", level="debug")
    with pytest.raises(ValueError):
        record_structured_event(settings, "docweave.x", duration_ms=-1)
    with pytest.raises(jsonschema.ValidationError):
        record_structured_event(settings, "docweave.x", correlation_id=123)  # type: ignore[arg-type]
    assert not settings.telemetry_file.exists()


def test_telemetry_can_be_disabled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _settings(tmp_path)
    monkeypatch.setenv("DOCWEAVE_TELEMETRY", "off")

    record_structured_event(settings, "docweave.update.started")

    assert list(iter_events(settings)) == []


def test_iter_events_skips_garbage_lines(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.telemetry_file.parent.mkdir(parents=True)
    settings.telemetry_file.write_text('{"event": "a", "level": "info"}\nnot json\n\n', encoding="utf-8")

    assert [evt["event"] for evt in iter_events(settings)] == ["a"]


def test_filters_and_last_run(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    record_structured_event(settings, "docweave.update.started", correlation_id="run-1")
    record_structured_event(
        settings,
        "docweave.document.failed",
        level="error",
        payload={"code": "DOC_UPDATE_FAILED"},
        correlation_id="run-2",
    )
    record_structured_event(settings, "docweave.cli.update")
    record_structured_event(settings, "docweave.update.finished", correlation_id="run-2")

    assert [evt["event"] for evt in iter_events(settings, prefix="docweave.update.")] == [
        "docweave.update.started",
        "docweave.update.finished",
    ]
    assert len(list(iter_events(settings, correlation_id="run-1"))) == 1
    latest = last_run(settings)
    assert [evt["event"] for evt in latest] == ["docweave.document.failed", "docweave.update.finished"]
    summary = summarize(latest)
    assert summary["runs"] == 1
    assert summary["error_codes"] == {"DOC_UPDATE_FAILED": 1}


def test_last_run_without_correlated_events(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    record_structured_event(settings, "docweave.cli.status")

    assert last_run(settings) == []
