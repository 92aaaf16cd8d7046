"""Structured JSONL telemetry for update runs.

Every event is one JSON object per line in ``<home>/logs/telemetry.jsonl``.
Records are checked against ``resources/telemetry.schema.json`` before they
are written, so a malformed call fails loudly in tests instead of leaving an
unreadable log behind. Set ``DOCWEAVE_TELEMETRY=0`` to switch recording off.
"""

from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional

import jsonschema

from docweave.resources import load_schema
from docweave.settings import RuntimeSettings

LEVELS = ("info", "warn", "error")
TELEMETRY_ENV = "DOCWEAVE_TELEMETRY"

_OFF = {"0", "false", "no", "off"}
_APPEND_LOCK = threading.Lock()
_validator: Optional[jsonschema.Draft202012Validator] = None


def telemetry_enabled() -> bool:
    return os.getenv(TELEMETRY_ENV, "1").strip().lower() not in _OFF


def record_structured_event(
    settings: RuntimeSettings,
    event: str,
    *,
    payload: dict[str, Any] | None = None,
    level: str = "info",
    status: str | None = None,
    component: str | None = None,
    correlation_id: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Append one event; raises ``ValueError``/``ValidationError`` on bad input."""

    if not telemetry_enabled():
        return
    record = _build_record(
        event,
        payload=payload,
        level=level,
        optional={
            "status": status,
            "component": component,
            "correlationId": correlation_id,
            "durationMs": duration_ms,
        },
    )
    _schema_validator().validate(record)
    line = json.dumps(record, ensure_ascii=False, default=str)
    target = settings.telemetry_file
    target.parent.mkdir(parents=True, exist_ok=True)
    with _APPEND_LOCK:
        with target.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def iter_events(
    settings: RuntimeSettings,
    *,
    prefix: str | None = None,
    correlation_id: str | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield recorded events in order, optionally filtered."""

    target = settings.telemetry_file
    if not target.exists():
        return
    with target.open("r", encoding="utf-8") as handle:
        for raw in handle:
            raw = raw.strip()
            if not raw:
                continue
            try:
                evt = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(evt, dict):
                continue
            if prefix and not str(evt.get("event", "")).startswith(prefix):
                continue
            if correlation_id and evt.get("correlationId") != correlation_id:
                continue
            yield evt


def last_run(settings: RuntimeSettings) -> List[dict[str, Any]]:
    """Events sharing the correlation id of the most recent correlated event."""

    events = list(iter_events(settings))
    latest = next((evt["correlationId"] for evt in reversed(events) if evt.get("correlationId")), None)
    if latest is None:
        return []
    return [evt for evt in events if evt.get("correlationId") == latest]


def summarize(events: Iterable[dict[str, Any]]) -> dict[str, Any]:
    total = 0
    by_event: Dict[str, int] = {}
    by_level: Dict[str, int] = {}
    by_component: Dict[str, int] = {}
    runs: set = set()
    error_codes: Dict[str, int] = {}
    for evt in events:
        total += 1
        _bump(by_event, evt.get("event", "unknown"))
        _bump(by_level, evt.get("level", "info"))
        if evt.get("component"):
            _bump(by_component, evt["component"])
        if evt.get("correlationId"):
            runs.add(evt["correlationId"])
        payload = evt.get("payload")
        code = payload.get("code") if isinstance(payload, dict) else None
        if evt.get("level") in ("warn", "error") and code:
            _bump(error_codes, code)
    return {
        "total": total,
        "runs": len(runs),
        "by_event": by_event,
        "by_level": by_level,
        "by_component": by_component,
        "error_codes": error_codes,
    }


def _bump(counter: Dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


def _build_record(
    event: str,
    *,
    payload: dict[str, Any] | None,
    level: str,
    optional: Dict[str, Any],
) -> dict[str, Any]:
    if not isinstance(event, str) or not event.strip():
        raise ValueError("telemetry event name must be a non-empty string")
    if payload is not None and not isinstance(payload, dict):
        raise ValueError("telemetry payload must be a mapping")
    if level not in LEVELS:
        raise ValueError(f"unsupported telemetry level '{level}' (expected one of {', '.join(LEVELS)})")
    duration = optional.get("durationMs")
    if duration is not None and (not isinstance(duration, (int, float)) or duration < 0):
        raise ValueError("telemetry durationMs must be a non-negative number")

    record: dict[str, Any] = {"ts": time.time(), "event": event, "payload": dict(payload or {}), "level": level}
    for key, value in optional.items():
        if value is None or value == "":
            continue
        record[key] = value
    return record


def _schema_validator() -> jsonschema.Draft202012Validator:
    global _validator
    if _validator is None:
        _validator = jsonschema.Draft202012Validator(load_schema("telemetry"))
    return _validator


__all__ = [
    "LEVELS",
    "iter_events",
    "last_run",
    "record_structured_event",
    "summarize",
    "telemetry_enabled",
]
