"""Document registry: versions, content hashes and staleness."""

from __future__ import annotations

import copy
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import jsonschema

from docweave.resources import load_schema

from .editor import atomic_write, content_hash, ensure_directory
from .errors import AlreadyRegistered, NotRegistered, RegistryCommitError, RegistryCorruptionError

SCHEMA_VERSION = 1

REASON_DEPENDENCY_CHANGED = "dependency_changed"
REASON_AGE = "age"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DocumentStatus(str, Enum):
    CURRENT = "current"
    STALE = "stale"
    MISSING = "missing"
    DRIFT_DETECTED = "drift_detected"


@dataclass(frozen=True)
class DocumentRecord:
    path: str
    content_hash: str
    version: int
    last_updated: str
    dependencies: Tuple[str, ...] = ()
    preserved_section_titles: Tuple[str, ...] = ()

    @property
    def last_updated_at(self) -> datetime:
        return parse_timestamp(self.last_updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentHash": self.content_hash,
            "version": self.version,
            "lastUpdated": self.last_updated,
            "dependencies": list(self.dependencies),
            "preservedSectionTitles": list(self.preserved_section_titles),
        }

    @classmethod
    def from_dict(cls, path: str, payload: Dict[str, Any]) -> "DocumentRecord":
        return cls(
            path=path,
            content_hash=payload["contentHash"],
            version=int(payload["version"]),
            last_updated=payload["lastUpdated"],
            dependencies=tuple(payload.get("dependencies", [])),
            preserved_section_titles=tuple(payload.get("preservedSectionTitles", [])),
        )


@dataclass(frozen=True)
class VersionHistoryEntry:
    path: str
    from_version: int
    to_version: int
    timestamp: str
    conflict_count: int
    trigger: str
    content_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "fromVersion": self.from_version,
            "toVersion": self.to_version,
            "timestamp": self.timestamp,
            "conflictCount": self.conflict_count,
            "trigger": self.trigger,
            "contentHash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VersionHistoryEntry":
        return cls(
            path=payload["path"],
            from_version=int(payload["fromVersion"]),
            to_version=int(payload["toVersion"]),
            timestamp=payload["timestamp"],
            conflict_count=int(payload["conflictCount"]),
            trigger=payload["trigger"],
            content_hash=payload.get("contentHash"),
        )


@dataclass(frozen=True)
class StatusReport:
    path: str
    status: DocumentStatus
    stale: bool = False
    drift_detected: bool = False
    reason: Optional[str] = None
    dependency: Optional[str] = None
    version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status.value,
            "stale": self.stale,
            "driftDetected": self.drift_detected,
            "reason": self.reason,
            "dependency": self.dependency,
            "version": self.version,
        }


class RegistryStore(ABC):
    """Persistence backend for the registry payload."""

    @abstractmethod
    def read(self) -> Optional[Dict[str, Any]]:
        """Return the stored payload, or ``None`` when nothing was stored yet."""

    @abstractmethod
    def write(self, payload: Dict[str, Any]) -> None:
        """Replace the stored payload in one step."""


class JsonFileRegistryStore(RegistryStore):
    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RegistryCorruptionError(f"registry at {self.path} is unreadable: {exc}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RegistryCorruptionError(f"registry at {self.path} is not valid JSON: {exc}") from exc

    def write(self, payload: Dict[str, Any]) -> None:
        ensure_directory(self.path)
        atomic_write(self.path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


class MemoryRegistryStore(RegistryStore):
    def __init__(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self.payload = copy.deepcopy(payload)
        self.writes = 0

    def read(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.payload)

    def write(self, payload: Dict[str, Any]) -> None:
        self.payload = copy.deepcopy(payload)
        self.writes += 1


class DocumentRegistry:
    """Versioned records of generated documents.

    Every mutation runs under one lock and is persisted before it returns; when
    the store rejects the write the in-memory state is restored and
    :class:`RegistryCommitError` is raised.
    """

    def __init__(
        self,
        store: RegistryStore,
        *,
        records: Optional[Dict[str, DocumentRecord]] = None,
        history: Optional[List[VersionHistoryEntry]] = None,
        dependency_changes: Optional[Dict[str, str]] = None,
    ) -> None:
        self._store = store
        self._records: Dict[str, DocumentRecord] = dict(records or {})
        self._history: List[VersionHistoryEntry] = list(history or [])
        self._dependency_changes: Dict[str, str] = dict(dependency_changes or {})
        self._lock = threading.RLock()

    @classmethod
    def load(cls, store: RegistryStore) -> "DocumentRegistry":
        payload = store.read()
        if payload is None:
            return cls(store)
        try:
            jsonschema.Draft202012Validator(load_schema("registry")).validate(payload)
        except jsonschema.ValidationError as exc:
            raise RegistryCorruptionError(f"registry payload failed validation: {exc.message}") from exc
        try:
            records = {
                path: DocumentRecord.from_dict(path, entry)
                for path, entry in payload.get("documents", {}).items()
            }
            history = [VersionHistoryEntry.from_dict(entry) for entry in payload.get("history", [])]
            for record in records.values():
                parse_timestamp(record.last_updated)
            changes = dict(payload.get("dependencyChanges", {}))
            for value in changes.values():
                parse_timestamp(value)
        except (KeyError, TypeError, ValueError) as exc:
            raise RegistryCorruptionError(f"registry payload is inconsistent: {exc}") from exc
        return cls(store, records=records, history=history, dependency_changes=changes)

    def get(self, path: str) -> Optional[DocumentRecord]:
        with self._lock:
            return self._records.get(path)

    def records(self) -> List[DocumentRecord]:
        with self._lock:
            return [self._records[path] for path in sorted(self._records)]

    def history(self, path: Optional[str] = None) -> List[VersionHistoryEntry]:
        with self._lock:
            if path is None:
                return list(self._history)
            return [entry for entry in self._history if entry.path == path]

    def register(
        self,
        path: str,
        content: str,
        *,
        dependencies: Sequence[str] = (),
        preserved_section_titles: Sequence[str] = (),
        trigger: str = "register",
        conflict_count: int = 0,
        now: Optional[datetime] = None,
    ) -> DocumentRecord:
        with self._lock:
            if path in self._records:
                raise AlreadyRegistered(f"{path} is already registered")
            stamp = isoformat(now or utc_now())
            record = DocumentRecord(
                path=path,
                content_hash=content_hash(content),
                version=1,
                last_updated=stamp,
                dependencies=_unique(dependencies),
                preserved_section_titles=_unique(preserved_section_titles),
            )
            entry = VersionHistoryEntry(
                path=path,
                from_version=0,
                to_version=1,
                timestamp=stamp,
                conflict_count=conflict_count,
                trigger=trigger,
                content_hash=record.content_hash,
            )
            self._mutate(lambda: self._apply(record, entry))
            return record

    def unregister(self, path: str) -> DocumentRecord:
        with self._lock:
            record = self._require(path)
            self._mutate(lambda: self._records.pop(path))
            return record

    def commit(
        self,
        path: str,
        new_content: str,
        *,
        conflict_count: int = 0,
        trigger: str = "update",
        dependencies: Optional[Sequence[str]] = None,
        preserved_section_titles: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> DocumentRecord:
        """Record a content-changing write as the next version of ``path``."""

        with self._lock:
            current = self._require(path)
            stamp = isoformat(now or utc_now())
            record = replace(
                current,
                content_hash=content_hash(new_content),
                version=current.version + 1,
                last_updated=stamp,
                dependencies=current.dependencies if dependencies is None else _unique(dependencies),
                preserved_section_titles=(
                    current.preserved_section_titles
                    if preserved_section_titles is None
                    else _unique(preserved_section_titles)
                ),
            )
            entry = VersionHistoryEntry(
                path=path,
                from_version=current.version,
                to_version=record.version,
                timestamp=stamp,
                conflict_count=conflict_count,
                trigger=trigger,
                content_hash=record.content_hash,
            )
            self._mutate(lambda: self._apply(record, entry))
            return record

    def touch(
        self,
        path: str,
        *,
        dependencies: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> DocumentRecord:
        with self._lock:
            current = self._require(path)
            record = replace(
                current,
                last_updated=isoformat(now or utc_now()),
                dependencies=current.dependencies if dependencies is None else _unique(dependencies),
            )
            self._mutate(lambda: self._apply(record, None))
            return record

    def record_dependency_changes(self, identifiers: Iterable[str], when: Optional[datetime] = None) -> None:
        identifiers = _unique(identifiers)
        if not identifiers:
            return
        stamp = isoformat(when or utc_now())
        with self._lock:
            self._mutate(lambda: self._dependency_changes.update({identifier: stamp for identifier in identifiers}))

    def dependencies_changed_since(self, dependencies: Sequence[str], since: datetime) -> List[str]:
        """Return the recorded changes matching ``dependencies`` at or after ``since``."""

        with self._lock:
            changes = dict(self._dependency_changes)
        return [
            identifier
            for identifier, stamp in sorted(changes.items())
            if parse_timestamp(stamp) >= since and _matches_any(identifier, dependencies)
        ]

    def check_status(
        self,
        path: str,
        on_disk: Optional[str],
        *,
        age_threshold: Optional[timedelta],
        now: Optional[datetime] = None,
    ) -> StatusReport:
        record = self.get(path)
        if record is None or on_disk is None:
            return StatusReport(
                path=path,
                status=DocumentStatus.MISSING,
                version=record.version if record is not None else None,
            )
        now = now or utc_now()
        last_updated = record.last_updated_at
        drift = content_hash(on_disk) != record.content_hash

        reason = None
        dependency = self._changed_dependency(record.dependencies, after=last_updated)
        if dependency is not None:
            reason = REASON_DEPENDENCY_CHANGED
        elif age_threshold is not None and now - last_updated > age_threshold:
            reason = REASON_AGE

        if reason is not None:
            status = DocumentStatus.STALE
        elif drift:
            status = DocumentStatus.DRIFT_DETECTED
        else:
            status = DocumentStatus.CURRENT
        return StatusReport(
            path=path,
            status=status,
            stale=reason is not None,
            drift_detected=drift,
            reason=reason,
            dependency=dependency,
            version=record.version,
        )

    def to_payload(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "schemaVersion": SCHEMA_VERSION,
                "documents": {path: self._records[path].to_dict() for path in sorted(self._records)},
                "history": [entry.to_dict() for entry in self._history],
                "dependencyChanges": dict(sorted(self._dependency_changes.items())),
            }

    def _changed_dependency(self, dependencies: Sequence[str], *, after: datetime) -> Optional[str]:
        with self._lock:
            changes = dict(self._dependency_changes)
        latest: Optional[Tuple[datetime, str]] = None
        for identifier, stamp in changes.items():
            if not _matches_any(identifier, dependencies):
                continue
            changed_at = parse_timestamp(stamp)
            if changed_at > after and (latest is None or changed_at > latest[0]):
                latest = (changed_at, identifier)
        return latest[1] if latest is not None else None

    def _require(self, path: str) -> DocumentRecord:
        record = self._records.get(path)
        if record is None:
            raise NotRegistered(f"{path} is not registered")
        return record

    def _apply(self, record: DocumentRecord, entry: Optional[VersionHistoryEntry]) -> None:
        self._records[record.path] = record
        if entry is not None:
            self._history.append(entry)

    def _mutate(self, change) -> None:
        records = dict(self._records)
        history_size = len(self._history)
        dependency_changes = dict(self._dependency_changes)
        change()
        try:
            self._store.write(self.to_payload())
        except OSError as exc:
            self._records = records
            del self._history[history_size:]
            self._dependency_changes = dependency_changes
            raise RegistryCommitError(f"registry could not be persisted: {exc}") from exc


def _matches_any(identifier: str, patterns: Sequence[str]) -> bool:
    return any(identifier == pattern or fnmatchcase(identifier, pattern) for pattern in patterns)


def _unique(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return tuple(seen)


__all__ = [
    "DocumentRecord",
    "DocumentRegistry",
    "DocumentStatus",
    "JsonFileRegistryStore",
    "MemoryRegistryStore",
    "RegistryStore",
    "StatusReport",
    "VersionHistoryEntry",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]
