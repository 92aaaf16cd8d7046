"""Domain primitives for tracked documents and section merging."""

from __future__ import annotations

from .conflicts import Conflict, ConflictResolver, conflict_block, split_conflict_block
from .editor import DocumentWriter, WriteResult, content_hash
from .errors import (
    AlreadyRegistered,
    ChangeSetError,
    DocweaveError,
    GenerationError,
    NotRegistered,
    ParseError,
    RegistryCommitError,
    RegistryCorruptionError,
    RequestTimeoutError,
    WriteNotConfirmedError,
)
from .merge import MergeEngine, MergeResult
from .registry import (
    DocumentRecord,
    DocumentRegistry,
    DocumentStatus,
    JsonFileRegistryStore,
    MemoryRegistryStore,
    RegistryStore,
    StatusReport,
    VersionHistoryEntry,
)
from .sections import ParsedDocument, Section, SectionMarker, normalize, parse, parse_lenient, render
from .snapshots import SnapshotStore

__all__ = [
    "AlreadyRegistered",
    "ChangeSetError",
    "Conflict",
    "ConflictResolver",
    "DocumentRecord",
    "DocumentRegistry",
    "DocumentStatus",
    "DocumentWriter",
    "DocweaveError",
    "GenerationError",
    "JsonFileRegistryStore",
    "MemoryRegistryStore",
    "MergeEngine",
    "MergeResult",
    "NotRegistered",
    "ParseError",
    "ParsedDocument",
    "RegistryCommitError",
    "RegistryCorruptionError",
    "RegistryStore",
    "RequestTimeoutError",
    "Section",
    "SectionMarker",
    "SnapshotStore",
    "StatusReport",
    "VersionHistoryEntry",
    "WriteNotConfirmedError",
    "WriteResult",
    "conflict_block",
    "content_hash",
    "normalize",
    "parse",
    "parse_lenient",
    "render",
    "split_conflict_block",
]
