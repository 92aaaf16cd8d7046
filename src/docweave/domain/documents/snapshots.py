"""Content-addressed baselines and last good candidates per document."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Optional

from .editor import atomic_write, content_hash, ensure_directory

INDEX_FILE = "index.json"


class SnapshotStore:
    """Keeps the texts the merge engine needs between runs.

    ``baseline`` is the generator side of the last commit for a document and
    ``candidate`` the last rendering the content source produced successfully.
    Texts live under ``blobs/<sha256>.md``; ``index.json`` maps document paths
    to hashes.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    def baseline(self, path: str) -> Optional[str]:
        return self._load("baseline", path)

    def candidate(self, path: str) -> Optional[str]:
        return self._load("candidate", path)

    def store_baseline(self, path: str, text: str) -> str:
        return self._store("baseline", path, text)

    def store_candidate(self, path: str, text: str) -> str:
        return self._store("candidate", path, text)

    def forget(self, path: str) -> None:
        with self._lock:
            index = self._read_index()
            if index.pop(path, None) is not None:
                self._write_index(index)

    def _load(self, kind: str, path: str) -> Optional[str]:
        with self._lock:
            digest = self._read_index().get(path, {}).get(kind)
        if not digest:
            return None
        blob = self._blob_path(digest)
        if not blob.exists():
            return None
        return blob.read_bytes().decode("utf-8", errors="surrogatepass")

    def _store(self, kind: str, path: str, text: str) -> str:
        digest = content_hash(text)
        blob = self._blob_path(digest)
        with self._lock:
            if not blob.exists():
                ensure_directory(blob)
                atomic_write(blob, text)
            index = self._read_index()
            index.setdefault(path, {})[kind] = digest
            self._write_index(index)
        return digest

    def _blob_path(self, digest: str) -> Path:
        return self.root / "blobs" / f"{digest}.md"

    def _read_index(self) -> Dict[str, Dict[str, str]]:
        if not self.index_path.exists():
            return {}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def _write_index(self, index: Dict[str, Dict[str, str]]) -> None:
        ensure_directory(self.index_path)
        atomic_write(self.index_path, json.dumps(index, ensure_ascii=False, indent=2, sort_keys=True) + "\n")


__all__ = ["SnapshotStore"]
