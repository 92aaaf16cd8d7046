"""Atomic document writes confirmed by reading the file back."""

from __future__ import annotations

import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import WriteNotConfirmedError


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


@dataclass(frozen=True)
class WriteResult:
    path: Path
    changed: bool
    content_hash: str


class DocumentWriter:
    """Reads and replaces document files without exposing partial writes."""

    def __init__(self, *, fsync: bool = True) -> None:
        self._fsync = fsync

    def read(self, path: Path) -> Optional[str]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        return data.decode("utf-8", errors="surrogatepass")

    def write(self, path: Path, text: str) -> WriteResult:
        data = ensure_trailing_newline(text)
        expected = content_hash(data)
        if self.read(path) == data:
            return WriteResult(path=path, changed=False, content_hash=expected)
        ensure_directory(path)
        atomic_write(path, data, fsync=self._fsync)
        self.confirm(path, expected)
        return WriteResult(path=path, changed=True, content_hash=expected)

    def confirm(self, path: Path, expected_hash: str) -> None:
        on_disk = self.read(path)
        if on_disk is None:
            raise WriteNotConfirmedError(f"{path} disappeared right after it was written")
        actual = content_hash(on_disk)
        if actual != expected_hash:
            raise WriteNotConfirmedError(
                f"{path} reads back with hash {actual[:12]}, expected {expected_hash[:12]}"
            )


def ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def atomic_write(path: Path, data: str, *, fsync: bool = True) -> None:
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data.encode("utf-8", errors="surrogatepass"))
            if fsync:
                fh.flush()
                os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def ensure_trailing_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


__all__ = [
    "DocumentWriter",
    "WriteResult",
    "atomic_write",
    "content_hash",
    "ensure_directory",
    "ensure_trailing_newline",
]
