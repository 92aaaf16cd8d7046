"""Conflict precedence rules and inline conflict blocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .constants import DOCUMENT_CONFLICT_TITLE
from .sections import ParsedDocument, SectionMarker

CONFLICT_START = "<!-- docweave:conflict-start -->"
CONFLICT_ON_DISK = "<!-- docweave:on-disk -->"
CONFLICT_CANDIDATE = "<!-- docweave:candidate -->"
CONFLICT_END = "<!-- docweave:conflict-end -->"

REASON_BOTH_MODIFIED = "both-modified"
REASON_NO_BASELINE = "no-baseline"
REASON_UNRESOLVED = "unresolved"
REASON_UNPARSEABLE = "unparseable"
REASON_DOCUMENT_NO_UPDATE = "document-no-update"


@dataclass(frozen=True)
class Conflict:
    title: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "reason": self.reason}


def conflict_block(on_disk_body: str, candidate_body: str) -> str:
    """Render both competing bodies inside one conflict block."""

    lines: List[str] = [CONFLICT_START, CONFLICT_ON_DISK]
    if on_disk_body:
        lines.append(on_disk_body)
    lines.append(CONFLICT_CANDIDATE)
    if candidate_body:
        lines.append(candidate_body)
    lines.append(CONFLICT_END)
    return "\n".join(lines)


def has_conflict_block(body: str) -> bool:
    return split_conflict_block(body) is not None


def split_conflict_block(body: str) -> Optional[Tuple[str, str]]:
    """Return ``(on_disk, candidate)`` for the first complete block in ``body``.

    Text outside the block is attached to the on-disk side so a human note next
    to an unresolved block is not lost.
    """

    lines = body.replace("\r\n", "\n").split("\n")
    stripped = [line.strip() for line in lines]
    try:
        start = stripped.index(CONFLICT_START)
        ours_at = stripped.index(CONFLICT_ON_DISK, start + 1)
        theirs_at = stripped.index(CONFLICT_CANDIDATE, ours_at + 1)
        end = stripped.index(CONFLICT_END, theirs_at + 1)
    except ValueError:
        return None
    outside_before = lines[:start]
    outside_after = lines[end + 1 :]
    ours = outside_before + lines[ours_at + 1 : theirs_at] + outside_after
    theirs = lines[theirs_at + 1 : end]
    return _trim("\n".join(ours)), _trim("\n".join(theirs))


def candidate_side(body: str) -> str:
    sides = split_conflict_block(body)
    return sides[1] if sides is not None else body


def on_disk_side(body: str) -> str:
    sides = split_conflict_block(body)
    return sides[0] if sides is not None else body


class ConflictResolver:
    """Applies document-level precedence and renders section conflicts."""

    def suppresses(self, on_disk: Optional[ParsedDocument]) -> bool:
        return on_disk is not None and on_disk.document_marker is SectionMarker.NO_UPDATE

    def document_conflict(self) -> Conflict:
        return Conflict(DOCUMENT_CONFLICT_TITLE, REASON_DOCUMENT_NO_UPDATE)

    def resolve(self, title: str, reason: str, on_disk_body: str, candidate_body: str) -> Tuple[str, Conflict]:
        body = conflict_block(on_disk_side(on_disk_body), candidate_side(candidate_body))
        return body, Conflict(title, reason)


def _trim(text: str) -> str:
    return text.strip("\n")


__all__ = [
    "CONFLICT_CANDIDATE",
    "CONFLICT_END",
    "CONFLICT_ON_DISK",
    "CONFLICT_START",
    "Conflict",
    "ConflictResolver",
    "candidate_side",
    "conflict_block",
    "has_conflict_block",
    "on_disk_side",
    "split_conflict_block",
]
