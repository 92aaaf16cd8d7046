"""Three-way section merge between baseline, candidate and on-disk text."""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .conflicts import (
    REASON_BOTH_MODIFIED,
    REASON_DOCUMENT_NO_UPDATE,
    REASON_NO_BASELINE,
    REASON_UNPARSEABLE,
    REASON_UNRESOLVED,
    Conflict,
    ConflictResolver,
    candidate_side,
    conflict_block,
    split_conflict_block,
)
from .constants import OPAQUE_SECTION_TITLE, PREAMBLE_TITLE
from .sections import ParsedDocument, Section, comparable, parse_lenient, render, render_parts

TAKE_CANDIDATE = "updated"
KEEP_ON_DISK = "kept"
CONFLICT = "conflict"


@dataclass(frozen=True)
class MergeResult:
    merged_text: str
    sections_preserved: Tuple[str, ...] = ()
    sections_updated: Tuple[str, ...] = ()
    sections_added: Tuple[str, ...] = ()
    sections_removed: Tuple[str, ...] = ()
    sections_kept: Tuple[str, ...] = ()
    conflicts: Tuple[Conflict, ...] = ()
    preserved_titles: Tuple[str, ...] = ()
    lines_added: int = 0
    lines_removed: int = 0
    warnings: Tuple[str, ...] = ()

    @property
    def needs_review(self) -> bool:
        return bool(self.conflicts)

    @property
    def suppressed(self) -> bool:
        """True when a document-level `do not update` left the file untouched."""
        return any(conflict.reason == REASON_DOCUMENT_NO_UPDATE for conflict in self.conflicts)

    @property
    def inline_conflicts(self) -> Tuple[Conflict, ...]:
        return tuple(conflict for conflict in self.conflicts if conflict.reason != REASON_DOCUMENT_NO_UPDATE)

    def to_dict(self) -> Dict[str, object]:
        return {
            "sectionsPreserved": list(self.sections_preserved),
            "sectionsUpdated": list(self.sections_updated),
            "sectionsAdded": list(self.sections_added),
            "sectionsRemoved": list(self.sections_removed),
            "sectionsKept": list(self.sections_kept),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "preservedTitles": list(self.preserved_titles),
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
            "warnings": list(self.warnings),
        }


@dataclass
class _Outcome:
    sections: List[Section] = field(default_factory=list)
    preserved: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)


class MergeEngine:
    """Reconcile a fresh rendering with the file a human may have edited.

    Precedence, per section key:

    * a ``preserve``/``no-update`` marker on disk keeps the on-disk section verbatim;
    * when both sides moved away from the baseline the section becomes a conflict block;
    * when only the on-disk side moved the human edit is kept;
    * otherwise the candidate wins.
    """

    def __init__(self, resolver: Optional[ConflictResolver] = None) -> None:
        self.resolver = resolver or ConflictResolver()

    def merge(
        self,
        baseline_text: Optional[str],
        candidate_text: str,
        on_disk_text: Optional[str],
    ) -> MergeResult:
        candidate = parse_lenient(candidate_text)
        warnings = _parse_warnings("candidate", candidate)

        if on_disk_text is None:
            merged = render(candidate)
            added = [section.title for section in candidate.sections]
            if candidate.preamble:
                added.insert(0, PREAMBLE_TITLE)
            return self._result(merged, "", _Outcome(added=added), candidate, warnings)

        on_disk = parse_lenient(on_disk_text)
        warnings += _parse_warnings("on-disk", on_disk)

        if self.resolver.suppresses(on_disk):
            return MergeResult(
                merged_text=on_disk_text,
                conflicts=(self.resolver.document_conflict(),),
                preserved_titles=tuple(on_disk.protected_titles()),
                warnings=tuple(warnings),
            )

        if on_disk.opaque:
            merged = render_parts("", [_whole_document_conflict(on_disk, candidate)])
            outcome = _Outcome(conflicts=[Conflict(OPAQUE_SECTION_TITLE, REASON_UNPARSEABLE)])
            return self._result(merged, on_disk_text, outcome, None, warnings)

        baseline = parse_lenient(baseline_text) if baseline_text is not None else None
        if baseline is not None:
            warnings += _parse_warnings("baseline", baseline)

        outcome = _Outcome()
        preamble = self._merge_preamble(baseline, candidate, on_disk, outcome)
        self._merge_sections(baseline, candidate, on_disk, outcome)
        merged = render_parts(preamble, outcome.sections)
        merged_doc = parse_lenient(merged)
        return self._result(merged, on_disk_text, outcome, merged_doc, warnings)

    def _merge_preamble(
        self,
        baseline: Optional[ParsedDocument],
        candidate: ParsedDocument,
        on_disk: ParsedDocument,
        outcome: _Outcome,
    ) -> str:
        if on_disk.preamble_marker.protected:
            outcome.preserved.append(PREAMBLE_TITLE)
            return on_disk.preamble
        if not on_disk.preamble:
            if candidate.preamble:
                outcome.added.append(PREAMBLE_TITLE)
            return candidate.preamble
        if not candidate.preamble:
            outcome.removed.append(PREAMBLE_TITLE)
            return ""
        base = baseline.preamble if baseline is not None and baseline.preamble else None
        decision, reason = self._decide(base, on_disk.preamble, candidate.preamble)
        if decision == KEEP_ON_DISK:
            outcome.kept.append(PREAMBLE_TITLE)
            return on_disk.preamble
        if decision == CONFLICT:
            body, conflict = self.resolver.resolve(PREAMBLE_TITLE, reason, on_disk.preamble, candidate.preamble)
            outcome.conflicts.append(conflict)
            return body
        outcome.updated.append(PREAMBLE_TITLE)
        return candidate.preamble

    def _merge_sections(
        self,
        baseline: Optional[ParsedDocument],
        candidate: ParsedDocument,
        on_disk: ParsedDocument,
        outcome: _Outcome,
    ) -> None:
        base_sections = baseline.by_key() if baseline is not None else {}
        disk_sections = on_disk.by_key()

        for section in candidate.sections:
            disk = disk_sections.get(section.key)
            if disk is None:
                outcome.sections.append(section)
                outcome.added.append(section.title)
                continue
            if disk.marker.protected:
                outcome.sections.append(disk)
                outcome.preserved.append(disk.title)
                continue
            base = base_sections.get(section.key)
            decision, reason = self._decide(base.body if base is not None else None, disk.body, section.body)
            if decision == KEEP_ON_DISK:
                outcome.sections.append(disk)
                outcome.kept.append(disk.title)
            elif decision == CONFLICT:
                body, conflict = self.resolver.resolve(section.title, reason, disk.body, section.body)
                outcome.sections.append(section.with_body(body))
                outcome.conflicts.append(conflict)
            else:
                outcome.sections.append(section)
                outcome.updated.append(section.title)

        candidate_keys = {section.key for section in candidate.sections}
        anchor: Optional[str] = None
        top = 0
        for disk in on_disk.sections:
            if disk.key in candidate_keys:
                anchor = disk.key
                continue
            if not disk.marker.protected:
                outcome.removed.append(disk.title)
                continue
            if anchor is None:
                position = top
                top += 1
            else:
                position = _index_of(outcome.sections, anchor) + 1
            outcome.sections.insert(position, disk)
            outcome.preserved.append(disk.title)
            anchor = disk.key

    def _decide(self, base: Optional[str], ours: str, theirs: str) -> Tuple[str, str]:
        theirs_cmp = comparable(candidate_side(theirs))
        sides = split_conflict_block(ours)
        if sides is not None:
            if comparable(sides[0]) == theirs_cmp:
                return TAKE_CANDIDATE, ""
            return CONFLICT, REASON_UNRESOLVED

        ours_cmp = comparable(ours)
        if ours_cmp == theirs_cmp:
            return TAKE_CANDIDATE, ""
        if base is None:
            return CONFLICT, REASON_NO_BASELINE
        base_cmp = comparable(candidate_side(base))
        if ours_cmp == base_cmp:
            return TAKE_CANDIDATE, ""
        if theirs_cmp == base_cmp:
            return KEEP_ON_DISK, ""
        return CONFLICT, REASON_BOTH_MODIFIED

    def _result(
        self,
        merged: str,
        previous: str,
        outcome: _Outcome,
        merged_doc: Optional[ParsedDocument],
        warnings: List[str],
    ) -> MergeResult:
        added, removed = line_delta(previous, merged)
        preserved_titles: Tuple[str, ...] = ()
        if merged_doc is not None and not merged_doc.opaque:
            preserved_titles = tuple(merged_doc.protected_titles())
        return MergeResult(
            merged_text=merged,
            sections_preserved=tuple(outcome.preserved),
            sections_updated=tuple(outcome.updated),
            sections_added=tuple(outcome.added),
            sections_removed=tuple(outcome.removed),
            sections_kept=tuple(outcome.kept),
            conflicts=tuple(outcome.conflicts),
            preserved_titles=preserved_titles,
            lines_added=added,
            lines_removed=removed,
            warnings=tuple(warnings),
        )


def line_delta(before: str, after: str) -> Tuple[int, int]:
    """Count added and removed lines between two texts."""

    added = removed = 0
    diff = difflib.ndiff(before.splitlines(), after.splitlines())
    for line in diff:
        if line.startswith("+ "):
            added += 1
        elif line.startswith("- "):
            removed += 1
    return added, removed


def _whole_document_conflict(on_disk: ParsedDocument, candidate: ParsedDocument) -> Section:
    opaque = on_disk.sections[0]
    candidate_text = render(candidate).rstrip("\n")
    sides = split_conflict_block(opaque.body)
    human = sides[0] if sides is not None else opaque.body
    return opaque.with_body(conflict_block(human, candidate_text))


def _parse_warnings(label: str, document: ParsedDocument) -> List[str]:
    if document.parse_error is None:
        return []
    return [f"{label} text treated as one opaque section: {document.parse_error.message}"]


def _index_of(sections: List[Section], key: str) -> int:
    for index, section in enumerate(sections):
        if section.key == key:
            return index
    return -1


__all__ = ["MergeEngine", "MergeResult", "line_delta"]
