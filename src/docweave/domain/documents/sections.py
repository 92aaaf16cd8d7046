"""Structured section parser for generated markdown documents.

A document is split into a preamble (front matter and any text before the first
heading) followed by a flat, ordered list of sections, one per ATX heading.
Preservation sentinels are detected once, at parse time, and attached to each
section as a :class:`SectionMarker`.

Canonical form (see :func:`normalize`): LF line endings, no blank lines at the
start or end of a chunk, one blank line between the heading and its body, one
blank line between chunks, a single trailing newline.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .constants import OPAQUE_SECTION_TITLE
from .errors import ParseError

HEADING_RE = re.compile(r"^(#{1,6})(?:[ \t]+(.*?))?[ \t]*$")
FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
SENTINEL_RE = re.compile(r"<!--(.*?)-->")
CLOSING_HASHES_RE = re.compile(r"(?:^|[ \t]+)#+$")
FRONT_MATTER_FENCE = "---"

SINGLE_PRESERVE = frozenset({"preserve", "custom content"})
SINGLE_NO_UPDATE = frozenset({"do not update"})
TOGGLE_SENTINELS = frozenset({"manual-edit"})
PAIRED_SENTINELS: Dict[str, str] = {
    "preserve_start": "preserve_end",
    "manual_edit_start": "manual_edit_end",
    "custom_content": "end_custom_content",
}
PAIRED_CLOSERS: Dict[str, str] = {closer: opener for opener, closer in PAIRED_SENTINELS.items()}

UNTITLED_KEY = "(untitled)"


class SectionMarker(str, Enum):
    NONE = "none"
    PRESERVE = "preserve"
    NO_UPDATE = "no-update"

    @property
    def protected(self) -> bool:
        return self is not SectionMarker.NONE


@dataclass(frozen=True)
class Section:
    """One heading and the raw text up to the next heading."""

    level: int
    title: str
    key: str
    heading: str
    body: str
    marker: SectionMarker = SectionMarker.NONE
    line: int = 0

    @property
    def text(self) -> str:
        if not self.heading:
            return self.body
        if not self.body:
            return self.heading
        return f"{self.heading}\n\n{self.body}"

    def with_body(self, body: str) -> "Section":
        return replace(self, body=_trim_blank_lines(body.split("\n")))


@dataclass(frozen=True)
class ParsedDocument:
    preamble: str
    sections: Tuple[Section, ...]
    preamble_marker: SectionMarker = SectionMarker.NONE
    document_marker: SectionMarker = SectionMarker.NONE
    opaque: bool = False
    parse_error: Optional[ParseError] = None

    def by_key(self) -> Dict[str, Section]:
        return {section.key: section for section in self.sections}

    def keys(self) -> List[str]:
        return [section.key for section in self.sections]

    def protected_titles(self) -> List[str]:
        return [section.title for section in self.sections if section.marker.protected]


@dataclass
class _Chunk:
    heading: Optional[str] = None
    level: int = 0
    raw_title: str = ""
    line: int = 0
    lines: List[str] = field(default_factory=list)
    hints: set = field(default_factory=set)


def normalize_title(raw: str) -> str:
    """Case-fold a heading, dropping sentinels and closing hashes."""

    text = SENTINEL_RE.sub(" ", raw)
    text = CLOSING_HASHES_RE.sub("", text.strip())
    return " ".join(text.split()).casefold()


def sentinel_token(inner: str) -> str:
    return " ".join(inner.split()).lower()


def comparable(body: str) -> str:
    """Body text with surrounding blank lines and trailing spaces removed."""

    lines = [line.rstrip() for line in body.replace("\r\n", "\n").split("\n")]
    return _trim_blank_lines(lines)


def parse(text: str) -> ParsedDocument:
    """Split ``text`` into preamble and sections.

    Raises :class:`ParseError` when paired sentinels are unbalanced.
    """

    lines = text.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    chunks: List[_Chunk] = [_Chunk()]
    fence: Optional[str] = None
    open_pairs: List[Tuple[str, int]] = []
    index = 0

    front_matter_end = _front_matter_end(lines)
    if front_matter_end:
        chunks[0].lines.extend(lines[:front_matter_end])
        for number, line in enumerate(lines[:front_matter_end], start=1):
            for inner in SENTINEL_RE.findall(line):
                _apply_sentinel(sentinel_token(inner), chunks[0], open_pairs, number)
        index = front_matter_end

    while index < len(lines):
        line = lines[index]
        number = index + 1
        index += 1
        current = chunks[-1]

        if fence is not None:
            current.lines.append(line)
            stripped = line.strip()
            if stripped.startswith(fence) and set(stripped) == {fence[0]}:
                fence = None
            continue
        fence_match = FENCE_RE.match(line)
        if fence_match:
            fence = fence_match.group(1)
            current.lines.append(line)
            continue

        heading = HEADING_RE.match(line) if not open_pairs else None
        if heading:
            current = _Chunk(
                heading=line.rstrip(),
                level=len(heading.group(1)),
                raw_title=heading.group(2) or "",
                line=number,
            )
            chunks.append(current)
        else:
            current.lines.append(line)

        for inner in SENTINEL_RE.findall(line):
            _apply_sentinel(sentinel_token(inner), current, open_pairs, number)

    if open_pairs:
        token, opened_at = open_pairs[-1]
        raise ParseError(f"'<!-- {token} -->' is never closed", line=opened_at)

    preamble_chunk = chunks[0]
    preamble_marker = SectionMarker.PRESERVE if "preserve" in preamble_chunk.hints else SectionMarker.NONE
    document_marker = SectionMarker.NO_UPDATE if "no-update" in preamble_chunk.hints else SectionMarker.NONE

    sections = _build_sections(chunks[1:])
    return ParsedDocument(
        preamble=_trim_blank_lines(preamble_chunk.lines),
        sections=tuple(sections),
        preamble_marker=preamble_marker,
        document_marker=document_marker,
    )


def parse_lenient(text: str) -> ParsedDocument:
    """Parse ``text``; on malformed sentinels return it as one opaque section."""

    try:
        return parse(text)
    except ParseError as exc:
        body = _trim_blank_lines(text.replace("\r\n", "\n").split("\n"))
        opaque = Section(
            level=0,
            title=OPAQUE_SECTION_TITLE,
            key=OPAQUE_SECTION_TITLE,
            heading="",
            body=body,
        )
        return ParsedDocument(preamble="", sections=(opaque,), opaque=True, parse_error=exc)


def render(document: ParsedDocument) -> str:
    return render_parts(document.preamble, document.sections)


def render_parts(preamble: str, sections: Iterable[Section]) -> str:
    chunks: List[str] = []
    if preamble:
        chunks.append(preamble)
    chunks.extend(section.text for section in sections if section.text)
    if not chunks:
        return ""
    return "\n\n".join(chunks) + "\n"


def normalize(text: str) -> str:
    """Return ``text`` in canonical form (``render(parse(text))``)."""

    return render(parse_lenient(text))


def _front_matter_end(lines: Sequence[str]) -> int:
    """Line count of a leading YAML front matter block, or 0 when there is none.

    A leading ``---`` only opens front matter when the fenced text starts right
    away and loads as a YAML mapping; otherwise it is a thematic break.
    """

    if not lines or lines[0].strip() != FRONT_MATTER_FENCE:
        return 0
    for end in range(1, len(lines)):
        if lines[end].strip() in {FRONT_MATTER_FENCE, "..."}:
            break
    else:
        return 0
    inner = lines[1:end]
    if not inner or not inner[0].strip():
        return 0
    try:
        data = yaml.safe_load("\n".join(inner))
    except yaml.YAMLError:
        return 0
    return end + 1 if isinstance(data, dict) else 0


def _apply_sentinel(token: str, chunk: _Chunk, open_pairs: List[Tuple[str, int]], line: int) -> None:
    if token in SINGLE_NO_UPDATE:
        chunk.hints.add("no-update")
    elif token in SINGLE_PRESERVE:
        chunk.hints.add("preserve")
    elif token in TOGGLE_SENTINELS:
        if open_pairs and open_pairs[-1][0] == token:
            open_pairs.pop()
        else:
            open_pairs.append((token, line))
        chunk.hints.add("preserve")
    elif token in PAIRED_SENTINELS:
        open_pairs.append((token, line))
        chunk.hints.add("preserve")
    elif token in PAIRED_CLOSERS:
        expected = PAIRED_CLOSERS[token]
        if not open_pairs:
            raise ParseError(f"'<!-- {token} -->' has no matching opener", line=line)
        if open_pairs[-1][0] != expected:
            raise ParseError(
                f"'<!-- {token} -->' closes '<!-- {open_pairs[-1][0]} -->' opened on line {open_pairs[-1][1]}",
                line=line,
            )
        open_pairs.pop()


def _build_sections(chunks: Sequence[_Chunk]) -> List[Section]:
    sections: List[Section] = []
    seen: Dict[str, int] = {}
    scope: Optional[Tuple[int, SectionMarker]] = None
    for chunk in chunks:
        title = normalize_title(chunk.raw_title)
        base_key = title or UNTITLED_KEY
        seen[base_key] = seen.get(base_key, 0) + 1
        key = base_key if seen[base_key] == 1 else f"{base_key}#{seen[base_key]}"

        marker = SectionMarker.NONE
        if "no-update" in chunk.hints:
            marker = SectionMarker.NO_UPDATE
        elif "preserve" in chunk.hints:
            marker = SectionMarker.PRESERVE

        if scope is not None and chunk.level > scope[0]:
            if marker is SectionMarker.NONE:
                marker = scope[1]
        else:
            scope = (chunk.level, marker) if marker.protected else None

        sections.append(
            Section(
                level=chunk.level,
                title=title,
                key=key,
                heading=chunk.heading or "",
                body=_trim_blank_lines(chunk.lines),
                marker=marker,
                line=chunk.line,
            )
        )
    return sections


def _trim_blank_lines(lines: Sequence[str]) -> str:
    start = 0
    end = len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


__all__ = [
    "ParsedDocument",
    "Section",
    "SectionMarker",
    "comparable",
    "normalize",
    "normalize_title",
    "parse",
    "parse_lenient",
    "render",
    "render_parts",
]
