from __future__ import annotations

from docweave.domain.documents.conflicts import (
    CONFLICT_START,
    ConflictResolver,
    candidate_side,
    conflict_block,
    has_conflict_block,
    on_disk_side,
    split_conflict_block,
)
from docweave.domain.documents.sections import parse


def test_split_returns_both_sides() -> None:
    block = conflict_block("ours line", "theirs line")

    assert has_conflict_block(block)
    assert split_conflict_block(block) == ("ours line", "theirs line")
    assert on_disk_side(block) == "ours line"
    assert candidate_side(block) == "theirs line"


def test_text_next_to_the_block_stays_with_the_on_disk_side() -> None:
    body = "A note I added.\n\n" + conflict_block("ours", "theirs")

    ours, theirs = split_conflict_block(body)

    assert ours == "A note I added.\n\nours"
    assert theirs == "theirs"


def test_plain_text_has_no_block() -> None:
    assert split_conflict_block("just text") is None
    assert candidate_side("just text") == "just text"
    assert on_disk_side("just text") == "just text"


def test_resolve_never_nests_blocks() -> None:
    existing = conflict_block("ours", "old candidate")
    body, conflict = ConflictResolver().resolve("usage", "unresolved", existing, "new candidate")

    assert body.count(CONFLICT_START) == 1
    assert split_conflict_block(body) == ("ours", "new candidate")
    assert conflict.to_dict() == {"title": "usage", "reason": "unresolved"}


def test_resolver_suppresses_documents_marked_do_not_update() -> None:
    resolver = ConflictResolver()

    assert resolver.suppresses(parse("<!-- do not update -->\n# Doc\n"))
    assert not resolver.suppresses(parse("# Doc\n\n<!-- do not update -->\n"))
    assert not resolver.suppresses(None)
