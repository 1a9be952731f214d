from __future__ import annotations

import pytest

from app.utils import book_label, label_matches, normalise_label, parse_json_object


def test_book_label_trims_parts() -> None:
    assert book_label("  Dune ", " Frank Herbert") == "Dune by Frank Herbert"


def test_normalise_label_collapses_whitespace() -> None:
    assert normalise_label("  The   Hobbit BY  Tolkien ") == "the hobbit by tolkien"


def test_label_matches_is_case_insensitive_substring() -> None:
    seen = ["Dune by Frank Herbert (Deluxe Edition)"]

    assert label_matches("dune BY frank herbert", seen)
    assert label_matches("Dune by Frank Herbert (Deluxe Edition) Vol. 1", seen)
    assert not label_matches("Emma by Jane Austen", seen)


def test_label_matches_ignores_blank_entries() -> None:
    assert not label_matches("", ["Dune by Frank Herbert"])
    assert not label_matches("Dune by Frank Herbert", ["   "])


def test_parse_json_object_accepts_bare_object() -> None:
    assert parse_json_object('  {"recommendations": []}  ') == {"recommendations": []}


def test_parse_json_object_accepts_fenced_block() -> None:
    content = '```json\n{"recommendations": [{"title": "Emma"}]}\n```'

    assert parse_json_object(content) == {"recommendations": [{"title": "Emma"}]}


@pytest.mark.parametrize(
    "content",
    [
        "",
        "Here you go: {\"recommendations\": []}",
        "[1, 2, 3]",
        "{not json}",
    ],
)
def test_parse_json_object_rejects_other_shapes(content: str) -> None:
    with pytest.raises(ValueError):
        parse_json_object(content)
