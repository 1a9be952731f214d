"""Utility helpers for the BookPicks service."""

from __future__ import annotations

import json
import re
from typing import Any, Iterable


FENCED_JSON_RE = re.compile(r"\A\s*```(?:json)?\s*(\{.*\})\s*```\s*\Z", re.DOTALL)


def book_label(title: str, author: str) -> str:
    """Return the "title by author" label used for exclusion matching."""

    return f"{title.strip()} by {author.strip()}"


def normalise_label(label: str) -> str:
    return " ".join(label.lower().split())


def label_matches(label: str, seen: Iterable[str]) -> bool:
    """Return whether the label overlaps any seen label, ignoring case.

    Either side may contain the other, so "Dune by Frank Herbert" matches a
    stored "Dune by Frank Herbert (Deluxe Edition)".
    """

    candidate = normalise_label(label)
    if not candidate:
        return False
    for entry in seen:
        other = normalise_label(entry)
        if not other:
            continue
        if candidate in other or other in candidate:
            return True
    return False


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a model response that must be exactly one JSON object.

    The object may be bare or wrapped in a single fenced code block. Anything
    else, including prose around the object, is rejected.
    """

    match = FENCED_JSON_RE.match(content)
    payload = match.group(1) if match else content.strip()
    if not payload:
        raise ValueError("Empty response content")

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON payload produced by the model") from exc
    if not isinstance(parsed, dict):
        raise ValueError("Model response is not a JSON object")
    return parsed
