"""Inverted-index map and reduce functions."""

from __future__ import annotations

from itertools import groupby


def map_document(filename: str, contents: str) -> list[tuple[str, str]]:
    """Emit one ``(word, filename)`` pair per distinct word in ``contents``.

    Words are maximal runs of letters; pairs follow first appearance.
    """
    words = (
        "".join(chars) for is_letter, chars in groupby(contents, str.isalpha) if is_letter
    )
    return [(word, filename) for word in dict.fromkeys(words)]


def reduce_documents(key: str, values) -> str:
    """Join the distinct document names, sorted, with commas."""
    return ",".join(sorted(set(values)))