"""Small text helpers shared by the parser, executor and transports."""

from __future__ import annotations

from typing import Optional


def truncate_chars(text: str, max_chars: int) -> tuple[str, bool]:
    """Return ``text`` cut to at most ``max_chars`` characters and whether it was cut."""
    if max_chars <= 0:
        return "", bool(text)
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars], True


def snippet(text: str, max_chars: int) -> str:
    """Leading excerpt of ``text`` for summaries, messages and logs."""
    return truncate_chars(text.strip(), max_chars)[0]


def non_empty(value: Optional[str]) -> Optional[str]:
    """Return the stripped value, or None if it is missing or blank."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
