from __future__ import annotations

from collections.abc import Iterable


def normalize_phone(raw: str) -> str:
    """
    Normalize a phone number to the E.164-like form the provider expects.

    Only surrounding whitespace is removed and a leading "+" is added when
    missing, e.g. "923001234567" -> "+923001234567". Internal spaces and
    punctuation are left as they are.
    """
    trimmed = raw.strip()
    return trimmed if trimmed.startswith("+") else f"+{trimmed}"


def normalize_phones(raws: Iterable[str]) -> list[str]:
    """Normalize every entry, dropping the ones left empty (just "+" or nothing)."""
    normalized = (normalize_phone(raw) for raw in raws)
    return [phone for phone in normalized if len(phone) > 1]
