"""Indonesian WhatsApp number helpers (62… canonical form)."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    """Return the canonical ``62…`` digit string for *raw*.

    ``08123…`` → ``628123…``, ``+62 812-345`` → ``62812345``,
    ``8123…`` → ``628123…``. Non-Indonesian numbers are returned digits-only.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if digits.startswith("0"):
        return "62" + digits[1:]
    if digits.startswith("8"):
        return "62" + digits
    return digits


def phone_alternatives(raw: str) -> list[str]:
    """Canonical form first, then the local ``0…`` variant used by older records."""
    canonical = normalize_phone(raw)
    out = [canonical]
    if canonical.startswith("62") and len(canonical) >= 11:
        out.append("0" + canonical[2:])
    return out
