"""Handle canonicalization shared by index building and lookup.

Phones collapse to the 10-digit national form: a leading US country digit is
dropped and nothing is ever prepended, so ``+1 (555) 123-4567``,
``15551234567`` and ``5551234567`` all map to ``5551234567``. Short codes and
non-US numbers pass through as bare digits.
"""

from __future__ import annotations

import hashlib
import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def normalize_email(raw: str) -> str:
    return raw.strip().lower()


def normalize_handle(raw: str) -> str:
    """Normalize a Messages handle or directory value of either kind."""
    if "@" in raw:
        return normalize_email(raw)
    return normalize_phone(raw)


def is_email(value: str) -> bool:
    return "@" in value


def photo_hash(data: bytes | None) -> str | None:
    """SHA-256 fingerprint of contact photo bytes (``None`` when there is no photo)."""
    if not data:
        return None
    return hashlib.sha256(data).hexdigest()
