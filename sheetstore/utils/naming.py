from __future__ import annotations

import re

from sheetstore.services.errors import InvalidName

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^A-Za-z0-9_]")
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def sanitize_name(raw: object) -> str:
    """Normalize arbitrary user text into a lower-case ``[a-z0-9_]`` identifier."""
    if not isinstance(raw, str) or not raw:
        raise InvalidName(raw)
    collapsed = _WHITESPACE.sub("_", raw.strip())
    cleaned = _DISALLOWED.sub("", collapsed).lower()
    if not cleaned:
        raise InvalidName(raw)
    return cleaned


def is_valid_identifier(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return _IDENTIFIER.fullmatch(value) is not None
