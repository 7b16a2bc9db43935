"""Canonical ID generation and validation for planning entities."""

from __future__ import annotations

import re
import secrets
import uuid
from collections.abc import Callable
from typing import Final

ID_LENGTH: Final[int] = 36
ID_RANDOM_BYTES: Final[int] = 16
ID_PATTERN_DESCRIPTION: Final[str] = "xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx"

_ID_RE: Final[re.Pattern[str]] = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)

_RandBytes = Callable[[int], bytes]

__all__ = [
    "ID_LENGTH",
    "ID_PATTERN_DESCRIPTION",
    "ID_RANDOM_BYTES",
    "generate_id",
    "is_valid_id",
    "validate_id",
]


def generate_id(*, randbytes: _RandBytes | None = None) -> str:
    """Generate a random (version 4) UUID as a lowercase canonical string.

    ``randbytes`` lets tests inject deterministic entropy.
    """
    raw = _resolve_random_bytes(randbytes)
    return str(uuid.UUID(bytes=raw, version=4))


def validate_id(id_str: object) -> None:
    """Validate a canonical entity id and raise ``ValueError`` with context on failure."""
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    if len(id_str) != ID_LENGTH:
        raise ValueError(f"id length must be {ID_LENGTH}, got {len(id_str)}")
    if _ID_RE.fullmatch(id_str) is None:
        raise ValueError(f"id must be a lowercase UUID like {ID_PATTERN_DESCRIPTION} (got {id_str!r})")


def is_valid_id(id_str: object) -> bool:
    try:
        validate_id(id_str)
    except ValueError:
        return False
    return True


def _resolve_random_bytes(randbytes: _RandBytes | None) -> bytes:
    provider = secrets.token_bytes if randbytes is None else randbytes
    raw = provider(ID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValueError("randbytes must return a bytes-like object")
    as_bytes = bytes(raw)
    if len(as_bytes) != ID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ID_RANDOM_BYTES} bytes")
    return as_bytes
