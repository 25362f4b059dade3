"""Sortable identifiers for lifecycle runs."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"

_PREFIXED_ID_RE: Final[re.Pattern[str]] = re.compile(
    rf"^(?P<prefix>[a-z]+)-(?P<ulid>[{CROCKFORD_BASE32_ALPHABET}]{{{ULID_LENGTH}}})$"
)

_RandBytes = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}"
        )
    random_bytes = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    match = _PREFIXED_ID_RE.fullmatch(id_str)
    if match is None:
        raise ValueError(f"malformed id {id_str!r}: expected '<prefix>-<ulid>'")
    if match.group("prefix") != expected_prefix:
        raise ValueError(f"expected prefix '{expected_prefix}-', got {id_str!r}")


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_run_id",
    "generate_ulid",
    "short_id",
    "validate_prefixed_id",
]
