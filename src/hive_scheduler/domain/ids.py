"""Canonical ID generation and validation for scheduler entities."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

# Stable entity ID prefixes.
WORK_ITEM_ID_PREFIX: Final[str] = "wi"
CYCLE_ID_PREFIX: Final[str] = "cyc"
QUERY_ID_PREFIX: Final[str] = "qry"
AGENT_ID_PREFIX: Final[str] = "agt"
ASSIGNMENT_ID_PREFIX: Final[str] = "asg"
USAGE_ID_PREFIX: Final[str] = "use"
RESERVATION_ID_PREFIX: Final[str] = "rsv"
EVENT_ID_PREFIX: Final[str] = "evt"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {ts_ms}")
    raw = (secrets.token_bytes if randbytes is None else randbytes)(ULID_RANDOM_BYTES)
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(bytes(raw), "big")

    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed ULID."""
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    if _DECODE_TABLE[value[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(prefix: str, *, timestamp_ms: int | None = None) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    if not prefix or _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")
    return f"{prefix}{_PREFIX_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not isinstance(id_str, str) or not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}' in {id_str!r}")
    try:
        validate_ulid(id_str[len(expected_lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) < 8:
        return id_str
    return id_str[-8:]


def generate_work_item_id() -> str:
    return generate_prefixed_id(WORK_ITEM_ID_PREFIX)


def generate_cycle_id() -> str:
    return generate_prefixed_id(CYCLE_ID_PREFIX)


def generate_query_id() -> str:
    return generate_prefixed_id(QUERY_ID_PREFIX)


def generate_agent_id() -> str:
    return generate_prefixed_id(AGENT_ID_PREFIX)


def generate_assignment_id() -> str:
    return generate_prefixed_id(ASSIGNMENT_ID_PREFIX)


def generate_usage_id() -> str:
    return generate_prefixed_id(USAGE_ID_PREFIX)


def generate_reservation_id() -> str:
    return generate_prefixed_id(RESERVATION_ID_PREFIX)


def generate_event_id() -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX)


__all__ = [
    "AGENT_ID_PREFIX",
    "ASSIGNMENT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "CYCLE_ID_PREFIX",
    "EVENT_ID_PREFIX",
    "QUERY_ID_PREFIX",
    "RESERVATION_ID_PREFIX",
    "ULID_LENGTH",
    "USAGE_ID_PREFIX",
    "WORK_ITEM_ID_PREFIX",
    "generate_agent_id",
    "generate_assignment_id",
    "generate_cycle_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_query_id",
    "generate_reservation_id",
    "generate_ulid",
    "generate_usage_id",
    "generate_work_item_id",
    "short_id",
    "validate_prefixed_id",
    "validate_ulid",
]
