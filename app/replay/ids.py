"""
Prefixed, time-sortable identifiers.

Format: ``{prefix}_{ULID}`` where the ULID is a 48-bit millisecond timestamp
followed by 80 random bits, Crockford base32 encoded (26 chars). Ids minted
in the same millisecond by one process are strictly increasing.
"""
from __future__ import annotations

import os
import re
import threading
import time

CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

ID_PREFIXES = {
    "campaign": "cmp",
    "event": "evt",
}

_ID_PATTERNS = {kind: re.compile(rf"^{prefix}_[0-9A-HJKMNP-TV-Z]{{26}}$") for kind, prefix in ID_PREFIXES.items()}

_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1

_lock = threading.Lock()
_last_ms = -1
_last_rand = 0


def _encode(value: int, length: int) -> str:
    out = []
    for _ in range(length):
        out.append(CROCKFORD[value & 0x1F])
        value >>= 5
    return "".join(reversed(out))


def new_ulid(now_ms: int | None = None) -> str:
    global _last_ms, _last_rand
    with _lock:
        ms = int(time.time() * 1000) if now_ms is None else now_ms
        if ms <= _last_ms:
            # Same (or earlier) millisecond: bump the random part to stay monotonic.
            ms = _last_ms
            rand = _last_rand + 1
            if rand > _RANDOM_MAX:
                ms += 1
                rand = int.from_bytes(os.urandom(10), "big")
        else:
            rand = int.from_bytes(os.urandom(10), "big")
        _last_ms, _last_rand = ms, rand
    return _encode(ms, 10) + _encode(rand, 16)


def generate(kind: str) -> str:
    prefix = ID_PREFIXES.get(kind)
    if prefix is None:
        raise ValueError(f"Unknown id kind: {kind!r}")
    return f"{prefix}_{new_ulid()}"


def is_valid_id(kind: str, value: object) -> bool:
    pattern = _ID_PATTERNS.get(kind)
    if pattern is None or not isinstance(value, str):
        return False
    return bool(pattern.match(value))


def generate_campaign_id() -> str:
    return generate("campaign")


def generate_event_id() -> str:
    return generate("event")


def is_valid_campaign_id(value: object) -> bool:
    return is_valid_id("campaign", value)


def is_valid_event_id(value: object) -> bool:
    return is_valid_id("event", value)


def id_timestamp_ms(value: str) -> int:
    """Millisecond timestamp encoded in a prefixed id."""
    ulid = value.split("_", 1)[1]
    ms = 0
    for ch in ulid[:10]:
        ms = (ms << 5) | CROCKFORD.index(ch)
    return ms
