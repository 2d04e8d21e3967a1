"""UUIDv7 identifiers: 48-bit unix milliseconds followed by random bits.

Ids minted by one process are strictly increasing, which makes them usable as
the only sort and pagination key for jobs and packages.
"""

from __future__ import annotations

import os
import threading
import time
from datetime import datetime, timezone
from uuid import UUID

_RANDOM_BITS = 74
_RANDOM_MASK = (1 << _RANDOM_BITS) - 1

_lock = threading.Lock()
_last_ms = -1
_last_random = 0


def new_time_ordered_id() -> str:
    return str(_next_uuid7())


def parse_id(value: str | UUID) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value).strip())


def id_timestamp(value: str | UUID) -> datetime:
    parsed = parse_id(value)
    millis = parsed.int >> 80
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def _next_uuid7() -> UUID:
    global _last_ms, _last_random

    with _lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms > _last_ms:
            random_part = int.from_bytes(os.urandom(10), "big") & _RANDOM_MASK
        else:
            # Same (or earlier) millisecond: keep the timestamp and bump the tail.
            now_ms = _last_ms
            random_part = _last_random + 1 + (int.from_bytes(os.urandom(2), "big") & 0xFF)
            if random_part > _RANDOM_MASK:
                now_ms += 1
                random_part = int.from_bytes(os.urandom(10), "big") & (_RANDOM_MASK >> 1)
        _last_ms = now_ms
        _last_random = random_part

    rand_a = random_part >> 62
    rand_b = random_part & ((1 << 62) - 1)
    value = (now_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= rand_a << 64
    value |= 0b10 << 62
    value |= rand_b
    return UUID(int=value)
