"""ULID row ids (Crockford base32) for generated source rows.

48-bit millisecond timestamp followed by 80 random bits, so ids generated
later sort after ids generated earlier.
"""

from __future__ import annotations

import os
import time
from typing import Final

ULID_LENGTH: Final[int] = 26
_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_ulid(ts_ms: int | None = None) -> str:
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    value = ((ts_ms & ((1 << 48) - 1)) << 80) | int.from_bytes(os.urandom(10), "big")
    chars = []
    for _ in range(ULID_LENGTH):
        value, rem = divmod(value, 32)
        chars.append(_ALPHABET[rem])
    return "".join(reversed(chars))


def is_ulid(value: str) -> bool:
    return len(value) == ULID_LENGTH and all(ch in _ALPHABET for ch in value)
