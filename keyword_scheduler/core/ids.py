"""Identifier utilities for cycles, unmet-demand requests and lease tokens."""

from __future__ import annotations

import secrets
import threading
import time

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_LAST_MILLIS = 0
_COUNTER = 0
_LOCK = threading.Lock()


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    chars: list[str] = []
    current = value
    while current:
        current, remainder = divmod(current, 36)
        chars.append(_ALPHABET[remainder])
    return "".join(reversed(chars))


def generate_cuid(length: int = 24) -> str:
    """Generate a time-ordered, collision-resistant id with a `c` prefix.

    Ids generated in the same process sort by creation time, which keeps
    cycle records naturally ordered by start when listed by id.
    """
    global _LAST_MILLIS, _COUNTER

    now_millis = int(time.time() * 1000)
    with _LOCK:
        if now_millis <= _LAST_MILLIS:
            _COUNTER += 1
            now_millis = _LAST_MILLIS
        else:
            _LAST_MILLIS = now_millis
            _COUNTER = 0
        counter = _COUNTER

    body_len = max(length - 1, 12)
    static_part = f"{_to_base36(now_millis)}{_to_base36(counter).rjust(4, '0')}"
    random_len = max(body_len - len(static_part), 0)
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(random_len))
    return f"c{static_part}{random_part}"[:length]


def generate_lease_token() -> str:
    """Return an unguessable owner token for a coverage lease."""
    return secrets.token_hex(16)
