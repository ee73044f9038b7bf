from __future__ import annotations

import secrets
import threading
import time

_PREFIXES = {
    "session": "ses",
    "message": "msg",
    "part": "prt",
    "event": "evt",
}

_BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
_RANDOM_LENGTH = 14

_lock = threading.Lock()
_last_value = 0


def _random_suffix(length: int = _RANDOM_LENGTH) -> str:
    return "".join(secrets.choice(_BASE62) for _ in range(length))


def ascending(kind: str, given: str | None = None) -> str:
    """Return an id that sorts after every id previously generated in this process.

    The first 14 hex characters encode ``ms_timestamp * 4096 + counter``, so ids
    created within the same millisecond still sort in creation order.
    """
    prefix = _PREFIXES.get(kind)
    if prefix is None:
        raise ValueError(f"Unknown identifier kind: {kind!r}")
    if given is not None:
        if not given.startswith(prefix + "_"):
            raise ValueError(f"Identifier {given!r} does not start with {prefix}_")
        return given

    global _last_value
    with _lock:
        value = max(int(time.time() * 1000) * 0x1000, _last_value + 1)
        _last_value = value
    return f"{prefix}_{value:014x}{_random_suffix()}"
