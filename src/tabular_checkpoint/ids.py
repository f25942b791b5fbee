"""Ordered identifiers for checkpoints and channel versions.

Checkpoint ids and version markers are compared as strings by the store,
so both are fixed-width and zero-padded.
"""

from __future__ import annotations

import secrets
import threading
import time

_VERSION_WIDTH = 32

_lock = threading.Lock()
_last_ns = 0


def new_checkpoint_id() -> str:
    """Return a checkpoint id that sorts after every id issued before it.

    The prefix is the nanosecond clock as 16 hex digits, bumped when the
    clock has not advanced so ids stay strictly increasing in-process.
    """
    global _last_ns
    with _lock:
        now = time.time_ns()
        if now <= _last_ns:
            now = _last_ns + 1
        _last_ns = now
    return f"{now:016x}-{secrets.token_hex(4)}"


def next_version(current: str | int | None) -> str:
    """Next version marker for a channel whose current marker is ``current``.

    Example:
        >>> next_version(None)
        '00000000000000000000000000000001'
        >>> next_version(next_version(None))
        '00000000000000000000000000000002'
    """
    if current is None:
        counter = 0
    elif isinstance(current, int):
        counter = current
    else:
        try:
            counter = int(current.split(".", 1)[0])
        except ValueError:
            raise ValueError(f"Unrecognized version marker: {current!r}") from None
    return f"{counter + 1:0{_VERSION_WIDTH}d}"
