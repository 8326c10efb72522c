"""
Document id generation.

Ids are 24 lowercase hex characters (12 bytes):

    4 bytes  big-endian seconds since the epoch
    5 bytes  random value chosen once per process
    3 bytes  counter, starting at a random value, wrapping at 2**24

Ids sort roughly by creation time and can be generated before a document is
committed, so a batch can reference a document it inserts itself.

Invariants:
    - Unique across processes (per-process random) and within one process
      (counter under a lock)
    - The random component is regenerated after fork
"""

from __future__ import annotations

import os
import re
import threading
import time

_ID_RE = re.compile(r"^[0-9a-f]{24}$")


class IdGenerator:
    """Thread-safe generator of 24-hex-char document ids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pid = os.getpid()
        self._process_random = os.urandom(5)
        self._counter = int.from_bytes(os.urandom(3), "big")

    def generate(self) -> str:
        with self._lock:
            if os.getpid() != self._pid:
                self._pid = os.getpid()
                self._process_random = os.urandom(5)
            self._counter = (self._counter + 1) & 0xFFFFFF
            counter = self._counter
            seconds = int(time.time()) & 0xFFFFFFFF
            raw = (
                seconds.to_bytes(4, "big")
                + self._process_random
                + counter.to_bytes(3, "big")
            )
        return raw.hex()


_default = IdGenerator()


def generate_id() -> str:
    """Generate a new document id from the process-wide generator."""
    return _default.generate()


def is_valid_id(value: object) -> bool:
    return isinstance(value, str) and bool(_ID_RE.match(value))


def id_timestamp(value: str) -> int:
    """Seconds since the epoch encoded in an id."""
    return int(value[:8], 16)
