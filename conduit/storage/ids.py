"""
Identifier generators for column defaults.

    ULID        26-char, lexicographically sortable by creation time
    Sqid        short URL-safe id from (timestamp, sequence)
    Snowflake   64-bit integer: 41 bits ms since epoch, 10 bits worker,
                12 bits per-ms sequence; strictly increasing per generator
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from sqids import Sqids
from ulid import ULID

from conduit.config.schemas import ColumnDefault

# 2024-01-01T00:00:00Z
SNOWFLAKE_EPOCH_MS = 1704067200000

_WORKER_BITS = 10
_SEQUENCE_BITS = 12
_MAX_WORKER = (1 << _WORKER_BITS) - 1
_MAX_SEQUENCE = (1 << _SEQUENCE_BITS) - 1


def new_ulid() -> str:
    return str(ULID())


@dataclass
class SnowflakeGenerator:
    """Thread-safe Snowflake id source."""

    worker_id: int = 0
    epoch_ms: int = SNOWFLAKE_EPOCH_MS
    _last_ms: int = field(default=-1, init=False, repr=False)
    _sequence: int = field(default=0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 0 <= self.worker_id <= _MAX_WORKER:
            raise ValueError(f"worker_id must be in [0, {_MAX_WORKER}], got {self.worker_id}")

    def _now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def next_id(self) -> int:
        with self._lock:
            now = self._now_ms()
            # Clock went backwards: keep issuing from the last seen millisecond
            now = max(now, self._last_ms)
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & _MAX_SEQUENCE
                if self._sequence == 0:
                    now = self._last_ms + 1
                    while self._now_ms() < now:
                        time.sleep(0.0001)
            else:
                self._sequence = 0
            self._last_ms = now
            return (
                ((now - self.epoch_ms) << (_WORKER_BITS + _SEQUENCE_BITS))
                | (self.worker_id << _SEQUENCE_BITS)
                | self._sequence
            )


@dataclass
class SqidGenerator:
    """Short unique text ids, distinct within one process."""

    min_length: int = 10
    _sqids: Sqids = field(init=False, repr=False)
    _counter: int = field(default=0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._sqids = Sqids(min_length=self.min_length)

    def next_id(self) -> str:
        with self._lock:
            self._counter += 1
            counter = self._counter
        return self._sqids.encode([time.time_ns() // 1_000_000, counter])


class IdGenerators:
    """Dispatches a column default policy to the matching generator."""

    def __init__(self, worker_id: int = 0):
        self.snowflake = SnowflakeGenerator(worker_id=worker_id)
        self.sqid = SqidGenerator()

    def generate(self, policy: ColumnDefault) -> str | int | None:
        if policy == ColumnDefault.UNIQUE_TEXT_ULID:
            return new_ulid()
        if policy == ColumnDefault.UNIQUE_TEXT_SQID:
            return self.sqid.next_id()
        if policy == ColumnDefault.UNIQUE_BIGINT_SNOWFLAKE:
            return self.snowflake.next_id()
        return None
