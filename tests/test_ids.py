"""
Tests for column default identifier generators.
"""

import threading

import pytest
from ulid import ULID

from conduit.config.schemas import ColumnDefault
from conduit.storage.ids import (
    SNOWFLAKE_EPOCH_MS,
    IdGenerators,
    SnowflakeGenerator,
    SqidGenerator,
    new_ulid,
)


class TestUlid:
    def test_format_and_uniqueness(self):
        ids = {new_ulid() for _ in range(100_000)}
        assert len(ids) == 100_000
        sample = next(iter(ids))
        assert len(sample) == 26
        assert str(ULID.from_str(sample)) == sample


class TestSqid:
    def test_uniqueness(self):
        generator = SqidGenerator()
        ids = {generator.next_id() for _ in range(100_000)}
        assert len(ids) == 100_000

    def test_min_length(self):
        assert len(SqidGenerator(min_length=12).next_id()) >= 12


class TestSnowflake:
    def test_strictly_increasing(self):
        generator = SnowflakeGenerator(worker_id=3)
        ids = [generator.next_id() for _ in range(50_000)]
        assert all(a < b for a, b in zip(ids, ids[1:]))

    def test_layout(self):
        generator = SnowflakeGenerator(worker_id=5)
        value = generator.next_id()
        assert (value >> 12) & 0x3FF == 5
        assert (value >> 22) + SNOWFLAKE_EPOCH_MS <= generator._now_ms()

    def test_clock_going_backwards(self, monkeypatch):
        generator = SnowflakeGenerator()
        first = generator.next_id()
        monkeypatch.setattr(generator, "_now_ms", lambda: generator._last_ms - 1000)
        assert generator.next_id() > first

    def test_threads_never_collide(self):
        generator = SnowflakeGenerator(worker_id=1)
        results = []

        def work():
            results.extend(generator.next_id() for _ in range(5_000))

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(results)) == 20_000

    @pytest.mark.parametrize("worker_id", [-1, 1024])
    def test_invalid_worker(self, worker_id):
        with pytest.raises(ValueError):
            SnowflakeGenerator(worker_id=worker_id)


class TestIdGenerators:
    def test_dispatch_by_policy(self):
        ids = IdGenerators(worker_id=2)
        assert isinstance(ids.generate(ColumnDefault.UNIQUE_TEXT_ULID), str)
        assert isinstance(ids.generate(ColumnDefault.UNIQUE_TEXT_SQID), str)
        assert isinstance(ids.generate(ColumnDefault.UNIQUE_BIGINT_SNOWFLAKE), int)
        assert ids.generate(ColumnDefault.NONE) is None
