"""
Unit tests for the state store implementations.

The in-memory store is tested directly; the Redis store runs against a
mocked redis.asyncio client.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, strategies as st

from ingestion.models import EnrichedRecord
from store.memory_store import InMemoryStateStore
from store.redis_store import RedisStateStore
from store.store import is_live


def record(record_id=1, ts=1700000000, ttl=300, **fields) -> EnrichedRecord:
    return EnrichedRecord(id=record_id, ts=ts, expiration=ts + ttl, **fields)


class TestIsLive:

    def test_expiration_in_future_is_live(self):
        assert is_live({"expiration": 101}, 100)

    def test_expiration_equal_to_now_is_expired(self):
        assert not is_live({"expiration": 100}, 100)

    def test_missing_expiration_is_expired(self):
        assert not is_live({}, 100)


class TestInMemoryStateStore:

    @pytest.mark.asyncio
    async def test_upsert_and_list(self):
        store = InMemoryStateStore()
        await store.upsert(record(1, longitude=1.0, latitude=2.0))

        rows = await store.list_live(now=1700000000)

        assert len(rows) == 1
        assert rows[0]["id"] == 1
        assert rows[0]["expiration"] == 1700000300

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self):
        store = InMemoryStateStore()
        await store.upsert(record(1))
        await store.upsert(record(1))

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_last_write_wins_by_arrival(self):
        store = InMemoryStateStore()
        await store.upsert(record(1, ts=2000))
        await store.upsert(record(1, ts=1000))

        assert (await store.get(1))["ts"] == 1000

    @pytest.mark.asyncio
    async def test_expired_rows_are_not_listed(self):
        store = InMemoryStateStore()
        await store.upsert(record(1, ts=1000, ttl=300))
        await store.upsert(record(2, ts=2000, ttl=300))

        rows = await store.list_live(now=1300)

        assert [row["id"] for row in rows] == [2]

    @pytest.mark.asyncio
    async def test_reap_expired(self):
        store = InMemoryStateStore()
        await store.upsert(record(1, ts=1000, ttl=300))
        await store.upsert(record(2, ts=2000, ttl=300))

        removed = await store.reap_expired(now=1300)

        assert removed == 1
        assert len(store) == 1
        with pytest.raises(KeyError):
            await store.get(1)

    @pytest.mark.asyncio
    async def test_listing_returns_copies(self):
        store = InMemoryStateStore()
        await store.upsert(record(1))

        rows = await store.list_live(now=0)
        rows[0]["id"] = 99

        assert (await store.get(1))["id"] == 1

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await InMemoryStateStore().health_check() is True


class TestRedisStateStore:

    @pytest.fixture
    def store(self, mock_redis):
        return RedisStateStore("redis://localhost:6379/0", key_prefix="asset:assets", client=mock_redis)

    @pytest.mark.asyncio
    async def test_upsert_sets_row_with_absolute_expiry(self, store, mock_redis):
        rec = record(7, longitude=1.0, latitude=2.0)

        await store.upsert(rec, now=1700000000)

        pipe = mock_redis.pipe
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with(
            "asset:assets:7", json.dumps(rec.to_item()), exat=1700000300
        )
        pipe.zadd.assert_called_once_with("asset:assets:expiry", {"7": 1700000300})
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upsert_of_expired_record_deletes_row(self, store, mock_redis):
        await store.upsert(record(7, ts=1000, ttl=300), now=1300)

        pipe = mock_redis.pipe
        pipe.delete.assert_called_once_with("asset:assets:7")
        pipe.zrem.assert_called_once_with("asset:assets:expiry", "7")
        pipe.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_live_reads_index_then_rows(self, store, mock_redis):
        live = record(1).to_item()
        mock_redis.zrangebyscore.return_value = ["1", "2"]
        mock_redis.mget.return_value = [json.dumps(live), None]

        rows = await store.list_live(now=1700000000)

        mock_redis.zrangebyscore.assert_awaited_once_with(
            "asset:assets:expiry", "(1700000000", "+inf"
        )
        mock_redis.mget.assert_awaited_once_with(["asset:assets:1", "asset:assets:2"])
        assert rows == [live]

    @pytest.mark.asyncio
    async def test_list_live_empty_index_skips_mget(self, store, mock_redis):
        assert await store.list_live(now=0) == []
        mock_redis.mget.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_live_filters_lagging_rows(self, store, mock_redis):
        mock_redis.zrangebyscore.return_value = ["1"]
        mock_redis.mget.return_value = [json.dumps(record(1, ts=1000, ttl=300).to_item())]

        assert await store.list_live(now=1300) == []

    @pytest.mark.asyncio
    async def test_list_live_propagates_errors(self, store, mock_redis):
        mock_redis.zrangebyscore.side_effect = ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await store.list_live(now=0)

    @pytest.mark.asyncio
    async def test_reap_expired(self, store, mock_redis):
        mock_redis.zremrangebyscore.return_value = 3

        assert await store.reap_expired(now=1300) == 3
        mock_redis.zremrangebyscore.assert_awaited_once_with("asset:assets:expiry", "-inf", 1300)

    @pytest.mark.asyncio
    async def test_health_check(self, store, mock_redis):
        assert await store.health_check() is True

        mock_redis.ping = AsyncMock(side_effect=ConnectionError("down"))
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        store = RedisStateStore("redis://localhost:6379/0")

        with pytest.raises(RuntimeError, match="connect"):
            await store.upsert(record(1))
        assert await store.health_check() is False


@given(
    writes=st.lists(
        st.tuples(st.integers(min_value=1, max_value=5), st.integers(min_value=0, max_value=1000)),
        min_size=1,
        max_size=20,
    ),
    now=st.integers(min_value=0, max_value=1400),
)
def test_listing_matches_last_write_per_id(writes, now):
    store = InMemoryStateStore()
    expected = {}

    async def scenario():
        for record_id, ts in writes:
            await store.upsert(record(record_id, ts=ts, ttl=300))
            expected[record_id] = ts + 300
        return await store.list_live(now)

    rows = asyncio.run(scenario())

    assert {row["id"]: row["expiration"] for row in rows} == {
        record_id: expiration for record_id, expiration in expected.items() if expiration > now
    }
