"""
存储层单元测试

覆盖范围：
  - 写队列（按标的 FIFO、在途互斥、背压只阻塞单个标的、失败放回队首）
  - 文件持久层（幂等写、闭区间扫描、损坏记录跳过并登记缺口、只按时间追加）
  - MongoDB 持久层（唯一索引、重复键 11000 丢弃、其他写错误失败）
  - 缓存层（内存与 Redis 后端、读失败视为未命中）
  - 存储协调器（重复写入、过期写入拒绝、降级与恢复、关闭排空）
  - 启动恢复（缓存重建、残留缓存清除）
"""

import asyncio
import json
import os
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import BulkWriteError, PyMongoError

from tick_service.errors import (
    CacheWriteError,
    DurableReadError,
    DurableWriteFailure,
    RecoveryError,
    StaleWriteError,
)
from tick_service.layers.analysis import IndicatorEngine, IndicatorParams
from tick_service.layers.cache import CacheLayer, _make_key
from tick_service.layers.durable import FileDurableStore, MongoDurableStore
from tick_service.layers.write_queue import WriteQueue
from tick_service.models.tick import DurableRecord, IndicatorSnapshot, Tick
from tick_service.services.storage_service import StorageCoordinator, WritePathConfig

SYMBOL = "000001.SZ"
OTHER = "600000.SH"
PARAMS = IndicatorParams(fast_period=3, slow_period=5, signal_period=2)


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _tick(ts: int, price="10.00", symbol: str = SYMBOL) -> Tick:
    return Tick(symbol=symbol, timestamp=ts, price=Decimal(str(price)), volume=100)


def _record(ts: int, price="10.00", symbol: str = SYMBOL) -> DurableRecord:
    tick = _tick(ts, price, symbol)
    snap = IndicatorSnapshot(symbol=symbol, timestamp=ts, price=tick.price)
    return DurableRecord.from_pair(tick, snap)


def _ticks(n: int, symbol: str = SYMBOL, start: int = 1_000) -> list:
    return [
        _tick(start + i * 1000, Decimal("10") + Decimal(i % 5) / 10, symbol)
        for i in range(n)
    ]


async def _feed(coord: StorageCoordinator, engine: IndicatorEngine, ticks) -> None:
    """按接入服务的顺序：评估 → 写存储 → 提交"""
    for tick in ticks:
        state, snap = engine.evaluate(tick.symbol, tick)
        await coord.record(tick, snap)
        engine.commit(tick.symbol, state)


class FlakyStore(FileDurableStore):
    """可切换写入失败的文件持久层"""

    def __init__(self, directory: str):
        super().__init__(directory)
        self.fail = False
        self.attempts = 0

    async def insert_batch(self, records):
        self.attempts += 1
        if self.fail:
            raise DurableWriteFailure("模拟磁盘不可写")
        return await super().insert_batch(records)


class UnreadableStore(FileDurableStore):
    async def symbols(self):
        raise DurableReadError("模拟持久层不可读")


class _FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value):
        self._ops.append(("set", key, value))

    def sadd(self, key, member):
        self._ops.append(("sadd", key, member))

    async def execute(self):
        if self._redis.fail:
            raise ConnectionError("redis down")
        for op, key, value in self._ops:
            if op == "set":
                self._redis.strings[key] = value
            else:
                self._redis.sets.setdefault(key, set()).add(value)
        self._ops.clear()


class FakeRedis:
    """decode_responses=True 的 redis.asyncio 客户端替身（只覆盖缓存层用到的命令）"""

    def __init__(self):
        self.strings = {}
        self.sets = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def scard(self, key):
        self._check()
        return len(self.sets.get(key, set()))

    async def delete(self, *keys):
        self._check()
        for key in keys:
            self.strings.pop(key, None)
            self.sets.pop(key, None)


class BrokenRedis(FakeRedis):
    def __init__(self):
        super().__init__()
        self.fail = True


def _config(**overrides) -> WritePathConfig:
    values = dict(
        flush_batch_size=50,
        flush_interval=0.05,
        per_symbol_queue_capacity=100,
        flush_workers=2,
        flush_max_retries=2,
        flush_retry_base_delay=0,
    )
    values.update(overrides)
    return WritePathConfig(**values)


async def _coordinator(
    directory, store: Optional[FileDurableStore] = None, engine=None, **overrides
):
    store = store or FileDurableStore(str(directory))
    await store.open()
    engine = engine or IndicatorEngine(PARAMS)
    coord = StorageCoordinator(CacheLayer(prefix="test"), store, engine, _config(**overrides))
    return coord, engine


# ─────────────────────────────────────────────────────────
# 1. 写队列
# ─────────────────────────────────────────────────────────

class TestWriteQueue:
    @pytest.mark.asyncio
    async def test_fifo_per_symbol_and_batches_span_symbols(self):
        q = WriteQueue(10)
        for ts in (1, 2, 3):
            await q.put(_record(ts))
        await q.put(_record(1, symbol=OTHER))
        batch = await q.take_batch(10)
        assert [r.key for r in batch] == [(SYMBOL, 1), (SYMBOL, 2), (SYMBOL, 3), (OTHER, 1)]
        assert q.in_flight() == 2

    @pytest.mark.asyncio
    async def test_symbol_never_in_two_batches(self):
        q = WriteQueue(10)
        await q.put(_record(1))
        first = await q.take_batch(10)
        await q.put(_record(2))
        assert await q.take_batch(10) == []
        await q.complete(first)
        second = await q.take_batch(10)
        assert [r.timestamp for r in second] == [2]

    @pytest.mark.asyncio
    async def test_duplicate_tail_dropped(self):
        q = WriteQueue(10)
        assert await q.put(_record(1)) is True
        assert await q.put(_record(1)) is False
        assert q.depth() == 1

    @pytest.mark.asyncio
    async def test_requeue_restores_order(self):
        q = WriteQueue(10)
        await q.put(_record(1))
        await q.put(_record(2))
        batch = await q.take_batch(10)
        await q.put(_record(3))
        await q.requeue(batch)
        assert [r.timestamp for r in q.pending(SYMBOL)] == [1, 2, 3]
        assert q.in_flight() == 0

    @pytest.mark.asyncio
    async def test_backpressure_blocks_only_that_symbol(self):
        q = WriteQueue(2)
        await q.put(_record(1))
        await q.put(_record(2))
        blocked = asyncio.create_task(q.put(_record(3)))
        await asyncio.sleep(0.01)
        assert not blocked.done()
        assert q.saturation_events == 1

        # 其他标的不受影响
        await asyncio.wait_for(q.put(_record(1, symbol=OTHER)), timeout=0.5)

        batch = await q.take_batch(1)
        assert batch[0].key == (SYMBOL, 1)
        await asyncio.wait_for(blocked, timeout=0.5)
        assert q.depth_for(SYMBOL) == 2

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            WriteQueue(0)


# ─────────────────────────────────────────────────────────
# 2. 文件持久层
# ─────────────────────────────────────────────────────────

class TestFileDurableStore:
    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, tmp_path):
        store = FileDurableStore(str(tmp_path))
        await store.open()
        assert await store.insert_batch([_record(1), _record(2), _record(1)]) == 2
        assert await store.insert_batch([_record(2)]) == 0
        assert await store.count(SYMBOL) == 2

    @pytest.mark.asyncio
    async def test_scan_inclusive_range(self, tmp_path):
        store = FileDurableStore(str(tmp_path))
        await store.open()
        await store.insert_batch([_record(ts) for ts in (1, 2, 3, 4, 5)])
        got = [r.timestamp async for r in store.scan(SYMBOL, 2, 4)]
        assert got == [2, 3, 4]
        assert [r.timestamp async for r in store.scan("UNKNOWN")] == []

    @pytest.mark.asyncio
    async def test_reopen_keeps_dedup_index(self, tmp_path):
        store = FileDurableStore(str(tmp_path))
        await store.open()
        await store.insert_batch([_record(1), _record(2)])

        reopened = FileDurableStore(str(tmp_path))
        await reopened.open()
        assert await reopened.symbols() == [SYMBOL]
        assert await reopened.insert_batch([_record(2), _record(3)]) == 1
        assert (await reopened.last_record(SYMBOL)).timestamp == 3

    @pytest.mark.asyncio
    async def test_decimal_stored_as_string(self, tmp_path):
        store = FileDurableStore(str(tmp_path))
        await store.open()
        await store.insert_batch([_record(1, "10.10")])
        with open(os.path.join(tmp_path, f"{SYMBOL}.jsonl"), encoding="utf-8") as fh:
            doc = json.loads(fh.readline())
        assert doc["price"] == "10.10"
        assert doc["macd"] is None

    @pytest.mark.asyncio
    async def test_corrupt_records_skipped_and_reported(self, tmp_path):
        path = os.path.join(tmp_path, f"{SYMBOL}.jsonl")
        good = [_record(1).to_document(), _record(3).to_document()]
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(good[0]) + "\n")
            fh.write("{not json\n")
            fh.write(json.dumps({"symbol": SYMBOL, "timestamp": 2}) + "\n")
            fh.write(json.dumps(good[1]) + "\n")

        store = FileDurableStore(str(tmp_path))
        await store.open()
        got = [r.timestamp async for r in store.scan(SYMBOL)]
        assert got == [1, 3]
        locators = sorted(g["locator"] for g in store.gaps)
        assert locators == [f"{SYMBOL}.jsonl:2", f"{SYMBOL}.jsonl:3"]
        assert all(g["symbol"] == SYMBOL for g in store.gaps)

    @pytest.mark.asyncio
    async def test_append_before_tail_is_dropped(self, tmp_path):
        """文件只能按时间追加：早于末尾的记录既不写入也不计数"""
        store = FileDurableStore(str(tmp_path))
        await store.open()
        assert await store.insert_batch([_record(2_000)]) == 1
        assert await store.insert_batch([_record(1_000)]) == 0
        assert await store.count(SYMBOL) == 1
        assert [r.timestamp async for r in store.scan(SYMBOL)] == [2_000]

    @pytest.mark.asyncio
    async def test_unordered_batch_written_sorted(self, tmp_path):
        store = FileDurableStore(str(tmp_path))
        await store.open()
        assert await store.insert_batch([_record(3), _record(1), _record(2)]) == 3
        assert [r.timestamp async for r in store.scan(SYMBOL)] == [1, 2, 3]


# ─────────────────────────────────────────────────────────
# 2b. MongoDB 持久层（内存集合替身）
# ─────────────────────────────────────────────────────────

class _FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, field, direction):
        self._docs = sorted(self._docs, key=lambda d: d[field], reverse=direction == DESCENDING)
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield dict(doc)


class FakeTickCollection:
    """按 (symbol, timestamp) 唯一的内存集合，重复键按 MongoDB 的方式报 11000"""

    name = "ticks"

    def __init__(self):
        self.docs = {}
        self.create_index = AsyncMock()

    async def insert_many(self, docs, ordered=True):
        errors, inserted = [], []
        for idx, doc in enumerate(docs):
            key = (doc["symbol"], doc["timestamp"])
            if key in self.docs:
                errors.append({"index": idx, "code": 11000, "errmsg": "E11000 duplicate key"})
                continue
            self.docs[key] = dict(doc, _id=f"oid-{len(self.docs)}")
            inserted.append(self.docs[key]["_id"])
        if errors:
            raise BulkWriteError({"writeErrors": errors, "nInserted": len(inserted)})
        return SimpleNamespace(inserted_ids=inserted)

    def find(self, query):
        docs = [d for d in self.docs.values() if d["symbol"] == query["symbol"]]
        bounds = query.get("timestamp", {})
        if "$gte" in bounds:
            docs = [d for d in docs if d["timestamp"] >= bounds["$gte"]]
        if "$lte" in bounds:
            docs = [d for d in docs if d["timestamp"] <= bounds["$lte"]]
        return _FakeCursor(docs)

    async def distinct(self, field):
        return list({d[field] for d in self.docs.values()})

    async def count_documents(self, query):
        return sum(1 for d in self.docs.values() if d["symbol"] == query["symbol"])


class TestMongoDurableStore:
    @pytest.mark.asyncio
    async def test_open_creates_unique_index(self):
        col = FakeTickCollection()
        await MongoDurableStore(col).open()
        args, kwargs = col.create_index.call_args
        assert args[0] == [("symbol", ASCENDING), ("timestamp", ASCENDING)]
        assert kwargs["unique"] is True

    @pytest.mark.asyncio
    async def test_open_failure_is_read_error(self):
        col = FakeTickCollection()
        col.create_index.side_effect = PyMongoError("no server")
        with pytest.raises(DurableReadError):
            await MongoDurableStore(col).open()

    @pytest.mark.asyncio
    async def test_duplicates_discarded(self):
        store = MongoDurableStore(FakeTickCollection())
        assert await store.insert_batch([_record(1), _record(2)]) == 2
        assert await store.insert_batch([_record(2), _record(3)]) == 1
        assert await store.count(SYMBOL) == 3
        assert [r.timestamp async for r in store.scan(SYMBOL, 2, 3)] == [2, 3]
        assert (await store.last_record(SYMBOL)).timestamp == 3
        assert await store.symbols() == [SYMBOL]

    @pytest.mark.asyncio
    async def test_non_duplicate_write_error_fails_batch(self):
        col = MagicMock()
        col.insert_many = AsyncMock(side_effect=BulkWriteError({
            "writeErrors": [
                {"index": 0, "code": 11000, "errmsg": "E11000 duplicate key"},
                {"index": 1, "code": 121, "errmsg": "Document failed validation"},
            ],
            "nInserted": 0,
        }))
        with pytest.raises(DurableWriteFailure, match="validation"):
            await MongoDurableStore(col).insert_batch([_record(1), _record(2)])

    @pytest.mark.asyncio
    async def test_connection_error_is_write_failure(self):
        col = MagicMock()
        col.insert_many = AsyncMock(side_effect=PyMongoError("connection reset"))
        with pytest.raises(DurableWriteFailure):
            await MongoDurableStore(col).insert_batch([_record(1)])

    @pytest.mark.asyncio
    async def test_record_twice_leaves_one_document(self):
        store = MongoDurableStore(FakeTickCollection())
        coord = StorageCoordinator(
            CacheLayer(prefix="test"), store, IndicatorEngine(PARAMS), _config()
        )
        tick = _tick(5_000, "12.00")
        snap = IndicatorSnapshot(symbol=SYMBOL, timestamp=5_000, price=tick.price)
        await coord.record(tick, snap)
        await coord.flush()
        await coord.record(tick, snap)
        await coord.flush()
        assert await store.count(SYMBOL) == 1
        assert coord.degraded is False


# ─────────────────────────────────────────────────────────
# 3. 存储协调器
# ─────────────────────────────────────────────────────────

class TestStorageCoordinator:
    @pytest.mark.asyncio
    async def test_record_writes_cache_then_queue(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        await _feed(coord, engine, _ticks(3))
        tick, snap = await coord.latest(SYMBOL)
        assert tick.timestamp == 3_000
        assert coord.queue.depth() == 3
        assert await coord.durable.count(SYMBOL) == 0

        await coord.flush()
        assert coord.queue.depth() == 0
        assert await coord.durable.count(SYMBOL) == 3

    @pytest.mark.asyncio
    async def test_record_twice_leaves_one_record(self, tmp_path):
        coord, _ = await _coordinator(tmp_path)
        tick = _tick(5_000, "12.00")
        snap = IndicatorSnapshot(symbol=SYMBOL, timestamp=5_000, price=tick.price)
        await coord.record(tick, snap)
        await coord.flush()
        cached = await coord.latest(SYMBOL)

        await coord.record(tick, snap)
        await coord.flush()
        assert await coord.durable.count(SYMBOL) == 1
        assert await coord.latest(SYMBOL) == cached

    @pytest.mark.asyncio
    async def test_older_record_rejected(self, tmp_path):
        """早于最后一次写入的记录被拒绝，缓存与持久层都不变"""
        coord, _ = await _coordinator(tmp_path)
        t = _tick(2_000)
        await coord.record(t, IndicatorSnapshot(symbol=SYMBOL, timestamp=2_000, price=t.price))
        old = _tick(1_000)
        with pytest.raises(StaleWriteError):
            await coord.record(old, IndicatorSnapshot(symbol=SYMBOL, timestamp=1_000, price=old.price))

        tick, _ = await coord.latest(SYMBOL)
        assert tick.timestamp == 2_000
        await coord.flush()
        assert await coord.durable.count(SYMBOL) == 1
        assert [r.timestamp async for r in coord.range(SYMBOL)] == [2_000]

    @pytest.mark.asyncio
    async def test_write_guard_restored_by_recovery(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        await _feed(coord, engine, _ticks(3))
        await coord.flush()

        fresh, _ = await _coordinator(tmp_path)
        await fresh.recover()
        old = _tick(2_000)
        with pytest.raises(StaleWriteError):
            await fresh.record(old, IndicatorSnapshot(symbol=SYMBOL, timestamp=2_000, price=old.price))

    @pytest.mark.asyncio
    async def test_failed_flush_requeues_and_degrades(self, tmp_path):
        store = FlakyStore(str(tmp_path))
        coord, engine = await _coordinator(tmp_path, store=store)
        await _feed(coord, engine, _ticks(4))

        store.fail = True
        await coord.flush()
        assert coord.degraded is True
        assert coord.failed_batches == 1
        assert store.attempts == 2
        assert [r.timestamp for r in coord.queue.pending(SYMBOL)] == [1_000, 2_000, 3_000, 4_000]
        # 降级期间缓存仍然是最新值的来源
        tick, _ = await coord.latest(SYMBOL)
        assert tick.timestamp == 4_000

        store.fail = False
        await coord.flush()
        assert coord.degraded is False
        assert coord.status()["last_flush_error"] is None
        assert [r.timestamp async for r in coord.range(SYMBOL)] == [1_000, 2_000, 3_000, 4_000]

    @pytest.mark.asyncio
    async def test_background_flusher(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        await coord.start()
        try:
            await _feed(coord, engine, _ticks(5))
            for _ in range(50):
                if await coord.durable.count(SYMBOL) == 5:
                    break
                await asyncio.sleep(0.02)
            assert await coord.durable.count(SYMBOL) == 5
            assert coord.status()["last_flush_at"] is not None
        finally:
            await coord.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, tmp_path):
        coord, engine = await _coordinator(tmp_path, flush_interval=60, flush_batch_size=3)
        await coord.start()
        await _feed(coord, engine, _ticks(7) + _ticks(2, symbol=OTHER))
        await coord.stop()
        assert coord.queue.depth() == 0
        assert await coord.durable.count(SYMBOL) == 7
        assert await coord.durable.count(OTHER) == 2

    @pytest.mark.asyncio
    async def test_stop_gives_up_when_store_unwritable(self, tmp_path):
        store = FlakyStore(str(tmp_path))
        coord, engine = await _coordinator(tmp_path, store=store)
        await _feed(coord, engine, _ticks(2))
        store.fail = True
        await asyncio.wait_for(coord.stop(), timeout=2)
        assert coord.queue.depth() == 2

    @pytest.mark.asyncio
    async def test_status_fields(self, tmp_path):
        coord, _ = await _coordinator(tmp_path)
        status = coord.status()
        for key in ("queue_depth", "last_flush_at", "degraded", "cache_backend", "durable_backend"):
            assert key in status
        assert status["cache_backend"] == "memory"
        assert status["durable_backend"] == "file"


# ─────────────────────────────────────────────────────────
# 4. 启动恢复
# ─────────────────────────────────────────────────────────

class TestRecovery:
    @pytest.mark.asyncio
    async def test_round_trip_after_cache_loss(self, tmp_path):
        """写入并刷盘后，只凭持久层恢复出与崩溃前相同的状态"""
        coord, engine = await _coordinator(tmp_path)
        await _feed(coord, engine, _ticks(12) + _ticks(3, symbol=OTHER))
        await coord.flush()
        before = {s: engine.state(s) for s in (SYMBOL, OTHER)}
        latest_before = await coord.latest(SYMBOL)

        fresh_engine = IndicatorEngine(PARAMS)
        fresh, _ = await _coordinator(tmp_path, engine=fresh_engine)
        assert await fresh.latest(SYMBOL) is None

        report = await fresh.recover()
        assert sorted(report.symbols) == [SYMBOL, OTHER]
        assert report.records == 15
        assert report.gaps == []
        for symbol, state in before.items():
            assert fresh_engine.state(symbol) == state
        assert await fresh.latest(SYMBOL) == latest_before

    @pytest.mark.asyncio
    async def test_unflushed_records_are_lost(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        ticks = _ticks(8)
        await _feed(coord, engine, ticks[:6])
        await coord.flush()
        await _feed(coord, engine, ticks[6:])

        fresh_engine = IndicatorEngine(PARAMS)
        fresh, _ = await _coordinator(tmp_path, engine=fresh_engine)
        await fresh.recover()
        assert fresh_engine.state(SYMBOL) == IndicatorEngine(PARAMS).replay(SYMBOL, ticks[:6])

    @pytest.mark.asyncio
    async def test_corrupt_record_reported_as_gap(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        ticks = _ticks(6)
        await _feed(coord, engine, ticks)
        await coord.flush()
        with open(os.path.join(tmp_path, f"{SYMBOL}.jsonl"), "a", encoding="utf-8") as fh:
            fh.write("garbage\n")

        fresh_engine = IndicatorEngine(PARAMS)
        fresh, _ = await _coordinator(tmp_path, engine=fresh_engine)
        report = await fresh.recover()
        assert len(report.gaps) == 1
        assert fresh_engine.state(SYMBOL) == engine.state(SYMBOL)

    @pytest.mark.asyncio
    async def test_unreadable_store_is_fatal(self, tmp_path):
        coord, _ = await _coordinator(tmp_path, store=UnreadableStore(str(tmp_path)))
        with pytest.raises(RecoveryError):
            await coord.recover()

    @pytest.mark.asyncio
    async def test_empty_store(self, tmp_path):
        coord, engine = await _coordinator(tmp_path)
        report = await coord.recover()
        assert report.symbols == []
        assert engine.symbols() == []

    @pytest.mark.asyncio
    async def test_leftover_cache_entry_discarded(self, tmp_path):
        """上次运行残留、却从未刷盘的缓存条目在恢复后不可见"""
        coord, engine = await _coordinator(tmp_path)
        t = _tick(5_000, symbol=OTHER)
        await coord.cache.put_latest(t, IndicatorSnapshot(symbol=OTHER, timestamp=5_000, price=t.price))

        report = await coord.recover()
        assert report.symbols == []
        assert await coord.latest(OTHER) is None
        assert await coord.symbols() == []
        assert engine.state(OTHER).last_timestamp is None

    @pytest.mark.asyncio
    async def test_leftover_redis_entry_discarded(self, tmp_path):
        """Redis 跨重启保留的条目：持久层有记录的标的被重建，其余被清除"""
        redis = FakeRedis()
        with patch("tick_service.layers.cache.get_redis", return_value=redis):
            coord, engine = await _coordinator(tmp_path)
            await _feed(coord, engine, _ticks(4))
            await coord.flush()
            await _feed(coord, engine, _ticks(2, symbol=OTHER))

            fresh_engine = IndicatorEngine(PARAMS)
            fresh, _ = await _coordinator(tmp_path, engine=fresh_engine)
            assert await fresh.latest(OTHER) is not None

            await fresh.recover()
            assert await fresh.latest(OTHER) is None
            tick, _ = await fresh.latest(SYMBOL)
            assert tick.timestamp == 4_000
            assert await fresh.symbols() == [SYMBOL]

    @pytest.mark.asyncio
    async def test_uncleared_cache_is_fatal(self, tmp_path):
        coord, _ = await _coordinator(tmp_path)
        with patch("tick_service.layers.cache.get_redis", return_value=BrokenRedis()):
            with pytest.raises(RecoveryError):
                await coord.recover()


# ─────────────────────────────────────────────────────────
# 5. 缓存键
# ─────────────────────────────────────────────────────────

class TestCacheLayer:
    def test_key_format(self):
        assert _make_key("tick", "latest", SYMBOL) == f"tick:latest:{SYMBOL}"

    @pytest.mark.asyncio
    async def test_memory_backend_round_trip(self):
        cache = CacheLayer(prefix="test")
        tick = _tick(1, "9.99")
        snap = IndicatorSnapshot(
            symbol=SYMBOL, timestamp=1, price=tick.price,
            macd=Decimal("0.0123"), signal=Decimal("0.0100"), histogram=Decimal("0.0023"),
        )
        await cache.put_latest(tick, snap)
        assert cache.backend == "memory"
        assert await cache.get_latest(SYMBOL) == (tick, snap)
        assert await cache.symbols() == [SYMBOL]
        await cache.clear()
        assert await cache.get_latest(SYMBOL) is None

    @pytest.mark.asyncio
    async def test_redis_backend_round_trip(self):
        redis = FakeRedis()
        cache = CacheLayer(prefix="test")
        tick = _tick(1, "9.99")
        snap = IndicatorSnapshot(symbol=SYMBOL, timestamp=1, price=tick.price, macd=Decimal("0.5"))
        with patch("tick_service.layers.cache.get_redis", return_value=redis):
            await cache.put_latest(tick, snap)
            assert cache.backend == "redis"
            assert json.loads(redis.strings[f"test:latest:{SYMBOL}"])["tick"]["price"] == "9.99"
            assert redis.sets["test:symbols"] == {SYMBOL}
            assert await cache.get_latest(SYMBOL) == (tick, snap)
            assert await cache.symbols() == [SYMBOL]
            assert (await cache.stats())["symbols"] == 1

            await cache.clear()
            assert redis.strings == {}
            assert await cache.get_latest(SYMBOL) is None

    @pytest.mark.asyncio
    async def test_redis_read_error_is_miss(self):
        redis = FakeRedis()
        cache = CacheLayer(prefix="test")
        tick = _tick(1)
        with patch("tick_service.layers.cache.get_redis", return_value=redis):
            await cache.put_latest(tick, IndicatorSnapshot(symbol=SYMBOL, timestamp=1, price=tick.price))
            redis.fail = True
            assert await cache.get_latest(SYMBOL) is None
            assert await cache.symbols() == []
            assert (await cache.stats())["status"] == "error"

    @pytest.mark.asyncio
    async def test_redis_write_error_raises(self):
        cache = CacheLayer(prefix="test")
        tick = _tick(1)
        with patch("tick_service.layers.cache.get_redis", return_value=BrokenRedis()):
            with pytest.raises(CacheWriteError):
                await cache.put_latest(tick, IndicatorSnapshot(symbol=SYMBOL, timestamp=1, price=tick.price))
            with pytest.raises(CacheWriteError):
                await cache.clear()

    @pytest.mark.asyncio
    async def test_corrupt_redis_entry_is_miss(self):
        redis = FakeRedis()
        redis.strings[f"test:latest:{SYMBOL}"] = "{not json"
        with patch("tick_service.layers.cache.get_redis", return_value=redis):
            assert await CacheLayer(prefix="test").get_latest(SYMBOL) is None
