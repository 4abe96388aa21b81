"""
持久化写队列
每个标的一个有界 FIFO；批次可以跨标的，但同一标的同一时刻最多只在一个在途批次里，
失败的批次原样放回队首，保证标的内写入顺序不变。

队列满时 put() 只阻塞该标的的写入方，不影响其他标的。
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Set

from tick_service.models.tick import DurableRecord

logger = logging.getLogger(__name__)


class WriteQueue:
    def __init__(self, capacity_per_symbol: int):
        if capacity_per_symbol < 1:
            raise ValueError("capacity_per_symbol 必须 >= 1")
        self._capacity = capacity_per_symbol
        self._pending: Dict[str, Deque[DurableRecord]] = {}
        self._in_flight: Set[str] = set()
        self._taken: Dict[str, List[DurableRecord]] = {}
        self._cond = asyncio.Condition()
        self.saturation_events = 0

    # ── 写入方 ────────────────────────────────────────────

    async def put(self, record: DurableRecord) -> bool:
        """入队；与该标的队尾重复的记录直接丢弃并返回 False"""
        async with self._cond:
            queue = self._pending.setdefault(record.symbol, deque())
            if queue and queue[-1].key == record.key:
                return False
            if len(queue) >= self._capacity:
                self.saturation_events += 1
                logger.warning(
                    f"⚠️ {record.symbol} 写队列已满（{self._capacity}），等待刷盘释放空间"
                )
                await self._cond.wait_for(lambda: len(queue) < self._capacity)
            queue.append(record)
            self._cond.notify_all()
            return True

    # ── 刷盘方 ────────────────────────────────────────────

    def _available(self) -> int:
        return sum(len(q) for s, q in self._pending.items() if s not in self._in_flight)

    async def wait_for_batch(self, size: int, timeout: float) -> None:
        """等待可取记录达到 size 条，或超时"""
        async with self._cond:
            try:
                await asyncio.wait_for(
                    self._cond.wait_for(lambda: self._available() >= size), timeout
                )
            except asyncio.TimeoutError:
                pass

    async def take_batch(self, max_size: int) -> List[DurableRecord]:
        """取出至多 max_size 条记录，涉及的标的标记为在途"""
        async with self._cond:
            batch: List[DurableRecord] = []
            for symbol, queue in self._pending.items():
                if len(batch) >= max_size:
                    break
                if symbol in self._in_flight or not queue:
                    continue
                taken = self._taken.setdefault(symbol, [])
                while queue and len(batch) < max_size:
                    record = queue.popleft()
                    taken.append(record)
                    batch.append(record)
                self._in_flight.add(symbol)
            if batch:
                self._cond.notify_all()
            return batch

    async def complete(self, batch: List[DurableRecord]) -> None:
        """批次写入成功"""
        async with self._cond:
            for symbol in {r.symbol for r in batch}:
                self._taken.pop(symbol, None)
            self._in_flight.difference_update(r.symbol for r in batch)
            self._cond.notify_all()

    async def requeue(self, batch: List[DurableRecord]) -> None:
        """批次写入失败：按原顺序放回各标的队首"""
        async with self._cond:
            for record in reversed(batch):
                self._pending.setdefault(record.symbol, deque()).appendleft(record)
            for symbol in {r.symbol for r in batch}:
                self._taken.pop(symbol, None)
            self._in_flight.difference_update(r.symbol for r in batch)
            self._cond.notify_all()

    # ── 状态 ──────────────────────────────────────────────

    def depth(self) -> int:
        return sum(len(q) for q in self._pending.values())

    def depth_for(self, symbol: str) -> int:
        queue = self._pending.get(symbol)
        return len(queue) if queue else 0

    def in_flight(self) -> int:
        return len(self._in_flight)

    def pending(self, symbol: str) -> List[DurableRecord]:
        """标的尚未写入持久层的记录（在途批次 + 排队），按时间顺序"""
        return list(self._taken.get(symbol, ())) + list(self._pending.get(symbol, ()))

    @property
    def capacity(self) -> int:
        return self._capacity
