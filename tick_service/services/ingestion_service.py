"""
行情接入服务
每个行情源一个轮询任务；每个标的一个邮箱（有界队列 + 唯一消费者任务），
同一标的的 Tick 只在其邮箱消费者中串行进入指标引擎，不同标的之间完全并行。

同一时间戳的多源报价按数据源优先级裁决：SOURCES 中越靠前优先级越高，
消费者每次取出邮箱中全部待处理 Tick，同一时间戳只保留优先级最高的一条（同优先级取先到）。
某个时间戳一旦被接受，之后同时间戳的 Tick 一律视为重复。
"""

import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from tick_service.config import settings
from tick_service.errors import CacheWriteError, DuplicateTick, OutOfOrderTick, StaleWriteError
from tick_service.layers.acquisition import RetryPolicy, TickSource, build_sources, fetch_with_retry
from tick_service.layers.analysis import IndicatorEngine, get_indicator_engine
from tick_service.layers.processing import ProcessingLayer, get_processing_layer
from tick_service.models.tick import Tick
from tick_service.services.storage_service import StorageCoordinator, get_storage_coordinator

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    FAILED = "failed"


class _Delivery(NamedTuple):
    tick: Tick
    priority: int
    future: Optional[asyncio.Future]


def arbitrate(batch: Sequence[_Delivery]) -> Tuple[List[_Delivery], List[_Delivery]]:
    """
    同一时间戳只保留优先级最高（数值最小）的一条，同优先级取先到者

    Returns:
        (胜出者，按 (timestamp, priority) 升序), (落选者)
    """
    best: Dict[int, int] = {}
    for idx, delivery in enumerate(batch):
        ts = delivery.tick.timestamp
        current = best.get(ts)
        if current is None or delivery.priority < batch[current].priority:
            best[ts] = idx
    winners = set(best.values())
    kept = sorted(
        (d for i, d in enumerate(batch) if i in winners),
        key=lambda d: (d.tick.timestamp, d.priority),
    )
    dropped = [d for i, d in enumerate(batch) if i not in winners]
    return kept, dropped


class IngestionService:
    """行情接入：拉取 → 标准化 → 按标的串行计算指标 → 双层存储"""

    def __init__(
        self,
        sources: Sequence[TickSource],
        normalizer: ProcessingLayer,
        engine: IndicatorEngine,
        storage: StorageCoordinator,
        retry: Optional[RetryPolicy] = None,
        symbols: Optional[Sequence[str]] = None,
        poll_interval: float = 3.0,
        mailbox_capacity: int = 1000,
    ):
        self._sources = list(sources)
        self._normalizer = normalizer
        self._engine = engine
        self._storage = storage
        self._retry = retry or RetryPolicy()
        self._symbols = list(symbols or [])
        self._poll_interval = poll_interval
        self._mailbox_capacity = mailbox_capacity

        self._mailboxes: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._source_tasks: List[asyncio.Task] = []

        self._outcomes: Counter = Counter()
        self._skipped_cycles: Counter = Counter()
        self._fetched: Counter = Counter()
        self.arbitrated = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._source_tasks)

    @property
    def push_priority(self) -> int:
        """外部推送的 Tick 优先级低于所有已配置数据源"""
        return len(self._sources)

    # ── 邮箱 ──────────────────────────────────────────────

    def _mailbox(self, symbol: str) -> asyncio.Queue:
        queue = self._mailboxes.get(symbol)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._mailbox_capacity)
            self._mailboxes[symbol] = queue
            self._consumers[symbol] = asyncio.create_task(
                self._consume(symbol, queue), name=f"mailbox-{symbol}"
            )
        return queue

    async def submit(
        self, tick: Tick, priority: Optional[int] = None, wait: bool = False
    ) -> Optional[TickOutcome]:
        """
        把 Tick 投递到其标的邮箱；邮箱满时阻塞（仅该标的）

        wait=True 时等待该 Tick 处理完成并返回处理结果
        """
        future = asyncio.get_running_loop().create_future() if wait else None
        prio = self.push_priority if priority is None else priority
        await self._mailbox(tick.symbol).put(_Delivery(tick, prio, future))
        if future is None:
            return None
        return await future

    async def _consume(self, symbol: str, queue: asyncio.Queue) -> None:
        while True:
            batch = [await queue.get()]
            while not queue.empty():
                batch.append(queue.get_nowait())
            try:
                kept, dropped = arbitrate(batch)
                for delivery in dropped:
                    self.arbitrated += 1
                    self._outcomes[TickOutcome.DUPLICATE] += 1
                    logger.debug(
                        f"{symbol}@{delivery.tick.timestamp} 同时间戳低优先级报价被丢弃"
                        f"（priority={delivery.priority}）"
                    )
                    _resolve(delivery.future, TickOutcome.DUPLICATE)
                for delivery in kept:
                    outcome = await self._process(delivery.tick)
                    self._outcomes[outcome] += 1
                    _resolve(delivery.future, outcome)
            finally:
                for _ in batch:
                    queue.task_done()

    async def _process(self, tick: Tick) -> TickOutcome:
        """评估 → 写存储 → 提交状态；存储失败时状态不推进"""
        symbol = tick.symbol
        try:
            new_state, snapshot = self._engine.evaluate(symbol, tick)
        except DuplicateTick as exc:
            logger.debug(f"重复 Tick 已忽略: {exc}")
            return TickOutcome.DUPLICATE
        except OutOfOrderTick as exc:
            logger.warning(f"⚠️ 乱序 Tick 已拒绝: {exc}")
            return TickOutcome.OUT_OF_ORDER

        try:
            await self._storage.record(tick, snapshot)
        except StaleWriteError as exc:
            logger.warning(f"⚠️ 存储拒绝过期写入: {exc}")
            return TickOutcome.OUT_OF_ORDER
        except CacheWriteError as exc:
            logger.error(f"❌ {symbol}@{tick.timestamp} 缓存写入失败，Tick 未被接受: {exc}")
            return TickOutcome.FAILED
        except Exception as exc:
            logger.error(f"❌ {symbol}@{tick.timestamp} 写入存储异常: {exc}", exc_info=True)
            return TickOutcome.FAILED
        self._engine.commit(symbol, new_state)
        logger.debug(f"{symbol}@{tick.timestamp} 已接受 price={tick.price}")
        return TickOutcome.ACCEPTED

    # ── 行情源轮询 ────────────────────────────────────────

    async def _run_source(self, source: TickSource, priority: int) -> None:
        logger.info(f"行情源 {source.name} 开始轮询（优先级 {priority}，间隔 {self._poll_interval}s）")
        while True:
            raw = await fetch_with_retry(source, self._symbols, self._retry)
            if raw is None:
                self._skipped_cycles[source.name] += 1
            else:
                try:
                    ticks = self._normalizer.normalize_quotes(raw)
                except Exception as exc:
                    logger.error(f"❌ 行情源 {source.name} 报价标准化失败: {exc}", exc_info=True)
                    ticks = []
                self._fetched[source.name] += len(ticks)
                for tick in ticks:
                    await self.submit(tick, priority)
            await asyncio.sleep(self._poll_interval)

    # ── 生命周期 ──────────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            return
        if not self._sources:
            logger.warning("⚠️ 没有可用的行情源，接入未启动")
            return
        self._source_tasks = [
            asyncio.create_task(self._run_source(source, priority), name=f"source-{source.name}")
            for priority, source in enumerate(self._sources)
        ]
        logger.info(f"✅ 行情接入启动: {len(self._sources)} 个行情源, {len(self._symbols)} 个标的")

    async def stop(self) -> None:
        """放弃进行中的拉取，处理完邮箱中已投递的 Tick 后停止消费者"""
        for task in self._source_tasks:
            task.cancel()
        await asyncio.gather(*self._source_tasks, return_exceptions=True)
        self._source_tasks = []
        for source in self._sources:
            await source.close()

        for queue in self._mailboxes.values():
            await queue.join()
        for task in self._consumers.values():
            task.cancel()
        await asyncio.gather(*self._consumers.values(), return_exceptions=True)
        self._consumers.clear()
        self._mailboxes.clear()
        logger.info("行情接入已停止")

    def stats(self) -> dict:
        return {
            "running": self.running,
            "sources": [s.name for s in self._sources],
            "symbols": list(self._symbols),
            "accepted": self._outcomes[TickOutcome.ACCEPTED],
            "duplicates": self._outcomes[TickOutcome.DUPLICATE],
            "out_of_order": self._outcomes[TickOutcome.OUT_OF_ORDER],
            "failed": self._outcomes[TickOutcome.FAILED],
            "arbitrated": self.arbitrated,
            "fetched": dict(self._fetched),
            "skipped_cycles": dict(self._skipped_cycles),
            "mailbox_depth": {s: q.qsize() for s, q in self._mailboxes.items()},
        }


def _resolve(future: Optional[asyncio.Future], outcome: TickOutcome) -> None:
    if future is not None and not future.done():
        future.set_result(outcome)


# ── 模块级别单例 ──────────────────────────────────────────
_service: Optional[IngestionService] = None


def get_ingestion_service() -> IngestionService:
    global _service
    if _service is None:
        _service = IngestionService(
            sources=build_sources(settings.SOURCES),
            normalizer=get_processing_layer(),
            engine=get_indicator_engine(),
            storage=get_storage_coordinator(),
            retry=RetryPolicy.from_settings(settings),
            symbols=settings.SYMBOLS,
            poll_interval=settings.POLL_INTERVAL,
            mailbox_capacity=settings.MAILBOX_CAPACITY,
        )
    return _service
