"""
存储协调服务
双层写入 / 读取路径 + 启动恢复

一致性：缓存优先、持久层最终一致
  - record() 同步写缓存，成功后把记录放入按标的有界的写队列
  - 后台刷盘任务按批大小或时间间隔（先到为准）批量写持久层，并发数受限
  - 批次写入失败按退避重试，耗尽后放回队首并进入降级状态；缓存在此期间仍是“最新”的权威来源
  - 进程崩溃时尚未刷盘的记录丢失，丢失量以一个刷盘窗口为上限
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from tick_service.config import settings
from tick_service.errors import (
    CacheWriteError,
    DurableReadError,
    DurableWriteFailure,
    RecoveryError,
    StaleWriteError,
)
from tick_service.layers.analysis import IndicatorEngine, get_indicator_engine
from tick_service.layers.cache import CacheEntry, CacheLayer, get_cache_layer
from tick_service.layers.durable import DurableStore, get_durable_store
from tick_service.layers.write_queue import WriteQueue
from tick_service.models.tick import DurableRecord, IndicatorSnapshot, Tick

logger = logging.getLogger(__name__)


class WritePathConfig(BaseModel):
    """写入路径参数（缓存与持久层之间的最大滞后由此决定）"""

    model_config = ConfigDict(frozen=True)

    flush_batch_size: int = Field(default=500, ge=1)
    flush_interval: float = Field(default=1.0, gt=0)
    per_symbol_queue_capacity: int = Field(default=1000, ge=1)
    flush_workers: int = Field(default=2, ge=1)
    flush_max_retries: int = Field(default=3, ge=1)
    flush_retry_base_delay: float = Field(default=0.2, ge=0)

    @classmethod
    def from_settings(cls, settings) -> "WritePathConfig":
        return cls(
            flush_batch_size=settings.FLUSH_BATCH_SIZE,
            flush_interval=settings.FLUSH_INTERVAL,
            per_symbol_queue_capacity=settings.PER_SYMBOL_QUEUE_CAPACITY,
            flush_workers=settings.FLUSH_WORKERS,
            flush_max_retries=settings.FLUSH_MAX_RETRIES,
            flush_retry_base_delay=settings.FLUSH_RETRY_BASE_DELAY,
        )


class RecoveryReport(BaseModel):
    symbols: List[str] = Field(default_factory=list)
    records: int = 0
    failed_symbols: List[str] = Field(default_factory=list)
    gaps: List[dict] = Field(default_factory=list)


class StorageCoordinator:
    """缓存层 + 持久层协调器"""

    def __init__(
        self,
        cache: CacheLayer,
        durable: DurableStore,
        engine: IndicatorEngine,
        config: Optional[WritePathConfig] = None,
    ):
        self._cache = cache
        self._durable = durable
        self._engine = engine
        self._config = config or WritePathConfig()
        self._queue = WriteQueue(self._config.per_symbol_queue_capacity)
        self._workers = asyncio.Semaphore(self._config.flush_workers)
        self._flush_tasks: Set[asyncio.Task] = set()
        self._flusher: Optional[asyncio.Task] = None
        self._last_ts: Dict[str, int] = {}

        self.degraded = False
        self.last_flush_at: Optional[datetime] = None
        self.last_flush_error: Optional[str] = None
        self.flushed_records = 0
        self.failed_batches = 0

    @property
    def durable(self) -> DurableStore:
        return self._durable

    @property
    def cache(self) -> CacheLayer:
        return self._cache

    @property
    def queue(self) -> WriteQueue:
        return self._queue

    # ── 写入 ──────────────────────────────────────────────

    async def record(self, tick: Tick, snapshot: IndicatorSnapshot) -> None:
        """
        写入一对 (Tick, 快照)

        缓存写入成功后才返回；持久化写入进入队列，队列满时在此阻塞（仅该标的）。

        同一 (symbol, timestamp) 重复写入是幂等的；早于该标的最后一次写入的记录被拒绝，
        两层都不改变。

        Raises:
            StaleWriteError: 时间戳早于该标的最后一次写入
            CacheWriteError: 缓存写入失败，持久化不会入队
        """
        last = self._last_ts.get(tick.symbol)
        if last is not None and tick.timestamp < last:
            raise StaleWriteError(tick.symbol, tick.timestamp, last)
        record = DurableRecord.from_pair(tick, snapshot)
        await self._cache.put_latest(tick, snapshot)
        self._last_ts[tick.symbol] = tick.timestamp
        await self._queue.put(record)

    # ── 读取 ──────────────────────────────────────────────

    async def latest(self, symbol: str) -> Optional[CacheEntry]:
        """缓存中的最新 (Tick, 快照)"""
        return await self._cache.get_latest(symbol)

    def range(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[DurableRecord]:
        """持久层 [start, end] 内记录，按时间升序惰性返回"""
        return self._durable.scan(symbol, start, end)

    async def last_durable(self, symbol: str) -> Optional[DurableRecord]:
        return await self._durable.last_record(symbol)

    async def symbols(self) -> List[str]:
        durable = await self._durable.symbols()
        cached = await self._cache.symbols()
        return sorted(set(durable) | set(cached))

    # ── 刷盘 ──────────────────────────────────────────────

    async def start(self) -> None:
        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.create_task(self._flush_loop(), name="durable-flusher")
            logger.info(
                f"刷盘任务启动: batch={self._config.flush_batch_size} "
                f"interval={self._config.flush_interval}s workers={self._config.flush_workers}"
            )

    async def _flush_loop(self) -> None:
        while True:
            await self._queue.wait_for_batch(
                self._config.flush_batch_size, self._config.flush_interval
            )
            await self._dispatch()

    async def _dispatch(self) -> None:
        """把可取的记录分批交给刷盘工作者，直到没有可取记录"""
        while True:
            await self._workers.acquire()
            try:
                batch = await self._queue.take_batch(self._config.flush_batch_size)
            except BaseException:
                self._workers.release()
                raise
            if not batch:
                self._workers.release()
                return
            task = asyncio.create_task(self._flush_batch(batch))
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    async def _flush_batch(self, batch: List[DurableRecord]) -> None:
        try:
            for attempt in range(1, self._config.flush_max_retries + 1):
                try:
                    inserted = await self._durable.insert_batch(batch)
                except DurableWriteFailure as exc:
                    self.last_flush_error = str(exc)
                    logger.warning(
                        f"⚠️ 刷盘失败（{len(batch)} 条，第 {attempt}/{self._config.flush_max_retries} 次）: {exc}"
                    )
                    if attempt < self._config.flush_max_retries:
                        await asyncio.sleep(self._config.flush_retry_base_delay * (2 ** (attempt - 1)))
                    continue
                await self._queue.complete(batch)
                self.flushed_records += inserted
                self.last_flush_at = datetime.now(tz=timezone.utc)
                if self.degraded:
                    logger.info("✅ 持久层写入恢复，退出降级状态")
                self.degraded = False
                self.last_flush_error = None
                logger.debug(f"刷盘完成: {inserted}/{len(batch)} 条新增")
                return

            self.failed_batches += 1
            self.degraded = True
            logger.error(f"❌ 刷盘重试耗尽，{len(batch)} 条记录放回队首，进入降级状态")
            await self._queue.requeue(batch)
        finally:
            self._workers.release()

    async def flush(self) -> None:
        """立即刷盘并等待完成，直到队列为空或出现放回队首的失败批次"""
        while True:
            await self._dispatch()
            if not self._flush_tasks:
                return
            while self._flush_tasks:
                await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
            if self.degraded or not self._queue.depth():
                return

    async def stop(self) -> None:
        """停止刷盘循环并排空写队列；持久层持续失败时放弃剩余记录并记录日志"""
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass
            self._flusher = None

        while self._queue.depth() or self._queue.in_flight():
            before = self._queue.depth()
            await self.flush()
            if self.degraded and self._queue.depth() >= before:
                logger.error(f"❌ 关闭时持久层不可写，{self._queue.depth()} 条记录未能刷盘")
                break
        logger.info(f"写队列已排空，累计刷盘 {self.flushed_records} 条")

    # ── 启动恢复 ──────────────────────────────────────────

    async def recover(self) -> RecoveryReport:
        """
        从持久层重建指标状态与缓存（启动时、接入开始前调用一次）

        Raises:
            RecoveryError: 持久层完全不可读，或残留缓存无法清除
        """
        try:
            symbols = await self._durable.symbols()
        except DurableReadError as exc:
            raise RecoveryError(f"持久层不可读，无法恢复: {exc}") from exc

        # 缓存只能反映持久层重放的结果；上次运行残留的条目（含未刷盘的）全部丢弃
        try:
            await self._cache.clear()
        except CacheWriteError as exc:
            raise RecoveryError(f"无法清除残留缓存: {exc}") from exc
        self._last_ts.clear()

        report = RecoveryReport()
        for symbol in symbols:
            try:
                ticks = [record.to_tick() async for record in self._durable.scan(symbol)]
            except DurableReadError as exc:
                logger.error(f"❌ {symbol} 恢复失败: {exc}")
                report.failed_symbols.append(symbol)
                continue

            last_tick, last_snapshot = self._engine.restore(symbol, ticks)
            report.symbols.append(symbol)
            report.records += len(ticks)
            if last_tick is None:
                continue
            try:
                await self._cache.put_latest(last_tick, last_snapshot)
                self._last_ts[symbol] = last_tick.timestamp
            except CacheWriteError as exc:
                logger.warning(f"⚠️ {symbol} 缓存重建失败（查询将回退持久层）: {exc}")

        if symbols and len(report.failed_symbols) == len(symbols):
            raise RecoveryError(f"所有标的均无法从持久层读取: {report.failed_symbols}")

        report.gaps = list(self._durable.gaps)
        logger.info(
            f"✅ 恢复完成: {len(report.symbols)} 个标的, {report.records} 条记录, "
            f"{len(report.gaps)} 处缺口, {len(report.failed_symbols)} 个标的失败"
        )
        return report

    # ── 状态 ──────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "queue_depth": self._queue.depth(),
            "queue_capacity_per_symbol": self._queue.capacity,
            "in_flight_symbols": self._queue.in_flight(),
            "saturation_events": self._queue.saturation_events,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
            "last_flush_error": self.last_flush_error,
            "flushed_records": self.flushed_records,
            "failed_batches": self.failed_batches,
            "degraded": self.degraded,
            "cache_backend": self._cache.backend,
            "durable_backend": self._durable.backend,
            "gaps": list(self._durable.gaps),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_coordinator: Optional[StorageCoordinator] = None


def get_storage_coordinator() -> StorageCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = StorageCoordinator(
            cache=get_cache_layer(),
            durable=get_durable_store(),
            engine=get_indicator_engine(),
            config=WritePathConfig.from_settings(settings),
        )
    return _coordinator
