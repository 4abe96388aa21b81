"""
行情查询服务
最新值（缓存优先）、历史区间（持久层优先，缓存 / 待刷盘记录补齐）、按时点重算、零轴穿越统计
"""

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from tick_service.layers.analysis import IndicatorEngine, count_crossovers, get_indicator_engine
from tick_service.models.tick import DurableRecord, IndicatorSnapshot
from tick_service.services.ingestion_service import IngestionService, get_ingestion_service
from tick_service.services.storage_service import StorageCoordinator, get_storage_coordinator

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


def day_bounds(day: str) -> tuple:
    """YYYY-MM-DD → 该 UTC 自然日的 [start, end] 毫秒闭区间"""
    start = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    return start_ms, start_ms + _DAY_MS - 1


class QueryService:
    """行情查询业务服务"""

    def __init__(
        self,
        storage: StorageCoordinator,
        engine: IndicatorEngine,
        ingestion: Optional[IngestionService] = None,
    ):
        self._storage = storage
        self._engine = engine
        self._ingestion = ingestion

    # ── 最新值 ────────────────────────────────────────────

    async def latest(self, symbol: str) -> Optional[DurableRecord]:
        """缓存命中直接返回；未命中回退持久层最后一条记录"""
        entry = await self._storage.latest(symbol)
        if entry is not None:
            return DurableRecord.from_pair(*entry)
        logger.debug(f"{symbol} 缓存未命中，回退持久层")
        return await self._storage.last_durable(symbol)

    # ── 历史区间 ──────────────────────────────────────────

    async def history(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[DurableRecord]:
        """
        按时间升序流式返回 [start, end] 内的记录

        持久层扫描完后，用写队列中尚未刷盘的记录和缓存中的最新值补齐尾部，
        只追加时间戳大于已返回最后一条的记录。
        """
        last_ts: Optional[int] = None
        async for record in self._storage.range(symbol, start, end):
            last_ts = record.timestamp
            yield record

        tail = list(self._storage.queue.pending(symbol))
        entry = await self._storage.latest(symbol)
        if entry is not None:
            tail.append(DurableRecord.from_pair(*entry))
        for record in tail:
            if start is not None and record.timestamp < start:
                continue
            if end is not None and record.timestamp > end:
                break
            if last_ts is not None and record.timestamp <= last_ts:
                continue
            last_ts = record.timestamp
            yield record

    async def history_list(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[DurableRecord]:
        return [record async for record in self.history(symbol, start, end)]

    async def history_for_date(self, symbol: str, day: str) -> List[DurableRecord]:
        """
        某一 UTC 自然日的全部记录

        Raises:
            ValueError: 日期格式不是 YYYY-MM-DD
        """
        start, end = day_bounds(day)
        return await self.history_list(symbol, start, end)

    async def recent(
        self, symbol: str, days: int, now_ms: Optional[int] = None
    ) -> List[DurableRecord]:
        """最近 days 天的记录"""
        if days < 1:
            raise ValueError("days 必须 >= 1")
        end = now_ms if now_ms is not None else _now_ms()
        return await self.history_list(symbol, end - days * _DAY_MS, end)

    # ── 按时点 ────────────────────────────────────────────

    async def as_of(self, symbol: str, timestamp: int) -> Optional[IndicatorSnapshot]:
        """
        timestamp 时刻的指标值

        - 不晚于持久层最后一条：从持久层重放到该时刻（确定性重算）
        - 晚于持久层最后一条：取实时状态（缓存 / 待刷盘记录中不晚于该时刻的最后一条）
        """
        last = await self._storage.last_durable(symbol)
        if last is not None and timestamp <= last.timestamp:
            ticks = [r.to_tick() async for r in self._storage.range(symbol, None, timestamp)]
            logger.debug(f"{symbol} 按时点重放 {len(ticks)} 条至 {timestamp}")
            return self._engine.replay_snapshot(symbol, ticks)

        entry = await self._storage.latest(symbol)
        if entry is not None and entry[1].timestamp <= timestamp:
            return entry[1]
        candidate = last.to_snapshot() if last is not None else None
        for record in self._storage.queue.pending(symbol):
            if record.timestamp > timestamp:
                break
            candidate = record.to_snapshot()
        return candidate

    # ── 分析 ──────────────────────────────────────────────

    async def analysis(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> Dict[str, Any]:
        """区间内 MACD 柱线的零轴穿越统计"""
        records = await self.history_list(symbol, start, end)
        bullish, bearish = count_crossovers(r.to_snapshot() for r in records)
        return {
            "symbol": symbol,
            "start": start,
            "end": end,
            "points": len(records),
            "signal_count": bullish + bearish,
            "bullish": bullish,
            "bearish": bearish,
        }

    # ── 标的与状态 ────────────────────────────────────────

    async def symbols(self) -> List[str]:
        return await self._storage.symbols()

    async def symbols_info(self) -> List[Dict[str, Any]]:
        info = []
        for symbol in await self.symbols():
            latest = await self.latest(symbol)
            info.append({
                "symbol": symbol,
                "latest": latest.model_dump(mode="json") if latest else None,
                "warmup": self._engine.warmup_status(symbol),
            })
        return info

    async def status(self) -> Dict[str, Any]:
        symbols = await self.symbols()
        return {
            "storage": self._storage.status(),
            "warmup": [self._engine.warmup_status(s) for s in symbols],
            "ingestion": self._ingestion.stats() if self._ingestion else None,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_service: Optional[QueryService] = None


def get_query_service() -> QueryService:
    global _service
    if _service is None:
        _service = QueryService(
            storage=get_storage_coordinator(),
            engine=get_indicator_engine(),
            ingestion=get_ingestion_service(),
        )
    return _service
