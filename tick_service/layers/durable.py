"""
Layer 5 – 持久层
按 (symbol, timestamp) 升序组织、只追加的历史记录，是历史查询与状态重建的唯一依据。

后端：
  MongoDB  : ticks 集合，(symbol, timestamp) 唯一索引
  文件     : 每个标的一个 JSON Lines 文件（MongoDB 不可用时降级使用）

重复键的写入会被静默丢弃（幂等写）；无法解析的记录在扫描时跳过并登记为缺口。
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import BulkWriteError, PyMongoError

from tick_service.config import settings
from tick_service.db import get_tick_collection
from tick_service.errors import CorruptDurableRecord, DurableReadError, DurableWriteFailure
from tick_service.models.tick import DurableRecord

logger = logging.getLogger(__name__)

_DUPLICATE_KEY = 11000


class DurableStore(ABC):
    """持久层接口"""

    backend = "abstract"

    def __init__(self):
        self.gaps: List[dict] = []

    def _report_gap(self, exc: CorruptDurableRecord) -> None:
        logger.warning(f"⚠️ 跳过损坏记录（缺口保留，不做修复）: {exc}")
        gap = {"symbol": exc.symbol, "locator": exc.locator, "reason": exc.reason}
        if gap not in self.gaps:
            self.gaps.append(gap)

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def insert_batch(self, records: Sequence[DurableRecord]) -> int:
        """批量写入，重复键丢弃；返回实际新增条数，失败抛出 DurableWriteFailure"""

    @abstractmethod
    def scan(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[DurableRecord]:
        """按时间戳升序惰性遍历 [start, end]（闭区间）内的记录"""

    @abstractmethod
    async def symbols(self) -> List[str]:
        """所有有记录的标的"""

    @abstractmethod
    async def last_record(self, symbol: str) -> Optional[DurableRecord]:
        """标的最新一条可解析记录"""

    @abstractmethod
    async def count(self, symbol: str) -> int:
        """标的记录条数"""


# ── MongoDB ───────────────────────────────────────────────

class MongoDurableStore(DurableStore):
    backend = "mongodb"

    def __init__(self, collection):
        super().__init__()
        self._col = collection

    async def open(self) -> None:
        try:
            await self._col.create_index(
                [("symbol", ASCENDING), ("timestamp", ASCENDING)],
                unique=True,
                name="symbol_timestamp_unique",
            )
        except PyMongoError as exc:
            raise DurableReadError(f"MongoDB 建立索引失败: {exc}") from exc
        logger.info(f"MongoDB 持久层就绪: {self._col.name}")

    async def insert_batch(self, records: Sequence[DurableRecord]) -> int:
        if not records:
            return 0
        docs = [r.to_document() for r in records]
        try:
            result = await self._col.insert_many(docs, ordered=False)
            return len(result.inserted_ids)
        except BulkWriteError as exc:
            details = exc.details or {}
            fatal = [e for e in details.get("writeErrors", []) if e.get("code") != _DUPLICATE_KEY]
            if fatal:
                raise DurableWriteFailure(f"MongoDB 批量写入失败: {fatal[0].get('errmsg')}") from exc
            duplicates = len(details.get("writeErrors", []))
            logger.debug(f"批量写入丢弃 {duplicates} 条重复记录")
            return details.get("nInserted", len(docs) - duplicates)
        except PyMongoError as exc:
            raise DurableWriteFailure(f"MongoDB 批量写入失败: {exc}") from exc

    async def scan(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[DurableRecord]:
        query: Dict = {"symbol": symbol}
        bounds = {}
        if start is not None:
            bounds["$gte"] = start
        if end is not None:
            bounds["$lte"] = end
        if bounds:
            query["timestamp"] = bounds
        try:
            cursor = self._col.find(query).sort("timestamp", ASCENDING)
            async for doc in cursor:
                locator = str(doc.pop("_id", "?"))
                try:
                    yield DurableRecord.from_document(doc, locator)
                except CorruptDurableRecord as exc:
                    self._report_gap(exc)
        except PyMongoError as exc:
            raise DurableReadError(f"MongoDB 读取失败 {symbol}: {exc}") from exc

    async def symbols(self) -> List[str]:
        try:
            return sorted(await self._col.distinct("symbol"))
        except PyMongoError as exc:
            raise DurableReadError(f"MongoDB 读取标的列表失败: {exc}") from exc

    async def last_record(self, symbol: str) -> Optional[DurableRecord]:
        try:
            cursor = self._col.find({"symbol": symbol}).sort("timestamp", DESCENDING)
            async for doc in cursor:
                locator = str(doc.pop("_id", "?"))
                try:
                    return DurableRecord.from_document(doc, locator)
                except CorruptDurableRecord as exc:
                    self._report_gap(exc)
        except PyMongoError as exc:
            raise DurableReadError(f"MongoDB 读取失败 {symbol}: {exc}") from exc
        return None

    async def count(self, symbol: str) -> int:
        try:
            return await self._col.count_documents({"symbol": symbol})
        except PyMongoError as exc:
            raise DurableReadError(f"MongoDB 计数失败 {symbol}: {exc}") from exc


# ── 文件 ──────────────────────────────────────────────────

def _file_name(symbol: str) -> str:
    safe = symbol.replace(":", "_").replace("/", "_").replace(os.sep, "_")
    return f"{safe}.jsonl"


class FileDurableStore(DurableStore):
    """
    文件持久层：<DATA_DIR>/<symbol>.jsonl，一行一条记录

    写入顺序即按标的 FIFO 的刷盘顺序，因此文件内时间戳递增；
    扫描时再次保证严格递增，跳过重复与乱序行。
    """

    backend = "file"

    def __init__(self, directory: Optional[str] = None):
        super().__init__()
        self._dir = directory or settings.DATA_DIR
        self._keys: Dict[str, Set[int]] = defaultdict(set)
        self._last: Dict[str, int] = {}
        self._files: Dict[str, str] = {}

    def _path(self, symbol: str) -> str:
        return os.path.join(self._dir, _file_name(symbol))

    async def open(self) -> None:
        """建立内存键索引（去重用）；目录存在但不可读时抛出 DurableReadError"""
        try:
            os.makedirs(self._dir, exist_ok=True)
            names = sorted(f for f in os.listdir(self._dir) if f.endswith(".jsonl"))
        except OSError as exc:
            raise DurableReadError(f"数据目录不可读 {self._dir}: {exc}") from exc
        self._keys.clear()
        self._last.clear()
        self._files.clear()
        for name in names:
            path = os.path.join(self._dir, name)
            for record in self._read_file(path):
                last = self._last.get(record.symbol)
                if last is not None and record.timestamp <= last:
                    continue
                self._keys[record.symbol].add(record.timestamp)
                self._last[record.symbol] = record.timestamp
                self._files[record.symbol] = path
        logger.info(f"文件持久层就绪: {self._dir}（{len(self._keys)} 个标的）")

    def _read_file(self, path: str):
        try:
            with open(path, "r", encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    locator = f"{os.path.basename(path)}:{lineno}"
                    try:
                        doc = json.loads(line)
                        yield DurableRecord.from_document(doc, locator)
                    except json.JSONDecodeError as exc:
                        symbol = os.path.basename(path)[: -len(".jsonl")]
                        self._report_gap(CorruptDurableRecord(symbol, locator, str(exc)))
                    except CorruptDurableRecord as exc:
                        self._report_gap(exc)
        except OSError as exc:
            raise DurableReadError(f"读取失败 {path}: {exc}") from exc

    async def insert_batch(self, records: Sequence[DurableRecord]) -> int:
        grouped: Dict[str, List[DurableRecord]] = defaultdict(list)
        for record in records:
            grouped[record.symbol].append(record)

        inserted = 0
        for symbol, items in grouped.items():
            known = self._keys[symbol]
            last = self._last.get(symbol)
            fresh, seen = [], set()
            for record in sorted(items, key=lambda r: r.timestamp):
                if record.timestamp in known or record.timestamp in seen:
                    continue
                if last is not None and record.timestamp < last:
                    # 文件只能按时间追加，早于末尾的记录无法被扫描到
                    logger.warning(f"⚠️ 丢弃乱序记录 {symbol}@{record.timestamp}（文件末尾为 {last}）")
                    continue
                seen.add(record.timestamp)
                fresh.append(record)
            if not fresh:
                continue
            path = self._files.get(symbol) or self._path(symbol)
            payload = "".join(
                json.dumps(r.to_document(), ensure_ascii=False) + "\n" for r in fresh
            )
            try:
                with open(path, "a", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
            except OSError as exc:
                raise DurableWriteFailure(f"文件写入失败 {path}: {exc}") from exc
            self._files[symbol] = path
            known.update(seen)
            self._last[symbol] = fresh[-1].timestamp
            inserted += len(fresh)
        return inserted

    async def scan(
        self, symbol: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[DurableRecord]:
        path = self._files.get(symbol)
        if path is None or not os.path.exists(path):
            return
        last_ts: Optional[int] = None
        for record in self._read_file(path):
            if record.symbol != symbol:
                continue
            if last_ts is not None and record.timestamp <= last_ts:
                continue
            last_ts = record.timestamp
            if start is not None and record.timestamp < start:
                continue
            if end is not None and record.timestamp > end:
                break
            yield record

    async def symbols(self) -> List[str]:
        return sorted(s for s, keys in self._keys.items() if keys)

    async def last_record(self, symbol: str) -> Optional[DurableRecord]:
        last = None
        async for record in self.scan(symbol):
            last = record
        return last

    async def count(self, symbol: str) -> int:
        return len(self._keys.get(symbol, ()))


# ── 模块级别单例 ──────────────────────────────────────────
_store: Optional[DurableStore] = None


def get_durable_store() -> DurableStore:
    """MongoDB 已连接时使用 MongoDB，否则使用文件存储"""
    global _store
    if _store is None:
        collection = get_tick_collection()
        _store = MongoDurableStore(collection) if collection is not None else FileDurableStore()
    return _store
