"""
Layer 4 – 缓存层
每个标的只保存最新一条 (Tick, 快照)，不保存历史。
Redis 可用时写 Redis，否则降级为进程内字典；两者都是易失的，重启后由持久层恢复。
"""

import json
import logging
from typing import Dict, List, Optional, Tuple

from tick_service.config import settings
from tick_service.db import get_redis
from tick_service.errors import CacheWriteError
from tick_service.models.tick import IndicatorSnapshot, Tick

logger = logging.getLogger(__name__)

CacheEntry = Tuple[Tick, IndicatorSnapshot]


def _make_key(prefix: str, namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    return ":".join([prefix, namespace] + list(parts))


def _encode(tick: Tick, snapshot: IndicatorSnapshot) -> str:
    return json.dumps(
        {"tick": tick.model_dump(mode="json"), "snapshot": snapshot.model_dump(mode="json")},
        ensure_ascii=False,
    )


def _decode(raw: str) -> CacheEntry:
    doc = json.loads(raw)
    return Tick.model_validate(doc["tick"]), IndicatorSnapshot.model_validate(doc["snapshot"])


class CacheLayer:
    """最新状态缓存，自动根据可用连接选择后端"""

    def __init__(self, prefix: Optional[str] = None):
        self._prefix = prefix or settings.CACHE_KEY_PREFIX
        self._memory: Dict[str, str] = {}

    @property
    def backend(self) -> str:
        return "redis" if get_redis() is not None else "memory"

    def _latest_key(self, symbol: str) -> str:
        return _make_key(self._prefix, "latest", symbol)

    @property
    def _symbols_key(self) -> str:
        return _make_key(self._prefix, "symbols")

    async def put_latest(self, tick: Tick, snapshot: IndicatorSnapshot) -> None:
        """覆盖写入标的最新状态，失败抛出 CacheWriteError"""
        payload = _encode(tick, snapshot)
        redis = get_redis()
        if redis is None:
            self._memory[tick.symbol] = payload
            return
        try:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.set(self._latest_key(tick.symbol), payload)
                pipe.sadd(self._symbols_key, tick.symbol)
                await pipe.execute()
            logger.debug(f"缓存写入（Redis）: {tick.symbol}@{tick.timestamp}")
        except Exception as exc:
            raise CacheWriteError(f"Redis 写入失败 {tick.symbol}: {exc}") from exc

    async def get_latest(self, symbol: str) -> Optional[CacheEntry]:
        """读取标的最新状态；读失败视为未命中，由调用方回退到持久层"""
        redis = get_redis()
        if redis is None:
            raw = self._memory.get(symbol)
        else:
            try:
                raw = await redis.get(self._latest_key(symbol))
            except Exception as exc:
                logger.warning(f"⚠️ Redis 读取失败，回退持久层: {exc}")
                return None
        if not raw:
            return None
        try:
            return _decode(raw)
        except (ValueError, KeyError) as exc:
            logger.warning(f"⚠️ 缓存条目无法解析 {symbol}，视为未命中: {exc}")
            return None

    async def symbols(self) -> List[str]:
        redis = get_redis()
        if redis is None:
            return sorted(self._memory)
        try:
            return sorted(await redis.smembers(self._symbols_key))
        except Exception as exc:
            logger.warning(f"⚠️ Redis 读取标的列表失败: {exc}")
            return []

    async def clear(self) -> None:
        """清空缓存（启动恢复前清理），Redis 清理失败抛出 CacheWriteError"""
        self._memory.clear()
        redis = get_redis()
        if redis is None:
            return
        try:
            members = await redis.smembers(self._symbols_key)
            keys = [self._latest_key(s) for s in members] + [self._symbols_key]
            await redis.delete(*keys)
        except Exception as exc:
            raise CacheWriteError(f"Redis 清理失败: {exc}") from exc
        logger.info(f"缓存已清空（Redis）: {len(members)} 个标的")

    async def stats(self) -> dict:
        """返回缓存后端统计信息"""
        redis = get_redis()
        if redis is None:
            return {"backend": "memory", "symbols": len(self._memory), "status": "healthy"}
        try:
            count = await redis.scard(self._symbols_key)
            return {"backend": "redis", "symbols": count, "status": "healthy"}
        except Exception as exc:
            return {"backend": "redis", "status": "error", "error": str(exc)}


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
