"""
Layer 1 – 数据获取层
封装多个行情源，统一提供带超时与指数退避重试的报价拉取接口。

具体券商 / 门户网站（东方财富、新浪等）的接入适配器通过 register_source() 注册，
本模块只内置开发用的模拟行情源。
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from tick_service.errors import TransientFetchError

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """拉取重试策略：单次超时 + 有限次数的指数退避"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    timeout: float = Field(default=5.0, gt=0)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.FETCH_MAX_ATTEMPTS,
            base_delay=settings.FETCH_BACKOFF_BASE,
            max_delay=settings.FETCH_BACKOFF_MAX,
            timeout=settings.FETCH_TIMEOUT,
        )

    def delay(self, attempt: int) -> float:
        """第 attempt 次失败后的等待秒数（attempt 从 1 开始）"""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


class TickSource(ABC):
    """行情源接口：一次调用返回一批原始报价字典"""

    name: str = "source"

    @abstractmethod
    async def fetch(self, symbols: Sequence[str]) -> List[Dict[str, Any]]:
        """拉取 symbols 的最新报价，失败时可抛出任意异常"""

    async def close(self) -> None:
        return None


class MockQuoteSource(TickSource):
    """模拟行情源：以固定种子做随机游走，时间戳对每个标的严格递增"""

    name = "mock"

    def __init__(
        self,
        seed: int = 7,
        base_price: float = 10.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._rng = random.Random(seed)
        self._base_price = base_price
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._prices: Dict[str, float] = {}
        self._last_ts: Dict[str, int] = {}

    async def fetch(self, symbols: Sequence[str]) -> List[Dict[str, Any]]:
        now = self._clock()
        quotes = []
        for symbol in symbols:
            price = self._prices.get(symbol, self._base_price)
            price = max(0.01, round(price + self._rng.uniform(-0.5, 0.5), 2))
            self._prices[symbol] = price
            ts = max(now, self._last_ts.get(symbol, -1) + 1)
            self._last_ts[symbol] = ts
            quotes.append({
                "symbol": symbol,
                "ts": ts,
                "price": f"{price:.2f}",
                "vol": self._rng.randint(100, 10000),
            })
        return quotes


async def fetch_with_retry(
    source: TickSource,
    symbols: Sequence[str],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Optional[List[Dict[str, Any]]]:
    """
    带超时与退避的拉取

    Returns:
        成功时返回原始报价列表；重试耗尽返回 None（本轮跳过该数据源）
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(source.fetch(symbols), timeout=policy.timeout)
        except asyncio.TimeoutError:
            error = TransientFetchError(source.name, f"超时 {policy.timeout}s")
        except TransientFetchError as exc:
            error = exc
        except Exception as exc:
            error = TransientFetchError(source.name, f"{type(exc).__name__}: {exc}")

        if attempt < policy.max_attempts:
            wait = policy.delay(attempt)
            logger.warning(
                f"⚠️ 行情拉取失败（{error}），第 {attempt}/{policy.max_attempts} 次，{wait:.2f}s 后重试"
            )
            await sleep(wait)
        else:
            logger.warning(
                f"⚠️ 行情拉取失败（{error}），已重试 {policy.max_attempts} 次，本轮跳过 {source.name}"
            )
    return None


# ── 数据源注册表 ──────────────────────────────────────────
_SOURCE_FACTORIES: Dict[str, Callable[[], TickSource]] = {
    "mock": MockQuoteSource,
}


def register_source(name: str, factory: Callable[[], TickSource]) -> None:
    """注册外部行情源适配器"""
    _SOURCE_FACTORIES[name] = factory


def build_sources(names: Sequence[str]) -> List[TickSource]:
    """按配置顺序（即优先级顺序）创建行情源，未知名称跳过"""
    sources = []
    for name in names:
        factory = _SOURCE_FACTORIES.get(name)
        if factory is None:
            logger.warning(f"未知行情源 {name}，已忽略（可用：{sorted(_SOURCE_FACTORIES)}）")
            continue
        source = factory()
        source.name = name
        sources.append(source)
    return sources
