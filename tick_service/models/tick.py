"""
行情数据模型
Tick / 指标快照 / 振荡器状态 / 持久化记录

价格与指标一律使用 Decimal，持久化时存为字符串，保证重放结果逐位一致。
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tick_service.errors import CorruptDurableRecord


class Tick(BaseModel):
    """标准化行情 Tick，(symbol, timestamp) 唯一"""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(min_length=1)
    timestamp: int = Field(ge=0)  # epoch 毫秒
    price: Decimal
    volume: int = Field(default=0, ge=0)

    @property
    def key(self) -> Tuple[str, int]:
        return self.symbol, self.timestamp


class IndicatorSnapshot(BaseModel):
    """每个被接受的 Tick 产生一条快照；预热期内指标为 None（尚不可用，而非 0）"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: int
    price: Decimal
    macd: Optional[Decimal] = None
    signal: Optional[Decimal] = None
    histogram: Optional[Decimal] = None

    @property
    def warm(self) -> bool:
        return self.macd is not None


class OscillatorState(BaseModel):
    """单个标的的 MACD 流式状态，只由该标的的 Tick 顺序推进"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    ema_fast: Optional[Decimal] = None
    ema_slow: Optional[Decimal] = None
    signal: Optional[Decimal] = None
    last_timestamp: Optional[int] = None
    initialized: bool = False
    warmup_count: int = 0
    price_window: Tuple[Decimal, ...] = ()
    macd_window: Tuple[Decimal, ...] = ()

    @classmethod
    def empty(cls, symbol: str) -> "OscillatorState":
        return cls(symbol=symbol)


class DurableRecord(BaseModel):
    """持久层记录：Tick 与其快照成对写入，写入后不再修改"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: int
    price: Decimal
    volume: int = 0
    macd: Optional[Decimal] = None
    signal: Optional[Decimal] = None
    histogram: Optional[Decimal] = None

    @classmethod
    def from_pair(cls, tick: Tick, snapshot: IndicatorSnapshot) -> "DurableRecord":
        if tick.key != (snapshot.symbol, snapshot.timestamp):
            raise ValueError(f"Tick 与快照不匹配: {tick.key} != {(snapshot.symbol, snapshot.timestamp)}")
        return cls(
            symbol=tick.symbol,
            timestamp=tick.timestamp,
            price=tick.price,
            volume=tick.volume,
            macd=snapshot.macd,
            signal=snapshot.signal,
            histogram=snapshot.histogram,
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any], locator: str = "?") -> "DurableRecord":
        """从存储文档还原，无法解析时抛出 CorruptDurableRecord"""
        try:
            return cls.model_validate(doc)
        except (ValidationError, TypeError) as exc:
            symbol = doc.get("symbol", "?") if isinstance(doc, dict) else "?"
            raise CorruptDurableRecord(str(symbol), locator, str(exc)) from exc

    @property
    def key(self) -> Tuple[str, int]:
        return self.symbol, self.timestamp

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_tick(self) -> Tick:
        return Tick(
            symbol=self.symbol,
            timestamp=self.timestamp,
            price=self.price,
            volume=self.volume,
        )

    def to_snapshot(self) -> IndicatorSnapshot:
        return IndicatorSnapshot(
            symbol=self.symbol,
            timestamp=self.timestamp,
            price=self.price,
            macd=self.macd,
            signal=self.signal,
            histogram=self.histogram,
        )
