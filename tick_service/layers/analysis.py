"""
Layer 3 – 技术分析层
按标的流式计算 MACD：快慢两条 EMA、MACD 线、信号线（MACD 的 EMA）与柱（MACD − 信号线）

预热规则：
  - 前 max(fast, slow) 个 Tick 为预热窗口，期间指标为 None
  - 窗口满时 ema_fast / ema_slow 分别以窗口内最近 fast / slow 个价格的算术平均作为种子
  - 信号线在 MACD 线上独立预热 signal 个观测值，同样以算术平均作为种子
  - 之后按 ema = price * k + ema * (1 - k)，k = 2 / (period + 1) 流式更新

step() 是 (状态, Tick) 的纯函数，不读取时钟、不使用随机数，重放结果逐位一致。
"""

import logging
from decimal import ROUND_HALF_EVEN, Context, Decimal, localcontext
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tick_service.config import settings
from tick_service.errors import DuplicateTick, OutOfOrderTick, TickRejected
from tick_service.models.tick import IndicatorSnapshot, OscillatorState, Tick

logger = logging.getLogger(__name__)

# 固定精度上下文，不受调用方全局 decimal 设置影响
_DECIMAL_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)
_ONE = Decimal(1)
_TWO = Decimal(2)


class IndicatorParams(BaseModel):
    """MACD 参数"""

    model_config = ConfigDict(frozen=True)

    fast_period: int = Field(default=12, ge=1)
    slow_period: int = Field(default=26, ge=1)
    signal_period: int = Field(default=9, ge=1)

    @model_validator(mode="after")
    def _check(self) -> "IndicatorParams":
        if self.fast_period >= self.slow_period:
            raise ValueError("fast_period 必须小于 slow_period")
        return self

    @classmethod
    def from_settings(cls, settings) -> "IndicatorParams":
        return cls(
            fast_period=settings.FAST_PERIOD,
            slow_period=settings.SLOW_PERIOD,
            signal_period=settings.SIGNAL_PERIOD,
        )

    @property
    def warmup(self) -> int:
        return max(self.fast_period, self.slow_period)


def _smoothing(period: int) -> Decimal:
    return _TWO / Decimal(period + 1)


def _ema(prev: Decimal, value: Decimal, period: int) -> Decimal:
    k = _smoothing(period)
    return value * k + prev * (_ONE - k)


def _mean(values: Sequence[Decimal]) -> Decimal:
    total = Decimal(0)
    for v in values:
        total += v
    return total / Decimal(len(values))


def step(
    state: OscillatorState, tick: Tick, params: IndicatorParams
) -> Tuple[OscillatorState, IndicatorSnapshot]:
    """
    将一个 Tick 应用到状态上，返回 (新状态, 快照)

    Raises:
        OutOfOrderTick: tick.timestamp < last_timestamp
        DuplicateTick:  tick.timestamp == last_timestamp
    """
    if tick.symbol != state.symbol:
        raise ValueError(f"Tick 标的 {tick.symbol} 与状态标的 {state.symbol} 不一致")
    last = state.last_timestamp
    if last is not None:
        if tick.timestamp < last:
            raise OutOfOrderTick(tick.symbol, tick.timestamp, last)
        if tick.timestamp == last:
            raise DuplicateTick(tick.symbol, tick.timestamp, last)

    with localcontext(_DECIMAL_CONTEXT):
        price = tick.price

        # ── 价格 EMA ─────────────────────────────────────
        if not state.initialized:
            window = state.price_window + (price,)
            count = state.warmup_count + 1
            if count < params.warmup:
                new_state = state.model_copy(update={
                    "price_window": window,
                    "warmup_count": count,
                    "last_timestamp": tick.timestamp,
                })
                return new_state, IndicatorSnapshot(
                    symbol=tick.symbol, timestamp=tick.timestamp, price=price
                )
            ema_fast = _mean(window[-params.fast_period:])
            ema_slow = _mean(window[-params.slow_period:])
        else:
            count = state.warmup_count
            ema_fast = _ema(state.ema_fast, price, params.fast_period)
            ema_slow = _ema(state.ema_slow, price, params.slow_period)

        macd = ema_fast - ema_slow

        # ── 信号线（在 MACD 观测值上独立预热） ───────────
        macd_window = state.macd_window
        if state.signal is None:
            macd_window = macd_window + (macd,)
            if len(macd_window) < params.signal_period:
                signal = None
            else:
                signal = _mean(macd_window)
                macd_window = ()
        else:
            signal = _ema(state.signal, macd, params.signal_period)

        histogram = macd - signal if signal is not None else None

    new_state = state.model_copy(update={
        "ema_fast": ema_fast,
        "ema_slow": ema_slow,
        "signal": signal,
        "last_timestamp": tick.timestamp,
        "initialized": True,
        "warmup_count": count,
        "price_window": (),
        "macd_window": macd_window,
    })
    snapshot = IndicatorSnapshot(
        symbol=tick.symbol,
        timestamp=tick.timestamp,
        price=price,
        macd=macd,
        signal=signal,
        histogram=histogram,
    )
    return new_state, snapshot


def fold(
    symbol: str, ticks: Iterable[Tick], params: IndicatorParams
) -> Tuple[OscillatorState, Optional[Tick], Optional[IndicatorSnapshot]]:
    """从空状态依次应用 ticks，被拒绝的 Tick 跳过；返回最终状态与最后接受的 (Tick, 快照)"""
    state = OscillatorState.empty(symbol)
    last_tick: Optional[Tick] = None
    last_snapshot: Optional[IndicatorSnapshot] = None
    for tick in ticks:
        try:
            state, last_snapshot = step(state, tick, params)
        except TickRejected as exc:
            logger.debug(f"重放跳过 Tick: {exc}")
            continue
        last_tick = tick
    return state, last_tick, last_snapshot


def count_crossovers(snapshots: Iterable[IndicatorSnapshot]) -> Tuple[int, int]:
    """统计柱线穿越零轴次数，返回 (金叉数, 死叉数)；预热期快照不参与"""
    bullish = bearish = 0
    prev: Optional[Decimal] = None
    for snap in snapshots:
        if snap.histogram is None:
            continue
        if prev is not None:
            if prev <= 0 < snap.histogram:
                bullish += 1
            elif prev >= 0 > snap.histogram:
                bearish += 1
        prev = snap.histogram
    return bullish, bearish


class IndicatorEngine:
    """
    指标引擎：每个标的独立持有一份 OscillatorState

    同一标的的调用必须由上层串行化（见接入服务的标的邮箱），
    不同标的之间没有共享可变状态。
    """

    def __init__(self, params: Optional[IndicatorParams] = None):
        self._params = params or IndicatorParams()
        self._states: Dict[str, OscillatorState] = {}

    @property
    def params(self) -> IndicatorParams:
        return self._params

    def state(self, symbol: str) -> OscillatorState:
        return self._states.get(symbol) or OscillatorState.empty(symbol)

    def symbols(self) -> List[str]:
        return sorted(self._states)

    # ── 流式更新 ──────────────────────────────────────────

    def evaluate(
        self, symbol: str, tick: Tick
    ) -> Tuple[OscillatorState, IndicatorSnapshot]:
        """计算应用 tick 后的状态与快照，但不提交"""
        return step(self.state(symbol), tick, self._params)

    def commit(self, symbol: str, state: OscillatorState) -> None:
        current = self._states.get(symbol)
        if (
            current is not None
            and current.last_timestamp is not None
            and (state.last_timestamp is None or state.last_timestamp < current.last_timestamp)
        ):
            raise ValueError(f"{symbol} 状态不能回退: {state.last_timestamp} < {current.last_timestamp}")
        self._states[symbol] = state

    def apply(self, symbol: str, tick: Tick) -> IndicatorSnapshot:
        """应用 tick 并提交状态；被拒绝时抛出 TickRejected，状态不变"""
        new_state, snapshot = self.evaluate(symbol, tick)
        self._states[symbol] = new_state
        return snapshot

    # ── 重放 ──────────────────────────────────────────────

    def replay(self, symbol: str, ticks: Iterable[Tick]) -> OscillatorState:
        """从空状态重放 ticks 并返回结果状态，不影响实时状态"""
        state, _, _ = fold(symbol, ticks, self._params)
        return state

    def replay_snapshot(
        self, symbol: str, ticks: Iterable[Tick]
    ) -> Optional[IndicatorSnapshot]:
        """重放并返回最后一条快照（按时点查询使用）"""
        _, _, snapshot = fold(symbol, ticks, self._params)
        return snapshot

    def restore(
        self, symbol: str, ticks: Iterable[Tick]
    ) -> Tuple[Optional[Tick], Optional[IndicatorSnapshot]]:
        """启动恢复：重放并替换实时状态，返回最后的 (Tick, 快照) 用于重建缓存"""
        state, last_tick, last_snapshot = fold(symbol, ticks, self._params)
        if last_tick is not None:
            self._states[symbol] = state
        else:
            self._states.pop(symbol, None)
        return last_tick, last_snapshot

    # ── 状态 ──────────────────────────────────────────────

    def warmup_status(self, symbol: str) -> dict:
        state = self.state(symbol)
        return {
            "symbol": symbol,
            "initialized": state.initialized,
            "warmup_count": state.warmup_count,
            "warmup_required": self._params.warmup,
            "signal_ready": state.signal is not None,
            "last_timestamp": state.last_timestamp,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_engine: Optional[IndicatorEngine] = None


def get_indicator_engine() -> IndicatorEngine:
    global _engine
    if _engine is None:
        _engine = IndicatorEngine(IndicatorParams.from_settings(settings))
    return _engine
