"""
Layer 2 – 数据处理层
将行情源返回的原始报价清洗、标准化为 Tick 序列。
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import pandas as pd

from tick_service.models.tick import Tick

logger = logging.getLogger(__name__)

# 各数据源常见字段名 → 标准字段名
_COLUMN_ALIASES = {
    "code": "symbol",
    "ts": "timestamp",
    "time": "timestamp",
    "vol": "volume",
    "last": "price",
    "close": "price",
}


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化"""

    def normalize_quotes(self, records: List[Dict[str, Any]]) -> List[Tick]:
        """
        将原始报价列表标准化为 Tick 列表

        - 字段别名统一（code/ts/vol/last ...）
        - 时间戳统一为 epoch 毫秒，支持数值与日期字符串
        - 丢弃价格缺失或非正、时间戳无法解析的记录
        - 同一 (symbol, timestamp) 只保留首条
        - 按 (symbol, timestamp) 升序输出
        """
        if not records:
            return []

        df = pd.DataFrame(records).rename(columns=_COLUMN_ALIASES)
        df = df.loc[:, ~df.columns.duplicated()]

        for col in ("symbol", "timestamp", "price"):
            if col not in df.columns:
                logger.warning(f"报价缺少必要字段 {col}，整批丢弃（{len(df)} 条）")
                return []
        if "volume" not in df.columns:
            df["volume"] = 0

        df["symbol"] = df["symbol"].astype(str).str.strip()
        df["timestamp"] = self._to_epoch_ms(df["timestamp"])
        df["price"] = df["price"].map(_to_decimal)
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce").fillna(0).clip(lower=0)

        before = len(df)
        df = df.dropna(subset=["timestamp", "price"])
        if df.empty:
            logger.debug(f"报价清洗后无有效记录（原 {before} 条）")
            return []
        valid = (df["symbol"] != "") & df["price"].map(lambda p: p > 0).astype(bool)
        df = df[valid]
        df = df.drop_duplicates(subset=["symbol", "timestamp"], keep="first")
        df = df.sort_values(["symbol", "timestamp"], kind="stable").reset_index(drop=True)
        if len(df) < before:
            logger.debug(f"报价清洗丢弃 {before - len(df)} 条")

        return [
            Tick(
                symbol=row.symbol,
                timestamp=int(row.timestamp),
                price=row.price,
                volume=int(row.volume),
            )
            for row in df.itertuples(index=False)
        ]

    @staticmethod
    def _to_epoch_ms(series: pd.Series) -> pd.Series:
        """数值原样作为毫秒；其余按日期字符串解析（UTC）"""
        numeric = pd.to_numeric(series, errors="coerce")
        if numeric.notna().all():
            return numeric
        parsed = pd.to_datetime(series.where(numeric.isna()), errors="coerce", utc=True)
        as_ms = parsed.map(lambda t: None if pd.isna(t) else t.value // 1_000_000)
        return numeric.where(numeric.notna(), as_ms).astype("float64")


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
