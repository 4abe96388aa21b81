"""
错误类型
接入层错误按数据源 / 标的隔离，存储层错误只降低读新鲜度，不破坏时间顺序
"""


class TickServiceError(Exception):
    """服务内所有错误的基类"""


# ── 接入层 ────────────────────────────────────────────────

class TransientFetchError(TickServiceError):
    """行情源拉取失败或超时，可重试"""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


# ── 指标引擎 ──────────────────────────────────────────────

class TickRejected(TickServiceError):
    """Tick 被引擎拒绝，状态未改变"""

    def __init__(self, symbol: str, timestamp: int, last_timestamp: int):
        super().__init__(
            f"{self.__class__.__name__}: {symbol} ts={timestamp} last={last_timestamp}"
        )
        self.symbol = symbol
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp


class OutOfOrderTick(TickRejected):
    """时间戳早于该标的最近一次接受的 Tick"""


class DuplicateTick(TickRejected):
    """时间戳与该标的最近一次接受的 Tick 相同"""


# ── 存储层 ────────────────────────────────────────────────

class StorageError(TickServiceError):
    """存储层错误基类"""


class CacheWriteError(StorageError):
    """缓存写入失败，record 不能返回成功"""


class DurableWriteFailure(StorageError):
    """持久层批量写入失败"""


class DurableReadError(StorageError):
    """持久层读取失败（连接 / 查询级别）"""


class CorruptDurableRecord(StorageError):
    """持久层记录无法解析"""

    def __init__(self, symbol: str, locator: str, reason: str):
        super().__init__(f"损坏记录 {symbol} @ {locator}: {reason}")
        self.symbol = symbol
        self.locator = locator
        self.reason = reason


class RecoveryError(TickServiceError):
    """启动恢复无法进行（持久层完全不可读），致命"""


class StaleWriteError(StorageError):
    """写入时间戳早于该标的已写入的记录，持久层无法按序追加"""

    def __init__(self, symbol: str, timestamp: int, last_timestamp: int):
        super().__init__(f"过期写入 {symbol}: ts={timestamp} < last={last_timestamp}")
        self.symbol = symbol
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
