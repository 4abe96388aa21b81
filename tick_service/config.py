"""
行情指标服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class TickServiceSettings(BaseSettings):
    """行情指标服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 持久层（支持服务发现） ─────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="tickservice")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)
    TICK_COLLECTION: str = Field(default="ticks")

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 缓存层（支持服务发现） ───────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)
    CACHE_KEY_PREFIX: str = Field(default="tick")

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 文件持久化（MongoDB 不可用时） ─────────────────────
    DATA_DIR: str = Field(default="./data")

    # ── MACD 指标参数 ─────────────────────────────────────
    FAST_PERIOD: int = Field(default=12, ge=1)
    SLOW_PERIOD: int = Field(default=26, ge=1)
    SIGNAL_PERIOD: int = Field(default=9, ge=1)

    # ── 写入路径 ──────────────────────────────────────────
    FLUSH_BATCH_SIZE: int = Field(default=500, ge=1)
    FLUSH_INTERVAL: float = Field(default=1.0, gt=0)      # 秒
    PER_SYMBOL_QUEUE_CAPACITY: int = Field(default=1000, ge=1)
    FLUSH_WORKERS: int = Field(default=2, ge=1)
    FLUSH_MAX_RETRIES: int = Field(default=3, ge=1)
    FLUSH_RETRY_BASE_DELAY: float = Field(default=0.2, ge=0)

    # ── 行情接入 ──────────────────────────────────────────
    INGESTION_ENABLED: bool = Field(default=True)
    SYMBOLS: List[str] = Field(default_factory=lambda: ["000001.SZ", "600000.SH"])
    SOURCES: List[str] = Field(default_factory=lambda: ["mock"])  # 顺序即优先级
    POLL_INTERVAL: float = Field(default=3.0, gt=0)
    FETCH_TIMEOUT: float = Field(default=5.0, gt=0)
    FETCH_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    FETCH_BACKOFF_BASE: float = Field(default=0.5, ge=0)
    FETCH_BACKOFF_MAX: float = Field(default=8.0, ge=0)
    MAILBOX_CAPACITY: int = Field(default=1000, ge=1)       # 每个标的待处理 Tick 上限

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Shanghai")

    @model_validator(mode="after")
    def _check_periods(self) -> "TickServiceSettings":
        if self.FAST_PERIOD >= self.SLOW_PERIOD:
            raise ValueError("FAST_PERIOD 必须小于 SLOW_PERIOD")
        return self


@lru_cache
def get_settings() -> TickServiceSettings:
    """获取全局配置（单例）"""
    return TickServiceSettings()


settings = get_settings()
