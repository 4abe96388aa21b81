"""
连接管理
MongoDB 承载持久层 ticks 集合，Redis 承载最新状态缓存；任一不可用时对应层降级为本地实现。
"""

import logging
from typing import Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from redis.asyncio import Redis, ConnectionPool

from tick_service.config import settings

logger = logging.getLogger(__name__)

# ── 连接实例 ─────────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_tick_collection: Optional[AsyncIOMotorCollection] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """连接 MongoDB 并定位 ticks 集合；失败时持久层改用文件存储"""
    global _mongo_client, _tick_collection
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，持久层使用文件存储")
        return False
    client: Optional[AsyncIOMotorClient] = None
    try:
        client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
            tz_aware=True,
        )
        await client.admin.command("ping")
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 不可达，持久层降级为文件存储: {exc}")
        if client is not None:
            client.close()
        return False
    _mongo_client = client
    _tick_collection = client[settings.MONGODB_DATABASE][settings.TICK_COLLECTION]
    logger.info(
        f"✅ MongoDB 已连接: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}"
        f"/{settings.MONGODB_DATABASE}.{settings.TICK_COLLECTION}"
    )
    return True


async def init_redis() -> bool:
    """连接 Redis；失败时缓存层改用进程内字典"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，缓存层使用进程内存储")
        return False
    pool: Optional[ConnectionPool] = None
    try:
        pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        client = Redis(connection_pool=pool)
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 不可达，缓存层降级为进程内存储: {exc}")
        if pool is not None:
            await pool.disconnect()
        return False
    _redis_client, _redis_pool = client, pool
    logger.info(f"✅ Redis 已连接: {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")
    return True


async def close_connections():
    """关闭连接；关闭后两层都回到本地后端"""
    global _mongo_client, _tick_collection, _redis_client, _redis_pool
    if _mongo_client is not None:
        _mongo_client.close()
        logger.info("MongoDB 连接已关闭")
    _mongo_client = None
    _tick_collection = None
    if _redis_client is not None:
        await _redis_client.aclose()
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        logger.info("Redis 连接已关闭")
    _redis_client = None
    _redis_pool = None


def get_tick_collection() -> Optional[AsyncIOMotorCollection]:
    """ticks 集合（MongoDB 未连接时为 None）"""
    return _tick_collection


def get_redis() -> Optional[Redis]:
    """Redis 客户端（未连接时为 None）"""
    return _redis_client


# ── 健康检查 ─────────────────────────────────────────────

async def _probe(
    ping: Optional[Callable[[], Awaitable]], enabled: bool, host: str, fallback: str
) -> dict:
    if ping is None:
        if enabled:
            return {"status": "disconnected", "fallback": fallback}
        return {"status": "disabled", "fallback": fallback}
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "host": host}


async def check_health() -> dict:
    """各后端连接状态；未连接的一侧给出其降级后端"""
    mongo_ping = (lambda: _mongo_client.admin.command("ping")) if _mongo_client else None
    redis_ping = _redis_client.ping if _redis_client else None
    return {
        "mongodb": await _probe(mongo_ping, settings.MONGODB_ENABLED, settings.MONGODB_HOST, "file"),
        "redis": await _probe(redis_ping, settings.REDIS_ENABLED, settings.REDIS_HOST, "memory"),
    }
