"""
存储管理路由
GET  /api/storage/stats   - 缓存 / 持久层 / 写队列统计
POST /api/storage/flush   - 立即刷盘
"""

from fastapi import APIRouter

from tick_service.models.response import ApiResponse
from tick_service.services.storage_service import get_storage_coordinator

router = APIRouter(prefix="/api/storage", tags=["存储管理"])


@router.get("/stats", response_model=ApiResponse)
async def storage_stats():
    """获取存储统计信息"""
    storage = get_storage_coordinator()
    data = storage.status()
    data["cache"] = await storage.cache.stats()
    return ApiResponse.ok(data=data)


@router.post("/flush", response_model=ApiResponse)
async def flush_storage():
    """把写队列中的记录立即写入持久层"""
    storage = get_storage_coordinator()
    before = storage.queue.depth()
    await storage.flush()
    after = storage.queue.depth()
    if storage.degraded:
        return ApiResponse.fail(
            error=storage.last_flush_error or "durable write failed",
            message=f"刷盘失败，{after} 条记录仍在队列中",
        )
    return ApiResponse.ok(
        data={"flushed": before - after, "queue_depth": after},
        message="刷盘完成",
    )
