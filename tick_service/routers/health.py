"""健康检查路由"""

import time
from pathlib import Path

from fastapi import APIRouter, Request, Response, status

from tick_service import __version__
from tick_service.db import check_health
from tick_service.services.storage_service import get_storage_coordinator

router = APIRouter(tags=["健康检查"])


def _read_version() -> str:
    try:
        vf = Path(__file__).parent.parent.parent / "VERSION"
        if vf.exists():
            return vf.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return __version__


@router.get("/health")
async def health():
    """服务健康检查（含数据库连接与写入路径状态）"""
    db_health = await check_health()
    storage = get_storage_coordinator()
    return {
        "success": True,
        "data": {
            "status": "degraded" if storage.degraded else "ok",
            "version": _read_version(),
            "timestamp": int(time.time()),
            "service": "Tick Indicator Service",
            "databases": db_health,
            "backends": {"cache": storage.cache.backend, "durable": storage.durable.backend},
        },
        "message": "持久层写入降级中" if storage.degraded else "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request, response: Response):
    """Kubernetes readiness probe：启动恢复完成后才就绪"""
    ready = bool(getattr(request.app.state, "ready", False))
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"ready": ready}
