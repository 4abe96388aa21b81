"""
行情指标服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn tick_service.main:app --host 0.0.0.0 --port 8001
    python -m tick_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tick_service import __version__
from tick_service.config import settings
from tick_service.db import close_connections, init_mongodb, init_redis
from tick_service.errors import DurableReadError, RecoveryError
from tick_service.routers import health, storage, ticks
from tick_service.services.ingestion_service import get_ingestion_service
from tick_service.services.storage_service import get_storage_coordinator

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动：连接 → 打开持久层 → 恢复 → 刷盘任务 → 接入；关闭顺序相反"""
    app.state.ready = False
    logger.info("=" * 60)
    logger.info(f"🚀 Tick Indicator Service v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(
        f"   MACD      : fast={settings.FAST_PERIOD} slow={settings.SLOW_PERIOD} "
        f"signal={settings.SIGNAL_PERIOD}"
    )
    logger.info("=" * 60)

    # 数据库连接失败不阻断启动，降级运行
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()
    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存降级为进程内存储")
    elif redis_ok:
        logger.warning(f"⚠️ MongoDB 不可用，持久层降级为文件存储: {settings.DATA_DIR}")
    else:
        logger.warning(f"⚠️ 数据库均不可用，降级为进程内缓存 + 文件存储: {settings.DATA_DIR}")

    storage = get_storage_coordinator()
    try:
        await storage.durable.open()
        report = await storage.recover()
    except (DurableReadError, RecoveryError) as exc:
        logger.error(f"❌ 启动恢复失败，服务终止: {exc}")
        await close_connections()
        raise
    if report.gaps:
        logger.warning(f"⚠️ 持久层存在 {len(report.gaps)} 处损坏记录，已跳过")

    await storage.start()
    ingestion = get_ingestion_service()
    if settings.INGESTION_ENABLED:
        await ingestion.start()
    else:
        logger.info("行情轮询未启用，仅接受 POST /api/ticks 推送")
    app.state.ready = True

    yield

    app.state.ready = False
    logger.info("🔄 行情指标服务正在关闭...")
    await ingestion.stop()
    await storage.stop()
    await storage.durable.close()
    await close_connections()
    logger.info("✅ 行情指标服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Tick Indicator Service",
    description=(
        "实时行情 MACD 指标服务：\n"
        "- 📡 多行情源轮询接入（超时 + 指数退避重试）\n"
        "- 📈 按标的流式计算 MACD（快慢 EMA / 信号线 / 柱）\n"
        "- 🗄️ 双层存储（Redis 最新值缓存 + MongoDB 历史记录，降级为内存 / 文件）\n"
        "- ♻️ 启动时从持久层重放恢复指标状态\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从行情源拉取原始报价\n"
        "Processing Layer   ← 报价清洗、标准化为 Tick\n"
        "Analysis Layer     ← MACD 流式计算与重放\n"
        "Cache Layer        ← 每个标的最新 (Tick, 指标)\n"
        "Durable Layer      ← 只追加的历史记录\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(ticks.router)
app.include_router(storage.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Tick Indicator Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "tick_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
