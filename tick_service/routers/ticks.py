"""
行情指标路由
POST /api/ticks                       - 推送一条 Tick（经标的邮箱串行处理）
GET  /api/ticks/{symbol}/latest       - 最新 Tick + 指标
GET  /api/ticks/{symbol}/history      - 历史区间（start/end 毫秒，或 date，或 days）
GET  /api/ticks/{symbol}/as-of        - 指定时刻的指标值
GET  /api/ticks/{symbol}/analysis     - MACD 零轴穿越统计
GET  /api/symbols                     - 有记录的标的
GET  /api/status                      - 写队列 / 刷盘 / 预热 / 接入状态
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from tick_service.models.response import ApiResponse
from tick_service.models.tick import Tick
from tick_service.services.ingestion_service import TickOutcome, get_ingestion_service
from tick_service.services.query_service import get_query_service

router = APIRouter(prefix="/api", tags=["行情指标"])


class TickIn(BaseModel):
    symbol: str = Field(min_length=1)
    timestamp: int = Field(ge=0, description="epoch 毫秒")
    price: Decimal = Field(gt=0)
    volume: int = Field(default=0, ge=0)


@router.post("/ticks", response_model=ApiResponse)
async def push_tick(body: TickIn):
    """推送一条 Tick，等待处理完成后返回结果"""
    tick = Tick(**body.model_dump())
    outcome = await get_ingestion_service().submit(tick, wait=True)
    data = {"symbol": tick.symbol, "timestamp": tick.timestamp, "outcome": outcome.value}
    if outcome is TickOutcome.ACCEPTED:
        return ApiResponse.ok(data=data, message="Tick 已接受")
    return ApiResponse.rejected(outcome.value, data=data)


@router.get("/ticks/{symbol}/latest", response_model=ApiResponse)
async def latest(symbol: str):
    """获取标的最新 Tick 与指标（缓存优先）"""
    record = await get_query_service().latest(symbol)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{symbol} 没有记录")
    return ApiResponse.ok(data=record.model_dump(mode="json"))


@router.get("/ticks/{symbol}/history", response_model=ApiResponse)
async def history(
    symbol: str,
    start: Optional[int] = Query(default=None, ge=0, description="开始时间 epoch 毫秒（含）"),
    end: Optional[int] = Query(default=None, ge=0, description="结束时间 epoch 毫秒（含）"),
    date: Optional[str] = Query(default=None, description="UTC 日期 YYYY-MM-DD，优先于 start/end"),
    days: Optional[int] = Query(default=None, ge=1, description="最近 N 天，优先于 start/end"),
):
    """获取标的历史记录（按时间升序）"""
    svc = get_query_service()
    if date is not None:
        try:
            records = await svc.history_for_date(symbol, date)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"日期格式错误: {date}，应为 YYYY-MM-DD",
            )
    elif days is not None:
        records = await svc.recent(symbol, days)
    else:
        if start is not None and end is not None and start > end:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="start 不能晚于 end",
            )
        records = await svc.history_list(symbol, start, end)
    return ApiResponse.ok(
        data={
            "symbol": symbol,
            "count": len(records),
            "records": [r.model_dump(mode="json") for r in records],
        }
    )


@router.get("/ticks/{symbol}/as-of", response_model=ApiResponse)
async def as_of(
    symbol: str,
    timestamp: int = Query(..., ge=0, description="epoch 毫秒"),
):
    """获取指定时刻的指标值（历史时刻由持久层重放计算）"""
    snapshot = await get_query_service().as_of(symbol, timestamp)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{symbol} 在 {timestamp} 之前没有记录",
        )
    return ApiResponse.ok(data=snapshot.model_dump(mode="json"))


@router.get("/ticks/{symbol}/analysis", response_model=ApiResponse)
async def analysis(
    symbol: str,
    start: Optional[int] = Query(default=None, ge=0),
    end: Optional[int] = Query(default=None, ge=0),
):
    """统计区间内 MACD 金叉 / 死叉次数"""
    return ApiResponse.ok(data=await get_query_service().analysis(symbol, start, end))


@router.get("/symbols", response_model=ApiResponse)
async def list_symbols(
    detail: bool = Query(default=False, description="是否附带最新记录与预热状态"),
):
    """列出所有有记录的标的"""
    svc = get_query_service()
    if detail:
        info = await svc.symbols_info()
        return ApiResponse.ok(data={"count": len(info), "symbols": info})
    symbols = await svc.symbols()
    return ApiResponse.ok(data={"count": len(symbols), "symbols": symbols})


@router.get("/status", response_model=ApiResponse)
async def service_status():
    """写队列深度、最近刷盘时间、各标的预热状态与接入统计"""
    return ApiResponse.ok(data=await get_query_service().status())
