"""
股票行情路由
GET /api/stocks/{symbol}/price     - 获取实时价格
GET /api/stocks/{symbol}/history   - 获取历史日线与技术指标
"""

from typing import Optional

from fastapi import APIRouter, Query

from quote_service.models.response import ApiResponse
from quote_service.services.stock_service import get_stock_service
from quote_service.services.technical_service import get_technical_service

router = APIRouter(prefix="/api/stocks", tags=["股票行情"])


@router.get("/{symbol}/price", response_model=ApiResponse)
async def get_current_price(symbol: str):
    """获取实时价格（带 cache-aside 缓存）"""
    result = await get_stock_service().get_current_price(symbol)
    return ApiResponse.from_result(result, message=result.message or "success")


@router.get("/{symbol}/history", response_model=ApiResponse)
async def get_stock_history(
    symbol: str,
    days: Optional[int] = Query(
        default=None, ge=1, description="返回最近 N 根日线，不填则返回全部"
    ),
):
    """获取历史日线，附带 RSI / SMA / EMA / MACD / BOLL / 随机指标 / ADX"""
    result = await get_technical_service().get_historical_series(symbol, days=days)
    return ApiResponse.from_result(result, message=result.summary or "success")
