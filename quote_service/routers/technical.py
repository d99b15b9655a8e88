"""
技术分析路由
GET /api/technical/{symbol}            - 快速分析（价格 / RSI / SMA / 趋势 / 信号）
GET /api/technical/{symbol}/advanced   - 形态分析（价格、成交量、K 线、趋势、支撑阻力、情绪、风险）
"""

from typing import Optional

from fastapi import APIRouter, Query

from quote_service.models.response import ApiResponse
from quote_service.services.technical_service import get_technical_service

router = APIRouter(prefix="/api/technical", tags=["技术分析"])


@router.get("/{symbol}", response_model=ApiResponse)
async def get_quick_analysis(symbol: str):
    """基于 RSI(14) 与 SMA(14) 的快速分析"""
    result = await get_technical_service().get_enhanced_analysis(symbol)
    return ApiResponse.from_result(result)


@router.get("/{symbol}/advanced", response_model=ApiResponse)
async def get_advanced_analysis(
    symbol: str,
    days: Optional[int] = Query(
        default=None, ge=1, description="回看天数，默认取 DEFAULT_ANALYSIS_DAYS"
    ),
):
    """
    完整形态分析

    - 价格形态：MACD 趋势、动量、波动率、跳空
    - 成交量形态：量能趋势、量价关系
    - K 线形态：十字星、锤子线、吞没
    """
    result = await get_technical_service().get_advanced_analysis(symbol, days=days)
    return ApiResponse.from_result(result)
