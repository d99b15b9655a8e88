"""
缓存管理路由
GET    /api/cache/stats      - 文档存储统计
GET    /api/cache/{symbol}   - 查询缓存文档状态（是否存在、是否新鲜）
DELETE /api/cache/{symbol}   - 删除缓存文档
"""

from fastapi import APIRouter, HTTPException, Query, status

from quote_service.layers.cache import PersistenceError
from quote_service.models.response import ApiResponse
from quote_service.models.stock import DataKind
from quote_service.services.stock_service import get_stock_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取文档存储统计信息"""
    stats = await get_stock_service().cache_stats()
    return ApiResponse.ok(data=stats)


@router.get("/{symbol}", response_model=ApiResponse)
async def cache_status(
    symbol: str,
    kind: DataKind = Query(default=DataKind.HISTORICAL, description="CURRENT / HISTORICAL"),
):
    """查询单个 (symbol, kind) 缓存文档"""
    try:
        data = await get_stock_service().cache_status(symbol, kind)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return ApiResponse.ok(data=data)


@router.delete("/{symbol}", response_model=ApiResponse)
async def invalidate_cache(
    symbol: str,
    kind: DataKind = Query(default=DataKind.HISTORICAL, description="CURRENT / HISTORICAL"),
):
    """删除缓存文档，下次请求将从提供商重新拉取"""
    try:
        existed = await get_stock_service().invalidate(symbol, kind)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return ApiResponse.ok(
        data={"symbol": symbol.strip().upper(), "kind": kind.value, "deleted": existed},
        message=f"缓存已清理: {symbol.strip().upper()}:{kind.value}",
    )
