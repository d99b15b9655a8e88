"""
数据库连接管理模块
管理文档存储后端的连接：MongoDB（motor 异步）与 Redis（redis.asyncio）。
连接失败不会阻断启动，文档存储按可用连接自动降级。
"""

import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from redis.asyncio import ConnectionPool, Redis

from quote_service.config import settings

logger = logging.getLogger(__name__)

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def ensure_stock_indexes(db: AsyncIOMotorDatabase) -> None:
    """(symbol, kind) 唯一索引：每个键至多一份文档"""
    await db[settings.STOCK_COLLECTION].create_index(
        [("symbol", ASCENDING), ("kind", ASCENDING)],
        unique=True,
        name="symbol_kind_unique",
    )


async def init_mongodb() -> bool:
    """连接 MongoDB 并创建文档索引，返回是否成功"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，跳过初始化")
        return False
    try:
        client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        )
        await client.admin.command("ping")
        db = client[settings.MONGODB_DATABASE]
        await ensure_stock_indexes(db)
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 不可用，文档存储将降级: {exc}")
        return False

    _mongo_client, _mongo_db = client, db
    logger.info(
        f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}"
        f"/{settings.MONGODB_DATABASE}.{settings.STOCK_COLLECTION}"
    )
    return True


async def init_redis() -> bool:
    """连接 Redis，返回是否成功"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，跳过初始化")
        return False
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=10,
    )
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 不可用，文档存储将降级: {exc}")
        await client.aclose()
        await pool.disconnect()
        return False

    _redis_client, _redis_pool = client, pool
    logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")
    return True


async def close_connections():
    """关闭所有数据库连接"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client is not None:
        _mongo_client.close()
        logger.info("MongoDB 连接已关闭")
    if _redis_client is not None:
        await _redis_client.aclose()
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        logger.info("Redis 连接已关闭")
    _mongo_client = _mongo_db = None
    _redis_client = _redis_pool = None


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    return _mongo_db


def get_redis() -> Optional[Redis]:
    return _redis_client


async def _ping(host: str, ping: Callable[[], Awaitable]) -> dict:
    start = time.perf_counter()
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "host": host, "error": str(exc)}
    return {
        "status": "healthy",
        "host": host,
        "latency_ms": round((time.perf_counter() - start) * 1000, 1),
    }


async def check_health() -> Dict[str, dict]:
    """
    文档存储后端健康状态

    每个后端的 status 取值：disabled（未启用）/ disconnected（启用但未连接）/
    healthy / unhealthy
    """
    result: Dict[str, dict] = {}

    if _mongo_client is not None:
        result["mongodb"] = await _ping(
            settings.MONGODB_HOST, lambda: _mongo_client.admin.command("ping")
        )
    else:
        result["mongodb"] = {"status": "disconnected" if settings.MONGODB_ENABLED else "disabled"}

    if _redis_client is not None:
        result["redis"] = await _ping(settings.REDIS_HOST, _redis_client.ping)
    else:
        result["redis"] = {"status": "disconnected" if settings.REDIS_ENABLED else "disabled"}

    return result
