"""
行情与技术分析服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn quote_service.main:app --host 0.0.0.0 --port 8001
    python -m quote_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quote_service import __version__
from quote_service.config import settings
from quote_service.db import close_connections, init_mongodb, init_redis
from quote_service.layers.acquisition import close_market_data_provider
from quote_service.layers.cache import get_document_store, reset_document_store
from quote_service.routers import cache, health, stocks, technical

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 QuoteService v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   Cache     : enabled={settings.CACHE_ENABLED} ttl={settings.CACHE_TTL_MINUTES}min")
    logger.info("=" * 60)

    if not settings.ALPHA_VANTAGE_API_KEY:
        logger.warning("⚠️ 未配置 ALPHA_VANTAGE_API_KEY，提供商请求将被拒绝")

    # 初始化数据库连接（失败不阻断启动，降级运行）
    await init_mongodb()
    await init_redis()
    reset_document_store()
    logger.info(f"✅ 文档存储就绪: {get_document_store().backend}")

    yield

    logger.info("🔄 行情服务正在关闭...")
    await close_market_data_provider()
    await close_connections()
    reset_document_store()
    logger.info("✅ 行情服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="行情与技术分析服务",
    description=(
        "股票行情微服务，提供以下功能：\n"
        "- 💹 实时价格与历史日线（Alpha Vantage）\n"
        "- 🗄️ cache-aside 文档缓存（MongoDB → Redis → 内存）\n"
        "- 📈 技术指标（RSI / SMA / EMA / MACD / BOLL / 随机指标 / ADX）\n"
        "- 🕯️ 形态分析（K 线形态、趋势强度、支撑阻力、情绪、风险）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从数据提供商拉取原始报文\n"
        "Processing Layer   ← 报文解析为标准日线文档\n"
        "Cache Layer        ← 按 (symbol, kind) 唯一的文档存储\n"
        "Analysis Layer     ← 技术指标与形态分析\n"
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
app.include_router(stocks.router)
app.include_router(technical.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "QuoteService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "quote_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
