"""
股票数据服务
整合数据获取、处理、缓存三层，实现按 (symbol, kind) 的 cache-aside 读取：

    读缓存 → 新鲜度判断 → [命中: 直接返回] / [未命中或过期: 拉取 → 解析 → 写入 → 返回]

并发：同一 (symbol, kind) 的整段 读-判断-拉取-写入 由进程内 asyncio.Lock 串行化，
后到的请求会读到先到请求刚写入的文档，不再重复调用提供商；存储写入本身为按键原子替换。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from quote_service.config import ServiceConfig, settings
from quote_service.layers.acquisition import (
    MarketDataProvider,
    ProviderError,
    get_market_data_provider,
)
from quote_service.layers.cache import (
    DocumentStore,
    FreshnessPolicy,
    PersistenceError,
    get_document_store,
)
from quote_service.layers.processing import PayloadParser, get_payload_parser
from quote_service.models.results import CurrentPriceResult
from quote_service.models.stock import DataKind, StockDocument

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_PROVIDER = "provider"


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class KeyedLock:
    """
    按键分配的 asyncio.Lock 注册表（single-flight）

    每个键的锁带引用计数，最后一个持有者或等待者退出后即从注册表移除，
    注册表大小只与当前在途请求的键数相关。
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, DataKind], List] = {}

    @asynccontextmanager
    async def hold(self, symbol: str, kind: DataKind) -> AsyncIterator[None]:
        key = (symbol, DataKind(kind))
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class DocumentLoad:
    """一次 cache-aside 读取的结果"""

    document: StockDocument
    source: str
    cache_error: Optional[str] = None


class StockService:
    """股票数据业务服务（cache-aside 编排器）"""

    def __init__(
        self,
        config: ServiceConfig,
        provider: Optional[MarketDataProvider] = None,
        store: Optional[DocumentStore] = None,
        parser: Optional[PayloadParser] = None,
    ):
        self._config = config
        self._provider = provider
        self._store = store
        self._parser = parser or get_payload_parser()
        self._freshness = FreshnessPolicy(config.cache_ttl)
        self._locks = KeyedLock()

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def provider(self) -> MarketDataProvider:
        return self._provider if self._provider is not None else get_market_data_provider()

    @property
    def store(self) -> DocumentStore:
        # 未显式注入时跟随连接状态选择的后端
        return self._store if self._store is not None else get_document_store()

    # ── cache-aside 核心 ──────────────────────────────────

    async def load_document(self, symbol: str, kind: DataKind) -> DocumentLoad:
        """
        按 cache-aside 流程获取文档

        Raises:
            ProviderError: 缓存未命中且提供商调用失败（此时不写入任何文档）
        """
        symbol = normalize_symbol(symbol)
        if not self._config.cache_enabled:
            document = await self._fetch(symbol, kind)
            return DocumentLoad(document=document, source=SOURCE_PROVIDER)

        async with self._locks.hold(symbol, kind):
            cached = await self._read_cache(symbol, kind)
            if cached is not None and self._freshness.is_fresh(cached):
                logger.info(f"缓存命中: {symbol} {kind.value}")
                return DocumentLoad(document=cached, source=SOURCE_CACHE)

            if cached is None:
                logger.info(f"缓存未命中: {symbol} {kind.value}")
            else:
                logger.info(f"缓存已过期，刷新: {symbol} {kind.value} (last_updated={cached.last_updated})")

            document = await self._fetch(symbol, kind)
            cache_error = await self._persist(document)
            return DocumentLoad(document=document, source=SOURCE_PROVIDER, cache_error=cache_error)

    async def _read_cache(self, symbol: str, kind: DataKind) -> Optional[StockDocument]:
        try:
            return await self.store.find(symbol, kind)
        except PersistenceError as exc:
            logger.warning(f"⚠️ 缓存读取失败，按未命中处理: {symbol} {kind.value}: {exc}")
            return None

    async def _fetch(self, symbol: str, kind: DataKind) -> StockDocument:
        if kind == DataKind.CURRENT:
            payload = await self.provider.fetch_quote(symbol)
        else:
            payload = await self.provider.fetch_daily_series(symbol)
        try:
            return self._parser.parse(kind, payload, symbol)
        except Exception as exc:
            logger.error(f"报文解析失败，按空数据处理: {symbol} {kind.value}: {exc}", exc_info=True)
            return self._parser.empty(symbol, kind)

    async def _persist(self, document: StockDocument) -> Optional[str]:
        """写入缓存，返回失败信息；空文档不写入，下次请求将重新拉取"""
        if document.is_empty:
            logger.warning(f"提供商未返回数据，不写入缓存: {document.symbol} {document.kind.value}")
            return None
        try:
            await self.store.upsert(document)
        except PersistenceError as exc:
            logger.warning(f"⚠️ 缓存写入失败，仍返回本次数据: {document.symbol} {document.kind.value}: {exc}")
            return str(exc)
        logger.info(f"缓存已刷新: {document.symbol} {document.kind.value} ({len(document.bars)} 条)")
        return None

    # ── 实时价格 ──────────────────────────────────────────

    async def get_current_price(self, symbol: str) -> CurrentPriceResult:
        """获取实时价格；提供商失败时返回带 error 标签的结果而不是抛出异常"""
        symbol = normalize_symbol(symbol)
        if not symbol:
            return CurrentPriceResult(symbol=symbol, error="Symbol must not be empty")
        try:
            load = await self.load_document(symbol, DataKind.CURRENT)
        except ProviderError as exc:
            logger.warning(f"获取实时价格失败: {symbol}: {exc}")
            return CurrentPriceResult(
                symbol=symbol,
                source=SOURCE_PROVIDER,
                error=f"Error fetching current price: {exc}",
            )
        except Exception as exc:
            logger.error(f"获取实时价格异常: {symbol}: {exc}", exc_info=True)
            return CurrentPriceResult(symbol=symbol, error=f"Unexpected error: {exc}")

        bar = load.document.series.latest
        if bar is None:
            return CurrentPriceResult(
                symbol=symbol,
                source=load.source,
                cache_error=load.cache_error,
                error="No quote data available",
            )
        return CurrentPriceResult(
            symbol=symbol,
            source=load.source,
            cache_error=load.cache_error,
            price=bar.close,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            volume=bar.volume,
            as_of=bar.date,
            message=f"Current price for {symbol}: ${bar.close:.2f}",
        )

    # ── 缓存管理 ──────────────────────────────────────────

    async def cache_status(self, symbol: str, kind: DataKind) -> Dict[str, Any]:
        """查询单个缓存文档的存在性与新鲜度"""
        symbol = normalize_symbol(symbol)
        document = await self.store.find(symbol, kind)
        status: Dict[str, Any] = {
            "symbol": symbol,
            "kind": DataKind(kind).value,
            "backend": self.store.backend,
            "exists": document is not None,
            "fresh": False,
            "last_updated": None,
            "bars": 0,
        }
        if document is not None:
            status.update(
                fresh=self._freshness.is_fresh(document),
                last_updated=_isoformat(document.last_updated),
                bars=len(document.bars),
            )
        return status

    async def invalidate(self, symbol: str, kind: DataKind) -> bool:
        """删除缓存文档，返回删除前是否存在"""
        symbol = normalize_symbol(symbol)
        async with self._locks.hold(symbol, kind):
            existed = await self.store.exists(symbol, kind)
            await self.store.delete(symbol, kind)
        logger.info(f"缓存已删除: {symbol} {DataKind(kind).value} (existed={existed})")
        return existed

    async def cache_stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        stats.update(
            enabled=self._config.cache_enabled,
            ttl_minutes=int(self._config.cache_ttl.total_seconds() // 60),
        )
        return stats


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── 模块级别单例 ──────────────────────────────────────────
_stock_service: Optional[StockService] = None


def get_stock_service() -> StockService:
    global _stock_service
    if _stock_service is None:
        _stock_service = StockService(config=settings.service_config())
    return _stock_service
