"""
行情服务单元测试

覆盖范围：
  - 配置模块（服务发现、环境变量解析、不可变 ServiceConfig）
  - 数据获取层（Alpha Vantage 客户端，httpx MockTransport）
  - 数据处理层（报文解析、防御式数值解析）
  - 缓存层（新鲜度策略、内存 / MongoDB / Redis 文档存储）
  - cache-aside 编排（命中、未命中、过期、提供商失败、写入失败、并发）
  - FastAPI 路由（通过 TestClient 测试，无需真实数据库）
"""

import asyncio
import json
import os
import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from quote_service.config import ServiceConfig  # noqa: E402
from quote_service.layers.acquisition import AlphaVantageProvider, ProviderError  # noqa: E402
from quote_service.layers.cache import (  # noqa: E402
    FreshnessPolicy,
    MemoryDocumentStore,
    MongoDocumentStore,
    PersistenceError,
    RedisDocumentStore,
    document_key,
)
from quote_service.layers.processing import PayloadParser, parse_decimal, parse_int  # noqa: E402
from quote_service.models.stock import DailyBar, DataKind, StockDocument  # noqa: E402
from quote_service.services.stock_service import KeyedLock, StockService  # noqa: E402
from quote_service.services.technical_service import TechnicalService  # noqa: E402


# ─────────────────────────────────────────────────────────
# 辅助函数：构造提供商报文与文档
# ─────────────────────────────────────────────────────────

QUOTE_PAYLOAD = {
    "Global Quote": {
        "01. symbol": "AAPL.BSE",
        "02. open": "148.50",
        "03. high": "151.00",
        "04. low": "147.25",
        "05. price": "150.00",
        "06. volume": "1200000",
        "07. latest trading day": "2024-03-15",
        "08. previous close": "148.00",
    }
}


def _daily_payload(n: int = 40) -> dict:
    """Alpha Vantage 风格的日线报文（日期倒序）"""
    start = date(2024, 1, 1)
    series = {}
    for i in reversed(range(n)):
        close = 100 + i * 0.5 + (2 if i % 3 == 0 else -1)
        series[(start + timedelta(days=i)).isoformat()] = {
            "1. open": f"{close - 0.5:.2f}",
            "2. high": f"{close + 1:.2f}",
            "3. low": f"{close - 1.5:.2f}",
            "4. close": f"{close:.2f}",
            "5. volume": str(100000 + i * 1000),
        }
    return {"Meta Data": {"2. Symbol": "AAPL.BSE"}, "Time Series (Daily)": series}


def _document(close: str = "150.00", age: timedelta = timedelta(0), kind=DataKind.CURRENT):
    bar = DailyBar(
        date=date(2024, 3, 15),
        open=Decimal("148.50"),
        high=Decimal("151.00"),
        low=Decimal("147.25"),
        close=Decimal(close),
        volume=1200000,
    )
    return StockDocument(
        symbol="AAPL",
        kind=kind,
        bars=(bar,),
        last_updated=datetime.now(tz=timezone.utc) - age,
    )


def _provider(quote=None, daily=None) -> MagicMock:
    provider = MagicMock()
    provider.fetch_quote = AsyncMock(return_value=quote if quote is not None else QUOTE_PAYLOAD)
    provider.fetch_daily_series = AsyncMock(return_value=daily if daily is not None else _daily_payload())
    return provider


def _failing_store() -> MagicMock:
    store = MagicMock()
    store.backend = "broken"
    store.find = AsyncMock(side_effect=PersistenceError("read failed"))
    store.upsert = AsyncMock(side_effect=PersistenceError("write failed"))
    return store


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        from quote_service.config import QuoteServiceSettings
        s = QuoteServiceSettings()
        assert s.PORT == 8001
        assert s.MONGODB_DATABASE == "quotes"
        assert s.STOCK_COLLECTION == "stock_data"
        assert s.SYMBOL_SUFFIX == ".BSE"
        assert s.CACHE_TTL_MINUTES == 60

    def test_mongo_uri_with_auth(self):
        from quote_service.config import QuoteServiceSettings
        s = QuoteServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="mydb",
        )
        assert "user:pass@db-host:27017/mydb" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from quote_service.config import QuoteServiceSettings
        s = QuoteServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_docker_service_discovery(self):
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from quote_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"

    def test_service_config_ttl_in_minutes(self):
        """CACHE_TTL_MINUTES 按分钟生效"""
        from quote_service.config import QuoteServiceSettings
        s = QuoteServiceSettings(CACHE_TTL_MINUTES=15, CACHE_ENABLED=False, DEFAULT_ANALYSIS_DAYS=10)
        cfg = s.service_config()
        assert cfg.cache_ttl == timedelta(minutes=15)
        assert cfg.cache_enabled is False
        assert cfg.analysis_days == 10

    def test_service_config_is_frozen(self):
        cfg = ServiceConfig()
        with pytest.raises(Exception):
            cfg.cache_enabled = False


# ─────────────────────────────────────────────────────────
# 2. 数据获取层测试
# ─────────────────────────────────────────────────────────

def _av_provider(handler) -> AlphaVantageProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AlphaVantageProvider(api_key="demo", symbol_suffix=".BSE", client=client)


class TestAlphaVantageProvider:
    @pytest.mark.asyncio
    async def test_fetch_quote_appends_suffix(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json=QUOTE_PAYLOAD)

        payload = await _av_provider(handler).fetch_quote("AAPL")
        assert payload == QUOTE_PAYLOAD
        assert seen["symbol"] == "AAPL.BSE"
        assert seen["function"] == "GLOBAL_QUOTE"
        assert seen["apikey"] == "demo"

    @pytest.mark.asyncio
    async def test_suffix_not_duplicated(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=_daily_payload(3))

        await _av_provider(handler).fetch_daily_series("AAPL.BSE")
        assert seen["symbol"] == "AAPL.BSE"
        assert seen["function"] == "TIME_SERIES_DAILY"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        provider = _av_provider(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(ProviderError, match="HTTP 503"):
            await provider.fetch_quote("AAPL")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        with pytest.raises(ProviderError, match="Connection refused"):
            await _av_provider(handler).fetch_quote("AAPL")

    @pytest.mark.asyncio
    async def test_rate_limit_notice(self):
        provider = _av_provider(
            lambda request: httpx.Response(200, json={"Note": "API call frequency exceeded"})
        )
        with pytest.raises(ProviderError, match="frequency"):
            await provider.fetch_daily_series("AAPL")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        provider = _av_provider(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(ProviderError):
            await provider.fetch_quote("AAPL")


# ─────────────────────────────────────────────────────────
# 3. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestPayloadParser:
    def setup_method(self):
        self.parser = PayloadParser()

    @pytest.mark.parametrize("raw", ["abc", "", "   ", None, "1.2.3", "NaN", "inf", "--"])
    def test_malformed_decimal_is_zero(self, raw):
        assert parse_decimal(raw, "price") == Decimal(0)

    @pytest.mark.parametrize("raw", ["abc", "", None, "12.5", "1e3"])
    def test_malformed_int_is_zero(self, raw):
        assert parse_int(raw, "volume") == 0

    @pytest.mark.parametrize("raw", ["-150.00", "-0.01", "-0"])
    def test_negative_decimal_is_zero(self, raw):
        result = parse_decimal(raw, "price")
        assert result == Decimal(0)
        assert not result.is_signed()

    def test_negative_int_is_zero(self):
        assert parse_int("-7", "volume") == 0

    def test_parse_current_negative_fields(self):
        payload = {"Global Quote": {"05. price": "-150.00", "06. volume": "-7", "03. high": "-1"}}
        bar = self.parser.parse_current(payload, "X").bars[0]
        assert bar.close == 0
        assert bar.volume == 0
        assert bar.high == 0
        assert bar.is_gap

    def test_daily_bar_rejects_negative_values(self):
        with pytest.raises(ValidationError):
            DailyBar(date=date(2024, 3, 15), close=Decimal("-1"))
        with pytest.raises(ValidationError):
            DailyBar(date=date(2024, 3, 15), volume=-7)

    def test_parse_current(self):
        doc = self.parser.parse_current(QUOTE_PAYLOAD, "AAPL")
        assert doc.kind == DataKind.CURRENT
        assert len(doc.bars) == 1
        bar = doc.bars[0]
        assert bar.close == Decimal("150.00")
        assert bar.volume == 1200000
        assert bar.date == date(2024, 3, 15)

    def test_parse_current_malformed_fields(self):
        payload = {"Global Quote": {"05. price": "n/a", "06. volume": "lots", "02. open": "10"}}
        doc = self.parser.parse_current(payload, "AAPL")
        bar = doc.bars[0]
        assert bar.close == 0
        assert bar.volume == 0
        assert bar.open == Decimal("10")
        assert bar.date == date.today()

    def test_missing_quote_section_gives_empty_document(self):
        doc = self.parser.parse_current({"Information": "demo"}, "AAPL")
        assert doc.is_empty
        assert doc.kind == DataKind.CURRENT

    def test_parse_historical_sorted_ascending(self):
        doc = self.parser.parse_historical(_daily_payload(10), "AAPL")
        dates = [b.date for b in doc.bars]
        assert len(dates) == 10
        assert dates == sorted(dates)

    def test_parse_historical_skips_bad_dates_and_nodes(self):
        payload = {
            "Time Series (Daily)": {
                "2024-01-02": {"4. close": "10"},
                "not-a-date": {"4. close": "11"},
                "2024-01-01": "garbage",
            }
        }
        doc = self.parser.parse_historical(payload, "AAPL")
        assert [b.date for b in doc.bars] == [date(2024, 1, 1), date(2024, 1, 2)]
        assert doc.bars[0].close == 0
        assert doc.bars[1].close == Decimal("10")

    def test_missing_series_section_gives_empty_document(self):
        doc = self.parser.parse_historical({"Meta Data": {}}, "AAPL")
        assert doc.is_empty
        assert doc.kind == DataKind.HISTORICAL

    def test_last_updated_is_parse_time(self):
        before = datetime.now(tz=timezone.utc)
        doc = self.parser.parse_historical(_daily_payload(3), "AAPL")
        assert doc.last_updated >= before


# ─────────────────────────────────────────────────────────
# 4. 缓存层测试
# ─────────────────────────────────────────────────────────

class TestFreshnessPolicy:
    def setup_method(self):
        self.policy = FreshnessPolicy(timedelta(minutes=60))

    def test_missing_last_updated_is_stale(self):
        doc = _document()
        doc.last_updated = None
        assert self.policy.is_fresh(doc) is False

    def test_recent_is_fresh(self):
        assert self.policy.is_fresh(_document(age=timedelta(minutes=59)))

    def test_old_is_stale(self):
        assert not self.policy.is_fresh(_document(age=timedelta(minutes=61)))

    def test_ttl_is_not_days(self):
        assert not self.policy.is_fresh(_document(age=timedelta(days=2)))

    def test_boundary_is_fresh(self):
        doc = _document()
        now = doc.last_updated + timedelta(minutes=60)
        assert self.policy.is_fresh(doc, now=now)

    def test_naive_timestamp_treated_as_utc(self):
        doc = _document()
        doc.last_updated = datetime.now(tz=timezone.utc).replace(tzinfo=None) - timedelta(minutes=5)
        assert self.policy.is_fresh(doc)


class TestCacheKeys:
    def test_document_key(self):
        assert document_key("aapl", DataKind.CURRENT) == "stock:AAPL:CURRENT"

    def test_key_consistency(self):
        assert document_key("X", DataKind.HISTORICAL) == document_key("x", DataKind.HISTORICAL)


class TestMemoryDocumentStore:
    def setup_method(self):
        self.store = MemoryDocumentStore()

    @pytest.mark.asyncio
    async def test_upsert_replaces(self):
        await self.store.upsert(_document("140.00"))
        await self.store.upsert(_document("150.00"))
        found = await self.store.find("AAPL", DataKind.CURRENT)
        assert found.bars[0].close == Decimal("150.00")
        stats = await self.store.stats()
        assert stats["documents"] == 1

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self):
        await self.store.upsert(_document())
        assert await self.store.exists("AAPL", DataKind.CURRENT)
        assert not await self.store.exists("AAPL", DataKind.HISTORICAL)

    @pytest.mark.asyncio
    async def test_delete(self):
        await self.store.upsert(_document())
        await self.store.delete("aapl", DataKind.CURRENT)
        assert await self.store.find("AAPL", DataKind.CURRENT) is None


class TestMongoDocumentStore:
    def setup_method(self):
        self.collection = MagicMock()
        self.collection.replace_one = AsyncMock()
        self.collection.find_one = AsyncMock(return_value=None)
        self.store = MongoDocumentStore({"stock_data": self.collection})

    @pytest.mark.asyncio
    async def test_upsert_is_single_replace(self):
        doc = _document()
        await self.store.upsert(doc)
        args, kwargs = self.collection.replace_one.call_args
        assert args[0] == {"symbol": "AAPL", "kind": "CURRENT"}
        assert args[1]["bars"][0]["close"] == "150.00"
        assert kwargs == {"upsert": True}

    @pytest.mark.asyncio
    async def test_find_restores_document(self):
        doc = _document()
        self.collection.find_one = AsyncMock(return_value=doc.to_storage())
        assert await self.store.find("AAPL", DataKind.CURRENT) == doc

    @pytest.mark.asyncio
    async def test_corrupt_document_is_miss(self):
        self.collection.find_one = AsyncMock(return_value={"symbol": "AAPL", "kind": "BOGUS"})
        assert await self.store.find("AAPL", DataKind.CURRENT) is None

    @pytest.mark.asyncio
    async def test_backend_failure_raises_persistence_error(self):
        self.collection.replace_one = AsyncMock(side_effect=RuntimeError("socket closed"))
        with pytest.raises(PersistenceError, match="socket closed"):
            await self.store.upsert(_document())


class TestRedisDocumentStore:
    def setup_method(self):
        self.data = {}
        redis = MagicMock()
        redis.set = AsyncMock(side_effect=lambda key, value: self.data.__setitem__(key, value))
        redis.get = AsyncMock(side_effect=lambda key: self.data.get(key))
        redis.delete = AsyncMock(side_effect=lambda key: self.data.pop(key, None))
        redis.exists = AsyncMock(side_effect=lambda key: int(key in self.data))
        self.store = RedisDocumentStore(redis)

    @pytest.mark.asyncio
    async def test_round_trip(self):
        doc = _document()
        await self.store.upsert(doc)
        assert json.loads(self.data["stock:AAPL:CURRENT"])["symbol"] == "AAPL"
        assert await self.store.find("AAPL", DataKind.CURRENT) == doc

    @pytest.mark.asyncio
    async def test_delete(self):
        await self.store.upsert(_document())
        await self.store.delete("AAPL", DataKind.CURRENT)
        assert not await self.store.exists("AAPL", DataKind.CURRENT)


# ─────────────────────────────────────────────────────────
# 5. cache-aside 编排测试
# ─────────────────────────────────────────────────────────

class TestStockService:
    def setup_method(self):
        self.store = MemoryDocumentStore()
        self.provider = _provider()
        self.service = StockService(config=ServiceConfig(), provider=self.provider, store=self.store)

    @pytest.mark.asyncio
    async def test_cache_disabled_never_writes(self):
        store = MagicMock()
        store.find = AsyncMock()
        store.upsert = AsyncMock()
        service = StockService(
            config=ServiceConfig(cache_enabled=False), provider=self.provider, store=store
        )
        result = await service.get_current_price("AAPL")
        assert result.ok
        assert result.price == Decimal("150.00")
        assert "150.00" in result.message
        store.upsert.assert_not_awaited()
        store.find.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_miss_fetches_and_persists(self):
        result = await self.service.get_current_price("aapl")
        assert result.source == "provider"
        assert result.message == "Current price for AAPL: $150.00"
        stored = await self.store.find("AAPL", DataKind.CURRENT)
        assert stored.bars[0].close == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_provider_failure_is_tagged_and_not_persisted(self):
        self.provider.fetch_quote = AsyncMock(side_effect=ProviderError("Connection refused"))
        result = await self.service.get_current_price("AAPL")
        assert not result.ok
        assert "Connection refused" in result.error
        assert result.price is None
        assert await self.store.find("AAPL", DataKind.CURRENT) is None

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_provider(self):
        await self.store.upsert(_document("150.00"))
        result = await self.service.get_current_price("AAPL")
        assert result.source == "cache"
        assert result.price == Decimal("150.00")
        self.provider.fetch_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_document_is_refreshed(self):
        await self.store.upsert(_document("120.00", age=timedelta(hours=2)))
        result = await self.service.get_current_price("AAPL")
        assert result.source == "provider"
        assert result.price == Decimal("150.00")
        self.provider.fetch_quote.assert_awaited_once()
        stored = await self.store.find("AAPL", DataKind.CURRENT)
        assert stored.bars[0].close == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_data(self):
        service = StockService(config=ServiceConfig(), provider=self.provider, store=_failing_store())
        result = await service.get_current_price("AAPL")
        assert result.ok
        assert result.price == Decimal("150.00")
        assert result.cache_error == "write failed"

    @pytest.mark.asyncio
    async def test_missing_section_is_not_persisted(self):
        self.provider.fetch_quote = AsyncMock(return_value={"Information": "no data"})
        result = await self.service.get_current_price("AAPL")
        assert result.error == "No quote data available"
        assert await self.store.find("AAPL", DataKind.CURRENT) is None

    @pytest.mark.asyncio
    async def test_empty_symbol(self):
        result = await self.service.get_current_price("  ")
        assert not result.ok
        self.provider.fetch_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self):
        async def slow_quote(symbol):
            await asyncio.sleep(0.01)
            return QUOTE_PAYLOAD

        self.provider.fetch_quote = AsyncMock(side_effect=slow_quote)
        results = await asyncio.gather(*(self.service.get_current_price("AAPL") for _ in range(5)))
        assert all(r.price == Decimal("150.00") for r in results)
        assert self.provider.fetch_quote.await_count == 1
        assert sorted(r.source for r in results) == ["cache"] * 4 + ["provider"]

    @pytest.mark.asyncio
    async def test_cancelled_fetch_does_not_persist(self):
        started = asyncio.Event()

        async def hanging_quote(symbol):
            started.set()
            await asyncio.sleep(10)
            return QUOTE_PAYLOAD

        self.provider.fetch_quote = AsyncMock(side_effect=hanging_quote)
        task = asyncio.ensure_future(self.service.get_current_price("AAPL"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await self.store.find("AAPL", DataKind.CURRENT) is None

    @pytest.mark.asyncio
    async def test_cache_status_and_invalidate(self):
        await self.service.get_current_price("AAPL")
        status = await self.service.cache_status("aapl", DataKind.CURRENT)
        assert status["exists"] is True
        assert status["fresh"] is True
        assert status["bars"] == 1

        assert await self.service.invalidate("AAPL", DataKind.CURRENT) is True
        assert await self.service.invalidate("AAPL", DataKind.CURRENT) is False
        status = await self.service.cache_status("AAPL", DataKind.CURRENT)
        assert status["exists"] is False

    @pytest.mark.asyncio
    async def test_keyed_lock_serialises_same_key(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("AAPL", DataKind.CURRENT):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_keyed_lock_tracks_only_active_keys(self):
        locks = KeyedLock()
        async with locks.hold("AAPL", DataKind.CURRENT):
            async with locks.hold("AAPL", DataKind.HISTORICAL):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_registry_released_after_requests(self):
        """依次请求大量不同代码后，锁注册表不保留任何条目"""
        await asyncio.gather(*(self.service.get_current_price(f"SYM{i}") for i in range(200)))
        for i in range(50):
            await self.service.get_current_price(f"OTHER{i}")
        assert len(self.service._locks) == 0
        assert self.provider.fetch_quote.await_count == 250

    @pytest.mark.asyncio
    async def test_lock_registry_released_after_provider_error(self):
        self.provider.fetch_quote = AsyncMock(side_effect=ProviderError("timeout"))
        result = await self.service.get_current_price("AAPL")
        assert result.error is not None
        assert len(self.service._locks) == 0


class TestTechnicalService:
    def setup_method(self):
        self.store = MemoryDocumentStore()
        self.provider = _provider()
        self.stocks = StockService(
            config=ServiceConfig(analysis_days=10), provider=self.provider, store=self.store
        )
        self.service = TechnicalService(stocks=self.stocks)

    @pytest.mark.asyncio
    async def test_historical_series(self):
        result = await self.service.get_historical_series("AAPL")
        assert result.ok
        assert result.total_data_points == 40
        assert len(result.bars) == 40
        assert result.summary.startswith("Latest RSI: ")
        assert "Latest SMA: " in result.summary
        assert result.indicators.rsi.ok
        assert 0 <= result.indicators.rsi.value <= 100
        assert result.indicators.sma50.status.value == "insufficient_data"

    @pytest.mark.asyncio
    async def test_historical_days_window(self):
        result = await self.service.get_historical_series("AAPL", days=5)
        assert len(result.bars) == 5
        assert result.bars[-1].date == date(2024, 2, 9)
        assert result.total_data_points == 40

    @pytest.mark.asyncio
    async def test_historical_served_from_cache(self):
        await self.service.get_historical_series("AAPL")
        result = await self.service.get_historical_series("AAPL")
        assert result.source == "cache"
        self.provider.fetch_daily_series.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_historical_provider_error(self):
        self.provider.fetch_daily_series = AsyncMock(side_effect=ProviderError("timeout"))
        result = await self.service.get_historical_series("AAPL")
        assert result.error == "Error fetching historical price: timeout"
        assert result.bars == []

    @pytest.mark.asyncio
    async def test_no_historical_data(self):
        self.provider.fetch_daily_series = AsyncMock(return_value={"Meta Data": {}})
        result = await self.service.get_advanced_analysis("AAPL")
        assert result.error == "No historical data available"
        assert result.patterns is None

    @pytest.mark.asyncio
    async def test_enhanced_analysis(self):
        result = await self.service.get_enhanced_analysis("AAPL")
        assert result.ok
        assert result.data_points == 40
        assert result.current_price == pytest.approx(121.5)
        assert result.rsi is not None
        assert result.sma is not None
        assert result.signal.startswith(("SELL", "BUY", "HOLD"))
        assert result.trend != "UNKNOWN"

    @pytest.mark.asyncio
    async def test_enhanced_analysis_few_bars(self):
        self.provider.fetch_daily_series = AsyncMock(return_value=_daily_payload(5))
        result = await self.service.get_enhanced_analysis("AAPL")
        assert result.rsi is None
        assert result.signal == "INSUFFICIENT_DATA"

    @pytest.mark.asyncio
    async def test_advanced_analysis_default_window(self):
        result = await self.service.get_advanced_analysis("AAPL")
        assert result.ok
        assert result.period == "10 days"
        assert result.data_points == 10
        assert result.patterns.sentiment.total_signals == 0
        assert len(result.patterns.support_resistance.resistance) == 3

    @pytest.mark.asyncio
    async def test_advanced_analysis_rejects_non_positive_days(self):
        result = await self.service.get_advanced_analysis("AAPL", days=0)
        assert not result.ok
        self.provider.fetch_daily_series.assert_not_awaited()


# ─────────────────────────────────────────────────────────
# 6. HTTP 路由测试（TestClient，不需要真实数据库）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    """创建测试客户端，mock 数据库连接"""
    from quote_service import main
    with patch.object(main, "init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch.object(main, "init_redis", new_callable=AsyncMock, return_value=False), \
         patch.object(main, "close_connections", new_callable=AsyncMock), \
         patch.object(main, "close_market_data_provider", new_callable=AsyncMock), \
         patch("quote_service.routers.health.check_health", new_callable=AsyncMock, return_value={
             "mongodb": {"status": "disabled"},
             "redis": {"status": "disabled"},
         }):
        with TestClient(main.app) as c:
            yield c


@pytest.fixture
def provider():
    """以内存存储 + mock 提供商替换服务单例"""
    fake = _provider()
    stocks = StockService(config=ServiceConfig(), provider=fake, store=MemoryDocumentStore())
    technical = TechnicalService(stocks=stocks)
    with patch("quote_service.services.stock_service._stock_service", stocks), \
         patch("quote_service.services.technical_service._technical_service", technical):
        yield fake


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["store_backend"] == "memory"

    def test_healthz_endpoint(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_readyz_endpoint(self, client):
        assert client.get("/readyz").json()["ready"] is True

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body
        assert "docs" in body


class TestStockRoutes:
    def test_current_price(self, client, provider):
        resp = client.get("/api/stocks/aapl/price")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["price"] == "150.00"
        assert body["message"] == "Current price for AAPL: $150.00"

    def test_current_price_provider_error(self, client, provider):
        provider.fetch_quote.side_effect = ProviderError("Connection refused")
        body = client.get("/api/stocks/AAPL/price").json()
        assert body["success"] is False
        assert "Connection refused" in body["error"]

    def test_history_window(self, client, provider):
        body = client.get("/api/stocks/AAPL/history", params={"days": 5}).json()
        assert body["success"] is True
        assert len(body["data"]["bars"]) == 5
        assert body["message"].startswith("Latest RSI: ")

    def test_history_rejects_zero_days(self, client, provider):
        assert client.get("/api/stocks/AAPL/history", params={"days": 0}).status_code == 422


class TestTechnicalRoutes:
    def test_quick_analysis(self, client, provider):
        body = client.get("/api/technical/AAPL").json()
        assert body["success"] is True
        assert body["data"]["symbol"] == "AAPL"
        assert body["data"]["data_points"] == 40

    def test_advanced_analysis(self, client, provider):
        body = client.get("/api/technical/AAPL/advanced", params={"days": 30}).json()
        assert body["success"] is True
        patterns = body["data"]["patterns"]
        assert set(patterns) == {
            "price_patterns",
            "volume_patterns",
            "candlestick_patterns",
            "trend_analysis",
            "support_resistance",
            "sentiment",
            "risk",
        }
        assert body["data"]["data_points"] == 30


class TestCacheRoutes:
    def test_stats(self, client, provider):
        body = client.get("/api/cache/stats").json()
        assert body["data"]["backend"] == "memory"
        assert body["data"]["ttl_minutes"] == 60

    def test_status_and_delete(self, client, provider):
        client.get("/api/stocks/AAPL/price")
        body = client.get("/api/cache/AAPL", params={"kind": "CURRENT"}).json()
        assert body["data"]["exists"] is True
        assert body["data"]["fresh"] is True

        body = client.delete("/api/cache/AAPL", params={"kind": "CURRENT"}).json()
        assert body["data"]["deleted"] is True
        body = client.get("/api/cache/AAPL", params={"kind": "CURRENT"}).json()
        assert body["data"]["exists"] is False

    def test_invalid_kind(self, client, provider):
        assert client.get("/api/cache/AAPL", params={"kind": "WEEKLY"}).status_code == 422


class TestDatabase:
    @pytest.mark.asyncio
    async def test_health_without_connections(self):
        from quote_service import db
        with patch.object(db.settings, "MONGODB_ENABLED", True), \
             patch.object(db.settings, "REDIS_ENABLED", False):
            health = await db.check_health()
        assert health["mongodb"]["status"] == "disconnected"
        assert health["redis"]["status"] == "disabled"

    @pytest.mark.asyncio
    async def test_stock_index_is_unique_on_symbol_and_kind(self):
        from quote_service import db
        collection = MagicMock()
        collection.create_index = AsyncMock()
        await db.ensure_stock_indexes({db.settings.STOCK_COLLECTION: collection})
        args, kwargs = collection.create_index.call_args
        assert [field for field, _ in args[0]] == ["symbol", "kind"]
        assert kwargs["unique"] is True
