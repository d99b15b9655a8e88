"""
Layer 1 – 数据获取层
从行情数据提供商（Alpha Vantage）拉取原始 JSON 报文，交给处理层解析。
网络错误、超时、非 2xx 响应统一转换为 ProviderError，本层不做自动重试。
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from quote_service.config import settings

logger = logging.getLogger(__name__)

FUNCTION_QUOTE = "GLOBAL_QUOTE"
FUNCTION_DAILY = "TIME_SERIES_DAILY"

# Alpha Vantage 在限流、代码无效时仍返回 200，报文中只有以下提示字段
_NOTICE_KEYS = ("Error Message", "Note", "Information")
_DATA_KEYS = ("Global Quote", "Time Series (Daily)")


class ProviderError(Exception):
    """行情提供商调用失败（网络、超时、非 2xx、错误报文）"""

    def __init__(self, message: str, symbol: str = "", function: str = ""):
        super().__init__(message)
        self.symbol = symbol
        self.function = function


class MarketDataProvider(ABC):
    """行情数据提供商接口"""

    @abstractmethod
    async def fetch_quote(self, symbol: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def fetch_daily_series(self, symbol: str) -> Dict[str, Any]: ...

    async def close(self) -> None:
        return None


class AlphaVantageProvider(MarketDataProvider):
    """Alpha Vantage REST 客户端"""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://www.alphavantage.co/query",
        symbol_suffix: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._suffix = symbol_suffix
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _qualify(self, symbol: str) -> str:
        """拼接交易所后缀（已带后缀的代码不重复拼接）"""
        if self._suffix and not symbol.upper().endswith(self._suffix.upper()):
            return f"{symbol}{self._suffix}"
        return symbol

    async def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        return await self._request(FUNCTION_QUOTE, symbol)

    async def fetch_daily_series(self, symbol: str) -> Dict[str, Any]:
        return await self._request(FUNCTION_DAILY, symbol)

    async def _request(self, function: str, symbol: str) -> Dict[str, Any]:
        params = {
            "function": function,
            "symbol": self._qualify(symbol),
            "apikey": self._api_key,
        }
        logger.info(f"请求行情提供商: {function} {params['symbol']}")
        try:
            response = await self._get_client().get(self._base_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderError(f"请求超时: {exc}", symbol, function) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"HTTP {exc.response.status_code}: {exc}", symbol, function
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"网络错误: {exc}", symbol, function) from exc
        except ValueError as exc:
            raise ProviderError(f"响应不是合法 JSON: {exc}", symbol, function) from exc

        _raise_on_notice(payload, symbol, function)
        return payload


def _raise_on_notice(payload: Any, symbol: str, function: str) -> None:
    """报文只包含提示信息（限流、无效代码）时视为提供商错误"""
    if not isinstance(payload, dict):
        return
    if any(key in payload for key in _DATA_KEYS):
        return
    for key in _NOTICE_KEYS:
        if key in payload:
            raise ProviderError(f"{key}: {payload[key]}", symbol, function)


# ── 模块级别单例 ──────────────────────────────────────────
_provider: Optional[MarketDataProvider] = None


def get_market_data_provider() -> MarketDataProvider:
    global _provider
    if _provider is None:
        _provider = AlphaVantageProvider(
            api_key=settings.ALPHA_VANTAGE_API_KEY,
            base_url=settings.ALPHA_VANTAGE_BASE_URL,
            symbol_suffix=settings.SYMBOL_SUFFIX,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    return _provider


async def close_market_data_provider() -> None:
    global _provider
    if _provider is not None:
        await _provider.close()
        _provider = None
