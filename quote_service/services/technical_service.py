"""
技术分析服务
在 StockService 的 cache-aside 读取之上，整合指标引擎与形态分析器，提供：
  - get_historical_series : 历史日线 + 全量指标 + RSI/SMA 摘要
  - get_enhanced_analysis : 快速分析（价格、RSI、SMA、趋势、信号）
  - get_advanced_analysis : 最近 N 天的完整形态分析
"""

import logging
from typing import Optional, Tuple, Type, TypeVar

from quote_service.layers.acquisition import ProviderError
from quote_service.layers.analysis import IndicatorEngine, get_indicator_engine
from quote_service.layers.patterns import (
    PatternAnalyzer,
    get_pattern_analyzer,
    trading_signal,
    trend_label,
)
from quote_service.models.results import (
    INSUFFICIENT_DATA,
    AdvancedAnalysis,
    HistoricalAnalysis,
    IndicatorResult,
    QuickAnalysis,
    TaggedResult,
)
from quote_service.models.stock import BarSeries, DataKind
from quote_service.services.stock_service import (
    DocumentLoad,
    StockService,
    get_stock_service,
    normalize_symbol,
)

logger = logging.getLogger(__name__)

NO_DATA = "No historical data available"

R = TypeVar("R", bound=TaggedResult)


def _fmt(result: IndicatorResult) -> str:
    return f"{result.value:.2f}" if result.ok else INSUFFICIENT_DATA


class TechnicalService:
    """技术分析服务"""

    def __init__(
        self,
        stocks: Optional[StockService] = None,
        engine: Optional[IndicatorEngine] = None,
        analyzer: Optional[PatternAnalyzer] = None,
    ):
        self._stocks = stocks or get_stock_service()
        if engine is None:
            self._engine = get_indicator_engine()
            self._analyzer = analyzer or get_pattern_analyzer()
        else:
            self._engine = engine
            self._analyzer = analyzer or PatternAnalyzer(engine)

    async def _load_series(
        self, symbol: str, result_cls: Type[R], action: str
    ) -> Tuple[Optional[DocumentLoad], Optional[R]]:
        """读取历史日线；失败时返回已带 error 标签的结果"""
        if not symbol:
            return None, result_cls(symbol=symbol, error="Symbol must not be empty")
        try:
            load = await self._stocks.load_document(symbol, DataKind.HISTORICAL)
        except ProviderError as exc:
            logger.warning(f"{action}失败: {symbol}: {exc}")
            return None, result_cls(
                symbol=symbol,
                source="provider",
                error=f"Error fetching historical price: {exc}",
            )
        except Exception as exc:
            logger.error(f"{action}异常: {symbol}: {exc}", exc_info=True)
            return None, result_cls(symbol=symbol, error=f"Unexpected error: {exc}")

        if load.document.is_empty:
            return None, result_cls(
                symbol=symbol,
                source=load.source,
                cache_error=load.cache_error,
                error=NO_DATA,
            )
        return load, None

    # ── 历史日线 ──────────────────────────────────────────

    async def get_historical_series(
        self, symbol: str, days: Optional[int] = None
    ) -> HistoricalAnalysis:
        """
        历史日线与技术指标

        Args:
            symbol: 股票代码
            days: 返回最近 N 根日线，None 表示全部；指标始终基于完整序列计算
        """
        symbol = normalize_symbol(symbol)
        if days is not None and days <= 0:
            return HistoricalAnalysis(symbol=symbol, error="days must be a positive integer")
        load, failure = await self._load_series(symbol, HistoricalAnalysis, "获取历史日线")
        if failure is not None:
            return failure

        series = load.document.series
        indicators = self._engine.compute_all(series)
        window = series.tail(days)
        return HistoricalAnalysis(
            symbol=symbol,
            source=load.source,
            cache_error=load.cache_error,
            period=f"{days} days" if days else "all",
            bars=list(window),
            indicators=indicators,
            summary=f"Latest RSI: {_fmt(indicators.rsi)}, Latest SMA: {_fmt(indicators.sma14)}",
            total_data_points=len(series),
        )

    # ── 快速分析 ──────────────────────────────────────────

    async def get_enhanced_analysis(self, symbol: str) -> QuickAnalysis:
        """价格 + RSI(14) + SMA(14)，派生趋势标签与交易信号"""
        symbol = normalize_symbol(symbol)
        load, failure = await self._load_series(symbol, QuickAnalysis, "快速分析")
        if failure is not None:
            return failure

        series = load.document.series.without_gaps()
        latest = series.latest
        if latest is None:
            return QuickAnalysis(
                symbol=symbol, source=load.source, cache_error=load.cache_error, error=NO_DATA
            )

        price = float(latest.close)
        # 快速结果只暴露 RSI(14) 与 SMA(14)；全量指标见 get_historical_series
        rsi = self._engine.rsi(series)
        sma = self._engine.sma(series)
        return QuickAnalysis(
            symbol=symbol,
            source=load.source,
            cache_error=load.cache_error,
            current_price=price,
            rsi=rsi.value,
            sma=sma.value,
            trend=trend_label(rsi.value, price, sma.value),
            signal=trading_signal(rsi.value),
            data_points=len(series),
        )

    # ── 形态分析 ──────────────────────────────────────────

    async def get_advanced_analysis(
        self, symbol: str, days: Optional[int] = None
    ) -> AdvancedAnalysis:
        """最近 days 天（默认取配置 analysis_days）的完整形态分析"""
        symbol = normalize_symbol(symbol)
        days = days if days is not None else self._stocks.config.analysis_days
        if days <= 0:
            return AdvancedAnalysis(symbol=symbol, error="days must be a positive integer")
        load, failure = await self._load_series(symbol, AdvancedAnalysis, "形态分析")
        if failure is not None:
            return failure

        window: BarSeries = load.document.series.tail(days)
        return AdvancedAnalysis(
            symbol=symbol,
            source=load.source,
            cache_error=load.cache_error,
            period=f"{days} days",
            data_points=len(window),
            patterns=self._analyzer.analyze(window),
        )


# ── 模块级别单例 ──────────────────────────────────────────
_technical_service: Optional[TechnicalService] = None


def get_technical_service() -> TechnicalService:
    global _technical_service
    if _technical_service is None:
        _technical_service = TechnicalService()
    return _technical_service
