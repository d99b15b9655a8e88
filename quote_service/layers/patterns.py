"""
Layer 4 – 形态分析
基于指标引擎输出与日线直接检查，识别价格/成交量/K 线形态，
给出趋势强度、支撑阻力、市场情绪、风险指标以及快速分析用的信号与趋势标签。

扫描窗口：K 线形态取最近 5 根，动量与跳空取最近 10 根。
"""

import logging
from typing import Callable, Dict, List, Optional, TypeVar

import pandas as pd

from quote_service.layers.analysis import (
    ADX_PERIOD,
    EMA_FAST,
    EMA_SLOW,
    IndicatorEngine,
    get_indicator_engine,
    macd_line,
    sma_series,
)
from quote_service.models.results import (
    INSUFFICIENT_DATA,
    CandlestickPattern,
    CandlestickPatterns,
    Classification,
    Gap,
    IndicatorResult,
    PatternResult,
    PricePatterns,
    RiskResult,
    SentimentResult,
    SupportResistance,
    TrendAnalysis,
    VolumePatterns,
)
from quote_service.models.stock import BarSeries, DailyBar

logger = logging.getLogger(__name__)

T = TypeVar("T")

PATTERN_WINDOW = 5
MOMENTUM_LOOKBACK = 10
GAP_WINDOW = 10
GAP_THRESHOLD_PCT = 2.0
VOLATILITY_PERIOD = 20
VOLUME_SMA_PERIOD = 10
SLOPE_LOOKBACK = 5
SLOPE_PERIODS = (20, 50)
LEVEL_COUNT = 3
TREND_BAND = 0.02

DOJI = "DOJI"
HAMMER = "HAMMER"
BULLISH_ENGULFING = "BULLISH_ENGULFING"
BEARISH_ENGULFING = "BEARISH_ENGULFING"


# ── 分类阈值 ──────────────────────────────────────────────

def classify_momentum(ratio: float) -> str:
    if ratio > 1.05:
        return "STRONG_POSITIVE"
    if ratio > 1.02:
        return "POSITIVE"
    if ratio > 0.98:
        return "NEUTRAL"
    if ratio > 0.95:
        return "NEGATIVE"
    return "STRONG_NEGATIVE"


def classify_volatility(std: float) -> str:
    if std > 0.05:
        return "HIGH"
    if std > 0.03:
        return "MODERATE"
    return "LOW"


def classify_risk(std: float) -> str:
    if std > 0.05:
        return "HIGH_RISK"
    if std > 0.03:
        return "MODERATE_RISK"
    return "LOW_RISK"


def classify_trend_strength(adx: float) -> str:
    if adx > 50:
        return "VERY_STRONG"
    if adx > 25:
        return "STRONG"
    if adx > 20:
        return "MODERATE"
    return "WEAK"


def classify_sentiment(score: float) -> str:
    if score > 0.7:
        return "VERY_BULLISH"
    if score > 0.6:
        return "BULLISH"
    if score > 0.4:
        return "NEUTRAL"
    if score > 0.3:
        return "BEARISH"
    return "VERY_BEARISH"


def trading_signal(rsi: Optional[float]) -> str:
    """仅由 RSI 决定的交易信号"""
    if rsi is None:
        return INSUFFICIENT_DATA
    if rsi > 70:
        return "SELL - Overbought"
    if rsi < 30:
        return "BUY - Oversold"
    if rsi > 50:
        return "HOLD - Weak Bullish"
    return "HOLD - Weak Bearish"


def trend_label(rsi: Optional[float], price: Optional[float], sma: Optional[float]) -> str:
    """RSI 超买超卖优先；否则比较收盘价与 SMA(14)，±2% 以外为强趋势"""
    if rsi is not None:
        if rsi > 70:
            return "OVERBOUGHT"
        if rsi < 30:
            return "OVERSOLD"
    if price is None or sma is None or sma <= 0:
        return INSUFFICIENT_DATA
    if price > sma * (1 + TREND_BAND):
        return "STRONG_BULLISH"
    if price < sma * (1 - TREND_BAND):
        return "STRONG_BEARISH"
    if price > sma:
        return "BULLISH"
    if price < sma:
        return "BEARISH"
    return "NEUTRAL"


# ── K 线形态判定 ──────────────────────────────────────────

def is_doji(bar: DailyBar) -> bool:
    body = abs(bar.close - bar.open)
    spread = bar.high - bar.low
    return body < spread * 0.10 if spread > 0 else False


def is_hammer(bar: DailyBar) -> bool:
    body = abs(bar.close - bar.open)
    lower_shadow = min(bar.open, bar.close) - bar.low
    upper_shadow = bar.high - max(bar.open, bar.close)
    return lower_shadow > body * 2 and upper_shadow < body * 0.5


def engulfing(previous: DailyBar, current: DailyBar) -> Optional[str]:
    """返回 BULLISH_ENGULFING / BEARISH_ENGULFING / None；两者互斥"""
    prev_bearish = previous.close < previous.open
    prev_bullish = previous.close > previous.open
    if (
        prev_bearish
        and current.close > current.open
        and current.open < previous.close
        and current.close > previous.open
    ):
        return BULLISH_ENGULFING
    if (
        prev_bullish
        and current.close < current.open
        and current.open > previous.close
        and current.close < previous.open
    ):
        return BEARISH_ENGULFING
    return None


def max_drawdown(closes: List[float]) -> float:
    """最大回撤（百分比）：跟踪滚动峰值的最大跌幅"""
    if not closes:
        return 0.0
    peak = closes[0]
    worst = 0.0
    for value in closes[1:]:
        if value > peak:
            peak = value
        elif peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst * 100


class PatternAnalyzer:
    """形态分析器，所有分析都在剔除缺失日线后的序列上进行"""

    def __init__(self, engine: Optional[IndicatorEngine] = None):
        self._engine = engine or get_indicator_engine()

    def analyze(self, series: BarSeries) -> PatternResult:
        """完整形态分析，单项失败只影响对应子结果"""
        series = series.without_gaps()
        return PatternResult(
            price_patterns=self.price_patterns(series),
            volume_patterns=self.volume_patterns(series),
            candlestick_patterns=self.candlestick_patterns(series),
            trend_analysis=self.trend_analysis(series),
            support_resistance=self.support_resistance(series),
            sentiment=self.sentiment(series),
            risk=self.risk_metrics(series),
        )

    # ── 价格形态 ──────────────────────────────────────────

    def price_patterns(self, series: BarSeries) -> PricePatterns:
        return PricePatterns(
            macd_trend=self._safe("MACD 趋势", lambda: self.macd_trend(series), Classification.failed),
            momentum=self._safe("动量", lambda: self.momentum(series), Classification.failed),
            volatility=self._safe("波动率", lambda: self.volatility(series), Classification.failed),
            gaps=self._safe("跳空", lambda: self.gaps(series), list),
        )

    def macd_trend(self, series: BarSeries) -> Classification:
        """比较最近两期 MACD 值的方向与正负"""
        closes = self._closes(series)
        if len(closes) < EMA_SLOW + 1:
            return Classification.insufficient()
        line = macd_line(closes, EMA_FAST, EMA_SLOW)
        current, previous = float(line.iloc[-1]), float(line.iloc[-2])
        if current > previous and current > 0:
            label = "STRONG_BULLISH"
        elif current > previous:
            label = "BULLISH_RECOVERY"
        elif current < previous and current > 0:
            label = "BEARISH_CORRECTION"
        else:
            label = "STRONG_BEARISH"
        return Classification(label=label, value=current)

    def momentum(self, series: BarSeries, lookback: int = MOMENTUM_LOOKBACK) -> Classification:
        """当前收盘价 / lookback 根之前的收盘价"""
        closes = self._closes(series)
        if len(closes) < lookback + 1:
            return Classification.insufficient()
        past = float(closes.iloc[-(lookback + 1)])
        if past <= 0:
            return Classification.insufficient()
        ratio = float(closes.iloc[-1]) / past
        return Classification(label=classify_momentum(ratio), value=ratio)

    def volatility(self, series: BarSeries, period: int = VOLATILITY_PERIOD) -> Classification:
        std = self._rolling_std(series, period)
        if std is None:
            return Classification.insufficient()
        return Classification(label=classify_volatility(std), value=std)

    def gaps(self, series: BarSeries, window: int = GAP_WINDOW) -> List[Gap]:
        """最近 window 根日线中，开盘价相对前收盘跳空超过 2% 的记录"""
        bars = series.bars
        found: List[Gap] = []
        for i in range(max(1, len(bars) - window), len(bars)):
            prev_close = float(bars[i - 1].close)
            current_open = float(bars[i].open)
            if prev_close <= 0 or current_open <= 0:
                continue
            gap_pct = (current_open - prev_close) / prev_close * 100
            if abs(gap_pct) > GAP_THRESHOLD_PCT:
                found.append(Gap(date=bars[i].date, gap_percent=round(gap_pct, 4)))
        return found

    # ── 成交量形态 ────────────────────────────────────────

    def volume_patterns(self, series: BarSeries) -> VolumePatterns:
        return VolumePatterns(
            volume_trend=self._safe("量能趋势", lambda: self.volume_trend(series), Classification.failed),
            volume_price_relation=self._safe(
                "量价关系", lambda: self.volume_price_relation(series), Classification.failed
            ),
        )

    def volume_trend(self, series: BarSeries, period: int = VOLUME_SMA_PERIOD) -> Classification:
        volumes = self._engine.frame(series)["volume"]
        if len(volumes) < period:
            return Classification.insufficient()
        average = float(volumes.tail(period).mean())
        current = float(volumes.iloc[-1])
        if average <= 0:
            return Classification.insufficient()
        ratio = current / average
        if ratio > 1.5:
            label = "HIGH_VOLUME"
        elif ratio > 1.2:
            label = "ABOVE_AVERAGE"
        elif ratio < 0.8:
            label = "BELOW_AVERAGE"
        else:
            label = "AVERAGE"
        return Classification(label=label, value=ratio)

    def volume_price_relation(self, series: BarSeries) -> Classification:
        if len(series) < 2:
            return Classification.insufficient()
        previous, current = series[-2], series[-1]
        price_change = current.close - previous.close
        volume_change = current.volume - previous.volume
        if price_change > 0 and volume_change > 0:
            label = "BULLISH_CONFIRMATION"
        elif price_change < 0 and volume_change > 0:
            label = "BEARISH_CONFIRMATION"
        elif price_change > 0 and volume_change < 0:
            label = "WEAK_BULLISH"
        elif price_change < 0 and volume_change < 0:
            label = "WEAK_BEARISH"
        else:
            label = "NEUTRAL"
        return Classification(label=label, value=float(price_change))

    # ── K 线形态 ──────────────────────────────────────────

    def candlestick_patterns(self, series: BarSeries, window: int = PATTERN_WINDOW) -> CandlestickPatterns:
        return CandlestickPatterns(
            doji=self._safe("十字星", lambda: self.find_doji(series, window), list),
            hammer=self._safe("锤子线", lambda: self.find_hammer(series, window), list),
            engulfing=self._safe("吞没形态", lambda: self.find_engulfing(series, window), list),
        )

    def find_doji(self, series: BarSeries, window: int = PATTERN_WINDOW) -> List[CandlestickPattern]:
        return [
            CandlestickPattern(date=bar.date, pattern=DOJI)
            for bar in series.tail(window)
            if is_doji(bar)
        ]

    def find_hammer(self, series: BarSeries, window: int = PATTERN_WINDOW) -> List[CandlestickPattern]:
        return [
            CandlestickPattern(date=bar.date, pattern=HAMMER)
            for bar in series.tail(window)
            if is_hammer(bar)
        ]

    def find_engulfing(self, series: BarSeries, window: int = PATTERN_WINDOW) -> List[CandlestickPattern]:
        bars = series.bars
        found: List[CandlestickPattern] = []
        for i in range(max(1, len(bars) - window), len(bars)):
            pattern = engulfing(bars[i - 1], bars[i])
            if pattern:
                found.append(CandlestickPattern(date=bars[i].date, pattern=pattern))
        return found

    # ── 趋势 ──────────────────────────────────────────────

    def trend_analysis(self, series: BarSeries) -> TrendAnalysis:
        adx = self._safe(
            "ADX",
            lambda: self._engine.adx(series, ADX_PERIOD),
            lambda: IndicatorResult.failed(f"ADX{ADX_PERIOD}", ADX_PERIOD, "ADX 计算失败"),
        )
        if adx.ok:
            strength = Classification(label=classify_trend_strength(adx.value), value=adx.value)
        else:
            strength = Classification.insufficient()
        return TrendAnalysis(
            adx=adx,
            trend_strength=strength,
            ma_slopes=self._safe("均线斜率", lambda: self.ma_slopes(series), dict),
        )

    def ma_slopes(self, series: BarSeries) -> Dict[str, str]:
        """SMA(20)/SMA(50) 当前值与 5 根之前比较；日线不足时省略该项"""
        closes = self._closes(series)
        slopes: Dict[str, str] = {}
        for period in SLOPE_PERIODS:
            if len(closes) < period + SLOPE_LOOKBACK:
                continue
            sma = sma_series(closes, period)
            current = float(sma.iloc[-1])
            previous = float(sma.iloc[-1 - SLOPE_LOOKBACK])
            slopes[f"sma{period}"] = "RISING" if current > previous else "FALLING"
        return slopes

    # ── 支撑 / 阻力 ───────────────────────────────────────

    def support_resistance(self, series: BarSeries, count: int = LEVEL_COUNT) -> SupportResistance:
        highs = sorted((float(b.high) for b in series if b.high > 0), reverse=True)
        lows = sorted(float(b.low) for b in series if b.low > 0)
        return SupportResistance(resistance=highs[:count], support=lows[:count])

    # ── 市场情绪 ──────────────────────────────────────────

    def sentiment(self, series: BarSeries) -> SentimentResult:
        """看多信号数 / 参与统计的信号总数"""
        bullish = bearish = 0
        rsi = self._engine.rsi(series)
        if rsi.ok:
            if rsi.value > 50:
                bullish += 1
            else:
                bearish += 1
        macd = self._engine.macd(series)
        if macd.ok:
            if macd.value > 0:
                bullish += 1
            else:
                bearish += 1

        total = bullish + bearish
        if total == 0:
            return SentimentResult()
        score = bullish / total
        return SentimentResult(
            bullish_signals=bullish,
            bearish_signals=bearish,
            total_signals=total,
            score=score,
            sentiment=classify_sentiment(score),
        )

    # ── 风险 ──────────────────────────────────────────────

    def risk_metrics(self, series: BarSeries, period: int = VOLATILITY_PERIOD) -> RiskResult:
        closes = [float(b.close) for b in series]
        drawdown = max_drawdown(closes)
        std = self._rolling_std(series, period)
        if std is None:
            return RiskResult(max_drawdown=drawdown)
        return RiskResult(volatility=std, risk_level=classify_risk(std), max_drawdown=drawdown)

    # ── 内部工具 ──────────────────────────────────────────

    def _closes(self, series: BarSeries) -> pd.Series:
        return self._engine.frame(series)["close"]

    def _rolling_std(self, series: BarSeries, period: int) -> Optional[float]:
        closes = self._closes(series)
        if len(closes) < period:
            return None
        return float(closes.tail(period).std(ddof=0))

    @staticmethod
    def _safe(name: str, compute: Callable[[], T], fallback: Callable[[], T]) -> T:
        try:
            return compute()
        except Exception as exc:
            logger.error(f"形态分析 {name} 失败: {exc}", exc_info=True)
            return fallback()


# ── 模块级别单例 ──────────────────────────────────────────
_analyzer: Optional[PatternAnalyzer] = None


def get_pattern_analyzer() -> PatternAnalyzer:
    global _analyzer
    if _analyzer is None:
        _analyzer = PatternAnalyzer()
    return _analyzer
