"""
分析结果模型
每类计算都有显式的结果结构，"数据不足" 以 status + None 表示，不与 0 混用。
结果仅在单次请求内有效，不会被持久化。
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from quote_service.models.stock import DailyBar

INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ResultStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    ERROR = "error"


# ── 指标 ─────────────────────────────────────────────────

class IndicatorResult(BaseModel):
    """单个指标的最新值；多分量指标（布林带、随机指标等）放在 components 中"""

    name: str
    period: int
    status: ResultStatus = ResultStatus.OK
    value: Optional[float] = None
    components: Dict[str, float] = Field(default_factory=dict)
    required: int = 0
    available: int = 0
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.OK

    @classmethod
    def of(
        cls,
        name: str,
        period: int,
        value: float,
        available: int,
        required: int,
        components: Optional[Dict[str, float]] = None,
    ) -> "IndicatorResult":
        value = float(value)
        components = {k: v for k, v in (components or {}).items() if math.isfinite(v)}
        if not math.isfinite(value):
            return cls(
                name=name,
                period=period,
                status=ResultStatus.ERROR,
                required=required,
                available=available,
                message="计算结果不是有限值",
            )
        return cls(
            name=name,
            period=period,
            value=value,
            components=components,
            required=required,
            available=available,
        )

    @classmethod
    def insufficient(
        cls, name: str, period: int, required: int, available: int
    ) -> "IndicatorResult":
        return cls(
            name=name,
            period=period,
            status=ResultStatus.INSUFFICIENT_DATA,
            required=required,
            available=available,
            message=f"需要至少 {required} 根日线，当前 {available} 根",
        )

    @classmethod
    def failed(cls, name: str, period: int, error: str) -> "IndicatorResult":
        return cls(name=name, period=period, status=ResultStatus.ERROR, message=error)


class Classification(BaseModel):
    """数值 + 分类标签，例如动量、波动率、趋势强度"""

    label: str
    value: Optional[float] = None
    status: ResultStatus = ResultStatus.OK

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.OK

    @classmethod
    def insufficient(cls) -> "Classification":
        return cls(label=INSUFFICIENT_DATA, status=ResultStatus.INSUFFICIENT_DATA)

    @classmethod
    def failed(cls) -> "Classification":
        return cls(label="ERROR", status=ResultStatus.ERROR)


class TechnicalIndicators(BaseModel):
    rsi: IndicatorResult
    sma14: IndicatorResult
    sma50: IndicatorResult
    ema12: IndicatorResult
    ema26: IndicatorResult
    macd: IndicatorResult
    bollinger: IndicatorResult
    stochastic: IndicatorResult
    adx: IndicatorResult


# ── 形态 ─────────────────────────────────────────────────

class Gap(BaseModel):
    date: date
    gap_percent: float

    @computed_field
    @property
    def direction(self) -> str:
        return "UP" if self.gap_percent > 0 else "DOWN"


class CandlestickPattern(BaseModel):
    date: date
    pattern: str   # DOJI / HAMMER / BULLISH_ENGULFING / BEARISH_ENGULFING


class PricePatterns(BaseModel):
    macd_trend: Classification
    momentum: Classification
    volatility: Classification
    gaps: List[Gap] = Field(default_factory=list)


class VolumePatterns(BaseModel):
    volume_trend: Classification
    volume_price_relation: Classification


class CandlestickPatterns(BaseModel):
    doji: List[CandlestickPattern] = Field(default_factory=list)
    hammer: List[CandlestickPattern] = Field(default_factory=list)
    engulfing: List[CandlestickPattern] = Field(default_factory=list)


class TrendAnalysis(BaseModel):
    adx: IndicatorResult
    trend_strength: Classification
    ma_slopes: Dict[str, str] = Field(default_factory=dict)


class SupportResistance(BaseModel):
    support: List[float] = Field(default_factory=list)
    resistance: List[float] = Field(default_factory=list)


class SentimentResult(BaseModel):
    bullish_signals: int = 0
    bearish_signals: int = 0
    total_signals: int = 0
    score: Optional[float] = None
    sentiment: str = INSUFFICIENT_DATA


class RiskResult(BaseModel):
    volatility: Optional[float] = None
    risk_level: str = INSUFFICIENT_DATA
    max_drawdown: float = 0.0   # 百分比


class PatternResult(BaseModel):
    """形态分析器的完整输出"""

    price_patterns: PricePatterns
    volume_patterns: VolumePatterns
    candlestick_patterns: CandlestickPatterns
    trend_analysis: TrendAnalysis
    support_resistance: SupportResistance
    sentiment: SentimentResult
    risk: RiskResult


# ── 请求级结果 ────────────────────────────────────────────

class TaggedResult(BaseModel):
    """error 为提供商/数据错误标签；cache_error 单独记录缓存写入失败"""

    symbol: str
    source: Optional[str] = None      # cache / provider
    error: Optional[str] = None
    cache_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CurrentPriceResult(TaggedResult):
    price: Optional[Decimal] = None
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    volume: Optional[int] = None
    as_of: Optional[date] = None
    message: str = ""


class QuickAnalysis(TaggedResult):
    current_price: Optional[float] = None
    rsi: Optional[float] = None
    sma: Optional[float] = None
    trend: str = "UNKNOWN"
    signal: str = "No signal"
    data_points: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)


class HistoricalAnalysis(TaggedResult):
    period: str = ""
    bars: List[DailyBar] = Field(default_factory=list)
    indicators: Optional[TechnicalIndicators] = None
    summary: str = ""
    total_data_points: int = 0


class AdvancedAnalysis(TaggedResult):
    period: str = ""
    data_points: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)
    patterns: Optional[PatternResult] = None
