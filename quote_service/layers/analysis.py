"""
Layer 4 – 技术分析层
在 BarSeries 上计算技术指标：SMA、EMA、RSI、MACD、BOLL、随机指标（%K/%D）、ADX

约定：
  - 收盘价为 0 的日线视为缺失数据，计算前剔除
  - 日线数量不足时返回 status=insufficient_data 的结果，而不是 0
  - 标准差采用总体标准差（ddof=0）
"""

import logging
from typing import Callable, Optional

import numpy as np
import pandas as pd

from quote_service.models.results import IndicatorResult, TechnicalIndicators
from quote_service.models.stock import BarSeries

logger = logging.getLogger(__name__)

# ── 指标周期（固定，不可配置） ────────────────────────────
RSI_PERIOD = 14
SMA_PERIOD = 14
SMA_LONG_PERIOD = 50
EMA_FAST = 12
EMA_SLOW = 26
MACD_SIGNAL = 9
BOLLINGER_PERIOD = 14
BOLLINGER_K = 2.0
STOCH_PERIOD = 14
STOCH_SMOOTH = 3
ADX_PERIOD = 14


def seeded_smoothing(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """
    以前 period 个值的算术平均为种子的指数平滑

    alpha = 2/(n+1) 时为 EMA，alpha = 1/n 时为 Wilder 平滑。
    种子之前的位置为 NaN。
    """
    values = values.reset_index(drop=True).astype(float)
    if len(values) < period:
        return pd.Series(np.nan, index=values.index)
    seeded = values.copy()
    seeded.iloc[: period - 1] = np.nan
    seeded.iloc[period - 1] = values.iloc[:period].mean()
    smoothed = seeded.iloc[period - 1:].ewm(alpha=alpha, adjust=False).mean()
    return smoothed.reindex(values.index)


def ema_series(values: pd.Series, period: int) -> pd.Series:
    return seeded_smoothing(values, period, 2.0 / (period + 1))


def sma_series(values: pd.Series, period: int) -> pd.Series:
    return values.reset_index(drop=True).astype(float).rolling(window=period).mean()


def macd_line(closes: pd.Series, fast: int = EMA_FAST, slow: int = EMA_SLOW) -> pd.Series:
    return ema_series(closes, fast) - ema_series(closes, slow)


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # 无涨无跌视为中性
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


class IndicatorEngine:
    """技术指标计算引擎（无状态）"""

    @staticmethod
    def frame(series: BarSeries) -> pd.DataFrame:
        """剔除缺失日线后的 float DataFrame"""
        return series.without_gaps().to_frame()

    # ── 均线 ──────────────────────────────────────────────

    def sma(self, series: BarSeries, period: int = SMA_PERIOD) -> IndicatorResult:
        """最近 period 根收盘价的算术平均"""
        closes = self.frame(series)["close"]
        n = len(closes)
        if n < period:
            return IndicatorResult.insufficient(f"SMA{period}", period, period, n)
        return IndicatorResult.of(f"SMA{period}", period, closes.tail(period).mean(), n, period)

    def ema(self, series: BarSeries, period: int) -> IndicatorResult:
        """指数移动平均，平滑系数 2/(n+1)，以前 n 根 SMA 为种子"""
        closes = self.frame(series)["close"]
        n = len(closes)
        if n < period:
            return IndicatorResult.insufficient(f"EMA{period}", period, period, n)
        return IndicatorResult.of(f"EMA{period}", period, ema_series(closes, period).iloc[-1], n, period)

    # ── RSI ───────────────────────────────────────────────

    def rsi(self, series: BarSeries, period: int = RSI_PERIOD) -> IndicatorResult:
        """Wilder RSI：需要 period 个收盘价差分，即 period + 1 根日线"""
        closes = self.frame(series)["close"]
        n = len(closes)
        required = period + 1
        if n < required:
            return IndicatorResult.insufficient(f"RSI{period}", period, required, n)

        deltas = closes.diff().iloc[1:]
        gains = deltas.clip(lower=0)
        losses = (-deltas).clip(lower=0)
        avg_gain = seeded_smoothing(gains, period, 1.0 / period).iloc[-1]
        avg_loss = seeded_smoothing(losses, period, 1.0 / period).iloc[-1]
        value = min(100.0, max(0.0, _rsi_from_averages(avg_gain, avg_loss)))
        return IndicatorResult.of(f"RSI{period}", period, value, n, required)

    # ── MACD ──────────────────────────────────────────────

    def macd(
        self,
        series: BarSeries,
        fast: int = EMA_FAST,
        slow: int = EMA_SLOW,
        signal: int = MACD_SIGNAL,
    ) -> IndicatorResult:
        """MACD = EMA(fast) - EMA(slow)；日线足够时附带信号线与柱值"""
        closes = self.frame(series)["close"]
        n = len(closes)
        if n < slow:
            return IndicatorResult.insufficient("MACD", slow, slow, n)

        fast_ema = ema_series(closes, fast)
        slow_ema = ema_series(closes, slow)
        line = fast_ema - slow_ema
        value = line.iloc[-1]
        components = {
            f"ema{fast}": float(fast_ema.iloc[-1]),
            f"ema{slow}": float(slow_ema.iloc[-1]),
        }
        valid = line.dropna()
        if len(valid) >= signal:
            signal_value = float(ema_series(valid, signal).iloc[-1])
            components["signal"] = signal_value
            components["histogram"] = float(value - signal_value)
        return IndicatorResult.of("MACD", slow, value, n, slow, components)

    # ── 布林带 ────────────────────────────────────────────

    def bollinger(
        self, series: BarSeries, period: int = BOLLINGER_PERIOD, k: float = BOLLINGER_K
    ) -> IndicatorResult:
        """中轨 SMA(period)，上下轨 ± k 倍滚动标准差"""
        closes = self.frame(series)["close"]
        n = len(closes)
        if n < period:
            return IndicatorResult.insufficient(f"BOLL{period}", period, period, n)
        window = closes.tail(period)
        middle = window.mean()
        std = window.std(ddof=0)
        components = {
            "upper": float(middle + k * std),
            "middle": float(middle),
            "lower": float(middle - k * std),
        }
        return IndicatorResult.of(f"BOLL{period}", period, middle, n, period, components)

    # ── 随机指标 ──────────────────────────────────────────

    def stochastic(
        self, series: BarSeries, period: int = STOCH_PERIOD, smooth: int = STOCH_SMOOTH
    ) -> IndicatorResult:
        """%K = 100 × (C - LLV) / (HHV - LLV)，%D = %K 的 smooth 期 SMA"""
        df = self.frame(series)
        n = len(df)
        if n < period:
            return IndicatorResult.insufficient(f"STOCH{period}", period, period, n)

        lowest = df["low"].rolling(window=period).min()
        highest = df["high"].rolling(window=period).max()
        spread = highest - lowest
        k = ((df["close"] - lowest) / spread.replace(0, np.nan) * 100).where(spread != 0, 50.0)
        k = k.where(spread.notna()).clip(lower=0, upper=100)

        components = {"k": float(k.iloc[-1])}
        valid = k.dropna()
        if len(valid) >= smooth:
            components["d"] = float(valid.tail(smooth).mean())
        return IndicatorResult.of(f"STOCH{period}", period, k.iloc[-1], n, period, components)

    # ── ADX ───────────────────────────────────────────────

    def adx(self, series: BarSeries, period: int = ADX_PERIOD) -> IndicatorResult:
        """Wilder ADX：period 个 DX 的平滑，共需要 2 × period 根日线"""
        df = self.frame(series)
        n = len(df)
        required = 2 * period
        if n < required:
            return IndicatorResult.insufficient(f"ADX{period}", period, required, n)

        high, low, close = df["high"], df["low"], df["close"]
        prev_close = close.shift(1)
        tr = pd.concat([
            high - low,
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ], axis=1).max(axis=1)
        up = high.diff()
        down = -low.diff()
        plus_dm = up.where((up > down) & (up > 0), 0.0)
        minus_dm = down.where((down > up) & (down > 0), 0.0)

        alpha = 1.0 / period
        start = period - 1
        atr = seeded_smoothing(tr.iloc[1:], period, alpha).iloc[start:]
        plus = seeded_smoothing(plus_dm.iloc[1:], period, alpha).iloc[start:]
        minus = seeded_smoothing(minus_dm.iloc[1:], period, alpha).iloc[start:]

        atr = atr.replace(0, np.nan)
        plus_di = (100 * plus / atr).fillna(0.0)
        minus_di = (100 * minus / atr).fillna(0.0)
        di_sum = plus_di + minus_di
        dx = (100 * (plus_di - minus_di).abs() / di_sum.replace(0, np.nan)).fillna(0.0)

        value = seeded_smoothing(dx, period, alpha).iloc[-1]
        value = min(100.0, max(0.0, float(value)))
        components = {
            "plus_di": float(plus_di.iloc[-1]),
            "minus_di": float(minus_di.iloc[-1]),
        }
        return IndicatorResult.of(f"ADX{period}", period, value, n, required, components)

    # ── 全量指标 ──────────────────────────────────────────

    def compute_all(self, series: BarSeries) -> TechnicalIndicators:
        """一次性计算全部指标，单个指标失败不影响其余结果"""
        return TechnicalIndicators(
            rsi=self._guard("RSI", RSI_PERIOD, lambda: self.rsi(series)),
            sma14=self._guard("SMA14", SMA_PERIOD, lambda: self.sma(series, SMA_PERIOD)),
            sma50=self._guard("SMA50", SMA_LONG_PERIOD, lambda: self.sma(series, SMA_LONG_PERIOD)),
            ema12=self._guard("EMA12", EMA_FAST, lambda: self.ema(series, EMA_FAST)),
            ema26=self._guard("EMA26", EMA_SLOW, lambda: self.ema(series, EMA_SLOW)),
            macd=self._guard("MACD", EMA_SLOW, lambda: self.macd(series)),
            bollinger=self._guard("BOLL", BOLLINGER_PERIOD, lambda: self.bollinger(series)),
            stochastic=self._guard("STOCH", STOCH_PERIOD, lambda: self.stochastic(series)),
            adx=self._guard("ADX", ADX_PERIOD, lambda: self.adx(series)),
        )

    @staticmethod
    def _guard(name: str, period: int, compute: Callable[[], IndicatorResult]) -> IndicatorResult:
        try:
            return compute()
        except Exception as exc:
            logger.error(f"指标 {name} 计算失败: {exc}", exc_info=True)
            return IndicatorResult.failed(name, period, str(exc))


# ── 模块级别单例 ──────────────────────────────────────────
_engine: Optional[IndicatorEngine] = None


def get_indicator_engine() -> IndicatorEngine:
    global _engine
    if _engine is None:
        _engine = IndicatorEngine()
    return _engine
