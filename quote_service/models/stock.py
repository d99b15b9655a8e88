"""
行情数据模型
DailyBar（日线）→ BarSeries（有序日线序列）→ StockDocument（按 symbol + kind 唯一的缓存文档）

注意：low ≤ open, close ≤ high 不做强制校验，防御式解析可能产生违反该约束的零值日线。
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Iterator, Optional, Tuple, Union, overload

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, model_validator


class DataKind(str, Enum):
    """文档类型：实时报价 / 历史日线"""

    CURRENT = "CURRENT"
    HISTORICAL = "HISTORICAL"


class DailyBar(BaseModel):
    """单日 OHLCV"""

    model_config = ConfigDict(frozen=True)

    date: date
    open: Decimal = Field(default=Decimal(0), ge=0)
    high: Decimal = Field(default=Decimal(0), ge=0)
    low: Decimal = Field(default=Decimal(0), ge=0)
    close: Decimal = Field(default=Decimal(0), ge=0)
    volume: int = Field(default=0, ge=0)

    @property
    def is_gap(self) -> bool:
        """收盘价为零视为缺失数据（解析降级产生）"""
        return self.close <= 0


class BarSeries:
    """按日期严格递增、无重复的日线序列，构建后不可变"""

    __slots__ = ("_bars",)

    def __init__(self, bars: Iterable[DailyBar] = ()):
        bars = tuple(bars)
        for prev, cur in zip(bars, bars[1:]):
            if cur.date <= prev.date:
                raise ValueError(
                    f"日线序列必须按日期严格递增: {prev.date} -> {cur.date}"
                )
        self._bars: Tuple[DailyBar, ...] = bars

    def __len__(self) -> int:
        return len(self._bars)

    def __iter__(self) -> Iterator[DailyBar]:
        return iter(self._bars)

    def __bool__(self) -> bool:
        return bool(self._bars)

    def __eq__(self, other) -> bool:
        if not isinstance(other, BarSeries):
            return NotImplemented
        return self._bars == other._bars

    def __repr__(self) -> str:
        if not self._bars:
            return "BarSeries([])"
        return f"BarSeries({len(self)} bars, {self._bars[0].date}..{self._bars[-1].date})"

    @overload
    def __getitem__(self, key: int) -> DailyBar: ...

    @overload
    def __getitem__(self, key: slice) -> "BarSeries": ...

    def __getitem__(self, key: Union[int, slice]):
        if isinstance(key, slice):
            return BarSeries(self._bars[key])
        return self._bars[key]

    @property
    def bars(self) -> Tuple[DailyBar, ...]:
        return self._bars

    @property
    def latest(self) -> Optional[DailyBar]:
        return self._bars[-1] if self._bars else None

    def tail(self, n: Optional[int]) -> "BarSeries":
        """最近 n 根日线；n 为 None 时返回全部"""
        if n is None or n >= len(self._bars):
            return self
        if n <= 0:
            return BarSeries()
        return BarSeries(self._bars[-n:])

    def without_gaps(self) -> "BarSeries":
        """剔除收盘价为零的日线，指标计算只使用有效数据"""
        return BarSeries(b for b in self._bars if not b.is_gap)

    def to_frame(self) -> pd.DataFrame:
        """转换为 float 类型的 DataFrame（列：date, open, high, low, close, volume）"""
        columns = ["date", "open", "high", "low", "close", "volume"]
        if not self._bars:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame(
            [
                {
                    "date": b.date,
                    "open": float(b.open),
                    "high": float(b.high),
                    "low": float(b.low),
                    "close": float(b.close),
                    "volume": float(b.volume),
                }
                for b in self._bars
            ],
            columns=columns,
        )
        return df


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class StockDocument(BaseModel):
    """缓存文档：每个 (symbol, kind) 至多一份，刷新时整体替换"""

    symbol: str
    kind: DataKind
    bars: Tuple[DailyBar, ...] = ()
    last_updated: Optional[datetime] = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_order(self) -> "StockDocument":
        BarSeries(self.bars)
        return self

    @property
    def series(self) -> BarSeries:
        return BarSeries(self.bars)

    @property
    def is_empty(self) -> bool:
        return not self.bars

    def to_storage(self) -> dict:
        """序列化为可写入文档存储的 JSON 兼容字典（Decimal / 日期转字符串）"""
        return self.model_dump(mode="json")
