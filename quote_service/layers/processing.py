"""
Layer 2 – 数据处理层
将提供商原始报文解析为标准 StockDocument。

防御式解析：
  - 单个数值字段无法解析或缺失 → 记为 0 并记录警告，不中断解析
  - 顶层数据段缺失 → 返回空序列文档（与 "有数据但值为 0" 区分）
  - lastUpdated 始终取解析时间，而非提供商时间戳
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from quote_service.models.stock import DailyBar, DataKind, StockDocument

logger = logging.getLogger(__name__)

QUOTE_SECTION = "Global Quote"
SERIES_SECTION = "Time Series (Daily)"

_QUOTE_FIELDS = {
    "open": "02. open",
    "high": "03. high",
    "low": "04. low",
    "close": "05. price",
    "volume": "06. volume",
}
_QUOTE_DATE_FIELD = "07. latest trading day"

_DAILY_FIELDS = {
    "open": "1. open",
    "high": "2. high",
    "low": "3. low",
    "close": "4. close",
    "volume": "5. volume",
}

_ZERO = Decimal(0)


def parse_decimal(value: Any, field: str = "") -> Decimal:
    """安全解析为非负 Decimal，失败返回 0"""
    if value is None:
        return _ZERO
    text = str(value).strip()
    if not text:
        return _ZERO
    try:
        result = Decimal(text)
    except (InvalidOperation, ValueError):
        logger.warning(f"无法解析数值字段 {field}={value!r}，按 0 处理")
        return _ZERO
    if not result.is_finite():
        logger.warning(f"数值字段 {field}={value!r} 非有限值，按 0 处理")
        return _ZERO
    if result.is_signed():
        logger.warning(f"数值字段 {field}={value!r} 为负数，按 0 处理")
        return _ZERO
    return result


def parse_int(value: Any, field: str = "") -> int:
    """安全解析为非负整数（成交量），失败返回 0"""
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    try:
        result = int(text)
    except ValueError:
        logger.warning(f"无法解析整数字段 {field}={value!r}，按 0 处理")
        return 0
    if result < 0:
        logger.warning(f"整数字段 {field}={value!r} 为负数，按 0 处理")
        return 0
    return result


def _parse_date(value: Any) -> Optional[date]:
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        return None


def _build_bar(bar_date: date, node: Any, fields: Mapping[str, str]) -> DailyBar:
    if not isinstance(node, Mapping):
        logger.warning(f"{bar_date} 的日线数据格式异常: {node!r}，全部字段按 0 处理")
        node = {}
    return DailyBar(
        date=bar_date,
        open=parse_decimal(node.get(fields["open"]), fields["open"]),
        high=parse_decimal(node.get(fields["high"]), fields["high"]),
        low=parse_decimal(node.get(fields["low"]), fields["low"]),
        close=parse_decimal(node.get(fields["close"]), fields["close"]),
        volume=parse_int(node.get(fields["volume"]), fields["volume"]),
    )


class PayloadParser:
    """提供商报文解析器"""

    def parse_current(self, payload: Any, symbol: str) -> StockDocument:
        """解析实时报价（Global Quote），生成只含一根日线的 CURRENT 文档"""
        logger.info(f"解析实时报价: {symbol}")
        quote = payload.get(QUOTE_SECTION) if isinstance(payload, Mapping) else None
        if not isinstance(quote, Mapping) or not quote:
            logger.warning(f"报文中缺少 {QUOTE_SECTION}: {symbol}")
            return self.empty(symbol, DataKind.CURRENT)

        bar_date = _parse_date(quote.get(_QUOTE_DATE_FIELD)) or date.today()
        bar = _build_bar(bar_date, quote, _QUOTE_FIELDS)
        logger.info(f"实时报价解析完成: {symbol} 收盘 {bar.close}")
        return StockDocument(
            symbol=symbol,
            kind=DataKind.CURRENT,
            bars=(bar,),
            last_updated=datetime.now(tz=timezone.utc),
        )

    def parse_historical(self, payload: Any, symbol: str) -> StockDocument:
        """解析日线时间序列，按日期升序排列（源数据可能为任意顺序）"""
        logger.info(f"解析历史日线: {symbol}")
        series = payload.get(SERIES_SECTION) if isinstance(payload, Mapping) else None
        if not isinstance(series, Mapping):
            logger.warning(f"报文中缺少 {SERIES_SECTION}: {symbol}")
            return self.empty(symbol, DataKind.HISTORICAL)

        by_date: Dict[date, DailyBar] = {}
        for key, node in series.items():
            bar_date = _parse_date(key)
            if bar_date is None:
                logger.warning(f"无法解析日期键 {key!r}，跳过该条: {symbol}")
                continue
            by_date[bar_date] = _build_bar(bar_date, node, _DAILY_FIELDS)
            logger.debug(f"{symbol} {bar_date}: {by_date[bar_date]}")

        bars: List[DailyBar] = [by_date[d] for d in sorted(by_date)]
        logger.info(f"历史日线解析完成: {symbol} 共 {len(bars)} 条")
        return StockDocument(
            symbol=symbol,
            kind=DataKind.HISTORICAL,
            bars=tuple(bars),
            last_updated=datetime.now(tz=timezone.utc),
        )

    def parse(self, kind: DataKind, payload: Any, symbol: str) -> StockDocument:
        if kind == DataKind.CURRENT:
            return self.parse_current(payload, symbol)
        return self.parse_historical(payload, symbol)

    @staticmethod
    def empty(symbol: str, kind: DataKind) -> StockDocument:
        """缺少数据段时的空序列文档"""
        return StockDocument(
            symbol=symbol,
            kind=kind,
            bars=(),
            last_updated=datetime.now(tz=timezone.utc),
        )


# ── 模块级别单例 ──────────────────────────────────────────
_parser: Optional[PayloadParser] = None


def get_payload_parser() -> PayloadParser:
    global _parser
    if _parser is None:
        _parser = PayloadParser()
    return _parser
