"""
Instrument metadata, quotes, account state and trade history from the terminal.

Nothing here is cached: the broker can change trading rules at any time, so
every operation that needs them fetches them again.

Any terminal error for a symbol query (unknown, hidden or delisted symbol)
surfaces as ValidationError; connection failures keep their own types.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from mt5_client.domain.models import (
    AccountSummary,
    HistoryOrderRecord,
    HistoryPositionRecord,
    HistorySort,
    InstrumentMetadata,
    OrderKind,
    OrderSide,
    PendingOrderRecord,
    PositionRecord,
    Quote,
    SymbolSnapshot,
    order_type_code,
    parse_history_order,
    parse_history_position,
    parse_pending_order,
    parse_position,
    parse_time,
)
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import AuthenticationError, ProtocolError, ValidationError
from mt5_client.execution.request_executor import RequestExecutor
from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)


def _epoch(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class InstrumentCatalog:
    """Read-only symbol, quote, account and history queries."""

    def __init__(self, executor: RequestExecutor):
        self._executor = executor

    async def _symbol_call(self, method: TerminalMethod, symbol: str, payload: Dict[str, Any]) -> Any:
        if not symbol:
            raise ValidationError("Symbol is required")
        try:
            return await self._executor.call(method, payload)
        except AuthenticationError:
            raise
        except ProtocolError as e:
            logger.warning("SYMBOL_UNAVAILABLE", symbol=symbol, method=method.value, code=e.code)
            raise ValidationError(f"Symbol {symbol} is unavailable: {e.message or e.code}") from e

    async def get(self, symbol: str) -> InstrumentMetadata:
        """
        Fetch trading rules for ``symbol``.

        Raises:
            ValidationError: Empty or unknown symbol, or malformed metadata
        """
        data = await self._symbol_call(TerminalMethod.SYMBOL_PARAMS, symbol, {"symbol": symbol})
        try:
            return InstrumentMetadata.from_payload(symbol, data or {})
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed metadata for {symbol}: {e}") from e

    async def ensure_selected(self, symbol: str) -> None:
        """Make ``symbol`` visible in Market Watch so it can be traded."""
        data = await self._symbol_call(
            TerminalMethod.SYMBOL_SELECT, symbol, {"symbol": symbol, "select": True}
        )
        if isinstance(data, dict) and data.get("success") is False:
            raise ValidationError(f"Symbol {symbol} cannot be selected")

    async def quote(self, symbol: str) -> Quote:
        data = await self._symbol_call(TerminalMethod.SYMBOL_INFO_TICK, symbol, {"symbol": symbol}) or {}
        try:
            return Quote(
                symbol=symbol,
                bid=float(data["bid"]),
                ask=float(data["ask"]),
                time=parse_time(data.get("time")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed tick for {symbol}: {e}") from e

    async def spread_points(self, symbol: str) -> int:
        """Current ask - bid in points."""
        return (await self.snapshot(symbol)).spread_points

    async def snapshot(self, symbol: str) -> SymbolSnapshot:
        """Metadata and last tick of ``symbol`` plus the spread in points."""
        meta = await self.get(symbol)
        quote = await self.quote(symbol)
        spread = (Decimal(str(quote.ask)) - Decimal(str(quote.bid))) / Decimal(str(meta.point))
        return SymbolSnapshot(
            metadata=meta,
            quote=quote,
            spread_points=int(spread.to_integral_value(rounding=ROUND_HALF_UP)),
        )

    async def account_summary(self) -> AccountSummary:
        data = await self._executor.call(TerminalMethod.ACCOUNT_SUMMARY, {})
        return AccountSummary.from_payload(data or {})

    async def opened_orders(self) -> Tuple[List[PositionRecord], List[PendingOrderRecord]]:
        """
        Open positions and pending orders, read fresh from the terminal.

        Records the terminal reports with an unknown type code are skipped.
        """
        data = await self._executor.call(TerminalMethod.OPENED_ORDERS, {}) or {}
        positions: List[PositionRecord] = []
        pending: List[PendingOrderRecord] = []
        for raw in data.get("positions", []):
            try:
                positions.append(parse_position(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("OPEN_RECORD_SKIPPED", kind="position", ticket=raw.get("ticket"), error=str(e))
        for raw in data.get("pending_orders", []):
            try:
                pending.append(parse_pending_order(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("OPEN_RECORD_SKIPPED", kind="pending_order", ticket=raw.get("ticket"), error=str(e))
        return positions, pending

    # ---- history ----

    async def order_history(
        self,
        start: datetime,
        end: datetime,
        *,
        sort: HistorySort = HistorySort.CLOSE_TIME_DESC,
        page: int = 0,
        per_page: int = 0,
        symbol: Optional[str] = None,
    ) -> List[HistoryOrderRecord]:
        """
        Orders that left the book between ``start`` and ``end``.

        ``page``/``per_page`` of 0 return everything. ``symbol`` filters the
        result case-insensitively.
        """
        if start > end:
            raise ValidationError(f"History start {start} is after end {end}")
        if page < 0 or per_page < 0:
            raise ValidationError("page and per_page must not be negative")
        payload = {
            "from": _epoch(start),
            "to": _epoch(end),
            "sort": sort.value,
            "page": page,
            "per_page": per_page,
        }
        data = await self._executor.call(TerminalMethod.ORDER_HISTORY, payload) or {}
        records = self._parse_all(data.get("orders", []), parse_history_order, "history_order")
        if symbol:
            records = [r for r in records if r.symbol.upper() == symbol.upper()]
        return records

    async def order_history_last_days(self, days: int, symbol: Optional[str] = None) -> List[HistoryOrderRecord]:
        if days <= 0:
            raise ValidationError(f"days must be positive, got {days}")
        end = datetime.now(timezone.utc)
        return await self.order_history(end - timedelta(days=days), end, symbol=symbol)

    async def positions_history(
        self,
        *,
        sort: HistorySort = HistorySort.OPEN_TIME_DESC,
        open_from: Optional[datetime] = None,
        open_to: Optional[datetime] = None,
        page: int = 0,
        per_page: int = 0,
    ) -> List[HistoryPositionRecord]:
        """Closed positions, optionally limited to an open-time window."""
        if page < 0 or per_page < 0:
            raise ValidationError("page and per_page must not be negative")
        payload = {
            "sort": sort.value,
            "open_from": _epoch(open_from),
            "open_to": _epoch(open_to),
            "page": page,
            "per_page": per_page,
        }
        data = await self._executor.call(TerminalMethod.POSITIONS_HISTORY, payload) or {}
        return self._parse_all(data.get("positions", []), parse_history_position, "history_position")

    @staticmethod
    def _parse_all(items, parse, kind: str) -> list:
        records = []
        for raw in items:
            try:
                records.append(parse(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("HISTORY_RECORD_SKIPPED", kind=kind, ticket=raw.get("ticket"), error=str(e))
        return records

    # ---- pre-trade calculations ----

    async def calc_margin(self, symbol: str, side: OrderSide, volume: float, price: float) -> float:
        """Margin the terminal would reserve for a market order."""
        _check_positive(volume=volume, price=price)
        payload = {
            "symbol": symbol,
            "operation": order_type_code(side, OrderKind.MARKET),
            "volume": volume,
            "price": price,
        }
        data = await self._symbol_call(TerminalMethod.ORDER_CALC_MARGIN, symbol, payload) or {}
        return float(data.get("margin", 0.0))

    async def calc_profit(
        self, symbol: str, side: OrderSide, volume: float, price_open: float, price_close: float
    ) -> float:
        """Profit in account currency of a position moving from open to close price."""
        _check_positive(volume=volume, price_open=price_open, price_close=price_close)
        payload = {
            "symbol": symbol,
            "operation": order_type_code(side, OrderKind.MARKET),
            "volume": volume,
            "price_open": price_open,
            "price_close": price_close,
        }
        data = await self._symbol_call(TerminalMethod.ORDER_CALC_PROFIT, symbol, payload) or {}
        return float(data.get("profit", 0.0))


def _check_positive(**values: float) -> None:
    for name, value in values.items():
        if value is None or not value > 0:
            raise ValidationError(f"{name} must be positive, got {value}")
