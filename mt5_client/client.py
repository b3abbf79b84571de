"""
Caller-facing terminal client.

Wires ConnectionManager, RequestExecutor, InstrumentCatalog,
NormalizationEngine, RiskSizer, OrderGateway and PositionBatchOperator
together. Strategy code only talks to TerminalClient.

    async with TerminalClient.from_config(transport, load_config()) as client:
        await client.connect(endpoint, credentials)
        ticket = await client.submit("EURUSD", OrderSide.BUY, 0.1)
"""
from datetime import datetime
from typing import List, Optional

from mt5_client.config.config import Config
from mt5_client.connection.manager import ConnectionManager
from mt5_client.connection.streams import Handler, StreamSpec, StreamSubscription
from mt5_client.data.instrument_catalog import InstrumentCatalog
from mt5_client.domain.models import (
    AccountSummary,
    BatchResult,
    Credentials,
    Endpoint,
    HistoryOrderRecord,
    HistoryPositionRecord,
    HistorySort,
    InstrumentMetadata,
    OrderCheckResult,
    OrderKind,
    OrderSide,
    PendingOrderRecord,
    PositionRecord,
    Quote,
    RecordKind,
    SessionStatus,
    SymbolSnapshot,
)
from mt5_client.domain.protocols import TerminalTransport
from mt5_client.execution.batch_operator import PositionBatchOperator
from mt5_client.execution.normalization import NormalizationEngine
from mt5_client.execution.order_gateway import OrderGateway
from mt5_client.execution.request_executor import RequestExecutor
from mt5_client.monitoring.logger import get_logger
from mt5_client.risk.risk_sizer import RiskSizer
from mt5_client.utils.retry import BackoffPolicy

logger = get_logger(__name__)


class TerminalClient:
    """Async facade over one terminal session."""

    def __init__(
        self,
        transport: TerminalTransport,
        *,
        connect_timeout: float = 30.0,
        call_timeout: float = 10.0,
        disconnect_timeout: float = 5.0,
        health_check_timeout: float = 3.0,
        max_attempts: int = 3,
        reconnect_attempts: int = 3,
        stream_reopen_attempts: int = 1,
        backoff: Optional[BackoffPolicy] = None,
        order_slippage: int = 10,
        close_slippage: int = 10,
        default_comment: Optional[str] = None,
        batch_timeout: Optional[float] = None,
    ):
        backoff = backoff or BackoffPolicy()
        self.manager = ConnectionManager(
            transport,
            connect_timeout=connect_timeout,
            disconnect_timeout=disconnect_timeout,
            health_check_timeout=health_check_timeout,
            reconnect_attempts=reconnect_attempts,
            backoff=backoff,
            stream_reopen_attempts=stream_reopen_attempts,
        )
        self.executor = RequestExecutor(
            self.manager, call_timeout=call_timeout, max_attempts=max_attempts, backoff=backoff
        )
        self.catalog = InstrumentCatalog(self.executor)
        self.normalizer = NormalizationEngine(self.catalog)
        self.risk_sizer = RiskSizer(self.normalizer)
        self.orders = OrderGateway(
            self.executor,
            self.normalizer,
            self.risk_sizer,
            order_slippage=order_slippage,
            close_slippage=close_slippage,
            default_comment=default_comment,
        )
        self.batch = PositionBatchOperator(self.catalog, self.orders, timeout=batch_timeout)

    @classmethod
    def from_config(cls, transport: TerminalTransport, config: Config) -> "TerminalClient":
        c, r, t = config.connection, config.retry, config.trading
        return cls(
            transport,
            connect_timeout=c.connect_timeout_seconds,
            call_timeout=c.call_timeout_seconds,
            disconnect_timeout=c.disconnect_timeout_seconds,
            health_check_timeout=c.health_check_timeout_seconds,
            max_attempts=r.max_attempts,
            reconnect_attempts=r.reconnect_attempts,
            stream_reopen_attempts=r.stream_reopen_attempts,
            backoff=BackoffPolicy(
                base_delay=r.base_delay_seconds,
                max_delay=r.max_delay_seconds,
                jitter=r.jitter_seconds,
            ),
            order_slippage=t.order_slippage_points,
            close_slippage=t.close_slippage_points,
            default_comment=t.default_comment,
            batch_timeout=t.batch_timeout_seconds,
        )

    async def __aenter__(self) -> "TerminalClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---- connection ----

    @property
    def status(self) -> SessionStatus:
        return self.manager.status

    async def connect(self, endpoint: Endpoint, credentials: Credentials, timeout: Optional[float] = None) -> str:
        return await self.manager.connect(endpoint, credentials, timeout)

    async def disconnect(self) -> None:
        await self.manager.disconnect()

    async def close(self) -> None:
        """Disconnect and release the transport."""
        await self.manager.close()

    async def is_alive(self, timeout: Optional[float] = None) -> bool:
        return await self.manager.is_alive(timeout)

    # ---- streams ----

    async def subscribe(self, spec: StreamSpec, handler: Handler) -> StreamSubscription:
        return await self.manager.streams.subscribe(spec, handler)

    async def cancel_all(self) -> int:
        return await self.manager.streams.cancel_all()

    def subscriptions(self) -> List[StreamSubscription]:
        return self.manager.streams.active()

    async def on_symbol_tick(self, symbols: List[str], handler: Handler) -> StreamSubscription:
        return await self.subscribe(StreamSpec.symbol_tick(*symbols), handler)

    async def on_trade(self, handler: Handler) -> StreamSubscription:
        return await self.subscribe(StreamSpec.trade(), handler)

    async def on_position_profit(self, handler: Handler, timer_ms: int = 1000, ignore_empty: bool = True) -> StreamSubscription:
        return await self.subscribe(StreamSpec.position_profit(timer_ms, ignore_empty), handler)

    async def on_positions_and_pending_tickets(self, handler: Handler, timer_ms: int = 1000) -> StreamSubscription:
        return await self.subscribe(StreamSpec.positions_and_pending_tickets(timer_ms), handler)

    async def on_trade_transaction(self, handler: Handler) -> StreamSubscription:
        return await self.subscribe(StreamSpec.trade_transaction(), handler)

    # ---- market data / account ----

    async def get_instrument(self, symbol: str) -> InstrumentMetadata:
        return await self.catalog.get(symbol)

    async def quote(self, symbol: str) -> Quote:
        return await self.catalog.quote(symbol)

    async def account_summary(self) -> AccountSummary:
        return await self.catalog.account_summary()

    async def positions(self, symbol: Optional[str] = None, side: Optional[OrderSide] = None) -> List[PositionRecord]:
        return await self.batch.list_positions(symbol, side)

    async def pending_orders(self, symbol: Optional[str] = None, side: Optional[OrderSide] = None) -> List[PendingOrderRecord]:
        return await self.batch.list_pending_orders(symbol, side)

    async def symbol_snapshot(self, symbol: str) -> SymbolSnapshot:
        return await self.catalog.snapshot(symbol)

    async def spread_points(self, symbol: str) -> int:
        return await self.catalog.spread_points(symbol)

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
        return await self.catalog.order_history(start, end, sort=sort, page=page, per_page=per_page, symbol=symbol)

    async def order_history_last_days(self, days: int, symbol: Optional[str] = None) -> List[HistoryOrderRecord]:
        return await self.catalog.order_history_last_days(days, symbol)

    async def positions_history(
        self,
        *,
        sort: HistorySort = HistorySort.OPEN_TIME_DESC,
        open_from: Optional[datetime] = None,
        open_to: Optional[datetime] = None,
        page: int = 0,
        per_page: int = 0,
    ) -> List[HistoryPositionRecord]:
        return await self.catalog.positions_history(
            sort=sort, open_from=open_from, open_to=open_to, page=page, per_page=per_page
        )

    # ---- pre-trade ----

    async def calc_margin(self, symbol: str, side: OrderSide, volume: float, price: float) -> float:
        return await self.catalog.calc_margin(symbol, side, volume, price)

    async def calc_profit(self, symbol: str, side: OrderSide, volume: float,
                          price_open: float, price_close: float) -> float:
        return await self.catalog.calc_profit(symbol, side, volume, price_open, price_close)

    async def check_order(
        self,
        symbol: str,
        side: OrderSide,
        volume: float,
        *,
        kind: OrderKind = OrderKind.MARKET,
        price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> OrderCheckResult:
        return await self.orders.check(
            symbol, side, volume, kind=kind, price=price, stop_loss=stop_loss, take_profit=take_profit,
        )

    # ---- normalization / sizing ----

    async def normalize_price(self, symbol: str, price: float) -> float:
        return await self.normalizer.normalize_price(symbol, price)

    async def normalize_volume(self, symbol: str, volume: float) -> float:
        return await self.normalizer.normalize_volume(symbol, volume)

    async def points_to_pips(self, symbol: str, points: float) -> float:
        return await self.normalizer.points_to_pips(symbol, points)

    async def calculate_volume(self, symbol: str, stop_loss_points: float, risk_amount: float) -> float:
        return await self.risk_sizer.calculate_volume(symbol, stop_loss_points, risk_amount)

    # ---- trading ----

    async def submit(
        self,
        symbol: str,
        side: OrderSide,
        volume: float,
        *,
        kind: OrderKind = OrderKind.MARKET,
        price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        comment: Optional[str] = None,
    ) -> int:
        return await self.orders.submit(
            symbol, side, volume, kind=kind, price=price,
            stop_loss=stop_loss, take_profit=take_profit, comment=comment,
        )

    async def submit_by_risk(
        self,
        side: OrderSide,
        symbol: str,
        stop_loss_points: float,
        risk_amount: float,
        take_profit_points: float = 0.0,
    ) -> int:
        return await self.orders.submit_by_risk(side, symbol, stop_loss_points, risk_amount, take_profit_points)

    async def modify(self, ticket: int, stop_loss: Optional[float] = None, take_profit: Optional[float] = None,
                     *, symbol: Optional[str] = None) -> None:
        await self.orders.modify(ticket, stop_loss, take_profit, symbol=symbol)

    async def close_position(self, ticket: int, volume: Optional[float] = None, *, symbol: Optional[str] = None) -> None:
        await self.orders.close(ticket, volume, symbol=symbol)

    async def cancel_order(self, ticket: int) -> None:
        await self.orders.cancel(ticket)

    async def close_matching(
        self,
        symbol: Optional[str] = None,
        side: Optional[OrderSide] = None,
        kind: Optional[RecordKind] = None,
    ) -> BatchResult:
        return await self.batch.close_matching(symbol, side, kind)
