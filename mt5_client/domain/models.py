"""
Domain models for the terminal client.

These are the plain value objects passed between the connection, execution
and risk layers. Prices and volumes are floats on the boundary (the terminal
speaks doubles); arithmetic that must be exact is done with Decimal in the
normalization layer. All timestamps are UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple


class SessionStatus(str, Enum):
    """Connection status of the terminal session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class OrderSide(str, Enum):
    """Trade direction."""
    BUY = "buy"
    SELL = "sell"


class OrderKind(str, Enum):
    """Order execution kind."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"

    @property
    def is_pending(self) -> bool:
        return self is not OrderKind.MARKET


class RecordKind(str, Enum):
    """Kind of an open trade record."""
    POSITION = "position"
    PENDING_ORDER = "pending_order"


class HistorySort(str, Enum):
    """Ordering of order and position history pages."""
    OPEN_TIME_ASC = "open_time_asc"
    OPEN_TIME_DESC = "open_time_desc"
    CLOSE_TIME_ASC = "close_time_asc"
    CLOSE_TIME_DESC = "close_time_desc"
    TICKET_ASC = "ticket_asc"
    TICKET_DESC = "ticket_desc"


# Terminal order type codes (ORDER_TYPE_BUY .. ORDER_TYPE_SELL_STOP_LIMIT)
_ORDER_TYPE_CODES = {
    (OrderSide.BUY, OrderKind.MARKET): 0,
    (OrderSide.SELL, OrderKind.MARKET): 1,
    (OrderSide.BUY, OrderKind.LIMIT): 2,
    (OrderSide.SELL, OrderKind.LIMIT): 3,
    (OrderSide.BUY, OrderKind.STOP): 4,
    (OrderSide.SELL, OrderKind.STOP): 5,
    (OrderSide.BUY, OrderKind.STOP_LIMIT): 6,
    (OrderSide.SELL, OrderKind.STOP_LIMIT): 7,
}
_ORDER_TYPES_BY_CODE = {code: pair for pair, code in _ORDER_TYPE_CODES.items()}


def order_type_code(side: OrderSide, kind: OrderKind) -> int:
    """Terminal order type code for a side/kind pair."""
    return _ORDER_TYPE_CODES[(side, kind)]


def order_type_from_code(code: int) -> Tuple[OrderSide, OrderKind]:
    """Inverse of order_type_code. Raises ValueError on unknown codes."""
    try:
        return _ORDER_TYPES_BY_CODE[int(code)]
    except KeyError:
        raise ValueError(f"Unknown order type code: {code}") from None


def parse_time(value: Any) -> Optional[datetime]:
    """Epoch seconds or datetime to an aware UTC datetime; None stays None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


@dataclass(frozen=True)
class Endpoint:
    """
    Where the terminal lives.

    Either ``host`` (+ ``port``) of a terminal gateway or the ``server_name`` of
    an MT cluster must be given.
    """
    host: Optional[str] = None
    port: int = 443
    server_name: Optional[str] = None
    base_chart_symbol: str = "EURUSD"
    wait_for_terminal: bool = True

    def __post_init__(self):
        if not self.host and not self.server_name:
            raise ValueError("Endpoint requires host or server_name")
        if self.host and not (0 < self.port < 65536):
            raise ValueError(f"Invalid port: {self.port}")

    @property
    def address(self) -> str:
        if self.host:
            return f"{self.host}:{self.port}"
        return str(self.server_name)


@dataclass(frozen=True)
class Credentials:
    """Trading account login."""
    user: int
    password: str = field(repr=False)


@dataclass(frozen=True)
class InstrumentMetadata:
    """
    Broker trading rules for one symbol.

    Fetched fresh for every operation that needs it; the broker may change
    them at any time.
    """
    symbol: str
    point: float
    digits: int
    volume_min: float
    volume_max: float
    volume_step: float
    tick_value: float
    tick_size: float

    @classmethod
    def from_payload(cls, symbol: str, data: dict) -> "InstrumentMetadata":
        return cls(
            symbol=symbol,
            point=float(data["point"]),
            digits=int(data["digits"]),
            volume_min=float(data["volume_min"]),
            volume_max=float(data["volume_max"]),
            volume_step=float(data["volume_step"]),
            tick_value=float(data.get("tick_value", 0.0)),
            tick_size=float(data.get("tick_size", 0.0)),
        )


@dataclass(frozen=True)
class NormalizedOrder:
    """
    Order parameters already quantized to the broker's rules.

    Built by NormalizationEngine.normalize_order(); OrderGateway only sends
    instances of this type.
    """
    symbol: str
    side: OrderSide
    kind: OrderKind
    volume: float
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    comment: Optional[str] = None

    @property
    def type_code(self) -> int:
        return order_type_code(self.side, self.kind)


@dataclass(frozen=True)
class RiskRequest:
    """Risk-based sizing input: lose at most ``risk_amount`` if the stop is hit."""
    symbol: str
    stop_loss_points: float
    risk_amount: float


@dataclass(frozen=True)
class PositionRecord:
    """Open position as reported by the terminal."""
    ticket: int
    symbol: str
    side: OrderSide
    volume: float
    price_open: float = 0.0
    profit: float = 0.0

    @property
    def kind(self) -> RecordKind:
        return RecordKind.POSITION


@dataclass(frozen=True)
class PendingOrderRecord:
    """Pending (not yet triggered) order as reported by the terminal."""
    ticket: int
    symbol: str
    side: OrderSide
    order_kind: OrderKind
    volume: float
    price: float = 0.0

    @property
    def kind(self) -> RecordKind:
        return RecordKind.PENDING_ORDER

    @property
    def type_code(self) -> int:
        return order_type_code(self.side, self.order_kind)


@dataclass(frozen=True)
class Quote:
    """Last tick for a symbol."""
    symbol: str
    bid: float
    ask: float
    time: Optional[datetime] = None

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass(frozen=True)
class AccountSummary:
    """Account balance snapshot."""
    login: int
    balance: float
    equity: float
    margin: float
    free_margin: float
    profit: float
    leverage: int
    currency: str

    @classmethod
    def from_payload(cls, data: dict) -> "AccountSummary":
        return cls(
            login=int(data.get("login", 0)),
            balance=float(data.get("balance", 0.0)),
            equity=float(data.get("equity", 0.0)),
            margin=float(data.get("margin", 0.0)),
            free_margin=float(data.get("free_margin", 0.0)),
            profit=float(data.get("profit", 0.0)),
            leverage=int(data.get("leverage", 0)),
            currency=str(data.get("currency", "")),
        )


@dataclass(frozen=True)
class SymbolSnapshot:
    """Trading rules and last tick of one symbol, read together."""
    metadata: InstrumentMetadata
    quote: Quote
    spread_points: int

    @property
    def symbol(self) -> str:
        return self.metadata.symbol


@dataclass(frozen=True)
class HistoryOrderRecord:
    """Filled, cancelled or expired order from the account history."""
    ticket: int
    symbol: str
    side: OrderSide
    order_kind: OrderKind
    volume: float
    price_open: float = 0.0
    state: str = ""
    setup_time: Optional[datetime] = None
    done_time: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryPositionRecord:
    """Closed position from the account history."""
    ticket: int
    symbol: str
    side: OrderSide
    volume: float
    price_open: float = 0.0
    price_close: float = 0.0
    profit: float = 0.0
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None


@dataclass(frozen=True)
class OrderCheckResult:
    """
    Terminal's verdict on a trade request that was not sent.

    ``retcode`` 0 means the request would be accepted; the balance, equity
    and margin fields are the account state after the deal.
    """
    retcode: int
    comment: str = ""
    balance: float = 0.0
    equity: float = 0.0
    profit: float = 0.0
    margin: float = 0.0
    free_margin: float = 0.0
    margin_level: float = 0.0

    @property
    def ok(self) -> bool:
        return self.retcode == 0

    @classmethod
    def from_payload(cls, data: dict) -> "OrderCheckResult":
        return cls(
            retcode=int(data["returned_code"]),
            comment=str(data.get("comment", "")),
            balance=float(data.get("balance_after_deal", 0.0)),
            equity=float(data.get("equity_after_deal", 0.0)),
            profit=float(data.get("profit", 0.0)),
            margin=float(data.get("margin", 0.0)),
            free_margin=float(data.get("free_margin", 0.0)),
            margin_level=float(data.get("margin_level", 0.0)),
        )


@dataclass(frozen=True)
class StreamEvent:
    """One server-pushed update delivered to a subscription handler."""
    subscription_id: str
    kind: str
    payload: Any
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CallResult:
    """
    Outcome of one executed terminal call: data or error, never both.
    """
    data: Any = None
    error: Optional[Exception] = None

    def __post_init__(self):
        if self.error is not None and self.data is not None:
            raise ValueError("CallResult cannot carry both data and error")

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.data


@dataclass(frozen=True)
class BatchFailure:
    """One record a batch operation could not close."""
    ticket: int
    symbol: str
    error: str


@dataclass
class BatchResult:
    """
    Outcome of a batch close/cancel.

    Partial failure is a normal result: ``succeeded`` counts the records that
    were closed, ``failures`` lists the rest.
    """
    matched: int = 0
    succeeded: int = 0
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def complete(self) -> bool:
        return self.succeeded == self.matched


def parse_position(data: dict) -> PositionRecord:
    side, _ = order_type_from_code(data["type"])
    return PositionRecord(
        ticket=int(data["ticket"]),
        symbol=str(data["symbol"]),
        side=side,
        volume=float(data["volume"]),
        price_open=float(data.get("price_open", 0.0)),
        profit=float(data.get("profit", 0.0)),
    )


def parse_pending_order(data: dict) -> PendingOrderRecord:
    side, kind = order_type_from_code(data["type"])
    if kind == OrderKind.MARKET:
        raise ValueError(f"Order {data.get('ticket')} has a market type code")
    return PendingOrderRecord(
        ticket=int(data["ticket"]),
        symbol=str(data["symbol"]),
        side=side,
        order_kind=kind,
        volume=float(data.get("volume", 0.0)),
        price=float(data.get("price_open", 0.0)),
    )


def parse_history_order(data: dict) -> HistoryOrderRecord:
    side, kind = order_type_from_code(data["type"])
    return HistoryOrderRecord(
        ticket=int(data["ticket"]),
        symbol=str(data["symbol"]),
        side=side,
        order_kind=kind,
        volume=float(data.get("volume", 0.0)),
        price_open=float(data.get("price_open", 0.0)),
        state=str(data.get("state", "")),
        setup_time=parse_time(data.get("setup_time")),
        done_time=parse_time(data.get("done_time")),
    )


def parse_history_position(data: dict) -> HistoryPositionRecord:
    side, _ = order_type_from_code(data["type"])
    return HistoryPositionRecord(
        ticket=int(data["ticket"]),
        symbol=str(data["symbol"]),
        side=side,
        volume=float(data.get("volume", 0.0)),
        price_open=float(data.get("price_open", 0.0)),
        price_close=float(data.get("price_close", 0.0)),
        profit=float(data.get("profit", 0.0)),
        open_time=parse_time(data.get("open_time")),
        close_time=parse_time(data.get("close_time")),
    )
