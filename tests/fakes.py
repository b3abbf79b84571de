"""
In-memory terminal transport for tests.

Behaves like a single terminal with one account: symbols, ticks, open
positions and pending orders live in plain dicts/lists that tests can set up
and inspect. Failures are injected by queueing exceptions or raw envelopes.
"""
import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import TerminalConnectionError

EURUSD = {
    "point": 0.00001,
    "digits": 5,
    "volume_min": 0.01,
    "volume_max": 100.0,
    "volume_step": 0.01,
    "tick_value": 1.0,
    "tick_size": 0.00001,
}


class FakeStream:
    """Server stream fed through a queue; exceptions put on it are raised."""

    def __init__(self, method: TerminalMethod, payload: Dict[str, Any]):
        self.method = method
        self.payload = payload
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.aclose_error: Optional[Exception] = None

    def push(self, *items: Any) -> None:
        for item in items:
            self.queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is StopAsyncIteration:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True
        if self.aclose_error is not None:
            raise self.aclose_error


class FakeTransport:
    def __init__(self):
        self.symbols: Dict[str, Dict[str, Any]] = {"EURUSD": dict(EURUSD)}
        self.ticks: Dict[str, Dict[str, Any]] = {"EURUSD": {"bid": 1.10000, "ask": 1.10010, "time": 1_700_000_000}}
        self.positions: List[Dict[str, Any]] = []
        self.pending_orders: List[Dict[str, Any]] = []
        self.order_history: List[Dict[str, Any]] = []
        self.position_history: List[Dict[str, Any]] = []
        self.account = {
            "login": 62333850,
            "balance": 10000.0,
            "equity": 10012.5,
            "margin": 110.0,
            "free_margin": 9902.5,
            "profit": 12.5,
            "leverage": 100,
            "currency": "USD",
        }

        self.instance_id: Optional[str] = None
        self.open_count = 0
        self.open_errors: Deque[BaseException] = deque()
        self.open_delay = 0.0
        self.close_session_calls: List[str] = []
        self.close_session_error: Optional[BaseException] = None
        self.close_session_delay = 0.0
        self.streams_open_at_close: List[FakeStream] = []
        self.closed = False

        self.calls: List[tuple] = []
        self.failures: Dict[TerminalMethod, Deque[Any]] = defaultdict(deque)
        self.call_delay: Dict[TerminalMethod, float] = {}
        self.order_retcode = 10009
        self.close_failures: Dict[int, int] = {}
        self.next_ticket = 5001

        self.streams: List[FakeStream] = []
        self.stream_errors: Deque[BaseException] = deque()

    # ---- helpers for tests ----

    def fail(self, method: TerminalMethod, *items: Any) -> None:
        """Queue exceptions (raised) or dict envelopes (returned) for ``method``."""
        self.failures[method].extend(items)

    def calls_to(self, method: TerminalMethod) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def add_position(self, ticket: int, symbol: str, type_code: int, volume: float = 0.1) -> None:
        self.positions.append(
            {"ticket": ticket, "symbol": symbol, "type": type_code, "volume": volume, "price_open": 1.1, "profit": 0.0}
        )

    def add_pending(self, ticket: int, symbol: str, type_code: int, volume: float = 0.1, price: float = 1.09) -> None:
        self.pending_orders.append(
            {"ticket": ticket, "symbol": symbol, "type": type_code, "volume": volume, "price_open": price}
        )

    # ---- TerminalTransport ----

    async def open_session(self, endpoint, credentials, timeout: float) -> str:
        self.open_count += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_errors:
            raise self.open_errors.popleft()
        self.instance_id = f"instance-{self.open_count}"
        return self.instance_id

    async def close_session(self, instance_id: str, timeout: float) -> None:
        self.close_session_calls.append(instance_id)
        self.streams_open_at_close = [s for s in self.streams if not s.closed]
        if self.close_session_delay:
            await asyncio.sleep(self.close_session_delay)
        if self.close_session_error is not None:
            raise self.close_session_error
        self.instance_id = None

    async def call(self, method: TerminalMethod, payload: Dict[str, Any], *, instance_id: str, timeout: float):
        self.calls.append((method, dict(payload), instance_id))
        delay = self.call_delay.get(method)
        if delay:
            await asyncio.sleep(delay)
        queued = self.failures.get(method)
        if queued:
            item = queued.popleft()
            if isinstance(item, BaseException):
                raise item
            return item
        if instance_id != self.instance_id:
            return _error("TERMINAL_INSTANCE_NOT_FOUND", f"Unknown instance {instance_id}")
        handler = getattr(self, f"_{method.value}")
        return handler(payload)

    def stream(self, method: TerminalMethod, payload: Dict[str, Any], *, instance_id: str):
        if self.stream_errors:
            raise self.stream_errors.popleft()
        stream = FakeStream(method, payload)
        self.streams.append(stream)
        return stream

    async def aclose(self) -> None:
        self.closed = True

    # ---- method handlers ----

    def _check_connect(self, payload):
        return _ok({"is_alive": True})

    def _account_summary(self, payload):
        return _ok(dict(self.account))

    def _symbol_select(self, payload):
        return _ok({"success": payload["symbol"] in self.symbols})

    def _symbol_params(self, payload):
        symbol = payload["symbol"]
        if symbol not in self.symbols:
            return _error("SYMBOL_NOT_FOUND", f"Unknown symbol {symbol}")
        return _ok(dict(self.symbols[symbol]))

    def _symbol_info_tick(self, payload):
        symbol = payload["symbol"]
        if symbol not in self.ticks:
            return _error("SYMBOL_NOT_FOUND", f"Unknown symbol {symbol}")
        return _ok(dict(self.ticks[symbol]))

    def _opened_orders(self, payload):
        return _ok({"positions": [dict(p) for p in self.positions],
                    "pending_orders": [dict(o) for o in self.pending_orders]})

    def _order_history(self, payload):
        orders = [o for o in self.order_history if payload["from"] <= o.get("done_time", 0) <= payload["to"]]
        return _ok({"orders": _page(orders, payload["page"], payload["per_page"])})

    def _positions_history(self, payload):
        return _ok({"positions": _page(list(self.position_history), payload["page"], payload["per_page"])})

    def _order_calc_margin(self, payload):
        if payload["symbol"] not in self.symbols:
            return _error("SYMBOL_NOT_FOUND", f"Unknown symbol {payload['symbol']}")
        return _ok({"margin": round(payload["volume"] * 100000 * payload["price"] / self.account["leverage"], 2)})

    def _order_calc_profit(self, payload):
        if payload["symbol"] not in self.symbols:
            return _error("SYMBOL_NOT_FOUND", f"Unknown symbol {payload['symbol']}")
        sign = 1 if payload["operation"] == 0 else -1
        move = payload["price_close"] - payload["price_open"]
        return _ok({"profit": round(sign * move * payload["volume"] * 100000, 2)})

    def _order_check(self, payload):
        symbol = self.symbols.get(payload["symbol"])
        if symbol is not None and payload["volume"] >= symbol["volume_max"]:
            return _ok({"returned_code": 10019, "comment": "No money"})
        return _ok({
            "returned_code": 0,
            "comment": "Done",
            "balance_after_deal": self.account["balance"],
            "equity_after_deal": self.account["equity"],
            "margin": 110.0,
            "free_margin": 9790.0,
            "margin_level": 9102.27,
        })

    def _order_send(self, payload):
        if self.order_retcode != 10009:
            return _ok({"returned_code": self.order_retcode, "returned_code_description": "Invalid stops", "order": 0})
        ticket = self.next_ticket
        self.next_ticket += 1
        return _ok({"returned_code": 10009, "order": ticket, "deal": ticket + 100000})

    def _order_modify(self, payload):
        return _ok({"returned_code": 10009})

    def _order_close(self, payload):
        ticket = payload["ticket"]
        if ticket in self.close_failures:
            return _ok({"returned_code": self.close_failures[ticket]})
        self.positions = [p for p in self.positions if p["ticket"] != ticket]
        self.pending_orders = [o for o in self.pending_orders if o["ticket"] != ticket]
        return _ok({"returned_code": 10009})


def _ok(data: Any) -> Dict[str, Any]:
    return {"data": data, "error": None}


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"data": None, "error": {"code": code, "message": message}}


def unavailable(message: str = "UNAVAILABLE: connection reset") -> TerminalConnectionError:
    return TerminalConnectionError(message)


def _page(items: List[Any], page: int, per_page: int) -> List[Any]:
    if not per_page:
        return items
    return items[page * per_page:(page + 1) * per_page]
