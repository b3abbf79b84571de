"""
Domain protocols (interfaces) for dependency inversion.

The wire encoding of terminal requests is owned by the transport. The client
core only depends on the TerminalTransport contract below, so any concrete
gRPC stub, a recorded-session replayer or an in-memory fake can drive it.

Reply envelope returned by ``call``:

    {"data": <payload dict | list | scalar>, "error": None}
    {"data": None, "error": {"code": "<terminal code>", "message": "..."}}

Payload shapes used by the client:

    SYMBOL_PARAMS      {symbol} -> {point, digits, volume_min, volume_max,
                                     volume_step, tick_value, tick_size}
    SYMBOL_SELECT      {symbol, select} -> {success}
    SYMBOL_INFO_TICK   {symbol} -> {bid, ask, time}
    ACCOUNT_SUMMARY    {} -> {login, balance, equity, margin, free_margin,
                              profit, leverage, currency}
    OPENED_ORDERS      {} -> {positions: [{ticket, symbol, type, volume,
                                           price_open, profit}],
                              pending_orders: [{ticket, symbol, type, volume,
                                                price_open}]}
    ORDER_SEND         {symbol, operation, volume, price, stop_loss,
                        take_profit, comment, slippage}
                       -> {returned_code, order, deal, comment}
    ORDER_MODIFY       {ticket, stop_loss, take_profit} -> {returned_code, comment}
    ORDER_CLOSE        {ticket, volume, slippage} -> {returned_code, comment}
    CHECK_CONNECT      {} -> {is_alive}
    ORDER_HISTORY      {from, to, sort, page, per_page}
                       -> {orders: [{ticket, symbol, type, volume, price_open,
                                     state, setup_time, done_time}]}
    POSITIONS_HISTORY  {sort, open_from, open_to, page, per_page}
                       -> {positions: [{ticket, symbol, type, volume,
                                        price_open, price_close, profit,
                                        open_time, close_time}]}
    ORDER_CALC_MARGIN  {symbol, operation, volume, price} -> {margin}
    ORDER_CALC_PROFIT  {symbol, operation, volume, price_open, price_close}
                       -> {profit}
    ORDER_CHECK        same payload as ORDER_SEND
                       -> {returned_code, comment, balance_after_deal,
                           equity_after_deal, profit, margin, free_margin,
                           margin_level}

Times on the wire are epoch seconds. A page or per_page of 0 means the
whole history.

Transports raise TerminalConnectionError (or OSError) when a call could not
be delivered; they never raise for error envelopes.
"""
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Protocol, runtime_checkable

from mt5_client.domain.models import Credentials, Endpoint


class TerminalMethod(str, Enum):
    """Remote procedures exposed by the terminal gateway."""
    CHECK_CONNECT = "check_connect"
    ACCOUNT_SUMMARY = "account_summary"
    SYMBOL_SELECT = "symbol_select"
    SYMBOL_PARAMS = "symbol_params"
    SYMBOL_INFO_TICK = "symbol_info_tick"
    OPENED_ORDERS = "opened_orders"
    ORDER_HISTORY = "order_history"
    POSITIONS_HISTORY = "positions_history"
    ORDER_CALC_MARGIN = "order_calc_margin"
    ORDER_CALC_PROFIT = "order_calc_profit"
    ORDER_CHECK = "order_check"
    ORDER_SEND = "order_send"
    ORDER_MODIFY = "order_modify"
    ORDER_CLOSE = "order_close"
    # Server streams
    ON_SYMBOL_TICK = "on_symbol_tick"
    ON_TRADE = "on_trade"
    ON_POSITION_PROFIT = "on_position_profit"
    ON_POSITIONS_AND_PENDING_ORDERS_TICKETS = "on_positions_and_pending_orders_tickets"
    ON_TRADE_TRANSACTION = "on_trade_transaction"


# Trade-changing calls; a timed-out attempt may already have executed.
NON_IDEMPOTENT_METHODS = frozenset({
    TerminalMethod.ORDER_SEND,
    TerminalMethod.ORDER_MODIFY,
    TerminalMethod.ORDER_CLOSE,
})


@runtime_checkable
class TerminalTransport(Protocol):
    """
    Request/reply + server-streaming channel to one terminal gateway.

    Implemented by a generated RPC stub wrapper in production; tests use an
    in-memory fake.
    """

    async def open_session(self, endpoint: Endpoint, credentials: Credentials, timeout: float) -> str:
        """Log in and return the terminal instance id."""
        ...

    async def close_session(self, instance_id: str, timeout: float) -> None:
        ...

    async def call(
        self,
        method: TerminalMethod,
        payload: Dict[str, Any],
        *,
        instance_id: str,
        timeout: float,
    ) -> Dict[str, Any]:
        ...

    def stream(
        self,
        method: TerminalMethod,
        payload: Dict[str, Any],
        *,
        instance_id: str,
    ) -> AsyncIterator[Dict[str, Any]]:
        ...

    async def aclose(self) -> None:
        ...


def envelope_error(envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the error part of a reply envelope, or None on success."""
    error = envelope.get("error")
    if error:
        return error
    return None
