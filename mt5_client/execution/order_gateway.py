"""
Order Gateway.

Every trading verb runs the same pipeline:

    validate -> normalize -> send -> interpret the trade return code

A request counts as executed only when the terminal returns
TRADE_RETCODE_DONE (10009). Any other code raises OrderRejected with the
code and the terminal's description.
"""
from typing import Any, Dict, Optional

from mt5_client.data.instrument_catalog import InstrumentCatalog
from mt5_client.domain.models import NormalizedOrder, OrderCheckResult, OrderKind, OrderSide, RiskRequest
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import OrderRejected, ValidationError
from mt5_client.execution.normalization import NormalizationEngine, round_price, validate_order_input
from mt5_client.execution.request_executor import RequestExecutor
from mt5_client.monitoring.logger import get_logger
from mt5_client.risk.risk_sizer import RiskSizer

logger = get_logger(__name__)

TRADE_RETCODE_DONE = 10009

# Fallback text when the terminal sends a code without a description
RETCODE_DESCRIPTIONS = {
    10004: "Requote",
    10006: "Request rejected",
    10007: "Request canceled by trader",
    10008: "Order placed",
    10009: "Request completed",
    10010: "Only part of the request was completed",
    10011: "Request processing error",
    10013: "Invalid request",
    10014: "Invalid volume in the request",
    10015: "Invalid price in the request",
    10016: "Invalid stops in the request",
    10017: "Trade is disabled",
    10018: "Market is closed",
    10019: "There is not enough money to complete the request",
    10021: "There are no quotes to process the request",
    10024: "Too frequent requests",
    10027: "Autotrading disabled by client terminal",
    10030: "Invalid order filling type",
    10031: "No connection with the trade server",
}


def describe_retcode(code: Optional[int], description: Optional[str] = None) -> str:
    if description:
        return description
    return RETCODE_DESCRIPTIONS.get(code, f"Unknown trade return code {code}")


class OrderGateway:
    """
    Sends normalized trade requests and interprets the terminal's answer.

    Args:
        executor: Retrying call executor
        normalizer: Price/volume quantization
        risk_sizer: Volume from risk amount
        order_slippage: Allowed deviation for market orders (points)
        close_slippage: Allowed deviation for closes (points)
        default_comment: Comment attached when the caller gives none
    """

    def __init__(
        self,
        executor: RequestExecutor,
        normalizer: NormalizationEngine,
        risk_sizer: RiskSizer,
        *,
        order_slippage: int = 10,
        close_slippage: int = 10,
        default_comment: Optional[str] = None,
    ):
        self.executor = executor
        self.normalizer = normalizer
        self.risk_sizer = risk_sizer
        self.order_slippage = order_slippage
        self.close_slippage = close_slippage
        self.default_comment = default_comment

    @property
    def catalog(self) -> InstrumentCatalog:
        return self.normalizer.catalog

    # ---- submit ----

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
        """
        Place a market or pending order.

        Returns:
            Order ticket

        Raises:
            ValidationError: Bad input; nothing was sent
            OrderRejected: Terminal did not execute the request
        """
        validate_order_input(symbol, volume, kind, price)
        await self.catalog.ensure_selected(symbol)
        order = await self.normalizer.normalize_order(
            symbol,
            side,
            volume,
            kind=kind,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            comment=comment if comment is not None else self.default_comment,
        )
        return await self.send(order)

    async def check(
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
        """
        Ask the terminal whether an order would be accepted, without sending it.

        The request is validated and normalized exactly as ``submit`` does.
        A refusal comes back as ``OrderCheckResult.ok == False``, not as an
        exception.
        """
        validate_order_input(symbol, volume, kind, price)
        order = await self.normalizer.normalize_order(
            symbol, side, volume, kind=kind, price=price, stop_loss=stop_loss, take_profit=take_profit,
        )
        data = await self.executor.call(TerminalMethod.ORDER_CHECK, self._order_payload(order))
        try:
            result = OrderCheckResult.from_payload(data or {})
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed order check reply for {symbol}: {e}") from e
        logger.info("ORDER_CHECKED", symbol=symbol, side=side.value, kind=kind.value,
                    volume=order.volume, retcode=result.retcode, comment=result.comment)
        return result

    def _order_payload(self, order: NormalizedOrder) -> Dict[str, Any]:
        return {
            "symbol": order.symbol,
            "operation": order.type_code,
            "volume": order.volume,
            "price": order.price or 0.0,
            "stop_loss": order.stop_loss or 0.0,
            "take_profit": order.take_profit or 0.0,
            "comment": order.comment or "",
            "slippage": self.order_slippage if order.kind == OrderKind.MARKET else 0,
        }

    async def send(self, order: NormalizedOrder) -> int:
        data = await self.executor.call(TerminalMethod.ORDER_SEND, self._order_payload(order))
        self._check_retcode(data, "ORDER_SEND", symbol=order.symbol, side=order.side.value, kind=order.kind.value)

        ticket = int(data.get("order", 0))
        logger.info(
            "ORDER_PLACED",
            ticket=ticket,
            symbol=order.symbol,
            side=order.side.value,
            kind=order.kind.value,
            volume=order.volume,
            price=order.price,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
        )
        return ticket

    async def buy_market(self, symbol: str, volume: float, stop_loss: Optional[float] = None,
                         take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.BUY, volume, stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def sell_market(self, symbol: str, volume: float, stop_loss: Optional[float] = None,
                          take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.SELL, volume, stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def buy_limit(self, symbol: str, volume: float, price: float, stop_loss: Optional[float] = None,
                        take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.BUY, volume, kind=OrderKind.LIMIT, price=price,
                                 stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def sell_limit(self, symbol: str, volume: float, price: float, stop_loss: Optional[float] = None,
                         take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.SELL, volume, kind=OrderKind.LIMIT, price=price,
                                 stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def buy_stop(self, symbol: str, volume: float, price: float, stop_loss: Optional[float] = None,
                       take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.BUY, volume, kind=OrderKind.STOP, price=price,
                                 stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def sell_stop(self, symbol: str, volume: float, price: float, stop_loss: Optional[float] = None,
                        take_profit: Optional[float] = None, comment: Optional[str] = None) -> int:
        return await self.submit(symbol, OrderSide.SELL, volume, kind=OrderKind.STOP, price=price,
                                 stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    # ---- point-based helpers ----

    async def submit_by_risk(
        self,
        side: OrderSide,
        symbol: str,
        stop_loss_points: float,
        risk_amount: float,
        take_profit_points: float = 0.0,
        comment: Optional[str] = None,
    ) -> int:
        """
        Market order sized so that hitting the stop loses ``risk_amount``.

        SL/TP are placed ``*_points`` away from the current ask (buy) or bid
        (sell). A zero take_profit_points means no take profit.
        """
        volume = await self.risk_sizer.calculate(RiskRequest(symbol, stop_loss_points, risk_amount))
        meta = await self.catalog.get(symbol)
        quote = await self.catalog.quote(symbol)

        sign = 1 if side == OrderSide.BUY else -1
        reference = quote.ask if side == OrderSide.BUY else quote.bid
        stop_loss = reference - sign * stop_loss_points * meta.point
        take_profit = reference + sign * take_profit_points * meta.point if take_profit_points > 0 else None

        return await self.submit(symbol, side, volume, stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    async def submit_pending_points(
        self,
        side: OrderSide,
        kind: OrderKind,
        symbol: str,
        volume: float,
        offset_points: float,
        stop_loss_points: float = 0.0,
        take_profit_points: float = 0.0,
        comment: Optional[str] = None,
    ) -> int:
        """
        Pending order ``offset_points`` away from the current price.

        Buys are offset from the ask, sells from the bid (negative offset =
        below). SL/TP distances are measured from the order price; zero
        means none.
        """
        if not kind.is_pending:
            raise ValidationError("submit_pending_points requires a pending order kind")
        meta = await self.catalog.get(symbol)
        price = await self.normalizer.price_from_offset_points(symbol, side, offset_points)

        sign = 1 if side == OrderSide.BUY else -1
        stop_loss = price - sign * stop_loss_points * meta.point if stop_loss_points > 0 else None
        take_profit = price + sign * take_profit_points * meta.point if take_profit_points > 0 else None

        return await self.submit(symbol, side, volume, kind=kind, price=price,
                                 stop_loss=stop_loss, take_profit=take_profit, comment=comment)

    # ---- modify / close / cancel ----

    async def modify(
        self,
        ticket: int,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        *,
        symbol: Optional[str] = None,
    ) -> None:
        """
        Change SL and/or TP of a position or pending order.

        The new levels are rounded to the symbol's digits; without ``symbol``
        the ticket's symbol is looked up first.
        """
        if stop_loss is None and take_profit is None:
            raise ValidationError("At least one of stop_loss or take_profit must be provided")

        symbol = symbol or await self._symbol_for_ticket(ticket)
        meta = await self.catalog.get(symbol)

        payload: Dict[str, Any] = {"ticket": int(ticket)}
        if stop_loss is not None:
            payload["stop_loss"] = round_price(stop_loss, meta.digits)
        if take_profit is not None:
            payload["take_profit"] = round_price(take_profit, meta.digits)

        data = await self.executor.call(TerminalMethod.ORDER_MODIFY, payload)
        self._check_retcode(data, "ORDER_MODIFY", ticket=ticket)
        logger.info("ORDER_MODIFIED", ticket=ticket, symbol=symbol,
                    stop_loss=payload.get("stop_loss"), take_profit=payload.get("take_profit"))

    async def close(self, ticket: int, volume: Optional[float] = None, *, symbol: Optional[str] = None) -> None:
        """
        Close a position, fully (``volume`` None) or partially.

        A partial volume is normalized to the symbol's step; without
        ``symbol`` the ticket's symbol is looked up first.
        """
        close_volume = 0.0
        if volume is not None:
            if volume <= 0:
                raise ValidationError(f"Close volume must be positive, got {volume}")
            symbol = symbol or await self._symbol_for_ticket(ticket)
            close_volume = await self.normalizer.normalize_volume(symbol, volume)

        payload = {"ticket": int(ticket), "volume": close_volume, "slippage": self.close_slippage}
        data = await self.executor.call(TerminalMethod.ORDER_CLOSE, payload)
        self._check_retcode(data, "ORDER_CLOSE", ticket=ticket)
        logger.info("POSITION_CLOSED", ticket=ticket, volume=close_volume or "full")

    async def cancel(self, ticket: int) -> None:
        """Delete a pending order."""
        payload = {"ticket": int(ticket), "volume": 0.0, "slippage": 0}
        data = await self.executor.call(TerminalMethod.ORDER_CLOSE, payload)
        self._check_retcode(data, "ORDER_CANCEL", ticket=ticket)
        logger.info("ORDER_CANCELLED", ticket=ticket)

    # ---- helpers ----

    async def _symbol_for_ticket(self, ticket: int) -> str:
        positions, pending = await self.catalog.opened_orders()
        for record in (*positions, *pending):
            if record.ticket == int(ticket):
                return record.symbol
        raise ValidationError(f"No open position or pending order with ticket {ticket}")

    @staticmethod
    def _check_retcode(data: Any, operation: str, **context) -> None:
        data = data or {}
        code = data.get("returned_code")
        if code == TRADE_RETCODE_DONE:
            return
        description = describe_retcode(code, data.get("returned_code_description") or data.get("comment"))
        logger.warning("ORDER_REJECTED", operation=operation, code=code, description=description, **context)
        raise OrderRejected(code, description)
