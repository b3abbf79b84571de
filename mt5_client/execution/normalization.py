"""
Price and volume quantization to broker rules.

Quantities are converted to Decimal via their shortest repr before rounding
so that float noise (0.157 -> 0.15700000000000000677...) cannot flip a half-up
decision. Results are returned as floats because the terminal takes doubles.
"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from mt5_client.data.instrument_catalog import InstrumentCatalog
from mt5_client.domain.models import InstrumentMetadata, NormalizedOrder, OrderKind, OrderSide
from mt5_client.exceptions import ValidationError
from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def round_price(price: float, digits: int) -> float:
    """round(price * 10^digits) / 10^digits, half-up."""
    if not math.isfinite(price):
        raise ValidationError(f"Price must be a finite number, got {price}")
    if digits < 0:
        raise ValidationError(f"Invalid digits: {digits}")
    quantum = Decimal(1).scaleb(-digits)
    return float(_dec(price).quantize(quantum, rounding=ROUND_HALF_UP))


def round_volume(volume: float, volume_min: float, volume_max: float, volume_step: float) -> float:
    """
    Clamp into [volume_min, volume_max], then snap to the nearest step.

    A snapped value that falls outside the bounds (bounds not aligned to the
    step) is moved one step back inside.
    """
    if not math.isfinite(volume):
        raise ValidationError(f"Volume must be a finite number, got {volume}")
    if volume_step <= 0:
        raise ValidationError(f"Invalid volume step: {volume_step}")
    if volume_min > volume_max:
        raise ValidationError(f"Invalid volume bounds: [{volume_min}, {volume_max}]")

    step = _dec(volume_step)
    lo, hi = _dec(volume_min), _dec(volume_max)
    v = min(max(_dec(volume), lo), hi)

    steps = (v / step).to_integral_value(rounding=ROUND_HALF_UP)
    result = steps * step
    if result > hi:
        result -= step
    if result < lo:
        result += step
    return float(result.normalize())


def validate_order_input(symbol: str, volume: float, kind: OrderKind, price: Optional[float]) -> None:
    """Reject order parameters that no broker rule can repair."""
    if not symbol:
        raise ValidationError("Symbol is required")
    if volume is None or not math.isfinite(volume) or volume <= 0:
        raise ValidationError(f"Volume must be positive, got {volume}")
    if kind == OrderKind.STOP_LIMIT:
        raise ValidationError("Stop-limit orders are not supported")
    if price is not None and not math.isfinite(price):
        raise ValidationError(f"Price must be a finite number, got {price}")
    if kind.is_pending and (price is None or price <= 0):
        raise ValidationError(f"{kind.value} order requires a positive price")


def points_to_pips(points: float, digits: int) -> float:
    """Points to pips: 1:1 for 2-3 digit quotes, 10 points per pip otherwise."""
    if digits <= 3:
        return points
    return points / 10.0


class NormalizationEngine:
    """
    Brings user-supplied prices and volumes onto broker-legal values.

    Metadata is fetched from the catalog on every call.
    """

    def __init__(self, catalog: InstrumentCatalog):
        self.catalog = catalog

    async def normalize_price(self, symbol: str, price: float) -> float:
        meta = await self.catalog.get(symbol)
        return round_price(price, meta.digits)

    async def normalize_volume(self, symbol: str, volume: float) -> float:
        meta = await self.catalog.get(symbol)
        return self.volume_for(meta, volume)

    async def points_to_pips(self, symbol: str, points: float) -> float:
        meta = await self.catalog.get(symbol)
        return points_to_pips(points, meta.digits)

    async def price_from_offset_points(self, symbol: str, side: OrderSide, offset_points: float) -> float:
        """
        Current price moved by ``offset_points``.

        Buys are measured from the ask, sells from the bid; a positive offset
        is above the reference price.
        """
        meta = await self.catalog.get(symbol)
        quote = await self.catalog.quote(symbol)
        reference = quote.ask if side == OrderSide.BUY else quote.bid
        return round_price(reference + offset_points * meta.point, meta.digits)

    @staticmethod
    def volume_for(meta: InstrumentMetadata, volume: float) -> float:
        return round_volume(volume, meta.volume_min, meta.volume_max, meta.volume_step)

    @staticmethod
    def price_for(meta: InstrumentMetadata, price: Optional[float]) -> Optional[float]:
        if price is None:
            return None
        return round_price(price, meta.digits)

    async def normalize_order(
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
    ) -> NormalizedOrder:
        """
        Quantize all order fields against one metadata snapshot.

        Market orders carry no price (the terminal fills at market).

        Raises:
            ValidationError: Non-positive volume, pending order without a
                positive price, or unsupported kind
        """
        validate_order_input(symbol, volume, kind, price)
        meta = await self.catalog.get(symbol)
        order = NormalizedOrder(
            symbol=symbol,
            side=side,
            kind=kind,
            volume=self.volume_for(meta, volume),
            price=self.price_for(meta, price) if kind.is_pending else None,
            stop_loss=self.price_for(meta, stop_loss or None),
            take_profit=self.price_for(meta, take_profit or None),
            comment=comment,
        )
        if order.volume != volume:
            logger.debug("VOLUME_NORMALIZED", symbol=symbol, requested=volume, normalized=order.volume)
        return order
