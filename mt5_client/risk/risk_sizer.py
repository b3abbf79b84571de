"""
Risk-based position sizing.

Volume = risk_amount / (stop_loss_points * value_per_point), where
value_per_point = tick_value / tick_size * point, i.e. the account-currency
value of a one-point move for one lot.

The result always goes through volume normalization, so the realized risk
can differ from ``risk_amount`` by up to half a volume step's worth.
"""
import math
from decimal import Decimal

from mt5_client.domain.models import InstrumentMetadata, RiskRequest
from mt5_client.exceptions import ValidationError
from mt5_client.execution.normalization import NormalizationEngine
from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)


def value_per_point(meta: InstrumentMetadata) -> Decimal:
    """Account-currency value of a one-point move for one lot."""
    if meta.tick_size <= 0 or meta.point <= 0 or meta.tick_value <= 0:
        raise ValidationError(
            f"Unusable tick economics for {meta.symbol}: "
            f"tick_value={meta.tick_value} tick_size={meta.tick_size} point={meta.point}"
        )
    return Decimal(str(meta.tick_value)) / Decimal(str(meta.tick_size)) * Decimal(str(meta.point))


class RiskSizer:
    """Computes the volume that risks a given amount over a stop distance."""

    def __init__(self, normalizer: NormalizationEngine):
        self.normalizer = normalizer

    async def calculate_volume(self, symbol: str, stop_loss_points: float, risk_amount: float) -> float:
        """
        Args:
            symbol: Instrument
            stop_loss_points: Stop distance in points
            risk_amount: Money to lose if the stop is hit (account currency)

        Returns:
            Broker-legal volume

        Raises:
            ValidationError: Non-positive inputs (checked before any remote
                call), unknown symbol or unusable instrument metadata
        """
        if stop_loss_points is None or not math.isfinite(stop_loss_points) or stop_loss_points <= 0:
            raise ValidationError(f"stop_loss_points must be positive, got {stop_loss_points}")
        if risk_amount is None or not math.isfinite(risk_amount) or risk_amount <= 0:
            raise ValidationError(f"risk_amount must be positive, got {risk_amount}")

        meta = await self.normalizer.catalog.get(symbol)
        vpp = value_per_point(meta)
        raw = Decimal(str(risk_amount)) / (Decimal(str(stop_loss_points)) * vpp)

        # Same snapshot for sizing and snapping
        volume = self.normalizer.volume_for(meta, float(raw))
        logger.info(
            "RISK_VOLUME_CALCULATED",
            symbol=symbol,
            stop_loss_points=stop_loss_points,
            risk_amount=risk_amount,
            value_per_point=float(vpp),
            raw_volume=float(raw),
            volume=volume,
        )
        return volume

    async def calculate(self, request: RiskRequest) -> float:
        return await self.calculate_volume(request.symbol, request.stop_loss_points, request.risk_amount)
