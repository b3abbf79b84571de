"""
Batch close/cancel over open positions and pending orders.

A batch is best-effort: each matching record is closed independently and a
failure on one does not stop the others. Only a failure to read the open
records at all aborts the batch.
"""
import asyncio
from typing import List, Optional, Sequence, Union

from mt5_client.data.instrument_catalog import InstrumentCatalog
from mt5_client.domain.models import (
    BatchFailure,
    BatchResult,
    OrderSide,
    PendingOrderRecord,
    PositionRecord,
    RecordKind,
)
from mt5_client.exceptions import TerminalClientError
from mt5_client.execution.order_gateway import OrderGateway
from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)

OpenRecord = Union[PositionRecord, PendingOrderRecord]


def matches(record: OpenRecord, symbol: Optional[str], side: Optional[OrderSide], kind: Optional[RecordKind]) -> bool:
    """Filter predicate; None means any. Symbols compare case-insensitively."""
    if symbol is not None and record.symbol.upper() != symbol.upper():
        return False
    if side is not None and record.side != side:
        return False
    if kind is not None and record.kind != kind:
        return False
    return True


class PositionBatchOperator:
    """Closes every open position/pending order matching a filter."""

    def __init__(self, catalog: InstrumentCatalog, gateway: OrderGateway, timeout: Optional[float] = None):
        self.catalog = catalog
        self.gateway = gateway
        self.timeout = timeout

    async def list_positions(self, symbol: Optional[str] = None, side: Optional[OrderSide] = None) -> List[PositionRecord]:
        positions, _ = await self.catalog.opened_orders()
        return [p for p in positions if matches(p, symbol, side, None)]

    async def list_pending_orders(
        self, symbol: Optional[str] = None, side: Optional[OrderSide] = None
    ) -> List[PendingOrderRecord]:
        _, pending = await self.catalog.opened_orders()
        return [o for o in pending if matches(o, symbol, side, None)]

    async def close_matching(
        self,
        symbol: Optional[str] = None,
        side: Optional[OrderSide] = None,
        kind: Optional[RecordKind] = None,
    ) -> BatchResult:
        """
        Close positions and cancel pending orders matching the filter.

        Returns:
            BatchResult with matched/succeeded counts and per-ticket failures

        Raises:
            TerminalClientError: The open records could not be read
        """
        positions, pending = await self.catalog.opened_orders()
        records: Sequence[OpenRecord] = [r for r in (*positions, *pending) if matches(r, symbol, side, kind)]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout else None

        result = BatchResult(matched=len(records))
        for record in records:
            if deadline is not None and loop.time() >= deadline:
                result.failures.append(BatchFailure(ticket=record.ticket, symbol=record.symbol, error="batch deadline exceeded"))
                continue
            try:
                if record.kind == RecordKind.POSITION:
                    await self.gateway.close(record.ticket)
                else:
                    await self.gateway.cancel(record.ticket)
            except TerminalClientError as e:
                result.failures.append(BatchFailure(ticket=record.ticket, symbol=record.symbol, error=str(e)))
                logger.warning(
                    "BATCH_ITEM_FAILED",
                    ticket=record.ticket,
                    symbol=record.symbol,
                    kind=record.kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            result.succeeded += 1

        logger.info(
            "BATCH_CLOSE_COMPLETE",
            symbol=symbol,
            side=side.value if side else None,
            kind=kind.value if kind else None,
            matched=result.matched,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def close_all_positions(self, symbol: Optional[str] = None, side: Optional[OrderSide] = None) -> BatchResult:
        return await self.close_matching(symbol, side, RecordKind.POSITION)

    async def cancel_all_pending(self, symbol: Optional[str] = None, side: Optional[OrderSide] = None) -> BatchResult:
        return await self.close_matching(symbol, side, RecordKind.PENDING_ORDER)
