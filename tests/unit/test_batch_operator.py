"""
Tests for batch close/cancel.
"""
import pytest

from mt5_client.domain.models import OrderSide, RecordKind
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import ProtocolError


def _closed_tickets(transport):
    return [c[1]["ticket"] for c in transport.calls_to(TerminalMethod.ORDER_CLOSE)]


class TestListing:

    @pytest.mark.asyncio
    async def test_positions_and_pending_split(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_position(1002, "GBPUSD", 1)
        transport.add_pending(2001, "EURUSD", 3, price=1.12)

        positions = await connected.positions()
        pending = await connected.pending_orders()

        assert [p.ticket for p in positions] == [1001, 1002]
        assert positions[1].side == OrderSide.SELL
        assert [o.ticket for o in pending] == [2001]
        assert pending[0].kind == RecordKind.PENDING_ORDER
        assert pending[0].price == 1.12

    @pytest.mark.asyncio
    async def test_listing_filters(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_position(1002, "EURUSD", 1)
        transport.add_position(1003, "GBPUSD", 0)

        assert [p.ticket for p in await connected.positions(symbol="eurusd")] == [1001, 1002]
        assert [p.ticket for p in await connected.positions(side=OrderSide.BUY)] == [1001, 1003]

    @pytest.mark.asyncio
    async def test_malformed_records_skipped(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.positions.append({"ticket": 1002, "symbol": "EURUSD"})
        assert [p.ticket for p in await connected.positions()] == [1001]


class TestCloseMatching:

    @pytest.mark.asyncio
    async def test_partial_failure_continues(self, connected, transport):
        for ticket in (1001, 1002, 1003):
            transport.add_position(ticket, "EURUSD", 0)
        transport.close_failures[1002] = 10006

        result = await connected.close_matching(symbol="EURUSD")

        assert result.matched == 3
        assert result.succeeded == 2
        assert [f.ticket for f in result.failures] == [1002]
        assert "10006" in result.failures[0].error
        assert not result.complete
        assert _closed_tickets(transport) == [1001, 1002, 1003]

    @pytest.mark.asyncio
    async def test_symbol_match_is_case_insensitive(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_position(1002, "GBPUSD", 0)

        result = await connected.close_matching(symbol="eurusd")

        assert result.matched == 1
        assert _closed_tickets(transport) == [1001]

    @pytest.mark.asyncio
    async def test_side_filter(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_position(1002, "EURUSD", 1)

        result = await connected.close_matching(side=OrderSide.SELL)

        assert result.complete
        assert _closed_tickets(transport) == [1002]

    @pytest.mark.asyncio
    async def test_pending_orders_are_cancelled(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_pending(2001, "EURUSD", 2)

        result = await connected.close_matching(kind=RecordKind.PENDING_ORDER)

        assert result.matched == 1
        calls = transport.calls_to(TerminalMethod.ORDER_CLOSE)
        assert calls[0][1] == {"ticket": 2001, "volume": 0.0, "slippage": 0}

    @pytest.mark.asyncio
    async def test_no_filter_closes_everything(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_pending(2001, "GBPUSD", 5)

        result = await connected.close_matching()

        assert result.matched == 2
        assert result.succeeded == 2
        assert transport.positions == []
        assert transport.pending_orders == []

    @pytest.mark.asyncio
    async def test_nothing_matched(self, connected):
        result = await connected.close_matching(symbol="XAUUSD")
        assert result.matched == 0
        assert result.complete

    @pytest.mark.asyncio
    async def test_listing_failure_aborts(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.fail(TerminalMethod.OPENED_ORDERS, {"data": None, "error": {"code": "INTERNAL", "message": "db"}})

        with pytest.raises(ProtocolError):
            await connected.close_matching()

        assert transport.calls_to(TerminalMethod.ORDER_CLOSE) == []

    @pytest.mark.asyncio
    async def test_convenience_wrappers(self, connected, transport):
        transport.add_position(1001, "EURUSD", 0)
        transport.add_pending(2001, "EURUSD", 2)

        positions = await connected.batch.close_all_positions()
        pending = await connected.batch.cancel_all_pending()

        assert positions.matched == 1
        assert pending.matched == 1

    @pytest.mark.asyncio
    async def test_deadline_bounds_the_batch(self, connected, transport):
        for ticket in (1001, 1002, 1003):
            transport.add_position(ticket, "EURUSD", 0)
        transport.call_delay[TerminalMethod.ORDER_CLOSE] = 0.06
        connected.batch.timeout = 0.05

        result = await connected.close_matching()

        assert result.matched == 3
        assert result.succeeded == 1
        assert result.failed == 2
        assert all(f.error == "batch deadline exceeded" for f in result.failures)
