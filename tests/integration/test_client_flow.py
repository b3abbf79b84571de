"""
End-to-end flow through TerminalClient against the in-memory terminal:
connect, stream, trade, survive a dropped session, batch close, shut down.
"""
import asyncio

import pytest

from mt5_client import OrderSide, SessionStatus, TerminalClient
from mt5_client.domain.models import OrderKind
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import TerminalConnectionError
from mt5_client.utils.retry import BackoffPolicy

from tests.fakes import FakeTransport, unavailable


@pytest.mark.asyncio
async def test_trading_session_lifecycle(endpoint, credentials):
    transport = FakeTransport()
    ticks = []
    first_tick = asyncio.Event()

    def on_tick(event):
        ticks.append(event.payload)
        first_tick.set()

    async with TerminalClient(transport, call_timeout=0.5, backoff=BackoffPolicy.immediate()) as client:
        await client.connect(endpoint, credentials)
        assert await client.is_alive()

        account = await client.account_summary()
        assert account.currency == "USD"

        await client.on_symbol_tick(["EURUSD"], on_tick)
        transport.streams[0].push({"symbol": "EURUSD", "bid": 1.1, "ask": 1.1001})
        await asyncio.wait_for(first_tick.wait(), 1.0)

        volume = await client.calculate_volume("EURUSD", 50, 20)
        ticket = await client.submit("EURUSD", OrderSide.BUY, volume, stop_loss=1.0951234)
        transport.add_position(ticket, "EURUSD", 0, volume=volume)

        # Terminal restarts: the next call sees an unknown instance and the
        # client reconnects on its own
        transport.instance_id = "instance-restarted"
        await client.modify(ticket, take_profit=1.1123456)
        assert client.status == SessionStatus.CONNECTED
        assert client.manager.session.generation == 2
        assert transport.calls_to(TerminalMethod.ORDER_MODIFY)[-1][1]["take_profit"] == 1.11235

        limit_ticket = await client.submit("EURUSD", OrderSide.SELL, 0.1, kind=OrderKind.LIMIT, price=1.105)
        transport.add_pending(limit_ticket, "EURUSD", 3, price=1.105)

        result = await client.close_matching(symbol="eurusd")
        assert result.matched == 2
        assert result.complete
        assert await client.positions() == []
        assert await client.pending_orders() == []

    assert client.status == SessionStatus.DISCONNECTED
    assert client.subscriptions() == []
    assert transport.closed
    assert transport.streams_open_at_close == []
    assert ticks == [{"symbol": "EURUSD", "bid": 1.1, "ask": 1.1001}]


@pytest.mark.asyncio
async def test_outage_then_recovery(endpoint, credentials):
    transport = FakeTransport()
    client = TerminalClient(transport, call_timeout=0.5, reconnect_attempts=2, backoff=BackoffPolicy.immediate())
    await client.connect(endpoint, credentials)

    transport.fail(TerminalMethod.ACCOUNT_SUMMARY, unavailable())
    transport.open_errors.extend([unavailable(), unavailable()])

    with pytest.raises(TerminalConnectionError):
        await client.account_summary()
    assert client.status == SessionStatus.FAILED
    assert await client.is_alive() is False

    await client.connect(endpoint, credentials)
    assert (await client.account_summary()).login == 62333850

    await client.close()
    assert client.status == SessionStatus.DISCONNECTED
