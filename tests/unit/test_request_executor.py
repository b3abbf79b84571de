"""
Tests for RequestExecutor retry semantics.
"""
import asyncio

import pytest

from mt5_client.domain.models import CallResult
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import (
    CallTimeoutError,
    NotConnectedError,
    ProtocolError,
    TerminalConnectionError,
)

from tests.fakes import unavailable


def _error_envelope(code: str, message: str = "") -> dict:
    return {"data": None, "error": {"code": code, "message": message}}


class TestExecuteSuccess:

    @pytest.mark.asyncio
    async def test_returns_data(self, connected):
        data = await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)
        assert data["balance"] == 10000.0

    @pytest.mark.asyncio
    async def test_execute_wraps_data(self, connected):
        result = await connected.executor.execute(TerminalMethod.ACCOUNT_SUMMARY)
        assert isinstance(result, CallResult)
        assert result.ok
        assert result.error is None
        assert result.data["currency"] == "USD"

    @pytest.mark.asyncio
    async def test_execute_wraps_error(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, _error_envelope("INTERNAL", "boom"))
        result = await connected.executor.execute(TerminalMethod.ACCOUNT_SUMMARY)
        assert not result.ok
        assert result.data is None
        assert isinstance(result.error, ProtocolError)
        with pytest.raises(ProtocolError):
            result.unwrap()

    def test_call_result_rejects_data_and_error(self):
        with pytest.raises(ValueError):
            CallResult(data={"x": 1}, error=ProtocolError("X"))


class TestProtocolErrors:

    @pytest.mark.asyncio
    async def test_protocol_error_is_not_retried(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, _error_envelope("INVALID_PARAMS", "bad request"))

        with pytest.raises(ProtocolError) as exc_info:
            await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)

        assert exc_info.value.code == "INVALID_PARAMS"
        assert len(transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)) == 1
        assert transport.open_count == 1


class TestTransientErrors:

    @pytest.mark.asyncio
    async def test_unavailable_reconnects_and_retries(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, unavailable())

        data = await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)

        assert data["login"] == 62333850
        assert len(transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)) == 2
        assert transport.open_count == 2
        assert connected.manager.session.generation == 2

    @pytest.mark.asyncio
    async def test_instance_lost_code_reconnects(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, _error_envelope("TERMINAL_INSTANCE_NOT_FOUND"))

        await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)

        assert transport.open_count == 2
        calls = transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)
        assert [c[2] for c in calls] == ["instance-1", "instance-2"]

    @pytest.mark.asyncio
    async def test_os_error_is_transient(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, ConnectionResetError("reset by peer"))
        await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)
        assert len(transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)) == 2

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, unavailable(), unavailable(), unavailable(), unavailable())

        with pytest.raises(TerminalConnectionError):
            await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)

        assert len(transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)) == connected.executor.max_attempts

    @pytest.mark.asyncio
    async def test_idempotent_call_retried_on_timeout(self, connected, transport):
        transport.call_delay[TerminalMethod.ACCOUNT_SUMMARY] = 1.0

        with pytest.raises(TerminalConnectionError):
            await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY, timeout=0.02)

        assert len(transport.calls_to(TerminalMethod.ACCOUNT_SUMMARY)) == 3

    @pytest.mark.asyncio
    async def test_trade_call_not_retried_on_timeout(self, connected, transport):
        transport.call_delay[TerminalMethod.ORDER_SEND] = 1.0

        with pytest.raises(CallTimeoutError):
            await connected.executor.call(TerminalMethod.ORDER_SEND, {"symbol": "EURUSD"}, timeout=0.02)

        assert len(transport.calls_to(TerminalMethod.ORDER_SEND)) == 1

    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_replaced_by_default(self, connected, transport):
        transport.call_delay[TerminalMethod.ORDER_SEND] = 0.05

        with pytest.raises(CallTimeoutError):
            await connected.executor.call(TerminalMethod.ORDER_SEND, {"symbol": "EURUSD"}, timeout=0)

        assert transport.open_count == 1

    @pytest.mark.asyncio
    async def test_trade_call_retried_when_undelivered(self, connected, transport):
        transport.fail(TerminalMethod.ORDER_CLOSE, unavailable())
        await connected.executor.call(TerminalMethod.ORDER_CLOSE, {"ticket": 1, "volume": 0.0, "slippage": 10})
        assert len(transport.calls_to(TerminalMethod.ORDER_CLOSE)) == 2

    @pytest.mark.asyncio
    async def test_failed_reconnect_surfaces(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, unavailable())
        transport.open_errors.extend([unavailable()] * 3)

        with pytest.raises(TerminalConnectionError):
            await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)

        with pytest.raises(NotConnectedError):
            await connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY)


class TestConcurrentCalls:

    @pytest.mark.asyncio
    async def test_single_reconnect_for_concurrent_failures(self, connected, transport):
        transport.fail(TerminalMethod.ACCOUNT_SUMMARY, *[unavailable() for _ in range(10)])
        transport.open_delay = 0.05
        transport.call_delay[TerminalMethod.ACCOUNT_SUMMARY] = 0.01

        results = await asyncio.gather(
            *(connected.executor.call(TerminalMethod.ACCOUNT_SUMMARY) for _ in range(10))
        )

        assert len(results) == 10
        assert all(r["currency"] == "USD" for r in results)
        assert transport.open_count == 2
        assert connected.manager.session.generation == 2
