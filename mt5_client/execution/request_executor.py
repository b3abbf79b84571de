"""
Per-call retry wrapper around the terminal transport.

Every unary terminal call goes through RequestExecutor.execute/call:

- uniform call timeout unless the caller overrides it
- transient failures (transport unavailable, timeouts, terminal instance
  lost) reconnect through ConnectionManager and retry, bounded by
  ``max_attempts`` with backoff
- error envelopes become ProtocolError and are never retried
- timed-out trade calls are not retried: the terminal may already have
  executed them
"""
import asyncio
from typing import Any, Dict, Optional

from mt5_client.connection.manager import ConnectionManager
from mt5_client.domain.models import CallResult
from mt5_client.domain.protocols import NON_IDEMPOTENT_METHODS, TerminalMethod, envelope_error
from mt5_client.exceptions import (
    CallTimeoutError,
    ProtocolError,
    TerminalClientError,
    TerminalConnectionError,
)
from mt5_client.monitoring.logger import get_logger
from mt5_client.utils.retry import BackoffPolicy

logger = get_logger(__name__)

# Terminal codes meaning the instance behind the session is gone
INSTANCE_LOST_CODES = frozenset({
    "TERMINAL_INSTANCE_NOT_FOUND",
    "TERMINAL_REGISTRY_TERMINAL_NOT_FOUND",
})


class RequestExecutor:
    """Executes terminal calls with reconnect-and-retry on transient failure."""

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        call_timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.manager = manager
        self.call_timeout = call_timeout
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()

    async def execute(
        self,
        method: TerminalMethod,
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        idempotent: Optional[bool] = None,
    ) -> CallResult:
        """Run one call; the outcome carries either data or the final error."""
        try:
            data = await self.call(method, payload, timeout=timeout, idempotent=idempotent)
        except TerminalClientError as e:
            return CallResult(error=e)
        return CallResult(data=data)

    async def call(
        self,
        method: TerminalMethod,
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        idempotent: Optional[bool] = None,
    ) -> Any:
        """
        Run one call and return its data payload.

        Raises:
            ProtocolError: Terminal answered with an error envelope
            TerminalConnectionError: Still failing after max_attempts
            CallTimeoutError: Non-idempotent call timed out
            NotConnectedError: No session
        """
        if timeout is None:
            timeout = self.call_timeout
        if idempotent is None:
            idempotent = method not in NON_IDEMPOTENT_METHODS
        payload = payload or {}
        last_error: Optional[TerminalConnectionError] = None

        for attempt in range(1, self.max_attempts + 1):
            instance_id, generation = await self.manager.ensure_session()
            try:
                envelope = await self._send(method, payload, instance_id, timeout)
            except CallTimeoutError as e:
                if not idempotent:
                    logger.error("CALL_TIMEOUT_NOT_RETRIED", method=method.value, timeout=timeout)
                    raise
                last_error = e
            except TerminalConnectionError as e:
                if isinstance(e, ProtocolError):
                    raise
                last_error = e
            else:
                error = envelope_error(envelope)
                if error is None:
                    return envelope.get("data")
                code = error.get("code")
                message = error.get("message", "")
                if code not in INSTANCE_LOST_CODES:
                    logger.warning("CALL_PROTOCOL_ERROR", method=method.value, code=code, message=message)
                    raise ProtocolError(code, message)
                last_error = TerminalConnectionError(f"Terminal instance lost [{code}]: {message}")

            if attempt >= self.max_attempts:
                break
            logger.warning(
                "CALL_RETRY",
                method=method.value,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=str(last_error),
            )
            await self.manager.reconnect(generation, error=last_error)
            await self.backoff.sleep(attempt, method=method.value)

        logger.error("CALL_FAILED", method=method.value, attempts=self.max_attempts, error=str(last_error))
        raise TerminalConnectionError(
            f"{method.value} failed after {self.max_attempts} attempt(s): {last_error}"
        ) from last_error

    async def _send(self, method: TerminalMethod, payload: Dict[str, Any], instance_id: str, timeout: float) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.manager.transport.call(method, payload, instance_id=instance_id, timeout=timeout),
                timeout,
            )
        except asyncio.TimeoutError:
            raise CallTimeoutError(f"{method.value} timed out after {timeout}s") from None
        except OSError as e:
            raise TerminalConnectionError(f"{method.value} transport failure: {e}") from e
