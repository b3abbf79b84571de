"""
Connection lifecycle for one terminal session.

ConnectionManager owns the Session, the StreamRegistry and the transport.
All session transitions happen under one asyncio.Lock. Reconnection is
single-flight: whoever first observes a broken session starts the reconnect
task, everyone else awaits that same task.
"""
import asyncio
from typing import Optional, Tuple

from mt5_client.connection.session import Session
from mt5_client.connection.streams import StreamRegistry
from mt5_client.domain.models import Credentials, Endpoint, SessionStatus
from mt5_client.domain.protocols import TerminalMethod, TerminalTransport, envelope_error
from mt5_client.exceptions import (
    AuthenticationError,
    CallTimeoutError,
    NotConnectedError,
    ProtocolError,
    TerminalConnectionError,
)
from mt5_client.monitoring.logger import get_logger
from mt5_client.utils.retry import BackoffPolicy

logger = get_logger(__name__)


class ConnectionManager:
    """
    Opens, repairs and closes the terminal session.

    Args:
        transport: Channel to the terminal gateway
        connect_timeout: Deadline for one login attempt (seconds)
        disconnect_timeout: Bound on remote teardown and transport close
        health_check_timeout: Deadline for ``is_alive``
        reconnect_attempts: Login attempts per reconnect before FAILED
        backoff: Delay policy between reconnect attempts
        stream_reopen_attempts: Reconnect-and-reopen tries for a failing stream
    """

    def __init__(
        self,
        transport: TerminalTransport,
        *,
        connect_timeout: float = 30.0,
        disconnect_timeout: float = 5.0,
        health_check_timeout: float = 3.0,
        reconnect_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        stream_reopen_attempts: int = 1,
    ):
        self.transport = transport
        self.session = Session()
        self.streams = StreamRegistry(self, reopen_attempts=stream_reopen_attempts)
        self.connect_timeout = connect_timeout
        self.disconnect_timeout = disconnect_timeout
        self.health_check_timeout = health_check_timeout
        self.reconnect_attempts = reconnect_attempts
        self.backoff = backoff or BackoffPolicy()
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected

    async def connect(self, endpoint: Endpoint, credentials: Credentials, timeout: Optional[float] = None) -> str:
        """
        Log in to the terminal.

        Returns:
            Terminal instance id

        Raises:
            TerminalConnectionError: Unreachable, rejected or timed out
                (AuthenticationError for a rejected login)
        """
        if timeout is None:
            timeout = self.connect_timeout
        await self._stop_reconnect()

        async with self._lock:
            self.session.begin_connect(endpoint, credentials)
            logger.info("CONNECTING", endpoint=endpoint.address, user=credentials.user, timeout=timeout)
            try:
                instance_id = await self._open_session(endpoint, credentials, timeout)
            except TerminalConnectionError as e:
                self.session.mark_failed(e)
                logger.error("CONNECT_FAILED", endpoint=endpoint.address, error=str(e), error_type=type(e).__name__)
                raise
            self.session.mark_connected(instance_id)

        logger.info("CONNECTED", endpoint=endpoint.address, instance_id=instance_id, generation=self.session.generation)
        return instance_id

    async def disconnect(self) -> None:
        """
        Mark the session DISCONNECTED, cancel all subscriptions, then tear
        the remote session down within ``disconnect_timeout``.

        New calls and subscriptions fail with NotConnectedError from the
        moment this starts. Teardown errors are logged, never raised.
        """
        await self._stop_reconnect()

        async with self._lock:
            instance_id = self.session.instance_id
            self.session.mark_disconnected()

        cancelled = await self.streams.cancel_all()

        if instance_id is not None:
            async with self._lock:
                try:
                    await asyncio.wait_for(
                        self.transport.close_session(instance_id, self.disconnect_timeout),
                        self.disconnect_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning("DISCONNECT_TIMEOUT", instance_id=instance_id, timeout=self.disconnect_timeout)
                except Exception as e:
                    logger.warning("DISCONNECT_TEARDOWN_FAILED", instance_id=instance_id, error=str(e))

        logger.info("DISCONNECTED", instance_id=instance_id, cancelled_streams=cancelled)

    async def close(self) -> None:
        """Disconnect if needed, then release the transport. Never raises."""
        if self.session.status != SessionStatus.DISCONNECTED or len(self.streams):
            await self.disconnect()
        try:
            await asyncio.wait_for(self.transport.aclose(), self.disconnect_timeout)
        except asyncio.TimeoutError:
            logger.warning("TRANSPORT_CLOSE_TIMEOUT", timeout=self.disconnect_timeout)
        except Exception as e:
            logger.warning("TRANSPORT_CLOSE_FAILED", error=str(e))

    async def is_alive(self, timeout: Optional[float] = None) -> bool:
        """Lightweight round trip to the terminal. Never raises."""
        if not self.session.is_connected:
            return False
        if timeout is None:
            timeout = self.health_check_timeout
        try:
            envelope = await asyncio.wait_for(
                self.transport.call(
                    TerminalMethod.CHECK_CONNECT, {}, instance_id=self.session.instance_id, timeout=timeout
                ),
                timeout,
            )
            if envelope_error(envelope):
                return False
            data = envelope.get("data") or {}
            return bool(data.get("is_alive", True))
        except Exception as e:
            logger.debug("HEALTH_CHECK_FAILED", error=str(e), error_type=type(e).__name__)
            return False

    async def ensure_session(self) -> Tuple[str, int]:
        """
        Current (instance_id, generation), waiting for an in-flight reconnect.

        Raises:
            NotConnectedError: Never connected, disconnected or FAILED
        """
        task = self._reconnect_task
        if task is not None and not task.done():
            await asyncio.wait({task})
        session = self.session
        if not session.is_connected:
            if session.status == SessionStatus.FAILED:
                raise NotConnectedError(f"Session failed ({session.last_error}). Call connect() again.")
            raise NotConnectedError()
        return session.instance_id, session.generation

    async def reconnect(self, observed_generation: Optional[int] = None, error: Optional[BaseException] = None) -> int:
        """
        Re-open the session after a transport failure.

        Callers pass the generation they saw fail; if the session has moved
        on since, nothing is done. Concurrent callers share one attempt.

        Returns:
            Session generation after the reconnect

        Raises:
            TerminalConnectionError: Attempts exhausted (session is FAILED)
            NotConnectedError: No session to repair
        """
        async with self._lock:
            session = self.session
            if (
                observed_generation is not None
                and session.is_connected
                and session.generation != observed_generation
            ):
                return session.generation

            task = self._reconnect_task
            if task is None or task.done():
                if session.status == SessionStatus.CONNECTED:
                    session.begin_reconnect(error)
                elif session.status != SessionStatus.RECONNECTING:
                    raise NotConnectedError(f"Cannot reconnect from {session.status.value}. Call connect() first.")
                logger.warning("RECONNECTING", generation=session.generation, error=str(error) if error else None)
                task = asyncio.create_task(self._run_reconnect(), name="mt5-reconnect")
                self._reconnect_task = task

        await asyncio.wait({task})
        if task.cancelled():
            raise NotConnectedError("Session closed while reconnecting")
        task.result()
        return self.session.generation

    async def _run_reconnect(self) -> None:
        endpoint, credentials = self.session.endpoint, self.session.credentials
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.reconnect_attempts + 1):
            if attempt > 1:
                await self.backoff.sleep(attempt - 1, op="reconnect")
            try:
                instance_id = await self._open_session(endpoint, credentials, self.connect_timeout)
            except AuthenticationError as e:
                last_error = e
                logger.error("RECONNECT_REJECTED", endpoint=endpoint.address, error=str(e))
                break
            except TerminalConnectionError as e:
                last_error = e
                logger.warning(
                    "RECONNECT_ATTEMPT_FAILED",
                    attempt=attempt,
                    max_attempts=self.reconnect_attempts,
                    error=str(e),
                )
                continue

            async with self._lock:
                self.session.mark_connected(instance_id)
            logger.info("RECONNECTED", instance_id=instance_id, generation=self.session.generation, attempt=attempt)
            return

        failure = TerminalConnectionError(f"Reconnect to {endpoint.address} failed: {last_error}")
        async with self._lock:
            self.session.mark_failed(failure)
        logger.error("RECONNECT_FAILED", endpoint=endpoint.address, attempts=self.reconnect_attempts, error=str(last_error))
        raise failure from last_error

    async def _stop_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._reconnect_task = None

    async def _open_session(self, endpoint: Endpoint, credentials: Credentials, timeout: float) -> str:
        try:
            instance_id = await asyncio.wait_for(
                self.transport.open_session(endpoint, credentials, timeout), timeout
            )
        except asyncio.TimeoutError:
            raise CallTimeoutError(f"Connect to {endpoint.address} timed out after {timeout}s") from None
        except TerminalConnectionError:
            raise
        except ProtocolError as e:
            raise AuthenticationError(e.code, e.message) from e
        except OSError as e:
            raise TerminalConnectionError(f"Cannot reach {endpoint.address}: {e}") from e

        if not instance_id:
            raise TerminalConnectionError(f"Terminal at {endpoint.address} returned no instance id")
        return str(instance_id)
