"""
Server-streaming subscriptions.

Every subscription gets its own delivery task, so events for one
subscription are handled strictly in arrival order while different
subscriptions run independently. The registry is keyed by subscription id;
``cancel_all()`` works on a snapshot so subscriptions may cancel themselves
(or each other) from inside a handler.
"""
from __future__ import annotations

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from mt5_client.domain.models import StreamEvent
from mt5_client.domain.protocols import TerminalMethod
from mt5_client.exceptions import NotConnectedError, TerminalConnectionError, is_transient
from mt5_client.monitoring.logger import get_logger

if TYPE_CHECKING:
    from mt5_client.connection.manager import ConnectionManager

logger = get_logger(__name__)

Handler = Callable[[StreamEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class StreamSpec:
    """Stream kind plus the symbols and parameters it is opened with."""
    method: TerminalMethod
    symbols: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def kind(self) -> str:
        return self.method.value

    def payload(self) -> Dict[str, Any]:
        payload = dict(self.params)
        if self.symbols:
            payload["symbols"] = list(self.symbols)
        return payload

    @classmethod
    def symbol_tick(cls, *symbols: str) -> "StreamSpec":
        if not symbols:
            raise ValueError("symbol_tick requires at least one symbol")
        return cls(TerminalMethod.ON_SYMBOL_TICK, tuple(symbols))

    @classmethod
    def trade(cls) -> "StreamSpec":
        return cls(TerminalMethod.ON_TRADE)

    @classmethod
    def position_profit(cls, timer_ms: int = 1000, ignore_empty: bool = True) -> "StreamSpec":
        return cls(
            TerminalMethod.ON_POSITION_PROFIT,
            params={"timer_period_milliseconds": timer_ms, "ignore_empty_data": ignore_empty},
        )

    @classmethod
    def positions_and_pending_tickets(cls, timer_ms: int = 1000) -> "StreamSpec":
        return cls(
            TerminalMethod.ON_POSITIONS_AND_PENDING_ORDERS_TICKETS,
            params={"timer_period_milliseconds": timer_ms},
        )

    @classmethod
    def trade_transaction(cls) -> "StreamSpec":
        return cls(TerminalMethod.ON_TRADE_TRANSACTION)


class StreamSubscription:
    """
    Handle for one live server stream.

    ``cancel()`` is idempotent. After it returns no further events are
    delivered, except possibly the one already being handled. A stream that
    ends or fails on its own also reports ``cancelled``.
    """

    def __init__(self, spec: StreamSpec, handler: Handler, registry: StreamRegistry):
        self.id = uuid.uuid4().hex
        self.spec = spec
        self.cancelled = False
        self.error: Optional[BaseException] = None
        self.delivered = 0
        self._handler = handler
        self._registry = registry
        self._stream: Optional[AsyncIterator[Dict[str, Any]]] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"StreamSubscription(id={self.id[:8]}, kind={self.spec.kind}, cancelled={self.cancelled})"

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        await self._close_stream()
        self._registry._release(self)
        logger.debug("STREAM_CANCELLED", subscription_id=self.id, kind=self.spec.kind)

    async def wait_closed(self) -> None:
        """Wait until the delivery task has finished."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("STREAM_CLOSE_FAILED", subscription_id=self.id, kind=self.spec.kind, error=str(e))

    async def _deliver(self, message: Dict[str, Any]) -> None:
        event = StreamEvent(subscription_id=self.id, kind=self.spec.kind, payload=message)
        try:
            result = self._handler(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "STREAM_HANDLER_ERROR",
                subscription_id=self.id,
                kind=self.spec.kind,
                error=str(e),
                error_type=type(e).__name__,
            )
        self.delivered += 1

    async def _run(self) -> None:
        reopens = 0
        try:
            while not self.cancelled:
                try:
                    async for message in self._stream:
                        if self.cancelled:
                            return
                        await self._deliver(message)
                    logger.info("STREAM_ENDED", subscription_id=self.id, kind=self.spec.kind, delivered=self.delivered)
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Only a stream that never produced anything is re-opened
                    if self.cancelled or self.delivered or not is_transient(e) or reopens >= self._registry.reopen_attempts:
                        self.error = e
                        logger.warning(
                            "STREAM_FAILED",
                            subscription_id=self.id,
                            kind=self.spec.kind,
                            delivered=self.delivered,
                            error=str(e),
                        )
                        return
                    reopens += 1
                    await self._close_stream()
                    try:
                        self._stream, self._generation = await self._registry._reopen(self.spec, self._generation, e)
                    except Exception as reopen_error:
                        self.error = reopen_error
                        logger.warning(
                            "STREAM_REOPEN_FAILED",
                            subscription_id=self.id,
                            kind=self.spec.kind,
                            error=str(reopen_error),
                        )
                        return
        finally:
            # A finished stream never delivers again
            self.cancelled = True
            await self._close_stream()
            self._registry._release(self)


class StreamRegistry:
    """Live subscriptions of one ConnectionManager, keyed by id."""

    def __init__(self, manager: ConnectionManager, reopen_attempts: int = 1):
        self._manager = manager
        self.reopen_attempts = reopen_attempts
        self._subscriptions: Dict[str, StreamSubscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def active(self) -> List[StreamSubscription]:
        return list(self._subscriptions.values())

    def get(self, subscription_id: str) -> Optional[StreamSubscription]:
        return self._subscriptions.get(subscription_id)

    async def subscribe(self, spec: StreamSpec, handler: Handler) -> StreamSubscription:
        """
        Open a server stream and start delivering its events to ``handler``.

        ``handler`` may be a plain function or a coroutine function; its
        exceptions are logged and do not stop the stream.

        Raises:
            NotConnectedError: No session
            TerminalConnectionError: Stream could not be opened, even after
                one reconnect
        """
        instance_id, generation = await self._manager.ensure_session()
        try:
            stream = self._open(spec, instance_id)
        except Exception as e:
            if not is_transient(e):
                raise
            logger.warning("STREAM_OPEN_FAILED", kind=spec.kind, error=str(e))
            try:
                stream, generation = await self._reopen(spec, generation, e)
            except TerminalConnectionError:
                raise
            except Exception as reopen_error:
                raise TerminalConnectionError(
                    f"Stream {spec.kind} failed and reconnection failed: {reopen_error}"
                ) from reopen_error

        if not self._manager.is_connected:
            # disconnect() started while the stream was being opened
            await self._discard(stream)
            raise NotConnectedError("Session closed while subscribing")

        subscription = StreamSubscription(spec, handler, registry=self)
        subscription._stream = stream
        subscription._generation = generation
        self._subscriptions[subscription.id] = subscription
        subscription._task = asyncio.create_task(
            subscription._run(), name=f"mt5-stream-{spec.kind}-{subscription.id[:8]}"
        )
        logger.info("STREAM_SUBSCRIBED", subscription_id=subscription.id, kind=spec.kind, symbols=list(spec.symbols))
        return subscription

    async def cancel(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        await subscription.cancel()
        return True

    async def cancel_all(self) -> int:
        """
        Cancel every live subscription. Never raises.

        Returns:
            Number of subscriptions cancelled
        """
        snapshot = [s for s in self._subscriptions.values() if not s.cancelled]
        self._subscriptions.clear()
        if not snapshot:
            return 0

        # Flag every subscription before the first await so no handler runs
        # for any of them once teardown has started
        for subscription in snapshot:
            subscription.cancelled = True
        results = await asyncio.gather(*(s._shutdown() for s in snapshot), return_exceptions=True)
        for subscription, result in zip(snapshot, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "STREAM_CANCEL_FAILED",
                    subscription_id=subscription.id,
                    kind=subscription.spec.kind,
                    error=str(result),
                )
        logger.info("STREAMS_CANCELLED", count=len(snapshot))
        return len(snapshot)

    def _open(self, spec: StreamSpec, instance_id: str) -> AsyncIterator[Dict[str, Any]]:
        return self._manager.transport.stream(spec.method, spec.payload(), instance_id=instance_id)

    async def _reopen(
        self, spec: StreamSpec, generation: int, error: BaseException
    ) -> Tuple[AsyncIterator[Dict[str, Any]], int]:
        await self._manager.reconnect(generation, error=error)
        instance_id, generation = await self._manager.ensure_session()
        return self._open(spec, instance_id), generation

    async def _discard(self, stream: AsyncIterator[Dict[str, Any]]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("STREAM_CLOSE_FAILED", error=str(e))

    def _release(self, subscription: StreamSubscription) -> None:
        self._subscriptions.pop(subscription.id, None)
