"""
Terminal session state.

State Machine:
    DISCONNECTED → CONNECTING   (connect)
    CONNECTING   → CONNECTED    (login accepted)
    CONNECTING   → FAILED       (unreachable / rejected / timed out)
    CONNECTED    → RECONNECTING (transport failure observed)
    CONNECTED    → CONNECTING   (explicit connect with new parameters)
    RECONNECTING → CONNECTED    (session re-opened)
    RECONNECTING → FAILED       (reconnect attempts exhausted)
    RECONNECTING → CONNECTING   (explicit connect supersedes the reconnect)
    FAILED       → CONNECTING   (explicit connect)
    any          → DISCONNECTED (disconnect)

FAILED is terminal until the caller connects again. Only ConnectionManager
mutates a Session, and only under its lock.
"""
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from mt5_client.domain.models import Credentials, Endpoint, SessionStatus
from mt5_client.exceptions import InvalidSessionTransition
from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)

S = SessionStatus

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    S.DISCONNECTED: frozenset({S.CONNECTING, S.DISCONNECTED}),
    S.CONNECTING: frozenset({S.CONNECTED, S.FAILED, S.DISCONNECTED}),
    S.CONNECTED: frozenset({S.RECONNECTING, S.CONNECTING, S.DISCONNECTED}),
    S.RECONNECTING: frozenset({S.CONNECTED, S.FAILED, S.CONNECTING, S.DISCONNECTED}),
    S.FAILED: frozenset({S.CONNECTING, S.DISCONNECTED}),
}


class Session:
    """
    Endpoint, credentials and lifecycle status of one terminal login.

    ``generation`` increases on every successful (re)connect so callers can
    tell whether a failure they observed has already been repaired.
    """

    def __init__(self):
        self.endpoint: Optional[Endpoint] = None
        self.credentials: Optional[Credentials] = None
        self.status = SessionStatus.DISCONNECTED
        self.instance_id: Optional[str] = None
        self.generation = 0
        self.last_error: Optional[BaseException] = None
        self.changed_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return (
            f"Session(status={self.status.value}, endpoint={self.endpoint}, "
            f"instance_id={self.instance_id}, generation={self.generation})"
        )

    @property
    def is_connected(self) -> bool:
        return self.status == SessionStatus.CONNECTED and self.instance_id is not None

    def _transition(self, target: SessionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidSessionTransition(self.status, target)
        previous = self.status
        self.status = target
        self.changed_at = datetime.now(timezone.utc)
        if previous != target:
            logger.debug("SESSION_TRANSITION", previous=previous.value, status=target.value, generation=self.generation)

    # ---- named transitions ----

    def begin_connect(self, endpoint: Endpoint, credentials: Credentials) -> None:
        self._transition(SessionStatus.CONNECTING)
        self.endpoint = endpoint
        self.credentials = credentials
        self.instance_id = None
        self.last_error = None

    def mark_connected(self, instance_id: str) -> None:
        self._transition(SessionStatus.CONNECTED)
        self.instance_id = instance_id
        self.generation += 1
        self.last_error = None

    def begin_reconnect(self, error: Optional[BaseException] = None) -> None:
        self._transition(SessionStatus.RECONNECTING)
        self.instance_id = None
        if error is not None:
            self.last_error = error

    def mark_failed(self, error: BaseException) -> None:
        self._transition(SessionStatus.FAILED)
        self.instance_id = None
        self.last_error = error

    def mark_disconnected(self) -> None:
        self._transition(SessionStatus.DISCONNECTED)
        self.instance_id = None
        # Reconnecting after an explicit disconnect is not allowed
        self.credentials = None
