"""
Custom exception hierarchy for the terminal client.

Provides clear, specific exceptions for the different failure modes of a
remote terminal session so that callers can decide between retrying,
skipping and giving up.

Hierarchy:

    TerminalClientError (base)
    ├── OperationalError: transient/retryable (network, timeouts)
    │   └── TerminalConnectionError
    │       ├── CallTimeoutError
    │       └── AuthenticationError   (also a ProtocolError)
    ├── ProtocolError(code, message): terminal answered with an error envelope
    ├── NotConnectedError: no session; call connect() first
    ├── DataError: bad input or business rejection
    │   ├── ValidationError
    │   └── OrderRejected(code, description)
    └── InvalidSessionTransition: session state machine misuse

Rules:
    - OperationalError: retried inside RequestExecutor with backoff and a
      reconnect; surfaces to the caller only after attempts are exhausted.
    - ProtocolError: never retried; the broker code is kept on the error.
    - DataError: raised before or instead of a remote side effect; caller fixes
      its input or inspects the rejection code.
    - Teardown errors during disconnect are logged and swallowed.
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""


class TerminalClientError(Exception):
    """Base exception for all terminal client errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TerminalClientError):
    """Transient/retryable error: network, terminal instance lost, timeouts.

    Treatment: reconnect, retry with backoff.
    """
    pass


class TerminalConnectionError(OperationalError):
    """The terminal could not be reached or the session was lost."""
    pass


class CallTimeoutError(TerminalConnectionError):
    """No reply arrived within the call deadline."""
    pass


# ============ PROTOCOL (terminal error envelope) ============

class ProtocolError(TerminalClientError):
    """The terminal replied with a non-success envelope.

    Treatment: never retried. ``code`` carries the terminal error code.
    """

    def __init__(self, code: str | int | None, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}" if code is not None else message)


class AuthenticationError(TerminalConnectionError, ProtocolError):
    """Login rejected by the terminal.

    Counts as a connection failure for ``connect()`` but is a protocol answer,
    so it is never retried.
    """

    def __init__(self, code: str | int | None = "AUTH_FAILED", message: str = "authentication rejected"):
        ProtocolError.__init__(self, code, message)


class NotConnectedError(TerminalClientError):
    """Operation attempted without an established session."""

    def __init__(self, message: str = "Not connected. Call connect() first."):
        super().__init__(message)


# ============ DATA (bad input, business rejection) ============

class DataError(TerminalClientError):
    """Bad input or a rejected business request.

    Treatment: no retry; log and report to the caller.
    """
    pass


class ValidationError(DataError):
    """Caller input failed validation. No remote call was made."""
    pass


class OrderRejected(DataError):
    """The terminal processed a trade request but did not execute it."""

    def __init__(self, code: int | None, description: str = ""):
        self.code = code
        self.description = description
        super().__init__(f"Order rejected [{code}]: {description}")


# ============ INTERNAL ============

class InvalidSessionTransition(TerminalClientError):
    """A session status change outside the allowed transition table."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")


def is_transient(error: BaseException) -> bool:
    """True when ``error`` should trigger a reconnect and a retry."""
    if isinstance(error, ProtocolError):
        return False
    return isinstance(error, (OperationalError, OSError))
