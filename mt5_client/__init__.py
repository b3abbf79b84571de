"""Resilient asyncio client core for a remote MetaTrader 5 terminal gateway."""
from mt5_client.client import TerminalClient
from mt5_client.domain.models import (
    Credentials,
    Endpoint,
    OrderKind,
    OrderSide,
    RecordKind,
    SessionStatus,
)
from mt5_client.domain.protocols import TerminalMethod, TerminalTransport

__version__ = "0.1.0"

__all__ = [
    "TerminalClient",
    "TerminalTransport",
    "TerminalMethod",
    "Endpoint",
    "Credentials",
    "OrderSide",
    "OrderKind",
    "RecordKind",
    "SessionStatus",
]
