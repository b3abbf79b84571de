"""
Pytest configuration and shared fixtures.
"""
import pytest
import pytest_asyncio

from mt5_client.client import TerminalClient
from mt5_client.domain.models import Credentials, Endpoint
from mt5_client.utils.retry import BackoffPolicy

from tests.fakes import FakeTransport


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint(host="mt5.example.test", port=443, base_chart_symbol="EURUSD")


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(user=62333850, password="s3cret")


@pytest.fixture
def client(transport) -> TerminalClient:
    """Client with no backoff delays and short timeouts."""
    return TerminalClient(
        transport,
        connect_timeout=1.0,
        call_timeout=0.5,
        disconnect_timeout=0.2,
        health_check_timeout=0.2,
        backoff=BackoffPolicy.immediate(),
    )


@pytest_asyncio.fixture
async def connected(client, endpoint, credentials) -> TerminalClient:
    await client.connect(endpoint, credentials)
    yield client
    await client.close()
