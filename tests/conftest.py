"""pytest configuration and fixtures for sockplex tests.

Provides:
- FakeClock: settable clock for deterministic time functions
- scripted_clock: time function replaying a fixed list of readings
- loopback_pair / channel_pair: connected in-process endpoints
- StubConnection: connection pinned to one state, optionally failing on receive
- Markers for unit vs integration tests
"""

from collections.abc import AsyncGenerator, Callable, Iterable
from typing import Optional

import pytest

from sockplex.channel import Channel
from sockplex.transport import LoopbackConnection, ReadyState


class FakeClock:
    """Clock that only moves when told to.

    ``shifted(c)`` returns a time function reading this clock plus ``c``,
    modelling a peer whose clock runs at a constant offset.
    """

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def shifted(self, offset: float) -> Callable[[], float]:
        return lambda: self.now + offset


def scripted_clock(readings: Iterable[float]) -> Callable[[], float]:
    """Time function returning ``readings`` in order.

    Raises StopIteration if read more often than scripted, which surfaces
    as a dispatch error in the test.
    """
    return iter(readings).__next__


class StubConnection:
    """Connection pinned to ``state`` whose ``receive()`` optionally fails."""

    def __init__(self, state: ReadyState = ReadyState.OPEN, fail_with: Optional[Exception] = None) -> None:
        self.state = state
        self.fail_with = fail_with
        self.wait_open_calls = 0

    async def wait_open(self) -> None:
        self.wait_open_calls += 1

    async def send_str(self, data: str) -> None:
        pass

    async def send_bytes(self, data: bytes) -> None:
        pass

    async def receive(self) -> Optional[str]:
        if self.fail_with is not None:
            raise self.fail_with
        return None

    async def close(self) -> None:
        self.state = ReadyState.CLOSED


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test (runs an aiohttp server)")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def script() -> Callable[[Iterable[float]], Callable[[], float]]:
    return scripted_clock


@pytest.fixture
def loopback_pair() -> tuple[LoopbackConnection, LoopbackConnection]:
    """Two connected, open loopback ends: (server_end, client_end)."""
    return LoopbackConnection.pair()


@pytest.fixture
async def channel_pair(loopback_pair) -> AsyncGenerator[tuple[Channel, Channel], None]:
    """Running channels on both ends of a loopback: (server, client)."""
    server_end, client_end = loopback_pair
    server = await Channel.create(server_end)
    client = await Channel.create(client_end)
    yield server, client
    await client.close()
    await server.close()


@pytest.fixture
def stub_connection() -> type[StubConnection]:
    return StubConnection
