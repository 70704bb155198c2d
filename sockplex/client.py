"""
WebSocket Probe Client
======================

Connects to a sockplex server over WebSocket, wraps the socket in a
Channel and runs time sync and speed test sessions against it.
"""

import logging
from typing import Optional, Sequence

import aiohttp

from .channel import Channel
from .protocol import TimeFunction
from .speedtest import (
    DEFAULT_TIMESYNC_DISCARD,
    DEFAULT_TIMESYNC_ROUNDS,
    SpeedtestClient,
    SpeedtestStats,
    SpeedTestResult,
    summarize_speedtest,
)
from .timesync import RoundSample, TimesyncClient, TimesyncStats, summarize_timesync
from .transport import WebSocketConnection

logger = logging.getLogger(__name__)


class ProbeClient:
    """WebSocket client for time sync and speed test probing.

    Args:
        url:              WebSocket URL of the server (e.g. ``ws://host:8000/speedtest``).
        time_fn:          Client clock used by both protocols.
        timesync_rounds:  Time sync rounds run before each speed test.
        timesync_discard: Warm-up rounds dropped from those.
    """

    def __init__(
        self,
        url: str,
        time_fn: TimeFunction = "perf",
        timesync_rounds: int = DEFAULT_TIMESYNC_ROUNDS,
        timesync_discard: int = DEFAULT_TIMESYNC_DISCARD,
    ):
        self.url = url
        self.time_fn = time_fn
        self.timesync_rounds = timesync_rounds
        self.timesync_discard = timesync_discard

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.channel: Optional[Channel] = None
        self.timesync: Optional[TimesyncClient] = None
        self.speedtest: Optional[SpeedtestClient] = None

    # ---- Properties ----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.channel is not None and not self.channel.closed

    # ---- Connection lifecycle ------------------------------------------------

    async def connect(self) -> bool:
        """Connect to the server and install the protocol clients.

        Returns:
            True if connection succeeded.
        """
        try:
            self._session = aiohttp.ClientSession()
            # Speed test payloads routinely exceed aiohttp's 4 MiB default
            self._ws = await self._session.ws_connect(self.url, heartbeat=25.0, max_msg_size=0)
            self.channel = await Channel.create(WebSocketConnection(self._ws))
        except Exception as e:
            logger.error(f"Connect failed: {e}")
            await self._cleanup()
            return False

        self.timesync = TimesyncClient(self.channel, self.time_fn)
        self.speedtest = SpeedtestClient(
            self.channel,
            self.timesync,
            self.time_fn,
            timesync_rounds=self.timesync_rounds,
            timesync_discard=self.timesync_discard,
        )
        logger.info(f"Connected: {self.url}")
        return True

    async def close(self):
        """Gracefully shut down the client."""
        logger.info("Closing...")
        await self._cleanup()

    async def __aenter__(self) -> 'ProbeClient':
        if not await self.connect():
            raise ConnectionError(f"Could not connect to {self.url}")
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # ---- Probing -------------------------------------------------------------

    def _require_connection(self):
        if not self.connected:
            raise ConnectionError("Probe client is not connected")

    async def run_timesync(self, amount: int, timeout: Optional[float] = None) -> list[RoundSample]:
        """Raw time sync samples, warm-up rounds included."""
        self._require_connection()
        return await self.timesync.run(amount, timeout)

    async def timesync_stats(self, amount: int, discard: int = 0,
                             timeout: Optional[float] = None) -> TimesyncStats:
        samples = await self.run_timesync(amount, timeout)
        return summarize_timesync(samples, discard)

    async def run_speedtest(self, tests: Sequence[Sequence],
                            timeout: Optional[float] = None) -> list[SpeedTestResult]:
        """Raw speed test results, one per ``(mode, size)`` sub-test."""
        self._require_connection()
        return await self.speedtest.run(tests, timeout)

    async def speedtest_stats(self, tests: Sequence[Sequence],
                              timeout: Optional[float] = None) -> SpeedtestStats:
        results = await self.run_speedtest(tests, timeout)
        return summarize_speedtest(results)

    # ---- Cleanup -------------------------------------------------------------

    async def _cleanup(self):
        """Close the channel and the HTTP session."""
        try:
            if self.channel is not None:
                await self.channel.close()
            elif self._ws is not None and not self._ws.closed:
                await self._ws.close()
        finally:
            if self._session is not None:
                await self._session.close()
            self.channel = None
            self._ws = None
            self._session = None
