"""Integration tests: probe client against the aiohttp server application."""

import aiohttp
import pytest
from aiohttp.test_utils import TestServer

from sockplex.__main__ import build_tests, parse_args
from sockplex.channel import Channel
from sockplex.client import ProbeClient
from sockplex.server import SPEEDTEST_PATH, create_app


def ws_url(server: TestServer) -> str:
    return str(server.make_url(SPEEDTEST_PATH).with_scheme("ws"))


@pytest.mark.integration
class TestProbeAgainstServer:
    """Round trips over a real WebSocket on localhost."""

    async def test_timesync(self) -> None:
        async with TestServer(create_app()) as server:
            async with ProbeClient(ws_url(server)) as client:
                samples = await client.run_timesync(5, timeout=5.0)
                stats = await client.timesync_stats(6, discard=2, timeout=5.0)

        assert len(samples) == 5
        assert all(s.return_trip_time >= 0 for s in samples)
        assert stats.return_trip_time.value >= 0

    async def test_speedtest(self) -> None:
        async with TestServer(create_app()) as server:
            async with ProbeClient(ws_url(server), timesync_rounds=4, timesync_discard=1) as client:
                results = await client.run_speedtest(
                    [("down", 64 * 1024), ("up", 64 * 1024), ("down", 4)], timeout=5.0
                )
                assert client.channel.get_binary_kind() is None

        assert [(r.mode, r.size) for r in results] == [("down", 65536), ("up", 65536), ("down", 8)]

    async def test_large_payload_exceeds_default_frame_limit(self) -> None:
        size = 5 * 1024 ** 2
        async with TestServer(create_app()) as server:
            async with ProbeClient(ws_url(server), timesync_rounds=2, timesync_discard=0) as client:
                results = await client.run_speedtest([("down", size), ("up", size)], timeout=30.0)

        assert [r.size for r in results] == [size, size]

    async def test_connect_failure_returns_false(self) -> None:
        async with TestServer(create_app()) as server:
            url = str(server.make_url("/nowhere").with_scheme("ws"))
            client = ProbeClient(url)
            assert await client.connect() is False
            assert not client.connected

    async def test_plain_http_is_refused(self) -> None:
        async with TestServer(create_app()) as server:
            async with aiohttp.ClientSession() as session:
                async with session.get(server.make_url(SPEEDTEST_PATH)) as resp:
                    assert resp.status == 400
                    assert "websocket" in await resp.text()


@pytest.mark.unit
class TestCommandLine:
    """Tests for CLI argument handling."""

    def test_probe_defaults(self) -> None:
        args = parse_args(["probe"])
        assert args.url.endswith(SPEEDTEST_PATH)
        assert args.rounds == 20
        assert args.discard == 5
        assert args.timeout is None

    def test_serve_options(self) -> None:
        args = parse_args(["--clock", "date", "serve", "--port", "9001"])
        assert args.command == "serve"
        assert args.port == 9001
        assert args.clock == "date"

    def test_build_tests_interleaves_directions(self) -> None:
        assert build_tests(10, 20, 2) == [("down", 10), ("up", 20), ("down", 10), ("up", 20)]

    def test_build_tests_skips_zero_sizes(self) -> None:
        assert build_tests(0, 20, 1) == [("up", 20)]


@pytest.mark.unit
class TestClientCleanup:
    """Tests for ProbeClient releasing its HTTP session."""

    async def test_close_after_transport_failure(self, stub_connection) -> None:
        client = ProbeClient("ws://localhost:1/speedtest")
        session = aiohttp.ClientSession()
        client._session = session
        client.channel = await Channel.create(stub_connection(fail_with=ConnectionError("boom")))

        await client.close()

        assert session.closed
        assert client.channel is None
        assert not client.connected

    async def test_session_closed_when_channel_close_fails(self) -> None:
        class BrokenChannel:
            async def close(self):
                raise RuntimeError("close failed")

        client = ProbeClient("ws://localhost:1/speedtest")
        session = aiohttp.ClientSession()
        client._session = session
        client.channel = BrokenChannel()

        with pytest.raises(RuntimeError):
            await client.close()
        assert session.closed
        assert client.channel is None
