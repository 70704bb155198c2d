"""
WebSocket Probe Server
======================

aiohttp application that accepts WebSocket clients at ``/speedtest`` and
serves time sync and speed test sessions on each connection.
"""

import logging

from aiohttp import web

from .channel import Channel, ChannelError
from .protocol import MessageError, TimeFunction
from .speedtest import SpeedtestServer
from .timesync import TimesyncServer
from .transport import WebSocketConnection

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
SPEEDTEST_PATH = "/speedtest"

TIME_FN_KEY = web.AppKey("time_fn", object)


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    """Upgrade to a WebSocket and serve both protocols until it closes."""
    if request.headers.get("Upgrade", "").lower() != "websocket":
        return web.Response(
            status=400,
            text=f'please use websocket protocol only! ("ws://{request.host}{SPEEDTEST_PATH}")',
        )

    ws = web.WebSocketResponse(max_msg_size=0)
    # The response is prepared inside Channel.create via the connection adapter
    channel = await Channel.create(WebSocketConnection(ws, request))
    time_fn = request.app[TIME_FN_KEY]
    TimesyncServer(channel, time_fn)
    SpeedtestServer(channel, time_fn)
    logger.info(f"[ws:speedtest] client connected: {request.remote}")

    try:
        await channel.wait_closed()
    except (ChannelError, MessageError, ConnectionError) as e:
        logger.error(f"[ws:speedtest] session aborted: {e}")
    logger.info(f"[ws:speedtest] client disconnected: {request.remote}")
    return ws


def create_app(time_fn: TimeFunction = "perf") -> web.Application:
    """Build the server application.

    Args:
        time_fn: Server clock shared by every connection.
    """
    app = web.Application()
    app[TIME_FN_KEY] = time_fn
    app.router.add_get(SPEEDTEST_PATH, websocket_handler)
    return app


def run_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, time_fn: TimeFunction = "perf"):
    """Run the server until interrupted."""
    logger.info(f"WebSocket is running on ws://{host}:{port}{SPEEDTEST_PATH}")
    web.run_app(create_app(time_fn), host=host, port=port, print=None)
