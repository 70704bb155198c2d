"""
Transport Adapters
==================

The connection interface consumed by :class:`~sockplex.channel.Channel`,
with two implementations:

    WebSocketConnection - aiohttp client or server WebSocket
    LoopbackConnection  - in-process pair, for tests and local probing

Frames are ``str`` (tagged/text) or ``bytes`` (binary). ``receive()``
returns ``None`` once the connection has closed.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol, Union

import aiohttp
from aiohttp import web

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class ReadyState(Enum):
    """Lifecycle of a connection."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection(Protocol):
    """Duplex, ordered, reliable frame transport."""

    @property
    def state(self) -> ReadyState: ...

    async def wait_open(self) -> None: ...
    async def send_str(self, data: str) -> None: ...
    async def send_bytes(self, data: bytes) -> None: ...
    async def receive(self) -> Optional[Frame]: ...
    async def close(self) -> None: ...


# ---- aiohttp -----------------------------------------------------------------

class WebSocketConnection:
    """Adapter over an aiohttp WebSocket.

    Client sockets from ``ClientSession.ws_connect`` are open on arrival.
    A server ``web.WebSocketResponse`` passed together with its request is
    CONNECTING until :meth:`wait_open` prepares it.

    Args:
        ws:      aiohttp client or server WebSocket.
        request: Upgrade request, when ``ws`` is an unprepared server response.
    """

    def __init__(
        self,
        ws: Union[aiohttp.ClientWebSocketResponse, web.WebSocketResponse],
        request: Optional[web.Request] = None,
    ):
        self.ws = ws
        self._request = request
        self._closing = False

    @property
    def state(self) -> ReadyState:
        if self.ws.closed:
            return ReadyState.CLOSED
        if self._closing:
            return ReadyState.CLOSING
        if self._request is not None and not self.ws.prepared:
            return ReadyState.CONNECTING
        return ReadyState.OPEN

    async def wait_open(self) -> None:
        if self._request is not None and not self.ws.prepared:
            await self.ws.prepare(self._request)
            logger.debug(f"WebSocket prepared for {self._request.remote}")

    async def send_str(self, data: str) -> None:
        await self.ws.send_str(data)

    async def send_bytes(self, data: bytes) -> None:
        await self.ws.send_bytes(data)

    async def receive(self) -> Optional[Frame]:
        while True:
            msg = await self.ws.receive()
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                return msg.data
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {self.ws.exception()}")
            # PING/PONG are answered by aiohttp itself

    async def close(self) -> None:
        self._closing = True
        if not self.ws.closed:
            await self.ws.close()


# ---- In-process loopback -----------------------------------------------------

class LoopbackConnection:
    """One end of an in-process connection pair.

    Frames sent on one end are received, in order, by the other. Build a
    pair with :meth:`pair`.
    """

    def __init__(self, state: ReadyState = ReadyState.OPEN):
        self._state = state
        self._inbox: asyncio.Queue[Optional[Frame]] = asyncio.Queue()
        self._opened = asyncio.Event()
        if state == ReadyState.OPEN:
            self._opened.set()
        self.peer: Optional['LoopbackConnection'] = None
        self.sent_frames = 0

    @classmethod
    def pair(cls, state: ReadyState = ReadyState.OPEN) -> tuple['LoopbackConnection', 'LoopbackConnection']:
        """Create two connected ends, both starting in ``state``."""
        a, b = cls(state), cls(state)
        a.peer, b.peer = b, a
        return a, b

    @property
    def state(self) -> ReadyState:
        return self._state

    def open(self):
        """Move both ends from CONNECTING to OPEN."""
        for end in (self, self.peer):
            if end is not None and end._state == ReadyState.CONNECTING:
                end._state = ReadyState.OPEN
                end._opened.set()

    async def wait_open(self) -> None:
        await self._opened.wait()

    async def send_str(self, data: str) -> None:
        self._deliver(data)

    async def send_bytes(self, data: bytes) -> None:
        self._deliver(bytes(data))

    def _deliver(self, frame: Frame):
        if self._state != ReadyState.OPEN or self.peer is None:
            raise ConnectionError(f"Cannot send on a {self._state.value} loopback")
        self.sent_frames += 1
        self.peer._inbox.put_nowait(frame)

    async def receive(self) -> Optional[Frame]:
        if self._state == ReadyState.CLOSED and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        for end in (self, self.peer):
            if end is not None and end._state != ReadyState.CLOSED:
                end._state = ReadyState.CLOSED
                # Unblock a pending open wait so callers observe CLOSED
                end._opened.set()
                end._inbox.put_nowait(None)
