"""
Duplex Channel Dispatcher
=========================

Multiplexes one connection into many logical message streams.

Tagged (text) frames route by their ``kind`` field. Binary frames carry no
tag: they route to the binary receiver registered under the channel's
*expected binary kind*, a single mutable slot that protocols set before
the paired binary frame arrives and restore when they are done.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from .protocol import MessageError, TaggedMessage, decode_tagged, encode_tagged
from .transport import Connection, Frame, ReadyState

logger = logging.getLogger(__name__)

TaggedHandler = Callable[['Channel', dict[str, Any]], Awaitable[None]]
BinaryHandler = Callable[['Channel', bytes], Awaitable[None]]


class ChannelError(Exception):
    """Base class for channel failures."""


class ConnectionUnavailable(ChannelError):
    """Raised when the connection is closing or closed and cannot open."""


class UnknownKindError(ChannelError):
    """Raised when an inbound frame has no registered handler."""

    def __init__(self, kind: Optional[str], binary: bool = False):
        self.kind = kind
        self.binary = binary
        if binary and kind is None:
            msg = "Binary frame received with no expected binary kind set"
        elif binary:
            msg = f"No binary receiver for expected kind {kind!r}"
        else:
            msg = f"No tagged receiver for kind {kind!r}"
        super().__init__(msg)


class UnexpectedMessageError(ChannelError):
    """Raised when a protocol message arrives in a phase that does not accept it."""


class ChannelClosed(ChannelError):
    """Raised when the connection closes while a reply is still awaited."""


class TransportError(ChannelError):
    """Raised when the underlying connection fails while receiving."""


class Channel:
    """Message router bound to one open connection.

    Build with :meth:`create`, which waits for the connection to open and
    starts the receive loop. Handlers are coroutines awaited one at a time
    in arrival order.

    Args:
        connection: An object implementing :class:`~sockplex.transport.Connection`.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self._tagged_receivers: dict[str, TaggedHandler] = {}
        self._binary_receivers: dict[str, BinaryHandler] = {}
        self._binary_kind: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    async def create(cls, connection: Connection) -> 'Channel':
        """Wait for ``connection`` to open, then wrap it and start routing.

        Raises:
            ConnectionUnavailable: If the connection is closing or closed.
        """
        logger.debug("Establishing channel")
        state = connection.state
        if state == ReadyState.CONNECTING:
            await connection.wait_open()
            state = connection.state
        if state != ReadyState.OPEN:
            raise ConnectionUnavailable(f"Connection is {state.value}")

        channel = cls(connection)
        channel.start()
        return channel

    def start(self):
        """Start the receive loop on the running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._recv_loop())

    # ---- Sending -------------------------------------------------------------

    async def send_tagged(self, message: Union[TaggedMessage, dict[str, Any]]):
        """Send a tagged message as JSON text. No acknowledgement is awaited."""
        await self.connection.send_str(encode_tagged(message))

    async def send_binary(self, payload: bytes):
        """Send raw bytes as a binary frame."""
        await self.connection.send_bytes(payload)

    # ---- Registration --------------------------------------------------------

    def add_tagged_receiver(self, kind: str, handler: TaggedHandler):
        """Route tagged messages of ``kind`` to ``handler`` (replacing any previous)."""
        self._tagged_receivers[kind] = handler

    def add_binary_receiver(self, kind: str, handler: BinaryHandler):
        """Register ``handler`` for binary frames received while ``kind`` is expected."""
        self._binary_receivers[kind] = handler

    def expect_binary_kind(self, kind: Optional[str]):
        """Set the kind of upcoming binary frames. ``None`` clears it."""
        self._binary_kind = kind

    def get_binary_kind(self) -> Optional[str]:
        return self._binary_kind

    @contextmanager
    def expecting(self, kind: str) -> Iterator[Optional[str]]:
        """Install ``kind`` as the expected binary kind for the block.

        Yields the previous kind and restores it on exit.
        """
        previous = self._binary_kind
        self._binary_kind = kind
        try:
            yield previous
        finally:
            self._binary_kind = previous

    # ---- Receiving -----------------------------------------------------------

    async def dispatch(self, frame: Frame):
        """Route a single inbound frame to its handler.

        Raises:
            UnknownKindError: If no handler matches.
        """
        if isinstance(frame, str):
            message = decode_tagged(frame)
            kind = message["kind"]
            handler = self._tagged_receivers.get(kind)
            if handler is None:
                raise UnknownKindError(kind)
            await handler(self, message)
        else:
            kind = self._binary_kind
            handler = self._binary_receivers.get(kind) if kind is not None else None
            if handler is None:
                raise UnknownKindError(kind, binary=True)
            await handler(self, bytes(frame))

    async def _recv_loop(self):
        """Receive and dispatch frames until the connection closes."""
        try:
            while True:
                try:
                    frame = await self.connection.receive()
                except ConnectionError as e:
                    raise TransportError(str(e)) from e
                if frame is None:
                    break
                await self.dispatch(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Dispatch error: {e}")
            await self.connection.close()
            raise
        logger.debug("Connection closed")

    async def wait_for(self, future: 'asyncio.Future[Any]', timeout: Optional[float] = None) -> Any:
        """Await a protocol reply while watching the receive loop.

        Args:
            future:  Resolved by a handler when the reply arrives.
            timeout: Seconds to wait; ``None`` waits indefinitely.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
            ChannelClosed: If the connection closes first.
            ChannelError: The receive loop's own failure, if it failed first.
        """
        watched: set[asyncio.Future] = {future}
        if self._task is not None:
            watched.add(self._task)
        done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

        if future in done:
            return future.result()
        if self._task is not None and self._task in done:
            if not self._task.cancelled() and self._task.exception() is not None:
                raise self._task.exception()
            raise ChannelClosed("Connection closed while awaiting a reply")
        raise asyncio.TimeoutError(f"No reply within {timeout}s")

    @property
    def closed(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait_closed(self):
        """Wait for the receive loop to end, re-raising its failure if any."""
        if self._task is not None:
            await self._task

    async def close(self):
        """Close the connection and wait for the receive loop to finish."""
        await self.connection.close()
        if self._task is not None:
            try:
                await self._task
            except (ChannelError, MessageError) as e:
                logger.debug(f"Channel ended with: {e}")
