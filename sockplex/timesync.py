"""
Time Synchronization
====================

Four-timestamp clock offset estimation between a client and a server
sharing a :class:`~sockplex.channel.Channel`.

    C="client", S="server", real time increases along the arrows

    ┌─ct0            ┌─st0
    C───────────────►S
                     │
                     ▼
    C◄───────────────S
    └─ct1            └─st1

Each round fills a 4 x float64 buffer ``[ct0, st0, st1, ct1]`` and yields:

    server_uplink_offset_time   = st0 - ct0
    server_downlink_offset_time = ct1 - st1
    server_process_time         = st1 - st0
    return_trip_time            = (ct1 - ct0) - server_process_time

Offset convention:
    server_receive_time = client_send_time + server_uplink_offset_time
    server_send_time    = client_receive_time - server_downlink_offset_time

Neither offset equals a one-way latency unless both clocks share an epoch.
The two are kept apart because one round trip cannot assume symmetric
latency.

Session:
    client -> server   tagged  {"kind": "timesync_init", "amount": N}
    server -> client   tagged  {"kind": "timesync_init_ready"}
    N sequential rounds of the binary "timesync_round" buffer
    client -> server   tagged  {"kind": "timesync_end"}

Rounds are never pipelined: the channel's single expected binary kind
cannot tell overlapping rounds apart.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Sequence

from .channel import Channel, UnexpectedMessageError
from .protocol import TaggedMessage, TimeFunction, pack_round, parse_time_fn, unpack_round
from .stats import UncertainValue, compute_mean, format_uncertain

logger = logging.getLogger(__name__)


# =================
# CONSTANTS
# =================

TIMESYNC_INIT = "timesync_init"
TIMESYNC_READY = "timesync_init_ready"
TIMESYNC_END = "timesync_end"
TIMESYNC_ROUND = "timesync_round"

# Above this many rounds network adapters tend to throttle the exchange
LARGE_ROUND_COUNT = 50


# =================
# MESSAGES
# =================

@dataclass(frozen=True)
class TimesyncInit(TaggedMessage):
    kind: ClassVar[str] = TIMESYNC_INIT
    amount: int


@dataclass(frozen=True)
class TimesyncReady(TaggedMessage):
    kind: ClassVar[str] = TIMESYNC_READY


@dataclass(frozen=True)
class TimesyncEnd(TaggedMessage):
    kind: ClassVar[str] = TIMESYNC_END


# =================
# RESULTS
# =================

@dataclass(frozen=True)
class RoundSample:
    """Quantities derived from one ``(ct0, st0, st1, ct1)`` round."""

    server_uplink_offset_time: float
    server_downlink_offset_time: float
    server_process_time: float
    return_trip_time: float

    @classmethod
    def from_timestamps(cls, ct0: float, st0: float, st1: float, ct1: float) -> 'RoundSample':
        server_process_time = st1 - st0
        return cls(
            server_uplink_offset_time=st0 - ct0,
            server_downlink_offset_time=ct1 - st1,
            server_process_time=server_process_time,
            return_trip_time=(ct1 - ct0) - server_process_time,
        )


@dataclass(frozen=True)
class ClockOffsets:
    """Translate client clock readings into the server's clock frame."""

    uplink: float
    downlink: float

    def server_receive_time(self, client_send_time: float) -> float:
        """Server time at which a tiny message sent at ``client_send_time`` arrives."""
        return client_send_time + self.uplink

    def server_send_time(self, client_receive_time: float) -> float:
        """Server time at which a tiny message received at ``client_receive_time`` left."""
        return client_receive_time - self.downlink


@dataclass(frozen=True)
class TimesyncStats:
    server_uplink_offset_time: UncertainValue
    server_downlink_offset_time: UncertainValue
    server_process_time: UncertainValue
    return_trip_time: UncertainValue

    @property
    def offsets(self) -> ClockOffsets:
        return ClockOffsets(
            uplink=self.server_uplink_offset_time.value,
            downlink=self.server_downlink_offset_time.value,
        )

    def format(self) -> dict[str, str]:
        return {
            "serverUplinkOffsetTime": format_uncertain(self.server_uplink_offset_time, "ms"),
            "serverDownlinkOffsetTime": format_uncertain(self.server_downlink_offset_time, "ms"),
            "serverProcessTime": format_uncertain(self.server_process_time, "ms"),
            "returnTripTime": format_uncertain(self.return_trip_time, "ms"),
        }


def summarize_timesync(samples: Sequence[RoundSample], discard: int = 0) -> TimesyncStats:
    """Reduce round samples to mean ± stdev, skipping ``discard`` warm-up rounds.

    Early rounds are usually slower while the route warms up; dropping
    the first 20-30% gives steadier offsets.
    """
    if discard < 0:
        raise ValueError(f"discard must be >= 0, got {discard}")
    kept = list(samples)[discard:]
    if not kept:
        raise ValueError(f"No samples left after discarding {discard} of {len(samples)}")
    return TimesyncStats(
        server_uplink_offset_time=compute_mean(s.server_uplink_offset_time for s in kept),
        server_downlink_offset_time=compute_mean(s.server_downlink_offset_time for s in kept),
        server_process_time=compute_mean(s.server_process_time for s in kept),
        return_trip_time=compute_mean(s.return_trip_time for s in kept),
    )


# =================
# SERVER
# =================

class TimesyncServer:
    """Answers time sync rounds on ``channel``.

    Args:
        channel: Channel to register receivers on.
        time_fn: Server clock (see :func:`~sockplex.protocol.parse_time_fn`).
    """

    def __init__(self, channel: Channel, time_fn: TimeFunction = "perf"):
        self.channel = channel
        self._get_time = parse_time_fn(time_fn)
        self._active = False
        self._saved_kind: Optional[str] = None

        channel.add_tagged_receiver(TIMESYNC_INIT, self._on_init)
        channel.add_tagged_receiver(TIMESYNC_END, self._on_end)
        channel.add_binary_receiver(TIMESYNC_ROUND, self._on_round)

    async def _on_init(self, channel: Channel, message: dict):
        if self._active:
            raise UnexpectedMessageError("Time sync init received during an active session")
        init = TimesyncInit.from_dict(message)
        self._saved_kind = channel.get_binary_kind()
        self._active = True
        channel.expect_binary_kind(TIMESYNC_ROUND)
        logger.info(f"Begin time synchronization with a client for {init.amount} rounds")
        await channel.send_tagged(TimesyncReady())

    async def _on_round(self, channel: Channel, data: bytes):
        st0 = self._get_time()
        ct0 = unpack_round(data)[0]
        st1 = self._get_time()
        await channel.send_binary(pack_round(ct0, st0, st1))

    async def _on_end(self, channel: Channel, message: dict):
        if not self._active:
            raise UnexpectedMessageError("Time sync end received without a session")
        channel.expect_binary_kind(self._saved_kind)
        self._active = False
        logger.info("Time synchronization finished")


# =================
# CLIENT
# =================

class Phase(Enum):
    AWAITING_READY = "awaiting-ready"
    AWAITING_ROUND_REPLY = "awaiting-round-reply"
    COMPLETED = "completed"


@dataclass
class _Session:
    amount: int
    done: asyncio.Future
    phase: Phase = Phase.AWAITING_READY
    samples: list[RoundSample] = field(default_factory=list)


class TimesyncClient:
    """Runs time sync sessions against a :class:`TimesyncServer`.

    Each :meth:`run` is a small state machine driven by the channel's
    receivers: AWAITING_READY -> AWAITING_ROUND_REPLY (x N) -> COMPLETED.

    Args:
        channel: Channel to register receivers on.
        time_fn: Client clock (see :func:`~sockplex.protocol.parse_time_fn`).
    """

    def __init__(self, channel: Channel, time_fn: TimeFunction = "perf"):
        self.channel = channel
        self._get_time = parse_time_fn(time_fn)
        self._session: Optional[_Session] = None

        channel.add_tagged_receiver(TIMESYNC_READY, self._on_ready)
        channel.add_binary_receiver(TIMESYNC_ROUND, self._on_round_reply)

    @property
    def phase(self) -> Optional[Phase]:
        return self._session.phase if self._session else None

    async def run(self, amount: int, timeout: Optional[float] = None) -> list[RoundSample]:
        """Perform ``amount`` rounds and return their samples in order.

        Warm-up rounds are not discarded here; see :func:`summarize_timesync`.

        Args:
            amount:  Number of rounds, at least 1. 10-20 is usually plenty.
            timeout: Seconds to wait for the whole exchange; ``None`` never
                     times out. On timeout the channel's binary kind is
                     restored but the server's session is left dangling.
        """
        if amount < 1:
            raise ValueError(f"amount must be >= 1, got {amount}")
        if self._session is not None:
            raise RuntimeError("A time sync session is already running on this channel")
        if amount > LARGE_ROUND_COUNT:
            logger.warning(f"{amount} rounds may trigger network throttling")

        session = _Session(amount=amount, done=asyncio.get_running_loop().create_future())
        self._session = session
        try:
            with self.channel.expecting(TIMESYNC_ROUND):
                await self.channel.send_tagged(TimesyncInit(amount=amount))
                await self.channel.wait_for(session.done, timeout)
                await self.channel.send_tagged(TimesyncEnd())
        finally:
            self._session = None
            if not session.done.done():
                session.done.cancel()

        logger.info(f"Time synchronization complete ({amount} rounds)")
        return session.samples

    async def stats(self, amount: int, discard: int = 0, timeout: Optional[float] = None) -> TimesyncStats:
        """Run ``amount`` rounds and summarize all but the first ``discard``."""
        return summarize_timesync(await self.run(amount, timeout), discard)

    def _expect(self, phase: Phase, what: str) -> _Session:
        session = self._session
        if session is None or session.phase != phase:
            current = session.phase.value if session else "idle"
            raise UnexpectedMessageError(f"Time sync {what} received while {current}")
        return session

    async def _send_round(self):
        ct0 = self._get_time()
        await self.channel.send_binary(pack_round(ct0))

    async def _on_ready(self, channel: Channel, message: dict):
        session = self._expect(Phase.AWAITING_READY, "ready")
        session.phase = Phase.AWAITING_ROUND_REPLY
        await self._send_round()

    async def _on_round_reply(self, channel: Channel, data: bytes):
        ct1 = self._get_time()
        session = self._expect(Phase.AWAITING_ROUND_REPLY, "round reply")
        ct0, st0, st1, _ = unpack_round(data)
        sample = RoundSample.from_timestamps(ct0, st0, st1, ct1)
        session.samples.append(sample)
        logger.debug(
            f"Round {len(session.samples)}/{session.amount}: "
            f"up={sample.server_uplink_offset_time:.3f}ms "
            f"down={sample.server_downlink_offset_time:.3f}ms "
            f"rtt={sample.return_trip_time:.3f}ms"
        )

        if len(session.samples) < session.amount:
            await self._send_round()
        else:
            session.phase = Phase.COMPLETED
            session.done.set_result(session.samples)
