"""
Speed Test
==========

Directional transfer time of payloads of caller-chosen sizes, corrected
for clock skew with offsets from a fresh time sync run.

Timing a large payload against a tiny reply on the client's own clock
measures two messages. Instead each sub-test stamps one end's clock into
the first 8 bytes of the payload and translates the other end's reading
into the same clock frame, giving the one-way time of that payload alone:

    down: time = (client_receive_time - downlink_offset) - server_send_time
    up:   time = server_receive_time - (client_send_time + uplink_offset)

Session:
    client -> server   tagged  {"kind": "speedtest_init", "tests": [[mode, size], ...]}
    server -> client   tagged  {"kind": "speedtest_init_ready"}
    per sub-test, in order:
      down: client -> server  tagged {"kind": "speedtest_next_down", "size": n}
            server -> client  binary "speedtest_downlink_data" (server time stamped)
      up:   client -> server  binary "speedtest_uplink_data" (client time stamped)
            server -> client  tagged {"kind": "speedtest_stat_up", ...}
    client -> server   tagged  {"kind": "speedtest_end"}

Payloads shorter than 8 bytes are padded to fit the timestamp.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Sequence

from .channel import Channel, UnexpectedMessageError
from .protocol import (
    TIMESTAMP_SIZE,
    MessageError,
    TaggedMessage,
    TimeFunction,
    alloc_payload,
    parse_time_fn,
    read_timestamp,
    write_timestamp,
)
from .stats import UncertainValue, compute_mean, format_uncertain
from .timesync import ClockOffsets, TimesyncClient, summarize_timesync

logger = logging.getLogger(__name__)


# =================
# CONSTANTS
# =================

SPEEDTEST_INIT = "speedtest_init"
SPEEDTEST_READY = "speedtest_init_ready"
SPEEDTEST_NEXT_DOWN = "speedtest_next_down"
SPEEDTEST_STAT_UP = "speedtest_stat_up"
SPEEDTEST_END = "speedtest_end"
SPEEDTEST_DOWNLINK = "speedtest_downlink_data"
SPEEDTEST_UPLINK = "speedtest_uplink_data"

DOWN = "down"
UP = "up"
MODES = (DOWN, UP)

DEFAULT_TIMESYNC_ROUNDS = 10
DEFAULT_TIMESYNC_DISCARD = 3
DEFAULT_TRANSFER_SIZE = 4 * 1024 ** 2


def validate_tests(tests: Sequence[Sequence]) -> list[tuple[str, int]]:
    """Check a sub-test list, returning it as ``[(mode, size), ...]``."""
    plan = []
    for entry in tests:
        try:
            mode, size = entry
        except (TypeError, ValueError) as e:
            raise ValueError(f"Sub-test must be a (mode, size) pair, got {entry!r}") from e
        if mode not in MODES:
            raise ValueError(f"Unknown speed test mode {mode!r}, expected one of {MODES}")
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ValueError(f"Sub-test size must be a non-negative int, got {size!r}")
        plan.append((mode, size))
    return plan


# =================
# MESSAGES
# =================

@dataclass(frozen=True)
class SpeedtestInit(TaggedMessage):
    kind: ClassVar[str] = SPEEDTEST_INIT
    tests: list


@dataclass(frozen=True)
class SpeedtestReady(TaggedMessage):
    kind: ClassVar[str] = SPEEDTEST_READY


@dataclass(frozen=True)
class SpeedtestNextDown(TaggedMessage):
    """Requests one downlink payload of ``size`` bytes from the server."""
    kind: ClassVar[str] = SPEEDTEST_NEXT_DOWN
    size: int


@dataclass(frozen=True)
class SpeedtestStatUp(TaggedMessage):
    """Server's receipt for one uplink payload."""
    kind: ClassVar[str] = SPEEDTEST_STAT_UP
    client_send_time: float
    server_receive_time: float
    size: int


@dataclass(frozen=True)
class SpeedtestEnd(TaggedMessage):
    kind: ClassVar[str] = SPEEDTEST_END


# =================
# RESULTS
# =================

@dataclass(frozen=True)
class SpeedTestResult:
    """One sub-test: direction, bytes transferred and one-way time (ms)."""

    mode: str
    size: int
    time: float

    @property
    def throughput(self) -> float:
        """Bytes per second, or NaN when ``time`` is not positive."""
        if self.time <= 0:
            return math.nan
        return self.size / self.time * 1000


@dataclass(frozen=True)
class SpeedtestStats:
    downlink_speed: Optional[UncertainValue]
    uplink_speed: Optional[UncertainValue]

    def format(self) -> dict[str, str]:
        # bytes/s -> Mbps
        scale = 8 / 1024 ** 2
        out = {}
        if self.downlink_speed is not None:
            out["downlinkSpeed"] = format_uncertain(self.downlink_speed, "Mbps", scale)
        if self.uplink_speed is not None:
            out["uplinkSpeed"] = format_uncertain(self.uplink_speed, "Mbps", scale)
        return out


def summarize_speedtest(results: Sequence[SpeedTestResult]) -> SpeedtestStats:
    """Mean ± stdev throughput per direction.

    Results with a non-positive time (clock skew larger than the transfer)
    carry no usable throughput and are skipped.
    """
    speeds: dict[str, list[float]] = {DOWN: [], UP: []}
    for result in results:
        if result.time <= 0:
            logger.warning(f"Skipping {result.mode} result of {result.size} bytes with time {result.time:.3f}ms")
            continue
        speeds[result.mode].append(result.throughput)
    return SpeedtestStats(
        downlink_speed=compute_mean(speeds[DOWN]) if speeds[DOWN] else None,
        uplink_speed=compute_mean(speeds[UP]) if speeds[UP] else None,
    )


# =================
# SERVER
# =================

class SpeedtestServer:
    """Serves downlink payloads and times uplink payloads on ``channel``.

    Each session keeps the plan announced in ``speedtest_init``; downlink
    requests and uplink payloads must follow it in order.

    Args:
        channel: Channel to register receivers on.
        time_fn: Server clock (see :func:`~sockplex.protocol.parse_time_fn`).
    """

    def __init__(self, channel: Channel, time_fn: TimeFunction = "perf"):
        self.channel = channel
        self._get_time = parse_time_fn(time_fn)
        self._active = False
        self._saved_kind: Optional[str] = None
        self._remaining: list[tuple[str, int]] = []

        channel.add_tagged_receiver(SPEEDTEST_INIT, self._on_init)
        channel.add_tagged_receiver(SPEEDTEST_NEXT_DOWN, self._on_next_down)
        channel.add_tagged_receiver(SPEEDTEST_END, self._on_end)
        channel.add_binary_receiver(SPEEDTEST_UPLINK, self._on_uplink)

    def _require_session(self, what: str):
        if not self._active:
            raise UnexpectedMessageError(f"Speed test {what} received without a session")

    def _next_planned(self, mode: str, what: str) -> int:
        """Consume the next planned sub-test, which must be in direction ``mode``."""
        if not self._remaining:
            raise UnexpectedMessageError(f"Speed test {what} received after the last planned sub-test")
        planned_mode, size = self._remaining.pop(0)
        if planned_mode != mode:
            raise UnexpectedMessageError(f"Speed test {what} received while the next sub-test is {planned_mode}")
        return size

    async def _on_init(self, channel: Channel, message: dict):
        if self._active:
            raise UnexpectedMessageError("Speed test init received during an active session")
        init = SpeedtestInit.from_dict(message)
        try:
            plan = validate_tests(init.tests)
        except ValueError as e:
            raise MessageError(str(e)) from e

        self._saved_kind = channel.get_binary_kind()
        self._active = True
        self._remaining = plan
        channel.expect_binary_kind(SPEEDTEST_UPLINK)
        total = sum(size for _, size in plan)
        logger.info(f"Begin speed test with a client: {len(plan)} sub-tests, {total / 1024 ** 2:.2f} MiB")
        await channel.send_tagged(SpeedtestReady())

    async def _on_next_down(self, channel: Channel, message: dict):
        self._require_session("downlink request")
        request = SpeedtestNextDown.from_dict(message)
        size = self._next_planned(DOWN, "downlink request")
        if type(request.size) is not int or request.size != size:
            raise MessageError(f"Downlink request for {request.size!r} bytes, planned {size}")
        payload = alloc_payload(size)
        write_timestamp(payload, self._get_time())
        await channel.send_binary(payload)

    async def _on_uplink(self, channel: Channel, data: bytes):
        server_receive_time = self._get_time()
        self._require_session("uplink payload")
        size = self._next_planned(UP, "uplink payload")
        if len(data) != max(size, TIMESTAMP_SIZE):
            raise MessageError(f"Uplink payload of {len(data)} bytes, planned {size}")
        client_send_time = read_timestamp(data)
        await channel.send_tagged(SpeedtestStatUp(
            client_send_time=client_send_time,
            server_receive_time=server_receive_time,
            size=len(data),
        ))

    async def _on_end(self, channel: Channel, message: dict):
        self._require_session("end")
        channel.expect_binary_kind(self._saved_kind)
        self._active = False
        self._remaining = []
        logger.info("Speed test finished")


# =================
# CLIENT
# =================

class Phase(Enum):
    SYNCING_CLOCKS = "syncing-clocks"
    AWAITING_READY = "awaiting-ready"
    AWAITING_DOWNLINK = "awaiting-downlink"
    AWAITING_UPLINK_STAT = "awaiting-uplink-stat"
    COMPLETED = "completed"


@dataclass
class _Session:
    plan: list[tuple[str, int]]
    done: asyncio.Future
    offsets: Optional[ClockOffsets] = None
    phase: Phase = Phase.SYNCING_CLOCKS
    results: list[SpeedTestResult] = field(default_factory=list)


class SpeedtestClient:
    """Runs speed tests against a :class:`SpeedtestServer`.

    Every :meth:`run` first calls ``timesync`` for fresh clock offsets, so
    the peer must also serve time sync on the same channel.

    Args:
        channel:          Channel to register receivers on.
        timesync:         Time sync client bound to the same channel.
        time_fn:          Client clock; must match the one ``timesync`` uses.
        timesync_rounds:  Rounds of time sync per run.
        timesync_discard: Leading warm-up rounds to drop.
    """

    def __init__(
        self,
        channel: Channel,
        timesync: TimesyncClient,
        time_fn: TimeFunction = "perf",
        timesync_rounds: int = DEFAULT_TIMESYNC_ROUNDS,
        timesync_discard: int = DEFAULT_TIMESYNC_DISCARD,
    ):
        if timesync.channel is not channel:
            raise ValueError("timesync client must be bound to the same channel")
        if not 0 <= timesync_discard < timesync_rounds:
            raise ValueError(
                f"timesync_discard ({timesync_discard}) must be in [0, {timesync_rounds})"
            )
        self.channel = channel
        self.timesync = timesync
        self.timesync_rounds = timesync_rounds
        self.timesync_discard = timesync_discard
        self._get_time = parse_time_fn(time_fn)
        self._session: Optional[_Session] = None

        channel.add_tagged_receiver(SPEEDTEST_READY, self._on_ready)
        channel.add_tagged_receiver(SPEEDTEST_STAT_UP, self._on_stat_up)
        channel.add_binary_receiver(SPEEDTEST_DOWNLINK, self._on_downlink)

    @property
    def phase(self) -> Optional[Phase]:
        return self._session.phase if self._session else None

    async def run(self, tests: Sequence[Sequence], timeout: Optional[float] = None) -> list[SpeedTestResult]:
        """Run sub-tests in order and return one result per sub-test.

        Args:
            tests:   ``[(mode, size), ...]`` with mode ``"down"`` or ``"up"``.
            timeout: Seconds allowed for the time sync and, separately, for
                     the transfers; ``None`` never times out.
        """
        plan = validate_tests(tests)
        if not plan:
            raise ValueError("Speed test needs at least one sub-test")
        if self._session is not None:
            raise RuntimeError("A speed test is already running on this channel")

        session = _Session(plan=plan, done=asyncio.get_running_loop().create_future())
        self._session = session
        try:
            samples = await self.timesync.run(self.timesync_rounds, timeout)
            session.offsets = summarize_timesync(samples, self.timesync_discard).offsets
            logger.debug(
                f"Clock offsets: up={session.offsets.uplink:.3f}ms down={session.offsets.downlink:.3f}ms"
            )

            session.phase = Phase.AWAITING_READY
            with self.channel.expecting(SPEEDTEST_DOWNLINK):
                await self.channel.send_tagged(SpeedtestInit(tests=[[mode, size] for mode, size in plan]))
                await self.channel.wait_for(session.done, timeout)
                await self.channel.send_tagged(SpeedtestEnd())
        finally:
            self._session = None
            if not session.done.done():
                session.done.cancel()

        logger.info(f"Speed test complete ({len(plan)} sub-tests)")
        return session.results

    async def stats(self, tests: Sequence[Sequence], timeout: Optional[float] = None) -> SpeedtestStats:
        """Run ``tests`` and summarize throughput per direction."""
        return summarize_speedtest(await self.run(tests, timeout))

    def _expect(self, phase: Phase, what: str) -> _Session:
        session = self._session
        if session is None or session.phase != phase:
            current = session.phase.value if session else "idle"
            raise UnexpectedMessageError(f"Speed test {what} received while {current}")
        return session

    async def _next(self, session: _Session):
        """Start the next sub-test, or complete the session."""
        if len(session.results) == len(session.plan):
            session.phase = Phase.COMPLETED
            session.done.set_result(session.results)
            return

        mode, size = session.plan[len(session.results)]
        if mode == DOWN:
            session.phase = Phase.AWAITING_DOWNLINK
            await self.channel.send_tagged(SpeedtestNextDown(size=size))
        else:
            session.phase = Phase.AWAITING_UPLINK_STAT
            payload = alloc_payload(size)
            write_timestamp(payload, self._get_time())
            await self.channel.send_binary(payload)

    def _record(self, session: _Session, result: SpeedTestResult):
        session.results.append(result)
        logger.debug(
            f"Sub-test {len(session.results)}/{len(session.plan)}: "
            f"{result.mode} {result.size}B in {result.time:.3f}ms"
        )

    async def _on_ready(self, channel: Channel, message: dict):
        session = self._expect(Phase.AWAITING_READY, "ready")
        await self._next(session)

    async def _on_downlink(self, channel: Channel, data: bytes):
        client_receive_time = self._get_time()
        session = self._expect(Phase.AWAITING_DOWNLINK, "downlink payload")
        server_send_time = read_timestamp(data)
        delta_time = session.offsets.server_send_time(client_receive_time) - server_send_time
        self._record(session, SpeedTestResult(mode=DOWN, size=len(data), time=delta_time))
        await self._next(session)

    async def _on_stat_up(self, channel: Channel, message: dict):
        session = self._expect(Phase.AWAITING_UPLINK_STAT, "uplink stat")
        stat = SpeedtestStatUp.from_dict(message)
        delta_time = stat.server_receive_time - session.offsets.server_receive_time(stat.client_send_time)
        self._record(session, SpeedTestResult(mode=UP, size=stat.size, time=delta_time))
        await self._next(session)
