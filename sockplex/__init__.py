"""
sockplex
========

Multiplexed message dispatch over one duplex WebSocket connection, with
time synchronization and speed test protocols built on top.

Modules:
    stats      - Mean and standard deviation helpers
    protocol   - Tagged message and binary payload encoding
    transport  - aiohttp WebSocket and loopback connection adapters
    channel    - Message dispatcher/router
    timesync   - Four-timestamp clock offset estimation
    speedtest  - Skew-corrected directional throughput
    client     - WebSocket probe client orchestration
    server     - aiohttp WebSocket server application
"""

from .stats import UncertainValue, compute_mean
from .protocol import MessageError, TaggedMessage, current_time_ms, perf_time_ms
from .transport import Connection, LoopbackConnection, ReadyState, WebSocketConnection
from .channel import (
    Channel,
    ChannelClosed,
    ChannelError,
    ConnectionUnavailable,
    UnexpectedMessageError,
    TransportError,
    UnknownKindError,
)
from .timesync import (
    ClockOffsets,
    RoundSample,
    TimesyncClient,
    TimesyncServer,
    TimesyncStats,
    summarize_timesync,
)
from .speedtest import (
    SpeedtestClient,
    SpeedtestServer,
    SpeedtestStats,
    SpeedTestResult,
    summarize_speedtest,
)
from .client import ProbeClient
from .server import create_app

__all__ = [
    "UncertainValue",
    "compute_mean",
    "MessageError",
    "TaggedMessage",
    "current_time_ms",
    "perf_time_ms",
    "Connection",
    "LoopbackConnection",
    "ReadyState",
    "WebSocketConnection",
    "Channel",
    "ChannelClosed",
    "ChannelError",
    "ConnectionUnavailable",
    "UnexpectedMessageError",
    "TransportError",
    "UnknownKindError",
    "ClockOffsets",
    "RoundSample",
    "TimesyncClient",
    "TimesyncServer",
    "TimesyncStats",
    "summarize_timesync",
    "SpeedtestClient",
    "SpeedtestServer",
    "SpeedtestStats",
    "SpeedTestResult",
    "summarize_speedtest",
    "ProbeClient",
    "create_app",
]
