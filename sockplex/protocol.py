"""
Wire Protocol Helpers
=====================

Encoding shared by every feature multiplexed over a Channel.

TAGGED FRAMES (text):
  UTF-8 JSON object with a mandatory, non-empty string ``kind``.
  Remaining fields are protocol specific.

BINARY FRAMES:
  Raw bytes with no tag. Protocols that carry timestamps reserve the
  leading bytes for float64 values in native byte order:

    timestamp:     [0-7]   float64  time (ms)
    round buffer:  [0-7]   float64  ct0
                   [8-15]  float64  st0
                   [16-23] float64  st1
                   [24-31] float64  ct1

Both ends must use the same time scale (milliseconds) but not the same
epoch.
"""

import json
import struct
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, ClassVar, Mapping, Union


# =================
# CONSTANTS
# =================

TIMESTAMP_FORMAT = '=d'
TIMESTAMP_SIZE = 8

ROUND_BUFFER_FORMAT = '=4d'   # ct0, st0, st1, ct1
ROUND_BUFFER_SIZE = 32


class MessageError(ValueError):
    """Raised when a tagged frame or binary payload is malformed."""


# ===================
# TIME FUNCTIONS
# ===================

def current_time_ms() -> float:
    """Wall-clock time in milliseconds since the Unix epoch."""
    return time.time() * 1000


def perf_time_ms() -> float:
    """Monotonic high-resolution counter in milliseconds."""
    return time.perf_counter() * 1000


TimeFunction = Union[str, Callable[[], float]]
"""``"perf"``, ``"date"`` or a zero-argument callable returning milliseconds."""


def parse_time_fn(time_fn: TimeFunction) -> Callable[[], float]:
    """Resolve a TimeFunction into a callable.

    ``"perf"`` maps to :func:`perf_time_ms` and ``"date"`` to
    :func:`current_time_ms`. Client and server may use different choices
    as long as both report milliseconds.
    """
    if time_fn == "perf":
        return perf_time_ms
    if time_fn == "date":
        return current_time_ms
    if callable(time_fn):
        return time_fn
    raise ValueError(f"Unknown time function: {time_fn!r}")


# =================
# TAGGED MESSAGES
# =================

@dataclass(frozen=True)
class TaggedMessage:
    """Base class for tagged messages.

    Subclasses set ``kind`` as a ClassVar and declare their payload fields.
    """

    kind: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TaggedMessage':
        fields = {k: v for k, v in data.items() if k != "kind"}
        try:
            return cls(**fields)
        except TypeError as e:
            raise MessageError(f"Bad {cls.kind!r} message: {e}") from e


def encode_tagged(message: Union[TaggedMessage, Mapping[str, Any]]) -> str:
    """Serialize a tagged message to JSON text.

    Raises:
        MessageError: If the message has no non-empty string ``kind``.
    """
    data = message.to_dict() if isinstance(message, TaggedMessage) else dict(message)
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise MessageError(f"Tagged message needs a non-empty 'kind', got {kind!r}")
    return json.dumps(data)


def decode_tagged(text: Union[str, bytes]) -> dict[str, Any]:
    """Parse a JSON text frame, checking for a string ``kind``."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise MessageError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict):
        raise MessageError(f"Tagged frame must be a JSON object, got {type(data).__name__}")
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise MessageError(f"Tagged frame without a valid 'kind': {kind!r}")
    return data


# =================
# BINARY PAYLOADS
# =================

def alloc_payload(size: int) -> bytearray:
    """Zero-filled payload of ``size`` bytes, never smaller than a timestamp."""
    return bytearray(max(size, TIMESTAMP_SIZE))


def write_timestamp(buf: bytearray, timestamp: float) -> bytearray:
    """Write ``timestamp`` into the first 8 bytes of ``buf`` in place."""
    struct.pack_into(TIMESTAMP_FORMAT, buf, 0, timestamp)
    return buf


def read_timestamp(data: bytes) -> float:
    """Extract the leading float64 timestamp of a binary payload."""
    if len(data) < TIMESTAMP_SIZE:
        raise MessageError(f"Too short for a timestamp: {len(data)} < {TIMESTAMP_SIZE} bytes")
    return struct.unpack_from(TIMESTAMP_FORMAT, data, 0)[0]


def pack_round(ct0: float, st0: float = 0.0, st1: float = 0.0, ct1: float = 0.0) -> bytes:
    """Encode a time sync round buffer (32 bytes)."""
    return struct.pack(ROUND_BUFFER_FORMAT, ct0, st0, st1, ct1)


def unpack_round(data: bytes) -> tuple[float, float, float, float]:
    """Decode a time sync round buffer into ``(ct0, st0, st1, ct1)``."""
    if len(data) < ROUND_BUFFER_SIZE:
        raise MessageError(f"Expected {ROUND_BUFFER_SIZE} byte round buffer, got {len(data)}")
    return struct.unpack_from(ROUND_BUFFER_FORMAT, data, 0)
