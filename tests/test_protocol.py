"""Unit tests for tagged message and binary payload encoding."""

import json
import struct

import pytest

from sockplex.protocol import (
    ROUND_BUFFER_SIZE,
    TIMESTAMP_SIZE,
    MessageError,
    alloc_payload,
    current_time_ms,
    decode_tagged,
    encode_tagged,
    pack_round,
    parse_time_fn,
    perf_time_ms,
    read_timestamp,
    unpack_round,
    write_timestamp,
)
from sockplex.timesync import TimesyncInit, TimesyncReady


@pytest.mark.unit
class TestTaggedMessages:
    """Tests for tagged (text) frame encoding."""

    def test_dataclass_message_carries_kind(self) -> None:
        text = encode_tagged(TimesyncInit(amount=10))
        assert json.loads(text) == {"kind": "timesync_init", "amount": 10}

    def test_fieldless_message(self) -> None:
        assert json.loads(encode_tagged(TimesyncReady())) == {"kind": "timesync_init_ready"}

    def test_plain_dict_message(self) -> None:
        assert json.loads(encode_tagged({"kind": "hello", "n": 1})) == {"kind": "hello", "n": 1}

    @pytest.mark.parametrize("message", [{}, {"kind": ""}, {"kind": 3}, {"n": 1}])
    def test_encode_requires_kind(self, message) -> None:
        with pytest.raises(MessageError):
            encode_tagged(message)

    def test_decode(self) -> None:
        assert decode_tagged('{"kind": "x", "size": 5}') == {"kind": "x", "size": 5}

    @pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"size": 5}', '{"kind": null}'])
    def test_decode_rejects_malformed(self, text) -> None:
        with pytest.raises(MessageError):
            decode_tagged(text)

    def test_from_dict_ignores_kind(self) -> None:
        assert TimesyncInit.from_dict({"kind": "timesync_init", "amount": 3}) == TimesyncInit(amount=3)

    def test_from_dict_rejects_missing_field(self) -> None:
        with pytest.raises(MessageError):
            TimesyncInit.from_dict({"kind": "timesync_init"})


@pytest.mark.unit
class TestBinaryPayloads:
    """Tests for timestamped binary payloads."""

    def test_payload_is_at_least_timestamp_size(self) -> None:
        assert len(alloc_payload(0)) == TIMESTAMP_SIZE
        assert len(alloc_payload(3)) == TIMESTAMP_SIZE
        assert len(alloc_payload(1024)) == 1024

    def test_timestamp_in_leading_bytes(self) -> None:
        buf = write_timestamp(alloc_payload(64), 123.25)
        assert buf[:8] == struct.pack("=d", 123.25)
        assert read_timestamp(bytes(buf)) == 123.25
        assert not any(buf[8:])

    def test_read_timestamp_too_short(self) -> None:
        with pytest.raises(MessageError):
            read_timestamp(b"\x00" * 7)

    def test_round_buffer_layout(self) -> None:
        data = pack_round(1.0, 2.0, 3.0)
        assert len(data) == ROUND_BUFFER_SIZE
        assert unpack_round(data) == (1.0, 2.0, 3.0, 0.0)

    def test_round_buffer_too_short(self) -> None:
        with pytest.raises(MessageError):
            unpack_round(b"\x00" * 24)


@pytest.mark.unit
class TestTimeFunctions:
    """Tests for time function resolution."""

    def test_named_functions(self) -> None:
        assert parse_time_fn("perf") is perf_time_ms
        assert parse_time_fn("date") is current_time_ms

    def test_callable_passthrough(self) -> None:
        fn = lambda: 7.0  # noqa: E731
        assert parse_time_fn(fn) is fn

    def test_unknown_name(self) -> None:
        with pytest.raises(ValueError):
            parse_time_fn("sundial")

    def test_perf_is_monotonic(self) -> None:
        assert perf_time_ms() <= perf_time_ms()
