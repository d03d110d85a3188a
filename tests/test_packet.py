import errno
from unittest import mock

import pytest

from ssptransport.packet import (
    DIRECTION_MASK,
    Direction,
    Message,
    NetworkError,
    Packet,
    packet_from_message,
    parse_portrange,
    timestamp,
    timestamp16,
    timestamp_diff,
)


def test_to_message_wire_format():
    packet = Packet(Direction.TO_CLIENT, 1, 2, b"x", seq=5)
    message = packet.to_message()
    assert message.nonce == DIRECTION_MASK | 5
    assert message.text == b"\x00\x01\x00\x02x"


def test_to_server_has_no_direction_bit():
    message = Packet(Direction.TO_SERVER, 7, 9, b"", seq=42).to_message()
    assert message.nonce == 42


@pytest.mark.parametrize("direction", list(Direction))
def test_round_trip(direction):
    original = Packet(direction, 1234, 0xFFFF, b"payload bytes", seq=99)
    decoded = packet_from_message(original.to_message())
    assert decoded == original


def test_from_message_decodes_fields():
    decoded = packet_from_message(Message(DIRECTION_MASK | 3, b"\x01\x02\x03\x04abc"))
    assert decoded.direction is Direction.TO_CLIENT
    assert decoded.seq == 3
    assert decoded.timestamp == 0x0102
    assert decoded.timestamp_reply == 0x0304
    assert decoded.payload == b"abc"


def test_short_message_rejected():
    with pytest.raises(ValueError):
        packet_from_message(Message(0, b"\x00\x01\x02"))


def test_out_of_range_timestamp_rejected():
    with pytest.raises(ValueError):
        Packet(Direction.TO_SERVER, 70000, 0, b"", seq=1).to_message()


def test_sequence_numbers_increase():
    first = Packet(Direction.TO_SERVER, 0, 0)
    second = Packet(Direction.TO_SERVER, 0, 0)
    assert second.seq > first.seq


def test_network_error_fields():
    exc = NetworkError("recvmsg", errno.EAGAIN)
    assert exc.function == "recvmsg"
    assert exc.errno == errno.EAGAIN
    assert str(exc).startswith("recvmsg: ")


def test_timestamp_is_monotonic():
    first = timestamp()
    second = timestamp()
    assert second >= first


def test_timestamp16_skips_reserved_value():
    with mock.patch("time.monotonic_ns", return_value=65535 * 1_000_000):
        assert timestamp16() == 0


def test_timestamp16_wraps():
    with mock.patch("time.monotonic_ns", return_value=(65536 + 7) * 1_000_000):
        assert timestamp16() == 7


def test_timestamp_diff_simple():
    assert timestamp_diff(5, 3) == 2


def test_timestamp_diff_wraps():
    assert timestamp_diff(0, 65535) == 1


@pytest.mark.parametrize("old,new", [(0, 0), (100, 50), (65000, 200), (3, 65534)])
def test_timestamp_diff_invariant(old, new):
    diff = timestamp_diff(new, old)
    assert 0 <= diff <= 65535
    assert (old + diff) % 65536 == new


def test_parse_single_port():
    assert parse_portrange("60001") == (60001, 60001)


def test_parse_range():
    assert parse_portrange("60001:60010") == (60001, 60010)


def test_parse_equal_range():
    assert parse_portrange("61000:61000") == (61000, 61000)


@pytest.mark.parametrize(
    "text,fragment",
    [
        ("abc", "Invalid (low) port number"),
        ("12x", "Invalid (low) port number"),
        ("70000", "outside valid range"),
        ("-5", "outside valid range"),
        ("100:abc", "Invalid high port number"),
        ("100:70000", "High port number"),
        ("200:100", "greater than high port"),
        ("0:100", "Low port 0 incompatible"),
        ("99999999999999999999", "Invalid (low) port number"),
    ],
)
def test_parse_errors(text, fragment):
    with pytest.raises(ValueError, match=fragment.replace("(", r"\(").replace(")", r"\)")):
        parse_portrange(text)


def test_parse_trailing_colon_has_high_port_zero():
    with pytest.raises(ValueError, match="greater than high port"):
        parse_portrange("5:")