from dataclasses import dataclass

import pytest

from ssptransport.fragment import UINT64_MAX, FragmentAssembly, parse_fragment
from ssptransport.packet import PROTOCOL_VERSION
from ssptransport.sender import (
    ACK_DELAY,
    ACTIVE_RETRY_TIMEOUT,
    INT_MAX,
    SEND_INTERVAL_MAX,
    SEND_INTERVAL_MIN,
    STATE_QUEUE_LIMIT,
    TransportSender,
)


@dataclass
class TextState:
    value: str = ""

    def diff_from(self, other):
        return b"" if self.value == other.value else self.value.encode()

    def apply_string(self, diff):
        self.value = diff.decode()

    def subtract(self, other):
        pass

    def reset_input(self):
        pass


class FakeConnection:
    ADDED_BYTES = 12

    def __init__(self, has_remote_addr=True, srtt=100.0):
        self.srtt = srtt
        self.has_remote_addr = has_remote_addr
        self.mtu = 1000
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)

    def timeout(self):
        return 1000


class Clock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


def make_sender(**kwargs):
    conn = FakeConnection(**kwargs)
    clock = Clock()
    sender = TransportSender(conn, TextState(), clock=clock)
    return sender, conn, clock


def decode(datagrams):
    assembly = FragmentAssembly()
    done = False
    for data in datagrams:
        done = assembly.add_fragment(parse_fragment(data))
    assert done
    return assembly.get_assembly()


def test_send_interval_is_clamped():
    sender, conn, _ = make_sender(srtt=10000.0)
    assert sender.send_interval() == SEND_INTERVAL_MAX
    conn.srtt = 1.0
    assert sender.send_interval() == SEND_INTERVAL_MIN


def test_no_remote_address_sends_nothing():
    sender, conn, _ = make_sender(has_remote_addr=False)
    sender.tick()
    assert conn.sent == []
    assert sender.wait_time() == INT_MAX


def test_first_tick_sends_empty_ack():
    sender, conn, _ = make_sender()
    assert sender.wait_time() == 0
    sender.tick()
    inst = decode(conn.sent)
    assert inst.protocol_version == PROTOCOL_VERSION
    assert inst.old_num == 0
    assert inst.new_num == sender.sent_state_last
    assert inst.diff == b""


def test_changed_state_is_sent_as_diff():
    sender, conn, clock = make_sender()
    sender.tick()
    conn.sent.clear()
    sender.set_current_state(TextState("hello"))
    clock.now += 300
    sender.tick()
    clock.now += 10
    sender.tick()
    inst = decode(conn.sent)
    assert inst.diff == b"hello"
    assert inst.new_num == sender.sent_state_last
    assert inst.old_num == sender.sent_state_acked


def test_acknowledgment_discards_older_states():
    sender, conn, clock = make_sender()
    sender.tick()
    last = sender.sent_state_last
    sender.process_acknowledgment_through(last)
    assert sender.sent_state_acked == last
    assert all(state.num >= last for state in sender.sent_states)


def test_unknown_acknowledgment_is_ignored():
    sender, _, _ = make_sender()
    sender.tick()
    before = [state.num for state in sender.sent_states]
    sender.process_acknowledgment_through(sender.sent_state_last + 5)
    assert [state.num for state in sender.sent_states] == before


def test_shutdown_sends_final_number_and_freezes_state():
    sender, conn, clock = make_sender()
    sender.start_shutdown()
    assert sender.shutdown_in_progress
    clock.now += 100
    sender.tick()
    inst = decode(conn.sent)
    assert inst.new_num == UINT64_MAX
    with pytest.raises(RuntimeError):
        sender.current_state
    with pytest.raises(RuntimeError):
        sender.set_current_state(TextState("x"))
    assert not sender.shutdown_acknowledged
    sender.process_acknowledgment_through(UINT64_MAX)
    assert sender.shutdown_acknowledged


def test_shutdown_ack_times_out():
    sender, _, clock = make_sender()
    assert not sender.shutdown_ack_timed_out()
    sender.start_shutdown()
    assert not sender.shutdown_ack_timed_out()
    clock.now += ACTIVE_RETRY_TIMEOUT
    assert sender.shutdown_ack_timed_out()


def test_data_ack_is_delayed_by_ack_delay():
    sender, _, clock = make_sender()
    sender.tick()
    sender.set_data_ack()
    clock.now += ACK_DELAY
    assert sender.wait_time() == ACK_DELAY


def test_sent_state_queue_is_bounded():
    sender, conn, clock = make_sender()
    for i in range(40):
        sender.set_current_state(TextState(f"state {i}"))
        clock.now += 100
        sender.tick()
        clock.now += 10
        sender.tick()
    assert len(sender.sent_states) <= STATE_QUEUE_LIMIT
    assert sender.sent_state_acked == 0
    numbers = [state.num for state in sender.sent_states]
    assert numbers == sorted(numbers)
    assert sender.current_state == TextState("state 39")