"""Sending side of the state-synchronisation transport."""

from __future__ import annotations

import copy
import math
import os
import secrets
import sys
from typing import Callable, Generic, Protocol, TypeVar

from ssptransport.fragment import UINT64_MAX, Fragmenter, Instruction
from ssptransport.packet import PROTOCOL_VERSION, timestamp
from ssptransport.state import TimestampedState

SEND_INTERVAL_MIN = 20
"""Least ms between frames."""
SEND_INTERVAL_MAX = 250
"""Most ms between frames."""
ACK_INTERVAL = 3000
"""Ms between empty acks."""
ACK_DELAY = 100
"""Ms before a delayed ack."""
SHUTDOWN_RETRIES = 16
"""Shutdown packets sent before giving up on an acknowledgement."""
ACTIVE_RETRY_TIMEOUT = 10000
"""Ms after last hearing from the peer during which resends go at frame rate."""

INT_MAX = (1 << 31) - 1
NEVER = UINT64_MAX
"""Timer value meaning "not scheduled"."""

CHAFF_MAX = 16
STATE_QUEUE_LIMIT = 32


class SyncState(Protocol):
    """What the sender needs from a synchronised state."""

    def diff_from(self, other: "SyncState") -> bytes: ...

    def apply_string(self, diff: bytes) -> None: ...

    def subtract(self, other: "SyncState") -> None: ...

    def reset_input(self) -> None: ...


class SenderConnection(Protocol):
    """What the sender needs from its connection."""

    ADDED_BYTES: int
    srtt: float
    has_remote_addr: bool
    mtu: int

    def send(self, payload: bytes) -> None: ...

    def timeout(self) -> int: ...


S = TypeVar("S")


def _make_chaff() -> bytes:
    return os.urandom(secrets.randbelow(CHAFF_MAX + 1))


class TransportSender(Generic[S]):
    """Sends diffs of the current state to the receiver, with acks and retries."""

    def __init__(
        self,
        connection: SenderConnection,
        initial_state: S,
        *,
        clock: Callable[[], int] = timestamp,
        cipher_overhead: int = 0,
    ) -> None:
        self.connection = connection
        self._clock = clock
        self.cipher_overhead = cipher_overhead
        now = clock()
        self._current_state: S = copy.deepcopy(initial_state)
        # First element: acknowledged receiver state; last: last sent state.
        self.sent_states: list[TimestampedState[S]] = [
            TimestampedState(now, 0, copy.deepcopy(initial_state))
        ]
        self._assumed: TimestampedState[S] = self.sent_states[0]
        self.fragmenter = Fragmenter()
        self.next_ack_time = now
        self.next_send_time = now
        self.verbose = 0
        self.shutdown_in_progress = False
        self.shutdown_tries = 0
        self.shutdown_start: int | None = None
        self.ack_num = 0
        self.pending_data_ack = False
        self.send_mindelay = 8
        self.last_heard = 0
        self.mindelay_clock: int | None = None

    # -- state access ----------------------------------------------------

    @property
    def current_state(self) -> S:
        """The state to be sent; not available once shutdown has started."""
        if self.shutdown_in_progress:
            raise RuntimeError("current state is frozen during shutdown")
        return self._current_state

    def set_current_state(self, state: S) -> None:
        """Replace the state to be sent."""
        if self.shutdown_in_progress:
            raise RuntimeError("current state is frozen during shutdown")
        self._current_state = copy.deepcopy(state)
        self._current_state.reset_input()

    @property
    def shutdown_acknowledged(self) -> bool:
        """True once the receiver has acknowledged our shutdown."""
        return self.sent_states[0].num == UINT64_MAX

    @property
    def counterparty_shutdown_acknowledged(self) -> bool:
        """True once we have acknowledged the peer's shutdown."""
        return self.fragmenter.last_ack_sent() == UINT64_MAX

    @property
    def sent_state_acked_timestamp(self) -> int:
        return self.sent_states[0].timestamp

    @property
    def sent_state_acked(self) -> int:
        return self.sent_states[0].num

    @property
    def sent_state_last(self) -> int:
        return self.sent_states[-1].num

    # -- timing ----------------------------------------------------------

    def send_interval(self) -> int:
        """Return ms between frames: about two per RTT, within frame-rate limits."""
        interval = int(math.ceil(self.connection.srtt / 2.0))
        return max(SEND_INTERVAL_MIN, min(SEND_INTERVAL_MAX, interval))

    def _update_assumed_receiver_state(self) -> None:
        now = self._clock()
        # Give the benefit of the doubt to states sent recently enough.
        self._assumed = self.sent_states[0]
        limit = self.connection.timeout() + ACK_DELAY
        for sent in self.sent_states[1:]:
            if now - sent.timestamp < limit:
                self._assumed = sent
            else:
                return

    def _rationalize_states(self) -> None:
        known = self.sent_states[0].state
        self._current_state.subtract(known)
        for sent in reversed(self.sent_states):
            sent.state.subtract(known)

    def _calculate_timers(self) -> None:
        now = self._clock()
        self._update_assumed_receiver_state()
        self._rationalize_states()

        if self.pending_data_ack and self.next_ack_time > now + ACK_DELAY:
            self.next_ack_time = now + ACK_DELAY

        current = self._current_state
        last = self.sent_states[-1]
        recently_heard = self.last_heard + ACTIVE_RETRY_TIMEOUT > now
        if not current == last.state:
            if self.mindelay_clock is None:
                self.mindelay_clock = now
            self.next_send_time = max(
                self.mindelay_clock + self.send_mindelay,
                last.timestamp + self.send_interval(),
            )
        elif not current == self._assumed.state and recently_heard:
            self.next_send_time = last.timestamp + self.send_interval()
            if self.mindelay_clock is not None:
                self.next_send_time = max(
                    self.next_send_time, self.mindelay_clock + self.send_mindelay
                )
        elif not current == self.sent_states[0].state and recently_heard:
            self.next_send_time = last.timestamp + self.connection.timeout() + ACK_DELAY
        else:
            self.next_send_time = NEVER

        # Speed up the shutdown sequence.
        if self.shutdown_in_progress or self.ack_num == UINT64_MAX:
            self.next_ack_time = last.timestamp + self.send_interval()

    def wait_time(self) -> int:
        """Return the ms to wait until the next possible event."""
        self._calculate_timers()
        next_wakeup = min(self.next_ack_time, self.next_send_time)
        now = self._clock()
        if not self.connection.has_remote_addr:
            return INT_MAX
        return max(0, next_wakeup - now)

    # -- sending ---------------------------------------------------------

    def tick(self) -> None:
        """Send a diff or an empty ack if one is due."""
        self._calculate_timers()
        if not self.connection.has_remote_addr:
            return

        now = self._clock()
        if now < self.next_ack_time and now < self.next_send_time:
            return

        diff = self._current_state.diff_from(self._assumed.state)
        diff = self._attempt_prospective_resend_optimization(diff)

        if self.verbose:
            self._verify_diff(diff)

        if not diff:
            if now >= self.next_ack_time:
                self._send_empty_ack()
                self.mindelay_clock = None
            if now >= self.next_send_time:
                self.next_send_time = NEVER
                self.mindelay_clock = None
        elif now >= self.next_send_time or now >= self.next_ack_time:
            self._send_to_receiver(diff)
            self.mindelay_clock = None

    def _verify_diff(self, diff: bytes) -> None:
        new_state = copy.deepcopy(self._assumed.state)
        new_state.apply_string(diff)
        if self._current_state.compare(new_state):
            print("Warning, round-trip Instruction verification failed!", file=sys.stderr)
        if self._current_state.init_diff() != new_state.init_diff():
            print("Warning, target state Instruction verification failed!", file=sys.stderr)

    def _send_empty_ack(self) -> None:
        now = self._clock()
        new_num = self.sent_states[-1].num + 1
        if self.shutdown_in_progress:
            new_num = UINT64_MAX
        self._add_sent_state(now, new_num, self._current_state)
        self._send_in_fragments(b"", new_num)
        self.next_ack_time = now + ACK_INTERVAL
        self.next_send_time = NEVER

    def _add_sent_state(self, the_timestamp: int, num: int, state: S) -> None:
        self.sent_states.append(TimestampedState(the_timestamp, num, copy.deepcopy(state)))
        if len(self.sent_states) > STATE_QUEUE_LIMIT:
            # Drop a state from the middle of the queue.
            del self.sent_states[-16]

    def _send_to_receiver(self, diff: bytes) -> None:
        last = self.sent_states[-1]
        if self._current_state == last.state:
            new_num = last.num
        else:
            new_num = last.num + 1
        if self.shutdown_in_progress:
            new_num = UINT64_MAX

        if new_num == last.num:
            last.timestamp = self._clock()
        else:
            self._add_sent_state(self._clock(), new_num, self._current_state)

        self._send_in_fragments(diff, new_num)

        self._assumed = self.sent_states[-1]
        self.next_ack_time = self._clock() + ACK_INTERVAL
        self.next_send_time = NEVER

    def _send_in_fragments(self, diff: bytes, new_num: int) -> None:
        inst = Instruction(
            protocol_version=PROTOCOL_VERSION,
            old_num=self._assumed.num,
            new_num=new_num,
            ack_num=self.ack_num,
            throwaway_num=self.sent_states[0].num,
            diff=bytes(diff),
            chaff=_make_chaff(),
        )
        if new_num == UINT64_MAX:
            self.shutdown_tries += 1

        mtu = self.connection.mtu - self.connection.ADDED_BYTES - self.cipher_overhead
        for frag in self.fragmenter.make_fragments(inst, mtu):
            self.connection.send(frag.to_bytes())
            if self.verbose:
                print(
                    f"[{self._clock() % 100000}] Sent [{inst.old_num}=>{inst.new_num}] "
                    f"id {frag.id}, frag {frag.fragment_num} ack={inst.ack_num}, "
                    f"throwaway={inst.throwaway_num}, len={len(frag.contents)}, "
                    f"frame rate={1000.0 / self.send_interval():.2f}, "
                    f"timeout={self.connection.timeout()}, srtt={self.connection.srtt:.1f}",
                    file=sys.stderr,
                )
        self.pending_data_ack = False

    def _attempt_prospective_resend_optimization(self, proposed: bytes) -> bytes:
        first = self.sent_states[0]
        if self._assumed is first:
            return proposed
        resend = self._current_state.diff_from(first.state)
        # Resend against the known state if that is shorter, or only slightly longer.
        if len(resend) <= len(proposed) or (
            len(resend) < 1000 and len(resend) - len(proposed) < 100
        ):
            self._assumed = first
            return resend
        return proposed

    # -- events from the receiver ------------------------------------------

    def process_acknowledgment_through(self, ack_num: int) -> None:
        """Drop sent states older than ``ack_num``, unless that state was culled."""
        if any(sent.num == ack_num for sent in self.sent_states):
            self.sent_states = [sent for sent in self.sent_states if sent.num >= ack_num]

    def set_ack_num(self, ack_num: int) -> None:
        """Record the number of the latest state received from the peer."""
        self.ack_num = ack_num

    def set_data_ack(self) -> None:
        """Ask for a prompt ack of data just received."""
        self.pending_data_ack = True

    def remote_heard(self, ts: int) -> None:
        """Record when a new state was last received."""
        self.last_heard = ts

    def start_shutdown(self) -> None:
        """Begin the shutdown sequence."""
        if not self.shutdown_in_progress:
            self.shutdown_start = self._clock()
            self.shutdown_in_progress = True

    def shutdown_ack_timed_out(self) -> bool:
        """True if it is time to give up waiting for a shutdown acknowledgement."""
        if not self.shutdown_in_progress:
            return False
        if self.shutdown_tries >= SHUTDOWN_RETRIES:
            return True
        return self._clock() - self.shutdown_start >= ACTIVE_RETRY_TIMEOUT