"""State-synchronisation transport: a sender and a simple receiver over one connection."""

from __future__ import annotations

import copy
import sys
from typing import Callable, Generic, Protocol, TypeVar

from ssptransport.fragment import FragmentAssembly, parse_fragment
from ssptransport.packet import PROTOCOL_VERSION, NetworkError, timestamp
from ssptransport.sender import TransportSender
from ssptransport.state import TimestampedState

RECEIVER_QUEUE_LIMIT = 1024
"""Received states held before new ones are refused for a while."""
RECEIVER_QUENCH_INTERVAL = 15000
"""Ms during which further states are refused once the queue is full."""

M = TypeVar("M")
R = TypeVar("R")


class TransportConnection(Protocol):
    """What the transport needs from its connection."""

    ADDED_BYTES: int
    srtt: float
    has_remote_addr: bool
    mtu: int
    send_error: str

    def send(self, payload: bytes) -> None: ...

    def recv(self) -> bytes: ...

    def timeout(self) -> int: ...

    def set_last_roundtrip_success(self, success: int) -> None: ...

    def port(self) -> str: ...

    def fds(self) -> list[int]: ...


class Transport(Generic[M, R]):
    """Keeps a local state synchronised to the peer and tracks the peer's state."""

    def __init__(
        self,
        connection: TransportConnection,
        initial_state: M,
        initial_remote: R,
        *,
        clock: Callable[[], int] = timestamp,
        cipher_overhead: int = 0,
    ) -> None:
        self.connection = connection
        self._clock = clock
        self.sender: TransportSender[M] = TransportSender(
            connection, initial_state, clock=clock, cipher_overhead=cipher_overhead
        )
        self.received_states: list[TimestampedState[R]] = [
            TimestampedState(clock(), 0, copy.deepcopy(initial_remote))
        ]
        self.receiver_quench_timer = 0
        self.last_receiver_state: R = copy.deepcopy(initial_remote)
        self.fragments = FragmentAssembly()
        self.verbose = 0

    # -- receiving -------------------------------------------------------

    def recv(self) -> None:
        """Read one datagram and, once an instruction is complete, apply it."""
        frag = parse_fragment(self.connection.recv())
        if not self.fragments.add_fragment(frag):
            return

        inst = self.fragments.get_assembly()
        if inst.protocol_version != PROTOCOL_VERSION:
            raise NetworkError("mosh protocol version mismatch", 0)

        self.sender.process_acknowledgment_through(inst.ack_num)

        # Tell the network layer about end-to-end-to-end connectivity.
        self.connection.set_last_roundtrip_success(self.sender.sent_state_acked_timestamp)

        if any(state.num == inst.new_num for state in self.received_states):
            return

        reference = next(
            (state for state in self.received_states if state.num == inst.old_num), None
        )
        if reference is None:
            # Reference state discarded or not yet received; enforces idempotency.
            return

        self._process_throwaway_until(inst.throwaway_num)

        if len(self.received_states) > RECEIVER_QUEUE_LIMIT:
            now = self._clock()
            if now < self.receiver_quench_timer:
                if self.verbose:
                    print(
                        f"[{self._clock() % 100000}] Receiver queue full, discarding "
                        f"{inst.new_num} (malicious sender or long-unidirectional "
                        "connectivity?)",
                        file=sys.stderr,
                    )
                return
            self.receiver_quench_timer = now + RECEIVER_QUENCH_INTERVAL

        new_state = reference.copy()
        new_state.timestamp = self._clock()
        new_state.num = inst.new_num
        if inst.diff:
            new_state.state.apply_string(inst.diff)

        for index, state in enumerate(self.received_states):
            if state.num > new_state.num:
                self.received_states.insert(index, new_state)
                if self.verbose:
                    print(
                        f"[{self._clock() % 100000}] Received OUT-OF-ORDER state "
                        f"{new_state.num} [ack {inst.ack_num}]",
                        file=sys.stderr,
                    )
                return

        if self.verbose:
            print(
                f"[{self._clock() % 100000}] Received state {new_state.num} "
                f"[coming from {inst.old_num}, ack {inst.ack_num}]",
                file=sys.stderr,
            )
        self.received_states.append(new_state)
        self.sender.set_ack_num(new_state.num)
        self.sender.remote_heard(new_state.timestamp)
        if inst.diff:
            self.sender.set_data_ack()

    def _process_throwaway_until(self, throwaway_num: int) -> None:
        kept = [state for state in self.received_states if state.num >= throwaway_num]
        if not kept:
            raise RuntimeError("throwaway would discard every received state")
        self.received_states = kept

    def get_remote_diff(self) -> bytes:
        """Return the change since the last call, then trim the common prefix of states."""
        diff = self.received_states[-1].state.diff_from(self.last_receiver_state)
        oldest = self.received_states[0].state
        for state in reversed(self.received_states):
            state.state.subtract(oldest)
        self.last_receiver_state = copy.deepcopy(self.received_states[-1].state)
        return diff

    def remote_state_num(self) -> int:
        """Return the number of the newest state received."""
        return self.received_states[-1].num

    def latest_remote_state(self) -> TimestampedState[R]:
        """Return the newest state received."""
        return self.received_states[-1]

    # -- sending ---------------------------------------------------------

    def tick(self) -> None:
        """Send data or an ack if one is due."""
        self.sender.tick()

    def wait_time(self) -> int:
        """Return the ms to wait until the next possible event."""
        return self.sender.wait_time()

    def start_shutdown(self) -> None:
        """Begin shutting down the other side; the current state is then frozen."""
        self.sender.start_shutdown()

    @property
    def current_state(self) -> M:
        return self.sender.current_state

    def set_current_state(self, state: M) -> None:
        self.sender.set_current_state(state)

    @property
    def shutdown_in_progress(self) -> bool:
        return self.sender.shutdown_in_progress

    @property
    def shutdown_acknowledged(self) -> bool:
        return self.sender.shutdown_acknowledged

    def shutdown_ack_timed_out(self) -> bool:
        return self.sender.shutdown_ack_timed_out()

    @property
    def counterparty_shutdown_ack_sent(self) -> bool:
        """True once the peer asked to shut down and we have sent one ack."""
        return self.sender.counterparty_shutdown_acknowledged

    @property
    def has_remote_addr(self) -> bool:
        return self.connection.has_remote_addr

    def port(self) -> str:
        return self.connection.port()

    def fds(self) -> list[int]:
        return self.connection.fds()

    def set_verbose(self, verbose: int) -> None:
        self.sender.verbose = verbose
        self.verbose = verbose

    def set_send_delay(self, delay: int) -> None:
        self.sender.send_mindelay = delay

    @property
    def sent_state_acked_timestamp(self) -> int:
        return self.sender.sent_state_acked_timestamp

    @property
    def sent_state_acked(self) -> int:
        return self.sender.sent_state_acked

    @property
    def sent_state_last(self) -> int:
        return self.sender.sent_state_last

    def send_interval(self) -> int:
        return self.sender.send_interval()

    @property
    def remote_addr(self):
        return getattr(self.connection, "remote_addr", None)

    @property
    def send_error(self) -> str:
        return self.connection.send_error

    @send_error.setter
    def send_error(self, value: str) -> None:
        self.connection.send_error = value