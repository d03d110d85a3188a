"""Encrypted UDP connection with roaming, port hopping and RTT estimation."""

from __future__ import annotations

import errno as errno_codes
import math
import os
import socket
import sys
from collections import deque
from typing import Callable, Protocol

from ssptransport.packet import (
    Direction,
    Message,
    NetworkError,
    Packet,
    TIMESTAMP_NONE,
    packet_from_message,
    parse_portrange,
    timestamp,
    timestamp_diff,
)

IPV4_HEADER_LEN = 20 + 8
"""Typical IPv4 header plus UDP header."""
IPV6_HEADER_LEN = 40 + 16 + 8
"""IPv6 header, two minimal extension headers and UDP header."""
DEFAULT_SEND_MTU = 500
"""Application datagram MTU used before the address family is known, and as a fallback."""
DEFAULT_IPV4_MTU = 1280
DEFAULT_IPV6_MTU = 1280

MIN_RTO = 50
MAX_RTO = 1000

PORT_RANGE_LOW = 60001
PORT_RANGE_HIGH = 60999

SERVER_ASSOCIATION_TIMEOUT = 40000
PORT_HOP_INTERVAL = 10000

MAX_PORTS_OPEN = 10
MAX_OLD_SOCKET_AGE = 60000

CONGESTION_TIMESTAMP_PENALTY = 500

ADDED_BYTES = 8 + 4
"""Transport overhead per datagram: sequence number/nonce and two timestamps."""

RECEIVE_MTU = 2048
"""Largest datagram accepted."""

_ANCILLARY_SIZE = 256
_AI_NUMERICSERV = getattr(socket, "AI_NUMERICSERV", 0)


class Session(Protocol):
    """What a connection needs from its cipher session."""

    def encrypt(self, message: Message) -> bytes: ...

    def decrypt(self, data: bytes) -> Message: ...


def _new_socket(family: int) -> socket.socket:
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM)
    except OSError as exc:
        raise NetworkError("socket", exc.errno or 0) from exc
    sock.setblocking(False)

    mtu_discover = getattr(socket, "IP_MTU_DISCOVER", None)
    pmtudisc_dont = getattr(socket, "IP_PMTUDISC_DONT", None)
    if mtu_discover is not None and pmtudisc_dont is not None and family == socket.AF_INET:
        try:
            sock.setsockopt(socket.IPPROTO_IP, mtu_discover, pmtudisc_dont)
        except OSError as exc:
            sock.close()
            raise NetworkError("setsockopt", exc.errno or 0) from exc

    # ECN-capable transport only.
    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, 0x02)
    except OSError:
        pass

    recvtos = getattr(socket, "IP_RECVTOS", None)
    if recvtos is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IP, recvtos, 1)
        except OSError:
            pass
    return sock


def _mtu_for(family: int) -> int:
    if family == socket.AF_INET:
        return DEFAULT_IPV4_MTU - IPV4_HEADER_LEN
    if family == getattr(socket, "AF_INET6", None):
        return DEFAULT_IPV6_MTU - IPV6_HEADER_LEN
    raise NetworkError("Unknown address family", 0)


def _getaddrinfo(node: str | None, service: str, flags: int) -> tuple[int, tuple]:
    try:
        infos = socket.getaddrinfo(node, service, socket.AF_UNSPEC, socket.SOCK_DGRAM, 0, flags)
    except (socket.gaierror, UnicodeError) as exc:
        shown = node if node is not None else "(null)"
        reason = exc.strerror if isinstance(exc, socket.gaierror) else str(exc)
        raise NetworkError(f"Bad IP address ({shown}): {reason}", 0) from exc
    if not infos:
        shown = node if node is not None else "(null)"
        raise NetworkError(f"Bad IP address ({shown}): no address", 0)
    family, _type, _proto, _canon, sockaddr = infos[0]
    return family, sockaddr


class Connection:
    """A UDP association carrying encrypted packets in one direction pair."""

    ADDED_BYTES = ADDED_BYTES

    def __init__(
        self,
        session: Session,
        *,
        server: bool,
        clock: Callable[[], int] = timestamp,
    ) -> None:
        self.session = session
        self.server = server
        self.direction = Direction.TO_CLIENT if server else Direction.TO_SERVER
        self._clock = clock
        self._socks: deque[socket.socket] = deque()
        self.has_remote_addr = False
        self.remote_addr: tuple | None = None
        self.mtu = DEFAULT_SEND_MTU
        self.saved_timestamp = TIMESTAMP_NONE
        self.saved_timestamp_received_at = 0
        self.expected_receiver_seq = 0
        # -1 stands for "never": elapsed time against it is always large.
        self.last_heard = -1
        self.last_port_choice = -1
        self.last_roundtrip_success = -1
        self.rtt_hit = False
        self.srtt = 1000.0
        self.rttvar = 500.0
        self.send_error = ""
        self._setup()

    # -- lifecycle -------------------------------------------------------

    def close(self) -> None:
        """Close every socket of the connection."""
        while self._socks:
            self._socks.popleft().close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- helpers ---------------------------------------------------------

    def _setup(self) -> None:
        self.last_port_choice = self._clock()

    def _timestamp16(self) -> int:
        ts = self._clock() % 65536
        if ts == TIMESTAMP_NONE:
            ts = 0
        return ts

    def _sock(self) -> socket.socket:
        if not self._socks:
            raise NetworkError("no socket open", 0)
        return self._socks[-1]

    def _try_bind(self, addr: str | None, port_low: int, port_high: int) -> bool:
        flags = socket.AI_PASSIVE | socket.AI_NUMERICHOST | _AI_NUMERICSERV
        family, sockaddr = _getaddrinfo(addr, "0", flags)

        search_low = PORT_RANGE_LOW if port_low == -1 else port_low
        search_high = PORT_RANGE_HIGH if port_high == -1 else port_high

        sock = _new_socket(family)
        self._socks.append(sock)
        if family == getattr(socket, "AF_INET6", None) and sockaddr[0] == "::":
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except OSError as exc:
                print(f"setsockopt( IPV6_V6ONLY, off ): {exc}", file=sys.stderr)

        saved_errno = 0
        local = sockaddr
        for port in range(search_low, search_high + 1):
            if family not in (socket.AF_INET, getattr(socket, "AF_INET6", None)):
                raise NetworkError("Unknown address family", 0)
            local = (sockaddr[0], port, *sockaddr[2:])
            try:
                sock.bind(local)
            except OSError as exc:
                saved_errno = exc.errno or 0
                continue
            self.mtu = _mtu_for(family)
            return True

        self._socks.pop().close()
        print(f"Failed binding to {local[0]}:{local[1]}", file=sys.stderr)
        raise NetworkError("bind", saved_errno)

    def _new_packet(self, payload: bytes) -> Packet:
        outgoing_reply = TIMESTAMP_NONE
        now = self._clock()
        if now - self.saved_timestamp_received_at < 1000:
            # Return the held timestamp, advanced by how long it was held.
            outgoing_reply = (
                self.saved_timestamp + (now - self.saved_timestamp_received_at)
            ) & 0xFFFF
            self.saved_timestamp = TIMESTAMP_NONE
            self.saved_timestamp_received_at = 0
        return Packet(self.direction, self._timestamp16(), outgoing_reply, bytes(payload))

    def _hop_port(self) -> None:
        if self.server:
            raise RuntimeError("servers do not hop ports")
        self._setup()
        if self.remote_addr is None:
            raise RuntimeError("no remote address to hop towards")
        self._socks.append(_new_socket(self._remote_family))
        self._prune_sockets()

    def _prune_sockets(self) -> None:
        if len(self._socks) <= 1:
            return
        if self._clock() - self.last_port_choice > MAX_OLD_SOCKET_AGE:
            while len(self._socks) > 1:
                self._socks.popleft().close()
        while len(self._socks) > MAX_PORTS_OPEN:
            self._socks.popleft().close()

    def _receive_datagram(self, sock: socket.socket) -> tuple[bytes, tuple, bool]:
        congestion = False
        try:
            if hasattr(sock, "recvmsg"):
                data, ancdata, flags, addr = sock.recvmsg(RECEIVE_MTU, _ANCILLARY_SIZE)
            else:
                data, addr = sock.recvfrom(RECEIVE_MTU)
                ancdata, flags = [], 0
        except OSError as exc:
            raise NetworkError("recvmsg", exc.errno or 0) from exc

        if flags & getattr(socket, "MSG_TRUNC", 0):
            raise NetworkError("Received oversize datagram", 0)

        if ancdata:
            level, kind, cdata = ancdata[0]
            tos_types = {socket.IP_TOS}
            recvtos = getattr(socket, "IP_RECVTOS", None)
            if recvtos is not None:
                tos_types.add(recvtos)
            if level == socket.IPPROTO_IP and kind in tos_types and cdata:
                congestion = (cdata[0] & 0x03) == 0x03
        return data, addr, congestion

    def _recv_one(self, sock: socket.socket) -> bytes:
        data, addr, congestion = self._receive_datagram(sock)

        packet = packet_from_message(self.session.decrypt(data))

        expected = Direction.TO_SERVER if self.server else Direction.TO_CLIENT
        if packet.direction != expected:
            # Prevents a packet from being played back to its sender.
            raise ValueError("packet travelling in the wrong direction")

        if packet.seq < self.expected_receiver_seq:
            # Out-of-order packets are returned but not used for timing or roaming.
            return packet.payload
        self.expected_receiver_seq = packet.seq + 1

        if packet.timestamp != TIMESTAMP_NONE:
            self.saved_timestamp = packet.timestamp
            self.saved_timestamp_received_at = self._clock()
            if congestion:
                self.saved_timestamp = (
                    self.saved_timestamp - CONGESTION_TIMESTAMP_PENALTY
                ) & 0xFFFF
                if self.server:
                    print("Received explicit congestion notification.", file=sys.stderr)

        if packet.timestamp_reply != TIMESTAMP_NONE:
            rtt = float(timestamp_diff(self._timestamp16(), packet.timestamp_reply))
            if rtt < 5000:
                if not self.rtt_hit:
                    self.srtt = rtt
                    self.rttvar = rtt / 2
                    self.rtt_hit = True
                else:
                    alpha = 1.0 / 8.0
                    beta = 1.0 / 4.0
                    self.rttvar = (1 - beta) * self.rttvar + beta * abs(self.srtt - rtt)
                    self.srtt = (1 - alpha) * self.srtt + alpha * rtt

        self.has_remote_addr = True
        self.last_heard = self._clock()

        if self.server and addr != self.remote_addr:
            self.remote_addr = addr
            self._remote_family = sock.family
            print(f"Server now attached to client at {addr[0]}:{addr[1]}", file=sys.stderr)
        return packet.payload

    # -- public interface ------------------------------------------------

    def send(self, payload: bytes) -> None:
        """Encrypt and send ``payload`` to the remote address, if there is one."""
        if not self.has_remote_addr or self.remote_addr is None:
            return

        data = self.session.encrypt(self._new_packet(payload).to_message())
        try:
            sent = self._sock().sendto(data, self.remote_addr)
        except OSError as exc:
            code = exc.errno or 0
            self.send_error = f"sendto: {os.strerror(code)}"
            if code == errno_codes.EMSGSIZE:
                self.mtu = DEFAULT_SEND_MTU
        else:
            if sent != len(data):
                self.send_error = "sendto: short write"

        now = self._clock()
        if self.server:
            if now - self.last_heard > SERVER_ASSOCIATION_TIMEOUT:
                self.has_remote_addr = False
                print("Server now detached from client.", file=sys.stderr)
        elif (
            now - self.last_port_choice > PORT_HOP_INTERVAL
            and now - self.last_roundtrip_success > PORT_HOP_INTERVAL
        ):
            self._hop_port()

    def recv(self) -> bytes:
        """Return the payload of the next waiting datagram from any open socket."""
        if not self._socks:
            raise NetworkError("no socket open", 0)
        for sock in list(self._socks):
            try:
                payload = self._recv_one(sock)
            except NetworkError as exc:
                if exc.errno in (errno_codes.EAGAIN, errno_codes.EWOULDBLOCK):
                    continue
                raise
            self._prune_sockets()
            return payload
        raise NetworkError("No packet received")

    def fds(self) -> list[int]:
        """Return the file descriptors of the open sockets, oldest first."""
        return [sock.fileno() for sock in self._socks]

    def port(self) -> str:
        """Local UDP number bound by the newest socket, in decimal."""
        try:
            name = self._sock().getsockname()
        except OSError as exc:
            raise NetworkError("getsockname", exc.errno or 0) from exc
        return str(name[1])

    def timeout(self) -> int:
        """Return the retransmission timeout in ms, from the smoothed RTT."""
        rto = int(math.ceil(self.srtt + 4 * self.rttvar))
        return max(MIN_RTO, min(MAX_RTO, rto))

    def set_last_roundtrip_success(self, success: int) -> None:
        """Record when an end-to-end round trip was last seen."""
        self.last_roundtrip_success = success


def server_connection(
    session: Session,
    desired_ip: str | None = None,
    desired_port: str | None = None,
) -> Connection:
    """Bind a server connection, preferring ``desired_ip`` and then any interface."""
    conn = Connection(session, server=True)

    port_low = port_high = -1
    if desired_port is not None:
        try:
            port_low, port_high = parse_portrange(desired_port)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            raise NetworkError("Invalid port range", 0) from exc

    if desired_ip:
        try:
            if conn._try_bind(desired_ip, port_low, port_high):
                return conn
        except NetworkError as exc:
            print(f"Error binding to IP {desired_ip}: {exc}", file=sys.stderr)

    try:
        if conn._try_bind(None, port_low, port_high):
            return conn
    except NetworkError as exc:
        print(f"Error binding to any interface: {exc}", file=sys.stderr)
        conn.close()
        raise

    conn.close()
    raise NetworkError("Could not bind", 0)


def client_connection(session: Session, ip: str, port: str) -> Connection:
    """Open a client connection aimed at ``ip``:``port``."""
    conn = Connection(session, server=False)
    family, sockaddr = _getaddrinfo(ip, str(port), socket.AI_NUMERICHOST | _AI_NUMERICSERV)
    conn.remote_addr = sockaddr
    conn._remote_family = family
    conn.has_remote_addr = True
    conn._socks.append(_new_socket(family))
    conn.mtu = _mtu_for(family)
    return conn