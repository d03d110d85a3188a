# ssptransport

A datagram transport that keeps two copies of an object in sync over an
unreliable UDP path. Each side sends the *difference* between its current
state and the state it believes the peer already holds; the peer applies
those differences and acknowledges the newest state it has. Instructions are
zlib-compressed and split into fragments that fit the path MTU.

The package has no runtime dependencies beyond the standard library.

## Modules

- `ssptransport.compressor`: `Compressor` (`compress_str()`,
  `uncompress_str()`) and `get_compressor()`, which returns a shared
  instance. Payloads larger than 4 MiB (`BUFFER_SIZE`) are refused with
  `ValueError`, as are corrupt or truncated streams.
- `ssptransport.state`: `TimestampedState`, a dataclass holding
  `timestamp`, `num` and `state`, with `copy()` returning a deep copy.
- `ssptransport.fragment`: the `Instruction` dataclass (`protocol_version`,
  `old_num`, `new_num`, `ack_num`, `throwaway_num`, `diff`, `chaff`) with
  `to_bytes()` and `parse_instruction()`; `Fragment` with `to_bytes()` and
  `parse_fragment()`; `FragmentAssembly`, whose `add_fragment()` returns
  `True` once an instruction is complete and whose `get_assembly()` returns
  it; and `Fragmenter`, whose `make_fragments(inst, mtu)` splits a compressed
  instruction and gives each distinct instruction a new id.
- `ssptransport.packet`: `Packet` (direction, 16-bit `timestamp` and
  `timestamp_reply`, payload, sequence number) with `to_message()` and
  `packet_from_message()`; `Message` (a nonce and its text); `Direction`;
  `NetworkError`, carrying `function` and `errno`; the clock helpers
  `timestamp()` (monotonic milliseconds), `timestamp16()` and
  `timestamp_diff()`; and `parse_portrange()`, which turns `"PORT"` or
  `"LOW:HIGH"` into a `(low, high)` tuple or raises `ValueError`.
- `ssptransport.connection`: `Connection`, a non-blocking UDP endpoint made
  with `server_connection(session, desired_ip, desired_port)` or
  `client_connection(session, ip, port)`. A server binds to the desired
  address and falls back to any interface, searching ports 60001–60999 unless
  a port or range is given, and follows the client to whatever address it is
  heard from. A client opens a fresh socket when no round trip has succeeded
  for ten seconds, keeping older sockets open for a while. The connection
  smooths round-trip time into `srtt`, derives `timeout()` from it (50–1000
  ms), and records failed sends in `send_error`. It offers `send()`,
  `recv()`, `fds()`, `port()`, `set_last_roundtrip_success()` and
  `close()`, and works as a context manager.
- `ssptransport.sender`: `TransportSender`, which decides when a new diff or
  an empty acknowledgement is due (`wait_time()`, `tick()`), handles
  acknowledgements (`process_acknowledgment_through()`, `set_ack_num()`,
  `set_data_ack()`, `remote_heard()`) and runs the shutdown handshake
  (`start_shutdown()`, `shutdown_ack_timed_out()`).
- `ssptransport.transport`: `Transport`, which joins a `TransportSender` and
  a receiver over one connection. `recv()` reads one datagram and applies
  the instruction once all its fragments are in; `get_remote_diff()` returns
  what changed in the peer's state since the previous call;
  `remote_state_num()` and `latest_remote_state()` give the newest state
  received.

## What you supply

**A session.** A connection encrypts and decrypts through a session object
with `encrypt(message) -> bytes` and `decrypt(data) -> Message`. The package
includes no cipher. The `decrypt` method must recover the nonce, because the
packet sequence number and direction travel in it. Pass the session's
per-datagram overhead to `Transport(..., cipher_overhead=N)` so that
fragments still fit the MTU.

**State objects.** The local and remote states given to `Transport` must
support `diff_from(other) -> bytes`, `apply_string(diff)`,
`subtract(other)`, `reset_input()`, `==`, and `copy.deepcopy`. With
verbose output on (`set_verbose(1)`), the sender also calls `compare(other)`
and `init_diff()` to check each diff.

## Example

The session below adds no security at all. It only shows the interface.

```python
import selectors

from ssptransport.connection import client_connection
from ssptransport.packet import Message, NetworkError
from ssptransport.transport import Transport


class PlainSession:
    def encrypt(self, message):
        return message.nonce.to_bytes(8, "big") + message.text

    def decrypt(self, data):
        return Message(int.from_bytes(data[:8], "big"), data[8:])


connection = client_connection(PlainSession(), "192.0.2.1", "60001")
transport = Transport(connection, my_state, remote_state, cipher_overhead=8)

with selectors.DefaultSelector() as sel:
    while not transport.shutdown_acknowledged:
        for fd in transport.fds():
            sel.register(fd, selectors.EVENT_READ)
        ready = sel.select(transport.wait_time() / 1000)
        for key, _ in ready:
            sel.unregister(key.fd)
        for fd in transport.fds():
            if sel.get_map().get(fd):
                sel.unregister(fd)
        if ready:
            try:
                transport.recv()
            except NetworkError as exc:
                print(exc)
            diff = transport.get_remote_diff()
        transport.tick()
```

`wait_time()` returns a very large number while the connection has no remote
address. Call `start_shutdown()` to end a session. The current state is then
frozen. The sender stops waiting after 16 shutdown packets or ten seconds
(`shutdown_ack_timed_out()`).

## What this package does not do

It is a transport layer only. It has no encryption, no terminal emulation or
state types of its own, no key exchange, and no client or server program or
command. Those have to be provided by the code that uses it.

## Running the tests

```
pip install -e .[test]
pytest
```