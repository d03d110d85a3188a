"""Transport instructions and their splitting into datagram-sized fragments."""

from __future__ import annotations

import dataclasses
import struct
from dataclasses import dataclass, field

from ssptransport.compressor import get_compressor

UINT64_MAX = (1 << 64) - 1

_INST_HEADER = struct.Struct(">IQQQQ")
_LENGTH = struct.Struct(">I")
_FRAG_HEADER = struct.Struct(">QH")

FRAG_HEADER_LEN = _FRAG_HEADER.size
"""Bytes of fragment header: 64-bit id and 16-bit fragment number."""


@dataclass
class Instruction:
    """One transport instruction: a diff from an old state to a new one."""

    protocol_version: int = 0
    old_num: int = 0
    new_num: int = 0
    ack_num: int = 0
    throwaway_num: int = 0
    diff: bytes = b""
    chaff: bytes = b""

    def to_bytes(self) -> bytes:
        """Serialise the instruction."""
        try:
            header = _INST_HEADER.pack(
                self.protocol_version,
                self.old_num,
                self.new_num,
                self.ack_num,
                self.throwaway_num,
            )
        except struct.error as exc:
            raise ValueError(f"instruction field out of range: {exc}") from exc
        diff = bytes(self.diff)
        chaff = bytes(self.chaff)
        return b"".join(
            (header, _LENGTH.pack(len(diff)), diff, _LENGTH.pack(len(chaff)), chaff)
        )

    def _same_header(self, other: "Instruction") -> bool:
        return (
            self.old_num == other.old_num
            and self.new_num == other.new_num
            and self.ack_num == other.ack_num
            and self.throwaway_num == other.throwaway_num
            and self.chaff == other.chaff
            and self.protocol_version == other.protocol_version
        )


def _read_chunk(data: bytes, offset: int) -> tuple[bytes, int]:
    if offset + _LENGTH.size > len(data):
        raise ValueError("truncated instruction")
    (length,) = _LENGTH.unpack_from(data, offset)
    offset += _LENGTH.size
    end = offset + length
    if end > len(data):
        raise ValueError("truncated instruction")
    return data[offset:end], end


def parse_instruction(data: bytes) -> Instruction:
    """Parse a serialised instruction; raise ValueError if it is malformed."""
    data = bytes(data)
    if len(data) < _INST_HEADER.size:
        raise ValueError("truncated instruction")
    version, old_num, new_num, ack_num, throwaway_num = _INST_HEADER.unpack_from(data)
    diff, offset = _read_chunk(data, _INST_HEADER.size)
    chaff, offset = _read_chunk(data, offset)
    if offset != len(data):
        raise ValueError("trailing bytes after instruction")
    return Instruction(version, old_num, new_num, ack_num, throwaway_num, diff, chaff)


@dataclass
class Fragment:
    """A piece of a compressed instruction, as carried in one datagram."""

    id: int
    fragment_num: int
    final: bool
    contents: bytes = b""

    def to_bytes(self) -> bytes:
        """Serialise header and contents."""
        if not 0 <= self.fragment_num < 0x8000:
            raise ValueError("fragment number out of range")
        combined = (0x8000 if self.final else 0) | self.fragment_num
        return _FRAG_HEADER.pack(self.id, combined) + bytes(self.contents)


def parse_fragment(data: bytes) -> Fragment:
    """Parse a serialised fragment; raise ValueError if it is too short."""
    data = bytes(data)
    if len(data) < FRAG_HEADER_LEN:
        raise ValueError("fragment shorter than its header")
    frag_id, combined = _FRAG_HEADER.unpack_from(data)
    return Fragment(
        id=frag_id,
        fragment_num=combined & 0x7FFF,
        final=bool(combined & 0x8000),
        contents=data[FRAG_HEADER_LEN:],
    )


@dataclass
class FragmentAssembly:
    """Collects fragments of the current instruction until it is complete."""

    fragments: list[Fragment | None] = field(default_factory=list)
    current_id: int | None = None
    fragments_arrived: int = 0
    fragments_total: int | None = None

    def add_fragment(self, frag: Fragment) -> bool:
        """Add a fragment; return True once every fragment of its instruction is in."""
        num = frag.fragment_num
        if self.current_id != frag.id:
            self.fragments = [None] * (num + 1)
            self.fragments[num] = frag
            self.fragments_arrived = 1
            self.fragments_total = None
            self.current_id = frag.id
        elif num < len(self.fragments) and self.fragments[num] is not None:
            if self.fragments[num] != frag:
                raise ValueError("duplicate fragment differs from the one already held")
        else:
            if len(self.fragments) < num + 1:
                self.fragments.extend([None] * (num + 1 - len(self.fragments)))
            self.fragments[num] = frag
            self.fragments_arrived += 1

        if frag.final:
            self.fragments_total = num + 1
            if len(self.fragments) > self.fragments_total:
                raise ValueError("fragment beyond the final fragment")
            self.fragments.extend([None] * (self.fragments_total - len(self.fragments)))

        if self.fragments_total is not None and self.fragments_arrived > self.fragments_total:
            raise ValueError("more fragments than the instruction holds")

        return self.fragments_arrived == self.fragments_total

    def get_assembly(self) -> Instruction:
        """Return the completed instruction and clear the collected fragments."""
        if self.fragments_total is None or self.fragments_arrived != self.fragments_total:
            raise ValueError("instruction is not yet complete")
        if any(frag is None for frag in self.fragments):
            raise ValueError("instruction is missing a fragment")
        encoded = b"".join(frag.contents for frag in self.fragments)
        instruction = parse_instruction(get_compressor().uncompress_str(encoded))

        self.fragments = []
        self.fragments_arrived = 0
        self.fragments_total = None
        return instruction


class Fragmenter:
    """Splits instructions into fragments, numbering each distinct instruction."""

    def __init__(self) -> None:
        self.next_instruction_id = 0
        self.last_instruction = Instruction(old_num=UINT64_MAX, new_num=UINT64_MAX)
        self.last_mtu: int | None = None

    def make_fragments(self, inst: Instruction, mtu: int) -> list[Fragment]:
        """Split ``inst`` into fragments that each fit in ``mtu`` bytes."""
        mtu -= FRAG_HEADER_LEN
        if mtu <= 0:
            raise ValueError("MTU too small for a fragment header")

        if not inst._same_header(self.last_instruction) or self.last_mtu != mtu:
            self.next_instruction_id += 1

        last = self.last_instruction
        if inst.old_num == last.old_num and inst.new_num == last.new_num and inst.diff != last.diff:
            raise ValueError("same state numbers sent with a different diff")

        self.last_instruction = dataclasses.replace(inst)
        self.last_mtu = mtu

        payload = get_compressor().compress_str(inst.to_bytes())
        chunks = [payload[start:start + mtu] for start in range(0, len(payload), mtu)]
        return [
            Fragment(self.next_instruction_id, num, num == len(chunks) - 1, chunk)
            for num, chunk in enumerate(chunks)
        ]

    def last_ack_sent(self) -> int:
        """Return the ack number of the last instruction fragmented."""
        return self.last_instruction.ack_num