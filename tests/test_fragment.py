import random

import pytest

from ssptransport.fragment import (
    FRAG_HEADER_LEN,
    UINT64_MAX,
    Fragment,
    FragmentAssembly,
    Fragmenter,
    Instruction,
    parse_fragment,
    parse_instruction,
)


def make_instruction(diff=b"diff", ack=3):
    return Instruction(
        protocol_version=2,
        old_num=1,
        new_num=2,
        ack_num=ack,
        throwaway_num=1,
        diff=diff,
        chaff=b"xyz",
    )


def test_instruction_round_trip():
    inst = make_instruction()
    assert parse_instruction(inst.to_bytes()) == inst


def test_instruction_with_max_numbers_round_trip():
    inst = Instruction(old_num=UINT64_MAX, new_num=UINT64_MAX, diff=b"", chaff=b"")
    assert parse_instruction(inst.to_bytes()) == inst


def test_parse_instruction_truncated():
    data = make_instruction().to_bytes()
    with pytest.raises(ValueError):
        parse_instruction(data[:-1])


def test_parse_instruction_trailing():
    data = make_instruction().to_bytes()
    with pytest.raises(ValueError):
        parse_instruction(data + b"\0")


def test_instruction_out_of_range():
    with pytest.raises(ValueError):
        Instruction(old_num=-1).to_bytes()


def test_fragment_wire_format():
    frag = Fragment(id=1, fragment_num=2, final=True, contents=b"ab")
    assert frag.to_bytes() == b"\x00" * 7 + b"\x01" + b"\x80\x02" + b"ab"
    assert FRAG_HEADER_LEN == 10


def test_fragment_round_trip():
    frag = Fragment(id=UINT64_MAX - 5, fragment_num=0x7FFF, final=False, contents=b"data")
    assert parse_fragment(frag.to_bytes()) == frag


def test_fragment_number_too_large():
    with pytest.raises(ValueError):
        Fragment(id=1, fragment_num=0x8000, final=False).to_bytes()


def test_parse_fragment_too_short():
    with pytest.raises(ValueError):
        parse_fragment(b"\0" * (FRAG_HEADER_LEN - 1))


def test_parse_header_only_fragment():
    frag = parse_fragment(b"\0" * FRAG_HEADER_LEN)
    assert frag == Fragment(id=0, fragment_num=0, final=False, contents=b"")


def test_single_fragment_reassembly():
    inst = make_instruction()
    frags = Fragmenter().make_fragments(inst, 1400)
    assert len(frags) == 1
    assert frags[0].final
    assembly = FragmentAssembly()
    assert assembly.add_fragment(parse_fragment(frags[0].to_bytes()))
    assert assembly.get_assembly() == inst


def test_multi_fragment_out_of_order_reassembly():
    diff = random.Random(0).randbytes(3000)
    inst = make_instruction(diff=diff)
    frags = Fragmenter().make_fragments(inst, 200)
    assert len(frags) > 2
    assert all(len(f.to_bytes()) <= 200 for f in frags)
    assert [f.fragment_num for f in frags] == list(range(len(frags)))
    assert [f.final for f in frags] == [False] * (len(frags) - 1) + [True]

    assembly = FragmentAssembly()
    order = list(reversed(frags))
    results = [assembly.add_fragment(f) for f in order]
    assert results == [False] * (len(frags) - 1) + [True]
    assert assembly.get_assembly() == inst


def test_duplicate_fragment_is_not_counted_twice():
    diff = random.Random(1).randbytes(1000)
    frags = Fragmenter().make_fragments(make_instruction(diff=diff), 100)
    assembly = FragmentAssembly()
    assert not assembly.add_fragment(frags[0])
    assert not assembly.add_fragment(frags[0])
    for f in frags[1:-1]:
        assert not assembly.add_fragment(f)
    assert assembly.add_fragment(frags[-1])


def test_conflicting_duplicate_raises():
    assembly = FragmentAssembly()
    assembly.add_fragment(Fragment(5, 0, False, b"a"))
    with pytest.raises(ValueError):
        assembly.add_fragment(Fragment(5, 0, False, b"b"))


def test_get_assembly_incomplete_raises():
    assembly = FragmentAssembly()
    assembly.add_fragment(Fragment(1, 1, True, b"a"))
    with pytest.raises(ValueError):
        assembly.get_assembly()


def test_get_assembly_resets():
    inst = make_instruction()
    frag = Fragmenter().make_fragments(inst, 1400)[0]
    assembly = FragmentAssembly()
    assembly.add_fragment(frag)
    assembly.get_assembly()
    with pytest.raises(ValueError):
        assembly.get_assembly()


def test_same_instruction_keeps_id():
    fragmenter = Fragmenter()
    first = fragmenter.make_fragments(make_instruction(), 1400)
    second = fragmenter.make_fragments(make_instruction(), 1400)
    assert first[0].id == second[0].id


def test_changed_instruction_gets_new_id():
    fragmenter = Fragmenter()
    first = fragmenter.make_fragments(make_instruction(ack=3), 1400)
    second = fragmenter.make_fragments(make_instruction(ack=4), 1400)
    assert second[0].id == first[0].id + 1


def test_changed_mtu_gets_new_id():
    fragmenter = Fragmenter()
    first = fragmenter.make_fragments(make_instruction(), 1400)
    second = fragmenter.make_fragments(make_instruction(), 1300)
    assert second[0].id == first[0].id + 1


def test_same_numbers_different_diff_raises():
    fragmenter = Fragmenter()
    fragmenter.make_fragments(make_instruction(diff=b"one"), 1400)
    with pytest.raises(ValueError):
        fragmenter.make_fragments(make_instruction(diff=b"two"), 1400)


def test_last_ack_sent():
    fragmenter = Fragmenter()
    assert fragmenter.last_ack_sent() == 0
    fragmenter.make_fragments(make_instruction(ack=UINT64_MAX), 1400)
    assert fragmenter.last_ack_sent() == UINT64_MAX


def test_mtu_too_small_raises():
    with pytest.raises(ValueError):
        Fragmenter().make_fragments(make_instruction(), FRAG_HEADER_LEN)