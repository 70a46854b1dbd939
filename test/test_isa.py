"""Tests for instruction field helpers and the image word codec."""

import pytest
from isa import (
    OpCode,
    TrapVector,
    decode_instr,
    encode_instr,
    flag_name,
    mnemonic,
    pack_image,
    sign_extend,
    to_signed,
    unpack_words,
)


@pytest.mark.parametrize("bits", [5, 6, 9, 11])
def test_sign_extend_matches_twos_complement(bits: int) -> None:
    mask = (1 << bits) - 1
    for v in range(0x10000):
        field = v & mask
        expected = field - (1 << bits) if field >> (bits - 1) else field
        assert to_signed(sign_extend(field, bits)) == expected


def test_sign_extend_examples() -> None:
    assert sign_extend(0x1F, 5) == 0xFFFF
    assert sign_extend(0x0F, 5) == 0x000F
    assert sign_extend(0x1FC, 9) == 0xFFFC
    assert sign_extend(0x400, 11) == 0xFC00
    # bits above the field are ignored
    assert sign_extend(0x1021, 5) == 0x0001


def test_decode_and_encode() -> None:
    assert decode_instr(0x1021) == (OpCode.ADD, 0x021)
    assert decode_instr(0xF025) == (OpCode.TRAP, 0x025)
    assert encode_instr(OpCode.LEA, 0x402) == 0xE402
    assert encode_instr(OpCode.BR, -4) == 0x0FFC


def test_mnemonic() -> None:
    assert mnemonic(OpCode.ADD, 0x1021) == "ADD 0x1021"
    assert mnemonic(OpCode.TRAP, 0xF000 | TrapVector.HALT) == "TRAP HALT"
    assert mnemonic(OpCode.TRAP, 0xF0FF) == "TRAP 0xFF"


def test_flag_name() -> None:
    assert flag_name(1) == "P"
    assert flag_name(2) == "Z"
    assert flag_name(4) == "N"
    assert flag_name(0) == "-"


def test_pack_and_unpack_words() -> None:
    blob = pack_image(0x3000, [0x1001, 0x1002])
    assert blob == bytes([0x30, 0x00, 0x10, 0x01, 0x10, 0x02])
    assert unpack_words(blob) == [0x3000, 0x1001, 0x1002]
    assert unpack_words(blob + b"\x7f") == [0x3000, 0x1001, 0x1002]
