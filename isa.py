"""ISA: instruction encodings, register names and image word helpers."""

import struct
from enum import IntEnum

MEMORY_SIZE = 65536
WORD_MASK = 0xFFFF
PC_START = 0x3000

KBSR = 0xFE00  # keyboard status
KBDR = 0xFE02  # keyboard data


class OpCode(IntEnum):
    """Keeps opcodes from all operations (bits 15..12)."""

    BR = 0  # conditional branch
    ADD = 1
    LD = 2  # load PC-relative
    ST = 3  # store PC-relative
    JSR = 4  # jump to subroutine (JSR / JSRR)
    AND = 5
    LDR = 6  # load base+offset
    STR = 7  # store base+offset
    RTI = 8  # unimplemented
    NOT = 9
    LDI = 10  # load indirect
    STI = 11  # store indirect
    JMP = 12  # also RET (JMP R7)
    RES = 13  # reserved, unimplemented
    LEA = 14
    TRAP = 15


class Register(IntEnum):
    """Symbolic register indexes."""

    R0 = 0
    R1 = 1
    R2 = 2
    R3 = 3
    R4 = 4
    R5 = 5
    R6 = 6
    R7 = 7
    PC = 8
    COND = 9


class Flag(IntEnum):
    """Condition flags; exactly one is held after a flag-defining instruction."""

    POS = 1 << 0
    ZRO = 1 << 1
    NEG = 1 << 2


class TrapVector(IntEnum):
    """Trap routines served by the TRAP instruction."""

    GETC = 0x20  # read a character, no echo
    OUT = 0x21  # write a character
    PUTS = 0x22  # write a word string
    IN = 0x23  # prompt, then read a character
    PUTSP = 0x24  # write a byte string
    HALT = 0x25


# instructions that overwrite the condition flag from their destination register
FLAG_SETTING = frozenset({OpCode.ADD, OpCode.AND, OpCode.NOT, OpCode.LD, OpCode.LDI, OpCode.LDR, OpCode.LEA})

WORD = struct.Struct(">H")


def sign_extend(value: int, bit_count: int) -> int:
    """Sign-extend the low `bit_count` bits of `value` to a 16-bit word."""
    value &= (1 << bit_count) - 1
    if (value >> (bit_count - 1)) & 1:
        value |= (WORD_MASK << bit_count) & WORD_MASK
    return value


def to_signed(word: int) -> int:
    """Interpret a 16-bit word as two's-complement."""
    word &= WORD_MASK
    return word - 0x10000 if word & 0x8000 else word


def opcode_of(instr: int) -> int:
    """Return the raw opcode number from bits 15..12."""
    return (instr >> 12) & 0xF


def decode_instr(instr: int) -> tuple[OpCode, int]:
    """Split an instruction word into (OpCode, 12-bit operand field)."""
    return OpCode(opcode_of(instr)), instr & 0x0FFF


def encode_instr(opcode: OpCode, operand: int = 0) -> int:
    """Build an instruction word from an opcode and its 12-bit operand field."""
    return ((int(opcode) & 0xF) << 12) | (int(operand) & 0x0FFF)


def flag_name(cond: int) -> str:
    """Short name of the condition register value for log lines."""
    try:
        return Flag(cond).name[0]
    except ValueError:
        return "-"


def mnemonic(opcode: OpCode, instr: int) -> str:
    """Get operation mnemonic for log lines (opcode name plus raw word)."""
    if opcode == OpCode.TRAP:
        vector = instr & 0xFF
        try:
            return f"TRAP {TrapVector(vector).name}"
        except ValueError:
            return f"TRAP 0x{vector:02X}"
    return f"{opcode.name} 0x{instr & WORD_MASK:04X}"


def unpack_words(blob: bytes) -> list[int]:
    """Decode big-endian 16-bit words; a trailing odd byte is dropped."""
    usable = len(blob) - (len(blob) % WORD.size)
    return [w for (w,) in WORD.iter_unpack(blob[:usable])]


def pack_image(origin: int, words: list[int]) -> bytes:
    """Encode a program image: origin word followed by the program words."""
    out = bytearray(WORD.pack(origin & WORD_MASK))
    for w in words:
        out += WORD.pack(int(w) & WORD_MASK)
    return bytes(out)
