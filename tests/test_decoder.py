import struct

import pytest

from cildisasm.errors import TruncatedStream, UnknownOpcode
from cildisasm.instruction import (
    DecodeMode,
    InstructionStream,
    decode_one,
    encode_instructions,
    read_instructions,
)
from cildisasm.opcodes import OperandKind, by_name, iter_opcodes, lookup
from cildisasm.operands import MetadataToken, operand_size


def _i4(value: int) -> bytes:
    return struct.pack("<i", value)


def _u4(value: int) -> bytes:
    return struct.pack("<I", value)


def _sample_body() -> bytes:
    return b"".join(
        [
            bytes([0x00]),  # nop
            bytes([0x16]),  # ldc.i4.0
            bytes([0x0A]),  # stloc.0
            bytes([0x20]) + _i4(1234),  # ldc.i4 1234
            bytes([0x26]),  # pop
            bytes([0x06]),  # ldloc.0
            bytes([0x2A]),  # ret
        ]
    )


def test_opcode_table_lookup() -> None:
    assert lookup(0x2A).name == "ret"
    assert lookup(0xFE, 0x01).name == "ceq"
    assert lookup(0xFE) is None
    assert lookup(0x24) is None
    assert by_name("ceq").opcode_bytes == b"\xFE\x01"
    assert by_name("br.s").operand_kind is OperandKind.SHORT_BRANCH_TARGET
    assert by_name("switch").fixed_operand_size is None

    with pytest.raises(KeyError):
        by_name("not.an.opcode")


def test_opcode_names_are_unique() -> None:
    names = [descriptor.name for descriptor in iter_opcodes()]
    assert len(names) == len(set(names))


def test_decode_sample_body() -> None:
    code = _sample_body()
    instructions, errors = read_instructions(code)

    assert errors == []
    assert [item.name for item in instructions] == [
        "nop",
        "ldc.i4.0",
        "stloc.0",
        "ldc.i4",
        "pop",
        "ldloc.0",
        "ret",
    ]
    assert [item.offset for item in instructions] == [0, 1, 2, 3, 8, 9, 10]
    assert instructions[3].operand == 1234
    assert instructions[3].format() == "IL_0003: ldc.i4 1234"


def test_sizes_sum_to_buffer_length_and_round_trip() -> None:
    code = _sample_body() + bytes([0x02, 0x03, 0xFE, 0x01, 0x2A])
    instructions = InstructionStream(code).decode()

    assert sum(item.size for item in instructions) == len(code)
    for current, following in zip(instructions, instructions[1:]):
        assert current.next_offset == following.offset
    assert encode_instructions(instructions) == code


def test_round_trip_with_branch_switch_and_wide_operands() -> None:
    code = b"".join(
        [
            bytes([0x00]),  # 0: nop
            bytes([0xFE, 0x09]) + struct.pack("<H", 0x0102),  # 1: ldarg 258
            bytes([0x23]) + struct.pack("<d", 2.5),  # 5: ldc.r8 2.5
            bytes([0x45]) + _u4(2) + _i4(-27) + _i4(0),  # 14: switch (IL_0000, IL_001B)
            bytes([0x26]),  # 27: pop
            bytes([0x2B]) + struct.pack("<b", -30),  # 28: br.s IL_0000
            bytes([0x2A]),  # 30: ret
        ]
    )
    instructions = InstructionStream(code).decode()

    assert [item.name for item in instructions] == [
        "nop",
        "ldarg",
        "ldc.r8",
        "switch",
        "pop",
        "br.s",
        "ret",
    ]
    assert [item.offset for item in instructions] == [0, 1, 5, 14, 27, 28, 30]
    assert sum(item.size for item in instructions) == len(code)
    assert instructions[1].operand == 0x0102
    assert instructions[2].operand == 2.5
    assert instructions[3].operand == (0, 27)
    assert instructions[5].operand == 0
    assert encode_instructions(instructions) == code


def test_two_byte_opcode_uses_escape_table() -> None:
    instructions = InstructionStream(bytes([0x02, 0x03, 0xFE, 0x01, 0x2A])).decode()

    assert [item.name for item in instructions] == ["ldarg.0", "ldarg.1", "ceq", "ret"]
    ceq = instructions[2]
    assert ceq.offset == 2
    assert ceq.size == 2
    assert ceq.opcode.is_two_byte_form


def test_float_and_token_operands() -> None:
    code = bytes([0x23]) + struct.pack("<d", 1.5) + bytes([0x28]) + _u4(0x06000002)
    instructions = InstructionStream(code).decode()

    assert instructions[0].operand == 1.5
    token = instructions[1].operand
    assert token == MetadataToken(0x06000002)
    assert token.table == 0x06
    assert token.row == 2
    assert str(token) == "token:0x06000002"


def test_switch_operand_is_sixteen_bytes_for_three_entries() -> None:
    code = bytes([0x45]) + _u4(3) + _i4(0) + _i4(2) + _i4(5)
    instruction = decode_one(code, 0)

    assert operand_size(OperandKind.SWITCH_TABLE, code, 1) == 16
    assert len(instruction.operand_bytes) == 16
    assert instruction.size == 17
    # Entries are relative to the end of the whole table (offset 17).
    assert instruction.operand == (17, 19, 22)


def test_truncated_operand_raises_in_strict_mode() -> None:
    with pytest.raises(TruncatedStream) as excinfo:
        InstructionStream(bytes([0x20, 0x01, 0x02])).decode()

    assert excinfo.value.offset == 0
    assert excinfo.value.needed == 4
    assert excinfo.value.available == 2


def test_truncated_escape_byte_raises() -> None:
    with pytest.raises(TruncatedStream) as excinfo:
        InstructionStream(bytes([0x00, 0xFE])).decode()

    assert excinfo.value.offset == 1


def test_truncated_tail_keeps_earlier_instructions_in_permissive_mode() -> None:
    instructions, errors = read_instructions(bytes([0x00, 0x20, 0x01]), DecodeMode.PERMISSIVE)

    assert [item.name for item in instructions] == ["nop"]
    assert len(errors) == 1
    assert isinstance(errors[0], TruncatedStream)
    assert errors[0].offset == 1


def test_unknown_opcode_strict_and_permissive() -> None:
    code = bytes([0x00, 0x24, 0x2A])

    with pytest.raises(UnknownOpcode) as excinfo:
        InstructionStream(code, DecodeMode.STRICT).decode()
    assert excinfo.value.offset == 1
    assert excinfo.value.byte == 0x24

    instructions, errors = read_instructions(code, DecodeMode.PERMISSIVE)
    assert [(item.offset, item.name) for item in instructions] == [(0, "nop"), (2, "ret")]
    assert [type(error) for error in errors] == [UnknownOpcode]


def test_unknown_two_byte_opcode_resumes_after_escape() -> None:
    instructions, errors = read_instructions(bytes([0xFE, 0x08, 0x2A]), DecodeMode.PERMISSIVE)

    assert errors[0].two_byte
    assert [(item.offset, item.name) for item in instructions] == [(1, "ldloc.2"), (2, "ret")]


def test_stream_is_restartable() -> None:
    stream = InstructionStream(bytes([0x00, 0x24, 0x2A]), DecodeMode.PERMISSIVE)

    first = list(stream)
    second = list(stream)

    assert first == second
    assert len(stream.errors) == 1


def test_empty_body_decodes_to_nothing() -> None:
    assert InstructionStream(b"").decode() == []
