"""Decoding of raw CIL method bodies into instruction records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple

from .errors import DecodeError, TruncatedStream, UnknownOpcode
from .opcodes import TWO_BYTE_ESCAPE, OpcodeDescriptor, lookup
from .operands import OperandValue, format_operand, read_operand

logger = logging.getLogger(__name__)


class DecodeMode(Enum):
    """Reaction to malformed streams."""

    STRICT = "strict"
    PERMISSIVE = "permissive"


@dataclass(frozen=True)
class DecodedInstruction:
    offset: int
    opcode: OpcodeDescriptor
    operand: OperandValue = None
    operand_bytes: bytes = b""

    @property
    def size(self) -> int:
        return self.opcode.size + len(self.operand_bytes)

    @property
    def next_offset(self) -> int:
        return self.offset + self.size

    @property
    def name(self) -> str:
        return self.opcode.name

    def encode(self) -> bytes:
        return self.opcode.opcode_bytes + self.operand_bytes

    def label(self) -> str:
        return f"IL_{self.offset:04X}"

    def format(self) -> str:
        operand = format_operand(self.opcode.operand_kind, self.operand)
        text = f"{self.label()}: {self.opcode.name}"
        return f"{text} {operand}" if operand else text


class InstructionStream(Iterable[DecodedInstruction]):
    """Lazy, restartable view over a method body.

    Iterating decodes the buffer from offset zero every time.  In strict mode
    the first :class:`DecodeError` propagates to the caller.  In permissive
    mode errors are appended to :attr:`errors`: unknown opcodes are skipped
    one byte at a time while a truncated tail ends the sequence.  The list is
    reset at the start of each iteration.
    """

    def __init__(self, data: bytes, mode: DecodeMode = DecodeMode.STRICT) -> None:
        self.data = bytes(data)
        self.mode = mode
        self.errors: List[DecodeError] = []

    def __iter__(self) -> Iterator[DecodedInstruction]:
        self.errors = []
        data = self.data
        position = 0
        while position < len(data):
            try:
                instruction = decode_one(data, position)
            except UnknownOpcode as exc:
                if self.mode is DecodeMode.STRICT:
                    raise
                logger.debug("skipping %s", exc)
                self.errors.append(exc)
                position = exc.offset + 1
                continue
            except TruncatedStream as exc:
                if self.mode is DecodeMode.STRICT:
                    raise
                logger.debug("stopping at %s", exc)
                self.errors.append(exc)
                return
            yield instruction
            position = instruction.next_offset

    def decode(self) -> List[DecodedInstruction]:
        return list(self)


def decode_one(data: bytes, offset: int) -> DecodedInstruction:
    """Decode the single instruction that starts at ``offset``."""

    first = data[offset]
    second: Optional[int] = None
    cursor = offset + 1
    if first == TWO_BYTE_ESCAPE:
        if cursor >= len(data):
            raise TruncatedStream(offset, 2, 1)
        second = data[cursor]
        cursor += 1

    opcode = lookup(first, second)
    if opcode is None:
        if second is not None:
            raise UnknownOpcode(offset, second, two_byte=True)
        raise UnknownOpcode(offset, first)

    value, raw, _ = read_operand(opcode.operand_kind, data, cursor, offset)
    return DecodedInstruction(offset, opcode, value, raw)


def read_instructions(
    data: bytes, mode: DecodeMode = DecodeMode.STRICT
) -> Tuple[List[DecodedInstruction], List[DecodeError]]:
    """Decode ``data`` eagerly and return the instructions with any errors."""

    stream = InstructionStream(data, mode)
    instructions = stream.decode()
    return instructions, list(stream.errors)


def encode_instructions(instructions: Iterable[DecodedInstruction]) -> bytes:
    """Reassemble decoded instructions into the bytes they came from."""

    return b"".join(instruction.encode() for instruction in instructions)


__all__ = [
    "DecodeMode",
    "DecodedInstruction",
    "InstructionStream",
    "decode_one",
    "read_instructions",
    "encode_instructions",
]
