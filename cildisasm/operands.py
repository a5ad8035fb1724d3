"""Operand decoding for CIL instructions.

All multi-byte values are little-endian.  Token operands are returned as
opaque :class:`MetadataToken` values; resolving them to symbols is the job of
the module introspection service.  Branch operands are converted to absolute
offsets here because the base they are relative to (the offset right after
the operand) is only known while the cursor is positioned on the instruction.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Tuple, Union

from .errors import TruncatedStream
from .opcodes import OPERAND_WIDTHS, OperandKind


@dataclass(frozen=True)
class MetadataToken:
    """Opaque 32-bit metadata token (table id in the top byte, row below)."""

    value: int

    @property
    def table(self) -> int:
        return (self.value >> 24) & 0xFF

    @property
    def row(self) -> int:
        return self.value & 0x00FFFFFF

    def __str__(self) -> str:
        return f"token:0x{self.value:08X}"


OperandValue = Union[None, int, float, MetadataToken, Tuple[int, ...]]

_STRUCT_FORMATS = {
    OperandKind.INT8: "<b",
    OperandKind.UINT8: "<B",
    OperandKind.INT16: "<h",
    OperandKind.INT32: "<i",
    OperandKind.INT64: "<q",
    OperandKind.FLOAT32: "<f",
    OperandKind.FLOAT64: "<d",
    OperandKind.SHORT_BRANCH_TARGET: "<b",
    OperandKind.LONG_BRANCH_TARGET: "<i",
    OperandKind.VARIABLE_INDEX_SHORT: "<B",
    OperandKind.VARIABLE_INDEX_LONG: "<H",
}

SWITCH_COUNT_WIDTH = 4
SWITCH_ENTRY_WIDTH = 4


def _require(data: bytes, cursor: int, needed: int, instruction_offset: int) -> None:
    available = len(data) - cursor
    if available < needed:
        raise TruncatedStream(instruction_offset, needed, max(0, available))


def operand_size(kind: OperandKind, data: bytes = b"", cursor: int = 0) -> int:
    """Return the number of operand bytes for ``kind`` at ``cursor``.

    The switch table is the only variable width operand, its size depends on
    the leading count field so ``data`` must be supplied for it.
    """

    width = OPERAND_WIDTHS[kind]
    if width is not None:
        return width
    _require(data, cursor, SWITCH_COUNT_WIDTH, cursor)
    (count,) = struct.unpack_from("<I", data, cursor)
    return SWITCH_COUNT_WIDTH + SWITCH_ENTRY_WIDTH * count


def read_operand(
    kind: OperandKind,
    data: bytes,
    cursor: int,
    instruction_offset: int = 0,
) -> Tuple[OperandValue, bytes, int]:
    """Decode the operand starting at ``cursor``.

    Returns ``(value, raw_bytes, next_cursor)``.  ``next_cursor`` is always
    ``cursor + len(raw_bytes)``.  ``instruction_offset`` is only used to
    report truncation against the start of the instruction.
    """

    if kind is OperandKind.NONE:
        return None, b"", cursor

    if kind is OperandKind.SWITCH_TABLE:
        return _read_switch(data, cursor, instruction_offset)

    width = OPERAND_WIDTHS[kind]
    assert width is not None
    _require(data, cursor, width, instruction_offset)
    raw = bytes(data[cursor : cursor + width])
    end = cursor + width

    if kind.is_token:
        (token,) = struct.unpack("<I", raw)
        return MetadataToken(token), raw, end

    (value,) = struct.unpack(_STRUCT_FORMATS[kind], raw)
    if kind.is_branch:
        value = end + value
    return value, raw, end


def _read_switch(
    data: bytes, cursor: int, instruction_offset: int
) -> Tuple[Tuple[int, ...], bytes, int]:
    _require(data, cursor, SWITCH_COUNT_WIDTH, instruction_offset)
    (count,) = struct.unpack_from("<I", data, cursor)
    total = SWITCH_COUNT_WIDTH + SWITCH_ENTRY_WIDTH * count
    _require(data, cursor, total, instruction_offset)
    end = cursor + total
    # Every entry is relative to the end of the whole table, not to the entry.
    relative = struct.unpack_from(f"<{count}i", data, cursor + SWITCH_COUNT_WIDTH)
    targets = tuple(end + delta for delta in relative)
    return targets, bytes(data[cursor:end]), end


def format_operand(kind: OperandKind, value: OperandValue) -> str:
    """Render an operand for listings."""

    if value is None:
        return ""
    if kind.is_branch:
        return f"IL_{value:04X}"
    if kind is OperandKind.SWITCH_TABLE:
        return "(" + ", ".join(f"IL_{target:04X}" for target in value) + ")"
    if isinstance(value, MetadataToken):
        return str(value)
    if kind in {OperandKind.FLOAT32, OperandKind.FLOAT64}:
        return repr(value)
    if kind in {OperandKind.VARIABLE_INDEX_SHORT, OperandKind.VARIABLE_INDEX_LONG}:
        return f"V_{value}"
    return str(value)


__all__ = [
    "MetadataToken",
    "OperandValue",
    "operand_size",
    "read_operand",
    "format_operand",
]
