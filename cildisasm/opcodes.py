"""Static CIL opcode table.

The table mirrors the ECMA-335 partition III opcode list.  Single byte opcodes
are indexed by their value, two byte opcodes (``0xFE xx``) by their second
byte.  Each descriptor carries enough metadata for the decoder to size the
operand and for the flow classifier to decide which edges an instruction
produces, so neither component needs a second lookup of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional


TWO_BYTE_ESCAPE = 0xFE


class OperandKind(Enum):
    """Encoding of the bytes that follow an opcode."""

    NONE = "none"
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    SHORT_BRANCH_TARGET = "short_branch_target"
    LONG_BRANCH_TARGET = "long_branch_target"
    SWITCH_TABLE = "switch_table"
    METHOD_TOKEN = "method_token"
    FIELD_TOKEN = "field_token"
    TYPE_TOKEN = "type_token"
    STRING_TOKEN = "string_token"
    SIGNATURE_TOKEN = "signature_token"
    INLINE_TOKEN = "inline_token"
    VARIABLE_INDEX_SHORT = "variable_index_short"
    VARIABLE_INDEX_LONG = "variable_index_long"

    @property
    def is_branch(self) -> bool:
        return self in {OperandKind.SHORT_BRANCH_TARGET, OperandKind.LONG_BRANCH_TARGET}

    @property
    def is_token(self) -> bool:
        return self in TOKEN_KINDS


TOKEN_KINDS = frozenset(
    {
        OperandKind.METHOD_TOKEN,
        OperandKind.FIELD_TOKEN,
        OperandKind.TYPE_TOKEN,
        OperandKind.STRING_TOKEN,
        OperandKind.SIGNATURE_TOKEN,
        OperandKind.INLINE_TOKEN,
    }
)

# ``None`` marks the variable width switch table.
OPERAND_WIDTHS: Dict[OperandKind, Optional[int]] = {
    OperandKind.NONE: 0,
    OperandKind.INT8: 1,
    OperandKind.UINT8: 1,
    OperandKind.INT16: 2,
    OperandKind.INT32: 4,
    OperandKind.INT64: 8,
    OperandKind.FLOAT32: 4,
    OperandKind.FLOAT64: 8,
    OperandKind.SHORT_BRANCH_TARGET: 1,
    OperandKind.LONG_BRANCH_TARGET: 4,
    OperandKind.SWITCH_TABLE: None,
    OperandKind.METHOD_TOKEN: 4,
    OperandKind.FIELD_TOKEN: 4,
    OperandKind.TYPE_TOKEN: 4,
    OperandKind.STRING_TOKEN: 4,
    OperandKind.SIGNATURE_TOKEN: 4,
    OperandKind.INLINE_TOKEN: 4,
    OperandKind.VARIABLE_INDEX_SHORT: 1,
    OperandKind.VARIABLE_INDEX_LONG: 2,
}


class FlowKind(Enum):
    """How an instruction hands control to its successor(s)."""

    NEXT = "next"
    CALL = "call"
    BRANCH = "branch"
    COND_BRANCH = "cond_branch"
    SWITCH = "switch"
    LEAVE = "leave"
    RETURN = "return"
    THROW = "throw"
    END_HANDLER = "end_handler"
    META = "meta"
    BREAK = "break"

    @property
    def falls_through(self) -> bool:
        return self not in {
            FlowKind.BRANCH,
            FlowKind.LEAVE,
            FlowKind.RETURN,
            FlowKind.THROW,
            FlowKind.END_HANDLER,
        }


class Predicate(Enum):
    """Condition under which a branch is taken."""

    EQUAL = "equal"
    NOT_EQUAL = "not equal"
    LESS = "less than"
    LESS_OR_EQUAL = "less or equal"
    GREATER = "greater than"
    GREATER_OR_EQUAL = "greater or equal"
    TRUE = "true"
    FALSE = "false"
    UNCONDITIONAL = "unconditional"


@dataclass(frozen=True)
class OpcodeDescriptor:
    """Immutable description of a single opcode."""

    name: str
    value: int
    operand_kind: OperandKind
    is_two_byte_form: bool = False
    flow: FlowKind = FlowKind.NEXT
    predicate: Optional[Predicate] = None

    @property
    def size(self) -> int:
        return 2 if self.is_two_byte_form else 1

    @property
    def fixed_operand_size(self) -> Optional[int]:
        """Operand width in bytes, ``None`` for the switch table."""

        return OPERAND_WIDTHS[self.operand_kind]

    @property
    def opcode_bytes(self) -> bytes:
        if self.is_two_byte_form:
            return bytes((TWO_BYTE_ESCAPE, self.value & 0xFF))
        return bytes((self.value,))

    def label(self) -> str:
        if self.is_two_byte_form:
            return f"FE:{self.value & 0xFF:02X}"
        return f"{self.value:02X}"


# ---------------------------------------------------------------------------
# Table construction
# ---------------------------------------------------------------------------

_K = OperandKind
_F = FlowKind
_P = Predicate

ONE_BYTE_OPCODES: Dict[int, OpcodeDescriptor] = {}
TWO_BYTE_OPCODES: Dict[int, OpcodeDescriptor] = {}
_BY_NAME: Dict[str, OpcodeDescriptor] = {}


def _op(
    value: int,
    name: str,
    kind: OperandKind = _K.NONE,
    flow: FlowKind = _F.NEXT,
    predicate: Optional[Predicate] = None,
) -> None:
    two_byte = value > 0xFF
    descriptor = OpcodeDescriptor(
        name=name,
        value=value,
        operand_kind=kind,
        is_two_byte_form=two_byte,
        flow=flow,
        predicate=predicate,
    )
    table = TWO_BYTE_OPCODES if two_byte else ONE_BYTE_OPCODES
    table[value & 0xFF] = descriptor
    _BY_NAME[name] = descriptor


_op(0x00, "nop")
_op(0x01, "break", flow=_F.BREAK)
for _index in range(4):
    _op(0x02 + _index, f"ldarg.{_index}")
    _op(0x06 + _index, f"ldloc.{_index}")
    _op(0x0A + _index, f"stloc.{_index}")
_op(0x0E, "ldarg.s", _K.VARIABLE_INDEX_SHORT)
_op(0x0F, "ldarga.s", _K.VARIABLE_INDEX_SHORT)
_op(0x10, "starg.s", _K.VARIABLE_INDEX_SHORT)
_op(0x11, "ldloc.s", _K.VARIABLE_INDEX_SHORT)
_op(0x12, "ldloca.s", _K.VARIABLE_INDEX_SHORT)
_op(0x13, "stloc.s", _K.VARIABLE_INDEX_SHORT)
_op(0x14, "ldnull")
_op(0x15, "ldc.i4.m1")
for _index in range(9):
    _op(0x16 + _index, f"ldc.i4.{_index}")
_op(0x1F, "ldc.i4.s", _K.INT8)
_op(0x20, "ldc.i4", _K.INT32)
_op(0x21, "ldc.i8", _K.INT64)
_op(0x22, "ldc.r4", _K.FLOAT32)
_op(0x23, "ldc.r8", _K.FLOAT64)
_op(0x25, "dup")
_op(0x26, "pop")
_op(0x27, "jmp", _K.METHOD_TOKEN, _F.RETURN)
_op(0x28, "call", _K.METHOD_TOKEN, _F.CALL)
_op(0x29, "calli", _K.SIGNATURE_TOKEN, _F.CALL)
_op(0x2A, "ret", flow=_F.RETURN)

# Branches: the short forms occupy 0x2B-0x37, the long forms 0x38-0x44 in the
# same order, so both are generated from one list.
_BRANCHES = (
    ("br", _F.BRANCH, _P.UNCONDITIONAL),
    ("brfalse", _F.COND_BRANCH, _P.FALSE),
    ("brtrue", _F.COND_BRANCH, _P.TRUE),
    ("beq", _F.COND_BRANCH, _P.EQUAL),
    ("bge", _F.COND_BRANCH, _P.GREATER_OR_EQUAL),
    ("bgt", _F.COND_BRANCH, _P.GREATER),
    ("ble", _F.COND_BRANCH, _P.LESS_OR_EQUAL),
    ("blt", _F.COND_BRANCH, _P.LESS),
    ("bne.un", _F.COND_BRANCH, _P.NOT_EQUAL),
    ("bge.un", _F.COND_BRANCH, _P.GREATER_OR_EQUAL),
    ("bgt.un", _F.COND_BRANCH, _P.GREATER),
    ("ble.un", _F.COND_BRANCH, _P.LESS_OR_EQUAL),
    ("blt.un", _F.COND_BRANCH, _P.LESS),
)
for _index, (_name, _flow, _predicate) in enumerate(_BRANCHES):
    _op(0x2B + _index, f"{_name}.s", _K.SHORT_BRANCH_TARGET, _flow, _predicate)
    _op(0x38 + _index, _name, _K.LONG_BRANCH_TARGET, _flow, _predicate)

_op(0x45, "switch", _K.SWITCH_TABLE, _F.SWITCH)

for _index, _suffix in enumerate(("i1", "u1", "i2", "u2", "i4", "u4", "i8", "i", "r4", "r8", "ref")):
    _op(0x46 + _index, f"ldind.{_suffix}")
_op(0x51, "stind.ref")
for _index, _suffix in enumerate(("i1", "i2", "i4", "i8", "r4", "r8")):
    _op(0x52 + _index, f"stind.{_suffix}")

for _index, _name in enumerate(
    ("add", "sub", "mul", "div", "div.un", "rem", "rem.un", "and", "or", "xor",
     "shl", "shr", "shr.un", "neg", "not")
):
    _op(0x58 + _index, _name)
for _index, _suffix in enumerate(("i1", "i2", "i4", "i8", "r4", "r8", "u4", "u8")):
    _op(0x67 + _index, f"conv.{_suffix}")

_op(0x6F, "callvirt", _K.METHOD_TOKEN, _F.CALL)
_op(0x70, "cpobj", _K.TYPE_TOKEN)
_op(0x71, "ldobj", _K.TYPE_TOKEN)
_op(0x72, "ldstr", _K.STRING_TOKEN)
_op(0x73, "newobj", _K.METHOD_TOKEN, _F.CALL)
_op(0x74, "castclass", _K.TYPE_TOKEN)
_op(0x75, "isinst", _K.TYPE_TOKEN)
_op(0x76, "conv.r.un")
_op(0x79, "unbox", _K.TYPE_TOKEN)
_op(0x7A, "throw", flow=_F.THROW)
_op(0x7B, "ldfld", _K.FIELD_TOKEN)
_op(0x7C, "ldflda", _K.FIELD_TOKEN)
_op(0x7D, "stfld", _K.FIELD_TOKEN)
_op(0x7E, "ldsfld", _K.FIELD_TOKEN)
_op(0x7F, "ldsflda", _K.FIELD_TOKEN)
_op(0x80, "stsfld", _K.FIELD_TOKEN)
_op(0x81, "stobj", _K.TYPE_TOKEN)
for _index, _suffix in enumerate(("i1", "i2", "i4", "i8", "u1", "u2", "u4", "u8", "i", "u")):
    _op(0x82 + _index, f"conv.ovf.{_suffix}.un")
_op(0x8C, "box", _K.TYPE_TOKEN)
_op(0x8D, "newarr", _K.TYPE_TOKEN)
_op(0x8E, "ldlen")
_op(0x8F, "ldelema", _K.TYPE_TOKEN)
for _index, _suffix in enumerate(("i1", "u1", "i2", "u2", "i4", "u4", "i8", "i", "r4", "r8", "ref")):
    _op(0x90 + _index, f"ldelem.{_suffix}")
for _index, _suffix in enumerate(("i", "i1", "i2", "i4", "i8", "r4", "r8", "ref")):
    _op(0x9B + _index, f"stelem.{_suffix}")
_op(0xA3, "ldelem", _K.TYPE_TOKEN)
_op(0xA4, "stelem", _K.TYPE_TOKEN)
_op(0xA5, "unbox.any", _K.TYPE_TOKEN)
for _index, _suffix in enumerate(("i1", "u1", "i2", "u2", "i4", "u4", "i8", "u8")):
    _op(0xB3 + _index, f"conv.ovf.{_suffix}")
_op(0xC2, "refanyval", _K.TYPE_TOKEN)
_op(0xC3, "ckfinite")
_op(0xC6, "mkrefany", _K.TYPE_TOKEN)
_op(0xD0, "ldtoken", _K.INLINE_TOKEN)
_op(0xD1, "conv.u2")
_op(0xD2, "conv.u1")
_op(0xD3, "conv.i")
_op(0xD4, "conv.ovf.i")
_op(0xD5, "conv.ovf.u")
_op(0xD6, "add.ovf")
_op(0xD7, "add.ovf.un")
_op(0xD8, "mul.ovf")
_op(0xD9, "mul.ovf.un")
_op(0xDA, "sub.ovf")
_op(0xDB, "sub.ovf.un")
_op(0xDC, "endfinally", flow=_F.END_HANDLER)
_op(0xDD, "leave", _K.LONG_BRANCH_TARGET, _F.LEAVE, _P.UNCONDITIONAL)
_op(0xDE, "leave.s", _K.SHORT_BRANCH_TARGET, _F.LEAVE, _P.UNCONDITIONAL)
_op(0xDF, "stind.i")
_op(0xE0, "conv.u")

_op(0xFE00, "arglist")
_op(0xFE01, "ceq")
_op(0xFE02, "cgt")
_op(0xFE03, "cgt.un")
_op(0xFE04, "clt")
_op(0xFE05, "clt.un")
_op(0xFE06, "ldftn", _K.METHOD_TOKEN)
_op(0xFE07, "ldvirtftn", _K.METHOD_TOKEN)
_op(0xFE09, "ldarg", _K.VARIABLE_INDEX_LONG)
_op(0xFE0A, "ldarga", _K.VARIABLE_INDEX_LONG)
_op(0xFE0B, "starg", _K.VARIABLE_INDEX_LONG)
_op(0xFE0C, "ldloc", _K.VARIABLE_INDEX_LONG)
_op(0xFE0D, "ldloca", _K.VARIABLE_INDEX_LONG)
_op(0xFE0E, "stloc", _K.VARIABLE_INDEX_LONG)
_op(0xFE0F, "localloc")
_op(0xFE11, "endfilter", flow=_F.END_HANDLER)
_op(0xFE12, "unaligned.", _K.UINT8, _F.META)
_op(0xFE13, "volatile.", flow=_F.META)
_op(0xFE14, "tail.", flow=_F.META)
_op(0xFE15, "initobj", _K.TYPE_TOKEN)
_op(0xFE16, "constrained.", _K.TYPE_TOKEN, _F.META)
_op(0xFE17, "cpblk")
_op(0xFE18, "initblk")
_op(0xFE19, "no.", _K.UINT8, _F.META)
_op(0xFE1A, "rethrow", flow=_F.THROW)
_op(0xFE1C, "sizeof", _K.TYPE_TOKEN)
_op(0xFE1D, "refanytype")
_op(0xFE1E, "readonly.", flow=_F.META)


def lookup(first: int, second: Optional[int] = None) -> Optional[OpcodeDescriptor]:
    """Return the descriptor for a raw opcode.

    ``second`` is only consulted when ``first`` is the two byte escape.
    """

    if first == TWO_BYTE_ESCAPE:
        if second is None:
            return None
        return TWO_BYTE_OPCODES.get(second)
    return ONE_BYTE_OPCODES.get(first)


def by_name(name: str) -> OpcodeDescriptor:
    """Return the descriptor for a mnemonic such as ``"br.s"``."""

    try:
        return _BY_NAME[name]
    except KeyError:
        raise KeyError(f"unknown opcode mnemonic: {name}") from None


def iter_opcodes() -> Iterator[OpcodeDescriptor]:
    for value in sorted(ONE_BYTE_OPCODES):
        yield ONE_BYTE_OPCODES[value]
    for value in sorted(TWO_BYTE_OPCODES):
        yield TWO_BYTE_OPCODES[value]


__all__ = [
    "TWO_BYTE_ESCAPE",
    "OperandKind",
    "OPERAND_WIDTHS",
    "TOKEN_KINDS",
    "FlowKind",
    "Predicate",
    "OpcodeDescriptor",
    "ONE_BYTE_OPCODES",
    "TWO_BYTE_OPCODES",
    "lookup",
    "by_name",
    "iter_opcodes",
]
