"""Call-site extraction from decoded method bodies."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .instruction import DecodedInstruction
from .operands import MetadataToken


class InvocationKind(Enum):
    CALL = "call"
    VIRTUAL_CALL = "callvirt"
    CONSTRUCTOR_CALL = "newobj"
    INDIRECT_CALL = "calli"


_CALL_OPCODES = {
    "call": InvocationKind.CALL,
    "callvirt": InvocationKind.VIRTUAL_CALL,
    "newobj": InvocationKind.CONSTRUCTOR_CALL,
    "calli": InvocationKind.INDIRECT_CALL,
}


@dataclass(frozen=True)
class CallSite:
    """A call-shaped instruction and the raw token it references.

    For ``calli`` the token is a stand-alone signature rather than a method,
    resolution through the introspection service is expected to fail for it.
    """

    offset: int
    token: MetadataToken
    kind: InvocationKind

    def describe(self) -> str:
        return f"IL_{self.offset:04X}: {self.kind.value} {self.token}"


def invocation_kind(instruction: DecodedInstruction) -> Optional[InvocationKind]:
    return _CALL_OPCODES.get(instruction.opcode.name)


def extract_call_sites(instructions: Iterable[DecodedInstruction]) -> List[CallSite]:
    """Return call sites in instruction order, duplicates included."""

    sites: List[CallSite] = []
    for instruction in instructions:
        kind = invocation_kind(instruction)
        if kind is None or not isinstance(instruction.operand, MetadataToken):
            continue
        sites.append(CallSite(instruction.offset, instruction.operand, kind))
    return sites


__all__ = ["InvocationKind", "CallSite", "invocation_kind", "extract_call_sites"]
