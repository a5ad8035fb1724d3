"""Branch target resolution.

The operand reader already converts relative displacements into absolute
offsets (``offset_after_operand + displacement``).  This module validates
those targets against the method body and answers the fall-through question
for any instruction.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .errors import TargetOutOfRange
from .instruction import DecodedInstruction
from .opcodes import OperandKind


def has_targets(instruction: DecodedInstruction) -> bool:
    kind = instruction.opcode.operand_kind
    return kind.is_branch or kind is OperandKind.SWITCH_TABLE


class BranchResolver:
    """Validate branch targets for one method body of ``code_size`` bytes."""

    def __init__(self, code_size: int) -> None:
        self.code_size = code_size

    def in_range(self, target: int) -> bool:
        return 0 <= target < self.code_size

    def resolve(self, instruction: DecodedInstruction) -> Tuple[int, ...]:
        """Return the absolute targets of ``instruction``.

        Non-branch instructions yield an empty tuple.  Any target outside the
        body raises :class:`TargetOutOfRange` instead of being clamped.
        """

        kind = instruction.opcode.operand_kind
        if kind.is_branch:
            targets: Tuple[int, ...] = (int(instruction.operand),)
        elif kind is OperandKind.SWITCH_TABLE:
            targets = tuple(instruction.operand or ())
        else:
            return ()

        for target in targets:
            if not self.in_range(target):
                raise TargetOutOfRange(instruction.offset, target, self.code_size)
        return targets

    def fallthrough(self, instruction: DecodedInstruction) -> Optional[int]:
        """Return the next offset if execution may continue there."""

        if not instruction.opcode.flow.falls_through:
            return None
        following = instruction.next_offset
        if following >= self.code_size:
            return None
        return following


__all__ = ["BranchResolver", "has_targets"]
