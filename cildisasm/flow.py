"""Control-flow edge classification.

Every decoded instruction contributes zero or more :class:`ControlFlowEdge`
records.  Branch instructions additionally produce a :class:`BranchSite`
summarising the high level construct the branch most likely belongs to:

``LOOP``
    Any branch whose target is not ahead of the branch itself.  This is a
    purely structural, offset based heuristic rather than a dominator based
    loop analysis: short-circuit boolean code that jumps backwards is tagged as
    a loop as well.
``CONDITIONAL``
    A forward conditional branch.  The edge carries the comparison predicate
    implied by the opcode (``beq`` -> equal, ``brfalse`` -> false, ...).
``JUMP``
    A forward unconditional ``br``.
``SWITCH``
    A jump table.  One edge per table entry plus the implicit fall-through
    used when the selector is out of range.
``LEAVE``
    Exit from a protected region through ``leave``.  No fall-through edge is
    produced.

Targets outside the body do not abort classification; they are collected in
:attr:`FlowAnalysis.unresolved` and the offending instruction only keeps its
fall-through edge (if any).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import DefaultDict, Dict, Iterable, List, Optional, Sequence, Tuple

from .branches import BranchResolver, has_targets
from .errors import TargetOutOfRange
from .instruction import DecodedInstruction
from .opcodes import FlowKind, Predicate

logger = logging.getLogger(__name__)


class EdgeKind(Enum):
    UNCONDITIONAL = "unconditional"
    CONDITIONAL = "conditional"
    SWITCH_CASE = "switch_case"
    FALL_THROUGH = "fall_through"


class BranchConstruct(Enum):
    LOOP = "loop"
    CONDITIONAL = "conditional"
    JUMP = "jump"
    SWITCH = "switch"
    LEAVE = "leave"


@dataclass(frozen=True)
class ControlFlowEdge:
    """A single possible transfer of control."""

    source: int
    target: int
    kind: EdgeKind
    predicate: Optional[Predicate] = None
    case_index: Optional[int] = None

    @property
    def is_backward(self) -> bool:
        return self.target < self.source

    @property
    def is_loop(self) -> bool:
        # A branch onto itself spins forever, so it counts as a loop too.
        if self.kind is EdgeKind.FALL_THROUGH:
            return False
        return self.target <= self.source

    def describe(self) -> str:
        target = f"IL_{self.target:04X}"
        if self.kind is EdgeKind.CONDITIONAL and self.predicate is not None:
            label = f"if {self.predicate.value} -> {target}"
        elif self.kind is EdgeKind.SWITCH_CASE:
            label = f"case {self.case_index} -> {target}"
        elif self.kind is EdgeKind.FALL_THROUGH:
            label = f"fall through -> {target}"
        else:
            label = f"goto {target}"
        if self.is_loop:
            label += " (loop)"
        return label


@dataclass(frozen=True)
class BranchSite:
    """Summary of one branch instruction."""

    offset: int
    construct: BranchConstruct
    predicate: Optional[Predicate]
    targets: Tuple[int, ...]
    fallthrough: Optional[int] = None

    @property
    def is_loop(self) -> bool:
        return self.construct is BranchConstruct.LOOP

    def describe(self) -> str:
        targets = ", ".join(f"IL_{target:04X}" for target in self.targets)
        if self.construct is BranchConstruct.CONDITIONAL and self.predicate is not None:
            return f"if {self.predicate.value} -> {targets}"
        if self.construct is BranchConstruct.LOOP and self.predicate not in {None, Predicate.UNCONDITIONAL}:
            return f"loop while {self.predicate.value} -> {targets}"
        return f"{self.construct.value} -> {targets}"


@dataclass(frozen=True)
class UnresolvedBranch:
    offset: int
    error: TargetOutOfRange


@dataclass
class FlowAnalysis:
    """Edges and branch summaries for one method body."""

    code_size: int
    edges: List[ControlFlowEdge] = field(default_factory=list)
    branches: Dict[int, BranchSite] = field(default_factory=dict)
    unresolved: List[UnresolvedBranch] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_source: DefaultDict[int, List[ControlFlowEdge]] = defaultdict(list)
        for edge in self.edges:
            self._by_source[edge.source].append(edge)

    def add(self, edge: ControlFlowEdge) -> None:
        self.edges.append(edge)
        self._by_source[edge.source].append(edge)

    def edges_from(self, offset: int) -> List[ControlFlowEdge]:
        return list(self._by_source.get(offset, ()))

    def loop_edges(self) -> List[ControlFlowEdge]:
        return [edge for edge in self.edges if edge.is_loop]

    def loops(self) -> List[BranchSite]:
        return [site for site in self.branches.values() if site.is_loop]

    def switches(self) -> List[BranchSite]:
        return [
            site for site in self.branches.values() if site.construct is BranchConstruct.SWITCH
        ]


def _construct_for(instruction: DecodedInstruction, targets: Sequence[int]) -> BranchConstruct:
    flow = instruction.opcode.flow
    if flow is FlowKind.SWITCH:
        return BranchConstruct.SWITCH
    if flow is FlowKind.LEAVE:
        return BranchConstruct.LEAVE
    if any(target <= instruction.offset for target in targets):
        return BranchConstruct.LOOP
    if flow is FlowKind.COND_BRANCH:
        return BranchConstruct.CONDITIONAL
    return BranchConstruct.JUMP


def classify(instructions: Iterable[DecodedInstruction], code_size: int) -> FlowAnalysis:
    """Compute edges and branch sites for a decoded method body."""

    resolver = BranchResolver(code_size)
    analysis = FlowAnalysis(code_size=code_size)

    for instruction in instructions:
        flow = instruction.opcode.flow
        fallthrough = resolver.fallthrough(instruction)
        try:
            targets = resolver.resolve(instruction)
        except TargetOutOfRange as exc:
            logger.warning("%s", exc)
            analysis.unresolved.append(UnresolvedBranch(instruction.offset, exc))
            if flow in {FlowKind.COND_BRANCH, FlowKind.SWITCH} and fallthrough is not None:
                analysis.add(
                    ControlFlowEdge(instruction.offset, fallthrough, EdgeKind.FALL_THROUGH)
                )
            continue

        if not has_targets(instruction):
            if fallthrough is not None:
                analysis.add(ControlFlowEdge(instruction.offset, fallthrough, EdgeKind.FALL_THROUGH))
            continue

        predicate = instruction.opcode.predicate
        if flow is FlowKind.SWITCH:
            for index, target in enumerate(targets):
                analysis.add(
                    ControlFlowEdge(instruction.offset, target, EdgeKind.SWITCH_CASE, case_index=index)
                )
        elif flow is FlowKind.COND_BRANCH:
            analysis.add(
                ControlFlowEdge(instruction.offset, targets[0], EdgeKind.CONDITIONAL, predicate)
            )
        else:
            analysis.add(
                ControlFlowEdge(
                    instruction.offset, targets[0], EdgeKind.UNCONDITIONAL, Predicate.UNCONDITIONAL
                )
            )

        if fallthrough is not None:
            analysis.add(ControlFlowEdge(instruction.offset, fallthrough, EdgeKind.FALL_THROUGH))

        analysis.branches[instruction.offset] = BranchSite(
            offset=instruction.offset,
            construct=_construct_for(instruction, targets),
            predicate=predicate,
            targets=targets,
            fallthrough=fallthrough,
        )

    return analysis


__all__ = [
    "EdgeKind",
    "BranchConstruct",
    "ControlFlowEdge",
    "BranchSite",
    "UnresolvedBranch",
    "FlowAnalysis",
    "classify",
]
