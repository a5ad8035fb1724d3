"""Single method analysis: decode, classify, map regions and collect calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from .calls import CallSite, extract_call_sites
from .cfg import ControlFlowGraph, ControlFlowGraphBuilder
from .errors import DecodeError
from .flow import BranchSite, ControlFlowEdge, FlowAnalysis, classify
from .instruction import DecodedInstruction, DecodeMode, InstructionStream
from .regions import ExceptionClause, ProtectedRegion, RegionMap


@dataclass(frozen=True)
class AnnotatedInstruction:
    """An instruction together with everything known about its position."""

    instruction: DecodedInstruction
    edges: List[ControlFlowEdge]
    branch: Optional[BranchSite]
    regions: List[ProtectedRegion]

    @property
    def offset(self) -> int:
        return self.instruction.offset


@dataclass
class DecodedMethod:
    code: bytes
    instructions: List[DecodedInstruction]
    flow: FlowAnalysis
    graph: ControlFlowGraph
    regions: RegionMap
    call_sites: List[CallSite]
    decode_errors: List[DecodeError] = field(default_factory=list)

    @property
    def code_size(self) -> int:
        return len(self.code)

    def annotated(self) -> List[AnnotatedInstruction]:
        return [
            AnnotatedInstruction(
                instruction=instruction,
                edges=self.flow.edges_from(instruction.offset),
                branch=self.flow.branches.get(instruction.offset),
                regions=self.regions.regions_at(instruction.offset),
            )
            for instruction in self.instructions
        ]

    @property
    def warnings(self) -> List[str]:
        messages = [str(error) for error in self.decode_errors]
        messages.extend(str(item.error) for item in self.flow.unresolved)
        messages.extend(str(error) for error in self.regions.errors)
        return messages


RegionSource = Union[RegionMap, Sequence[ProtectedRegion], Sequence[ExceptionClause], None]


def _coerce_regions(source: RegionSource, code_size: int) -> RegionMap:
    if isinstance(source, RegionMap):
        return source
    items = list(source or ())
    if items and all(isinstance(item, ExceptionClause) for item in items):
        return RegionMap.from_clauses(items, code_size=code_size)
    return RegionMap(items, code_size=code_size)


def decode_method(
    code: bytes,
    regions: RegionSource = None,
    *,
    mode: DecodeMode = DecodeMode.PERMISSIVE,
) -> DecodedMethod:
    """Decode one method body into an annotated, classified listing.

    ``regions`` may be a prepared :class:`RegionMap`, a list of
    :class:`ProtectedRegion` or the raw clause records.  In strict mode the
    first :class:`DecodeError` propagates; permissive mode keeps whatever
    decoded cleanly and lists the problems in :attr:`DecodedMethod.decode_errors`.
    """

    code = bytes(code)
    stream = InstructionStream(code, mode)
    instructions = stream.decode()
    flow = classify(instructions, len(code))
    region_map = _coerce_regions(regions, len(code))
    graph = ControlFlowGraphBuilder().build(instructions, flow, region_map)
    return DecodedMethod(
        code=code,
        instructions=instructions,
        flow=flow,
        graph=graph,
        regions=region_map,
        call_sites=extract_call_sites(instructions),
        decode_errors=list(stream.errors),
    )


__all__ = [
    "AnnotatedInstruction",
    "DecodedMethod",
    "decode_method",
]
