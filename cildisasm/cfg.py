"""Basic-block construction on top of the classified control-flow edges."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from .flow import EdgeKind, FlowAnalysis
from .instruction import DecodedInstruction
from .regions import RegionMap


@dataclass
class BasicBlock:
    """A linear sequence of instructions without internal jumps."""

    start: int
    instructions: List[DecodedInstruction]
    successors: Set[int] = field(default_factory=set)
    predecessors: Set[int] = field(default_factory=set)

    @property
    def end(self) -> int:
        if not self.instructions:
            return self.start
        return self.instructions[-1].next_offset

    @property
    def terminator(self) -> Optional[DecodedInstruction]:
        return self.instructions[-1] if self.instructions else None


@dataclass
class ControlFlowGraph:
    """Blocks of a single method body keyed by start offset."""

    blocks: Dict[int, BasicBlock]
    code_size: int = 0

    def block_order(self) -> List[BasicBlock]:
        return [self.blocks[offset] for offset in sorted(self.blocks)]

    def block_at(self, offset: int) -> Optional[BasicBlock]:
        for block in self.blocks.values():
            if block.start <= offset < block.end:
                return block
        return None

    def to_text(self) -> str:
        lines: List[str] = [f"cfg (code size={self.code_size})"]
        for block in self.block_order():
            successors = [f"IL_{value:04X}" for value in sorted(block.successors)]
            lines.append(
                f"  block IL_{block.start:04X} size={len(block.instructions)} succ={successors}"
            )
            for instruction in block.instructions:
                lines.append(f"    {instruction.format()}")
        return "\n".join(lines) + "\n"


class ControlFlowGraphBuilder:
    """Split a decoded body into basic blocks and link them."""

    def build(
        self,
        instructions: Sequence[DecodedInstruction],
        flow: FlowAnalysis,
        regions: Optional[RegionMap] = None,
    ) -> ControlFlowGraph:
        if not instructions:
            return ControlFlowGraph({}, flow.code_size)

        starts = self._discover_block_starts(instructions, flow, regions)
        blocks = self._materialise_blocks(instructions, starts)
        self._link_edges(blocks, flow)
        return ControlFlowGraph(blocks, flow.code_size)

    def _discover_block_starts(
        self,
        instructions: Sequence[DecodedInstruction],
        flow: FlowAnalysis,
        regions: Optional[RegionMap],
    ) -> Set[int]:
        offsets = {instruction.offset for instruction in instructions}
        starts: Set[int] = {instructions[0].offset}
        for instruction in instructions:
            edges = flow.edges_from(instruction.offset)
            ends_block = (
                instruction.offset in flow.branches
                or not instruction.opcode.flow.falls_through
                or any(edge.kind is not EdgeKind.FALL_THROUGH for edge in edges)
            )
            for edge in edges:
                if edge.kind is not EdgeKind.FALL_THROUGH:
                    starts.add(edge.target)
            if ends_block:
                starts.add(instruction.next_offset)
        if regions is not None:
            starts.update(regions.boundaries())

        # Targets that land inside an instruction cannot start a block.
        return {offset for offset in starts if offset in offsets}

    def _materialise_blocks(
        self,
        instructions: Sequence[DecodedInstruction],
        starts: Set[int],
    ) -> Dict[int, BasicBlock]:
        ordered_starts = sorted(starts)
        index_by_offset = {instruction.offset: idx for idx, instruction in enumerate(instructions)}
        blocks: Dict[int, BasicBlock] = {}
        for pos, start in enumerate(ordered_starts):
            idx = index_by_offset[start]
            if pos + 1 < len(ordered_starts):
                slice_end = index_by_offset[ordered_starts[pos + 1]]
            else:
                slice_end = len(instructions)
            blocks[start] = BasicBlock(start=start, instructions=list(instructions[idx:slice_end]))
        return blocks

    def _link_edges(self, blocks: Dict[int, BasicBlock], flow: FlowAnalysis) -> None:
        for block in blocks.values():
            last = block.terminator
            if last is None:
                continue
            for edge in flow.edges_from(last.offset):
                target = blocks.get(edge.target)
                if target is None:
                    continue
                block.successors.add(target.start)
                target.predecessors.add(block.start)


__all__ = ["BasicBlock", "ControlFlowGraph", "ControlFlowGraphBuilder"]
