"""Text listings, call trees and JSON serialisation."""

from __future__ import annotations

import json
from typing import Dict, List, Optional

from .callgraph import CallGraphNode, NodeStatus, TraversalResult
from .method import DecodedMethod
from .regions import RegionKind


def _region_markers(decoded: DecodedMethod) -> Dict[int, List[str]]:
    # Innermost regions come first in the table: they close first and open last.
    closing: Dict[int, List[str]] = {}
    opening: Dict[int, List[str]] = {}
    for region in decoded.regions:
        closing.setdefault(region.end, []).append(f"; }} // end {region.kind.value}")
    for region in reversed(list(decoded.regions)):
        label = region.kind.value
        if region.catch_type:
            label += f" {region.catch_type}"
        if region.kind is RegionKind.FILTER and region.filter_start is not None:
            opening.setdefault(region.filter_start, []).append("; .filter {")
            closing.setdefault(region.start, []).append("; } // end filter")
            label = "handler"
        opening.setdefault(region.start, []).append(f"; .{label} {{")
    markers: Dict[int, List[str]] = {}
    for offset in set(closing) | set(opening):
        markers[offset] = closing.get(offset, []) + opening.get(offset, [])
    return markers


def render_method(
    decoded: DecodedMethod,
    *,
    title: Optional[str] = None,
    include_blocks: bool = False,
) -> str:
    """Render an annotated listing of one decoded method body."""

    lines: List[str] = []
    header = f"; method {title}" if title else "; method"
    lines.append(
        f"{header} code_size={decoded.code_size} instructions={len(decoded.instructions)} "
        f"blocks={len(decoded.graph.blocks)} loops={len(decoded.flow.loops())}"
    )
    for warning in decoded.warnings:
        lines.append(f";   warning: {warning}")

    markers = _region_markers(decoded)
    block_starts = set(decoded.graph.blocks)
    for item in decoded.annotated():
        lines.extend(markers.get(item.offset, ()))
        if include_blocks and item.offset in block_starts:
            block = decoded.graph.blocks[item.offset]
            successors = ", ".join(f"IL_{value:04X}" for value in sorted(block.successors))
            lines.append(f"; block IL_{block.start:04X} -> [{successors}]")
        text = item.instruction.format()
        if item.branch is not None:
            text = f"{text:<40} ; {item.branch.describe()}"
        lines.append(text)
    lines.extend(markers.get(decoded.code_size, ()))
    return "\n".join(lines) + "\n"


def render_call_tree(result: TraversalResult, indent: str = "  ") -> str:
    """Render the call tree as an indented outline, one node per line."""

    lines = _render_node(result.root, indent)
    if result.cancelled:
        lines.append("; traversal cancelled, tree is partial")
    return "\n".join(lines) + "\n"


def _render_node(node: CallGraphNode, indent: str) -> List[str]:
    prefix = ""
    if node.call_site is not None:
        prefix = f"IL_{node.call_site.offset:04X} {node.call_site.kind.value} "
    lines = [prefix + node.describe()]
    for child in node.children:
        for line in _render_node(child, indent):
            lines.append(indent + line)
    return lines


def method_to_dict(decoded: DecodedMethod) -> Dict[str, object]:
    """Return a JSON-serialisable summary of one decoded method."""

    return {
        "code_size": decoded.code_size,
        "instructions": [
            {
                "offset": item.offset,
                "opcode": item.instruction.name,
                "text": item.instruction.format(),
                "size": item.instruction.size,
                "edges": [
                    {
                        "target": edge.target,
                        "kind": edge.kind.value,
                        "predicate": edge.predicate.value if edge.predicate else None,
                        "case_index": edge.case_index,
                        "loop": edge.is_loop,
                    }
                    for edge in item.edges
                ],
                "regions": [region.kind.value for region in item.regions],
            }
            for item in decoded.annotated()
        ],
        "blocks": [
            {
                "start": block.start,
                "end": block.end,
                "successors": sorted(block.successors),
            }
            for block in decoded.graph.block_order()
        ],
        "regions": decoded.regions.describe(),
        "call_sites": [
            {"offset": site.offset, "kind": site.kind.value, "token": site.token.value}
            for site in decoded.call_sites
        ],
        "warnings": decoded.warnings,
    }


def _node_to_dict(node: CallGraphNode) -> Dict[str, object]:
    method = node.method
    payload: Dict[str, object] = {
        "method": method.full_name if method else None,
        "signature": method.signature if method else None,
        "module": node.module,
        "depth": node.depth,
        "status": node.status.value,
        "is_continuation": node.is_continuation,
    }
    if node.call_site is not None:
        payload["call_site"] = {
            "offset": node.call_site.offset,
            "kind": node.call_site.kind.value,
            "token": node.call_site.token.value,
        }
    if node.reason:
        payload["reason"] = node.reason
    if node.code_size is not None:
        payload["code_size"] = node.code_size
    if node.warnings:
        payload["warnings"] = list(node.warnings)
    payload["children"] = [_node_to_dict(child) for child in node.children]
    return payload


def call_graph_to_dict(result: TraversalResult) -> Dict[str, object]:
    counts = result.status_counts()
    return {
        "root": _node_to_dict(result.root),
        "cancelled": result.cancelled,
        "steps": result.steps,
        "loaded_modules": [
            {"name": module.name, "locator": module.locator} for module in result.loaded_modules
        ],
        "counts": {status.value: counts[status] for status in NodeStatus if counts[status]},
    }


def call_graph_to_json(result: TraversalResult, *, indent: int = 2) -> str:
    """Serialise ``result`` to JSON."""

    return json.dumps(call_graph_to_dict(result), indent=indent, sort_keys=True)


__all__ = [
    "render_method",
    "render_call_tree",
    "method_to_dict",
    "call_graph_to_dict",
    "call_graph_to_json",
]
