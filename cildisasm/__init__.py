"""Public package exports for the CIL disassembler and call-graph walker."""

from .callgraph import (
    CallGraphNode,
    CallGraphWalker,
    NodeStatus,
    TraversalOptions,
    TraversalResult,
)
from .calls import CallSite, InvocationKind
from .errors import AnalysisError
from .flow import ControlFlowEdge, EdgeKind, Predicate
from .instruction import DecodedInstruction, DecodeMode, InstructionStream
from .introspection import MethodIdentity, ModuleIntrospectionService
from .manifest import ManifestIntrospectionService
from .method import DecodedMethod, decode_method
from .regions import ExceptionClause, ProtectedRegion, RegionKind, RegionMap
from .render import call_graph_to_json, render_call_tree, render_method

__all__ = [
    "AnalysisError",
    "CallGraphNode",
    "CallGraphWalker",
    "CallSite",
    "ControlFlowEdge",
    "DecodeMode",
    "DecodedInstruction",
    "DecodedMethod",
    "EdgeKind",
    "ExceptionClause",
    "InstructionStream",
    "InvocationKind",
    "ManifestIntrospectionService",
    "MethodIdentity",
    "ModuleIntrospectionService",
    "NodeStatus",
    "Predicate",
    "ProtectedRegion",
    "RegionKind",
    "RegionMap",
    "TraversalOptions",
    "TraversalResult",
    "call_graph_to_json",
    "decode_method",
    "render_call_tree",
    "render_method",
]
