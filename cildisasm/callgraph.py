"""Recursive call-graph walker.

Starting from one method the walker decodes the body, extracts its call
sites, resolves each of them through a :class:`ModuleIntrospectionService`
and recurses.  The traversal is depth first and pre-order; children appear in
call-site order, with the compiler generated continuation of an async entry
point (if any) in front of them.

Each branch ends on its own terms: a method seen before becomes an
``ALREADY_VISITED`` leaf, the node at ``max_depth`` becomes ``DEPTH_EXCEEDED``,
calls into foundational types stop at a ``FOUNDATIONAL`` leaf and any
:class:`~cildisasm.errors.AnalysisError` turns the node into a ``FAILED``
leaf with the error message attached.  Siblings are unaffected.

All mutable state lives in a :class:`TraversalContext` created per
:meth:`CallGraphWalker.walk` call.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .calls import CallSite
from .errors import AnalysisError, LoadError, MemberNotFound, ModuleLoadFailed
from .instruction import DecodeMode
from .introspection import (
    MethodHandle,
    MethodIdentity,
    ModuleHandle,
    ModuleIntrospectionService,
    VisitedMethodKey,
    pick_overload,
)
from .method import DecodedMethod, decode_method

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20
DEFAULT_FOUNDATIONAL_PREFIXES: Tuple[str, ...] = ("System.Object", "System")


class NodeStatus(Enum):
    ANALYZED = "analyzed"
    ALREADY_VISITED = "already analyzed"
    DEPTH_EXCEEDED = "depth exceeded"
    FOUNDATIONAL = "foundational"
    NO_BODY = "no body"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TraversalOptions:
    max_depth: int = DEFAULT_MAX_DEPTH
    decode_mode: DecodeMode = DecodeMode.PERMISSIVE
    foundational_prefixes: Tuple[str, ...] = DEFAULT_FOUNDATIONAL_PREFIXES
    expand_continuations: bool = True
    max_steps: Optional[int] = None
    should_cancel: Optional[Callable[[], bool]] = None

    def is_foundational(self, type_name: str) -> bool:
        """``True`` when ``type_name`` is one of the prefixes or lives below one."""

        for prefix in self.foundational_prefixes:
            if type_name == prefix or type_name.startswith(prefix.rstrip(".") + "."):
                return True
        return False


@dataclass
class CallGraphNode:
    method: Optional[MethodIdentity]
    depth: int
    status: NodeStatus = NodeStatus.ANALYZED
    call_site: Optional[CallSite] = None
    reason: Optional[str] = None
    children: List["CallGraphNode"] = field(default_factory=list)
    is_continuation: bool = False
    module: Optional[str] = None
    code_size: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    decoded: Optional[DecodedMethod] = field(default=None, repr=False, compare=False)

    @property
    def label(self) -> str:
        if self.method is None:
            return "<unresolved>"
        return self.method.full_name

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def iter_nodes(self) -> Iterator["CallGraphNode"]:
        """Yield this node and its descendants in pre-order."""

        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def describe(self) -> str:
        text = self.label
        if self.method is not None and self.method.signature:
            text += f" {self.method.signature}"
        if self.is_continuation:
            text += " [continuation]"
        if self.status is not NodeStatus.ANALYZED:
            text += f" ({self.status.value}"
            text += f": {self.reason})" if self.reason else ")"
        return text


@dataclass
class TraversalContext:
    """Per-traversal state: visited set, module cache and step counter."""

    options: TraversalOptions
    visited: Set[VisitedMethodKey] = field(default_factory=set)
    modules: Dict[str, ModuleHandle] = field(default_factory=dict)
    loaded: List[ModuleHandle] = field(default_factory=list)
    failed_loads: Dict[str, LoadError] = field(default_factory=dict)
    steps: int = 0
    cancelled: bool = False


@dataclass
class TraversalResult:
    root: CallGraphNode
    visited: Set[VisitedMethodKey]
    loaded_modules: List[ModuleHandle]
    cancelled: bool = False
    steps: int = 0

    def iter_nodes(self) -> Iterator[CallGraphNode]:
        return self.root.iter_nodes()

    def status_counts(self) -> Counter:
        return Counter(node.status for node in self.iter_nodes())

    def count(self, status: NodeStatus) -> int:
        return sum(1 for node in self.iter_nodes() if node.status is status)

    @property
    def analyzed_count(self) -> int:
        return self.count(NodeStatus.ANALYZED)

    @property
    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())


class _TraversalCancelled(Exception):
    pass


Resolver = Callable[[], Optional[MethodHandle]]


class CallGraphWalker:
    """Expand the call graph reachable from a root method."""

    def __init__(
        self,
        service: ModuleIntrospectionService,
        options: Optional[TraversalOptions] = None,
    ) -> None:
        self.service = service
        self.options = options or TraversalOptions()

    def walk(
        self,
        locator: str,
        type_name: str,
        method_name: str,
        signature: Optional[str] = None,
    ) -> TraversalResult:
        context = TraversalContext(self.options)
        root = CallGraphNode(
            method=MethodIdentity(locator, type_name, method_name, signature),
            depth=0,
            module=locator,
        )

        def resolve_root() -> Optional[MethodHandle]:
            module = self._load(context, locator)
            return self._find_method([module], type_name, method_name, signature)

        try:
            self._expand(context, root, resolve_root)
        except _TraversalCancelled:
            context.cancelled = True
            logger.warning("traversal from %s.%s cancelled after %d step(s)", type_name, method_name, context.steps)

        return TraversalResult(
            root=root,
            visited=set(context.visited),
            loaded_modules=list(context.loaded),
            cancelled=context.cancelled,
            steps=context.steps,
        )

    # Expansion --------------------------------------------------------
    def _expand(self, context: TraversalContext, node: CallGraphNode, resolve: Resolver) -> None:
        self._check_cancelled(context, node)
        try:
            handle = resolve()
            if handle is not None:
                self._visit(context, node, handle)
        except AnalysisError as exc:
            node.status = NodeStatus.FAILED
            node.reason = str(exc)
            node.children = []
            logger.warning("cannot analyse %s: %s", node.label, exc)

    def _visit(self, context: TraversalContext, node: CallGraphNode, handle: MethodHandle) -> None:
        identity = self.service.identity_of(handle)
        node.method = identity
        node.module = identity.module
        if self._short_circuit(context, node, identity):
            return

        context.visited.add(identity.key())
        logger.debug("expanding %s at depth %d", identity.describe(), node.depth)

        body = self.service.get_method_body(handle)
        if body is None:
            node.status = NodeStatus.NO_BODY
            return

        decoded = decode_method(body.code, list(body.clauses), mode=context.options.decode_mode)
        node.status = NodeStatus.ANALYZED
        node.code_size = decoded.code_size
        node.decoded = decoded
        node.warnings = decoded.warnings

        if context.options.expand_continuations and self.service.is_async_entry_point(handle):
            child = CallGraphNode(
                method=None, depth=node.depth + 1, is_continuation=True, module=identity.module
            )
            node.children.append(child)
            self._expand(context, child, lambda: self._resolve_continuation(handle))

        for site in decoded.call_sites:
            child = CallGraphNode(method=None, depth=node.depth + 1, call_site=site, module=identity.module)
            node.children.append(child)
            self._expand(
                context,
                child,
                lambda site=site, child=child: self._resolve_call(context, child, handle.module, site),
            )

    def _short_circuit(
        self, context: TraversalContext, node: CallGraphNode, identity: MethodIdentity
    ) -> bool:
        """Mark ``node`` as a leaf if it must not be expanded."""

        options = context.options
        if options.is_foundational(identity.declaring_type):
            node.status = NodeStatus.FOUNDATIONAL
        elif identity.key() in context.visited:
            node.status = NodeStatus.ALREADY_VISITED
        elif node.depth >= options.max_depth:
            node.status = NodeStatus.DEPTH_EXCEEDED
            node.reason = f"limit {options.max_depth}"
        else:
            return False
        return True

    # Resolution -------------------------------------------------------
    def _resolve_call(
        self,
        context: TraversalContext,
        node: CallGraphNode,
        module: ModuleHandle,
        site: CallSite,
    ) -> Optional[MethodHandle]:
        identity = self.service.resolve_method_token(module, site.token)
        node.method = identity
        node.module = identity.module
        # Leaves are decided before any cross-module load happens.
        if self._short_circuit(context, node, identity):
            return None

        target = module
        if identity.module != module.name:
            target = self._load(context, identity.module)
        scope = [target] + [loaded for loaded in context.loaded if loaded is not target]
        return self._find_method(scope, identity.declaring_type, identity.name, identity.signature)

    def _resolve_continuation(self, handle: MethodHandle) -> MethodHandle:
        continuation = self.service.find_continuation(handle)
        if continuation is None:
            raise MemberNotFound(f"no continuation found for {handle.declaring_type.name}.{handle.name}")
        return continuation

    def _find_method(
        self,
        scope: Sequence[ModuleHandle],
        type_name: str,
        method_name: str,
        signature: Optional[str],
    ) -> MethodHandle:
        type_handle = self.service.find_type(type_name, scope)
        if type_handle is None:
            raise MemberNotFound(f"type '{type_name}' not found")
        method = pick_overload(self.service.find_methods(type_handle, method_name), signature)
        if method is None:
            raise MemberNotFound(f"method '{type_name}.{method_name}' not found")
        return method

    def _load(self, context: TraversalContext, locator: str) -> ModuleHandle:
        cached = context.modules.get(locator)
        if cached is not None:
            return cached
        failure = context.failed_loads.get(locator)
        if failure is not None:
            raise failure
        try:
            handle = self.service.load_module(locator)
        except LoadError as exc:
            context.failed_loads[locator] = exc
            raise
        except OSError as exc:
            failure = ModuleLoadFailed(f"cannot load module '{locator}': {exc}", locator)
            context.failed_loads[locator] = failure
            raise failure from exc
        logger.info("loaded module %s from %s", handle.name, locator)
        context.modules[locator] = handle
        context.modules.setdefault(handle.name, handle)
        context.loaded.append(handle)
        return handle

    # Cancellation -----------------------------------------------------
    def _check_cancelled(self, context: TraversalContext, node: CallGraphNode) -> None:
        options = context.options
        reason = None
        if options.max_steps is not None and context.steps >= options.max_steps:
            reason = f"step budget of {options.max_steps} exhausted"
        elif options.should_cancel is not None and options.should_cancel():
            reason = "cancellation requested"
        if reason is not None:
            node.status = NodeStatus.CANCELLED
            node.reason = reason
            raise _TraversalCancelled(reason)
        context.steps += 1


__all__ = [
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_FOUNDATIONAL_PREFIXES",
    "NodeStatus",
    "TraversalOptions",
    "CallGraphNode",
    "TraversalContext",
    "TraversalResult",
    "CallGraphWalker",
]
