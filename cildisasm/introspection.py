"""Interface to the module introspection service.

The call-graph walker never reads binaries itself.  Everything that depends
on a concrete metadata format (loading a module, mapping a token to a method,
finding a type by name, fetching a method body) goes through an implementation
of :class:`ModuleIntrospectionService`.  The package ships
:class:`~cildisasm.manifest.ManifestIntrospectionService`, tests use small
in-memory fakes.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from .operands import MetadataToken
from .regions import ExceptionClause


@dataclass(frozen=True)
class VisitedMethodKey:
    declaring_type: str
    method_name: str
    overload: Optional[str] = None


@dataclass(frozen=True)
class MethodIdentity:
    """Stable, format independent name of a method."""

    module: str
    declaring_type: str
    name: str
    signature: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.declaring_type}.{self.name}"

    def key(self) -> VisitedMethodKey:
        return VisitedMethodKey(self.declaring_type, self.name, self.signature)

    def describe(self) -> str:
        suffix = f" {self.signature}" if self.signature else ""
        return f"{self.full_name}{suffix} [{self.module}]"


@dataclass(eq=False)
class ModuleHandle:
    """A loaded module.  Handles are shared by reference, never copied."""

    name: str
    locator: str
    content: Any = None


@dataclass(frozen=True, eq=False)
class TypeHandle:
    module: ModuleHandle
    name: str
    payload: Any = None


@dataclass(frozen=True, eq=False)
class MethodHandle:
    declaring_type: TypeHandle
    name: str
    signature: Optional[str] = None
    payload: Any = None

    @property
    def module(self) -> ModuleHandle:
        return self.declaring_type.module


@dataclass(frozen=True)
class MethodBody:
    code: bytes
    clauses: Tuple[ExceptionClause, ...] = field(default_factory=tuple)


class ModuleIntrospectionService(abc.ABC):
    """Everything the walker needs to know about modules and their metadata.

    Implementations report failures with the exceptions in
    :mod:`cildisasm.errors` (:class:`~cildisasm.errors.LoadError`,
    :class:`~cildisasm.errors.TokenUnresolvable`).  ``load_module`` must be
    idempotent for a given locator.
    """

    @abc.abstractmethod
    def load_module(self, locator: str) -> ModuleHandle:
        """Load (or return the cached handle for) the module at ``locator``."""

    @abc.abstractmethod
    def resolve_method_token(self, module: ModuleHandle, token: MetadataToken) -> MethodIdentity:
        """Map a raw method token in ``module`` to a stable identity."""

    @abc.abstractmethod
    def find_type(self, name: str, scope: Sequence[ModuleHandle]) -> Optional[TypeHandle]:
        """Locate a type by full (or simple) name in the given modules."""

    @abc.abstractmethod
    def find_methods(self, type_handle: TypeHandle, name: str) -> List[MethodHandle]:
        """Return every overload of ``name`` declared by ``type_handle``."""

    @abc.abstractmethod
    def get_method_body(self, method: MethodHandle) -> Optional[MethodBody]:
        """Return the body, or ``None`` for abstract/interface/extern methods."""

    @abc.abstractmethod
    def identity_of(self, method: MethodHandle) -> MethodIdentity:
        pass

    def is_async_entry_point(self, method: MethodHandle) -> bool:
        return False

    def find_continuation(self, method: MethodHandle) -> Optional[MethodHandle]:
        return None


def pick_overload(
    candidates: Sequence[MethodHandle], signature: Optional[str] = None
) -> Optional[MethodHandle]:
    """Choose an overload: exact signature match if possible, else the first."""

    if not candidates:
        return None
    if signature is not None:
        for candidate in candidates:
            if candidate.signature == signature:
                return candidate
    return candidates[0]


__all__ = [
    "VisitedMethodKey",
    "MethodIdentity",
    "ModuleHandle",
    "TypeHandle",
    "MethodHandle",
    "MethodBody",
    "ModuleIntrospectionService",
    "pick_overload",
]
