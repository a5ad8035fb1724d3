"""JSON manifest backed module introspection.

A manifest describes one module: its types, the methods they declare (with
their IL as a hex string and their exception clauses) and the member
references that point into other modules::

    {
      "name": "App",
      "types": {
        "App.Program": {
          "methods": [
            {"name": "Main", "token": "0x06000001", "il": "2A"}
          ]
        }
      },
      "references": {
        "0x0A000001": {"module": "Lib", "type": "Lib.Util", "name": "Run"}
      }
    }

Locators are either paths to a ``.json`` file or bare module names.  Bare
names are looked up as ``<dir>/<name>.json`` in the configured search
directories, in order; the first hit wins.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import MemberNotFound, ModuleLoadFailed, ModuleNotFound, TokenUnresolvable
from .introspection import (
    MethodBody,
    MethodHandle,
    MethodIdentity,
    ModuleHandle,
    ModuleIntrospectionService,
    TypeHandle,
    pick_overload,
)
from .operands import MetadataToken
from .regions import ExceptionClause, RegionKind

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".json"


def _parse_token(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid token {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16)
    raise ValueError(f"invalid token {value!r}")


@dataclass(frozen=True)
class ManifestMethod:
    name: str
    token: Optional[int]
    signature: Optional[str] = None
    il: Optional[bytes] = None
    is_async: bool = False
    continuation: Optional[Tuple[str, str]] = None
    clauses: Tuple[ExceptionClause, ...] = ()
    abstract: bool = False

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> "ManifestMethod":
        token = entry.get("token")
        il_text = entry.get("il")
        continuation = entry.get("continuation")
        target: Optional[Tuple[str, str]] = None
        if isinstance(continuation, Mapping):
            target = (str(continuation["type"]), str(continuation["name"]))
        return cls(
            name=str(entry["name"]),
            token=_parse_token(token) if token is not None else None,
            signature=entry.get("signature"),
            il=bytes.fromhex(il_text) if il_text is not None else None,
            is_async=bool(entry.get("async", False)),
            continuation=target,
            clauses=tuple(_parse_clause(item) for item in entry.get("clauses", ())),
            abstract=bool(entry.get("abstract", False)),
        )


def _parse_clause(entry: Mapping[str, Any]) -> ExceptionClause:
    filter_offset = entry.get("filter_offset")
    return ExceptionClause(
        kind=RegionKind(str(entry["kind"]).lower()),
        try_offset=int(entry["try_offset"]),
        try_length=int(entry["try_length"]),
        handler_offset=int(entry["handler_offset"]),
        handler_length=int(entry["handler_length"]),
        filter_offset=int(filter_offset) if filter_offset is not None else None,
        catch_type=entry.get("catch_type"),
    )


@dataclass(frozen=True)
class ManifestReference:
    """A member reference into (usually) another module."""

    module: str
    type_name: str
    name: str
    signature: Optional[str] = None


@dataclass
class ModuleManifest:
    name: str
    types: Dict[str, List[ManifestMethod]] = field(default_factory=dict)
    references: Dict[int, ManifestReference] = field(default_factory=dict)
    _by_token: Dict[int, Tuple[str, ManifestMethod]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for type_name, methods in self.types.items():
            for method in methods:
                if method.token is not None:
                    self._by_token[method.token] = (type_name, method)

    @classmethod
    def from_json(cls, data: Any, locator: str) -> "ModuleManifest":
        """Parse a manifest document, raising :class:`ModuleLoadFailed` on bad input."""

        if not isinstance(data, Mapping):
            raise ModuleLoadFailed(f"manifest '{locator}' is not a JSON object", locator)
        try:
            types: Dict[str, List[ManifestMethod]] = {}
            for type_name, entry in (data.get("types") or {}).items():
                methods = entry.get("methods", ()) if isinstance(entry, Mapping) else ()
                types[str(type_name)] = [ManifestMethod.from_json(item) for item in methods]
            references: Dict[int, ManifestReference] = {}
            for token, entry in (data.get("references") or {}).items():
                references[_parse_token(token)] = ManifestReference(
                    module=str(entry["module"]),
                    type_name=str(entry["type"]),
                    name=str(entry["name"]),
                    signature=entry.get("signature"),
                )
            name = str(data.get("name") or Path(locator).stem)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ModuleLoadFailed(f"invalid manifest '{locator}': {exc}", locator) from exc
        return cls(name=name, types=types, references=references)

    def method_by_token(self, token: int) -> Optional[Tuple[str, ManifestMethod]]:
        return self._by_token.get(token)


def _looks_like_path(locator: str) -> bool:
    return locator.endswith(MANIFEST_SUFFIX) or os.sep in locator or "/" in locator


class ManifestIntrospectionService(ModuleIntrospectionService):
    """Introspection over JSON manifests found on disk or supplied in memory."""

    def __init__(
        self,
        search_paths: Iterable[Union[str, Path]] = (),
        *,
        modules: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.search_paths: List[Path] = [Path(path) for path in search_paths]
        self._documents: Dict[str, Any] = dict(modules or {})

    @classmethod
    def from_modules(
        cls,
        modules: Mapping[str, Any],
        search_paths: Iterable[Union[str, Path]] = (),
    ) -> "ManifestIntrospectionService":
        """Serve the given ``{name: manifest document}`` mapping without touching disk."""

        return cls(search_paths, modules=modules)

    # Module loading ---------------------------------------------------
    def locate(self, locator: str) -> Path:
        if _looks_like_path(locator):
            path = Path(locator)
            if path.is_file():
                return path
            raise ModuleNotFound(locator)
        for directory in self.search_paths:
            candidate = directory / f"{locator}{MANIFEST_SUFFIX}"
            if candidate.is_file():
                return candidate
        raise ModuleNotFound(locator, tuple(self.search_paths))

    def load_module(self, locator: str) -> ModuleHandle:
        if locator in self._documents:
            document = self._documents[locator]
        else:
            try:
                path = self.locate(locator)
            except OSError as exc:
                raise ModuleLoadFailed(f"cannot locate manifest '{locator}': {exc}", locator) from exc
            try:
                document = json.loads(path.read_text("utf-8"))
            except (OSError, ValueError) as exc:
                raise ModuleLoadFailed(f"cannot read manifest {path}: {exc}", locator) from exc
            logger.debug("read manifest %s for %s", path, locator)
        manifest = ModuleManifest.from_json(document, locator)
        return ModuleHandle(manifest.name, locator, manifest)

    # Metadata queries -------------------------------------------------
    def resolve_method_token(self, module: ModuleHandle, token: MetadataToken) -> MethodIdentity:
        manifest = self._manifest(module)
        value = token.value if isinstance(token, MetadataToken) else int(token)
        reference = manifest.references.get(value)
        if reference is not None:
            return MethodIdentity(
                reference.module, reference.type_name, reference.name, reference.signature
            )
        local = manifest.method_by_token(value)
        if local is not None:
            type_name, method = local
            return MethodIdentity(manifest.name, type_name, method.name, method.signature)
        raise TokenUnresolvable(value, manifest.name)

    def find_type(self, name: str, scope: Sequence[ModuleHandle]) -> Optional[TypeHandle]:
        for module in scope:
            methods = self._manifest(module).types.get(name)
            if methods is not None:
                return TypeHandle(module, name, methods)
        # Fall back to the simple name, e.g. "Program" for "App.Program".
        for module in scope:
            for type_name, methods in self._manifest(module).types.items():
                if type_name.rsplit(".", 1)[-1] == name:
                    return TypeHandle(module, type_name, methods)
        return None

    def find_methods(self, type_handle: TypeHandle, name: str) -> List[MethodHandle]:
        return [
            MethodHandle(type_handle, method.name, method.signature, method)
            for method in type_handle.payload or ()
            if method.name == name
        ]

    def get_method_body(self, method: MethodHandle) -> Optional[MethodBody]:
        entry: ManifestMethod = method.payload
        if entry.abstract or entry.il is None:
            return None
        return MethodBody(entry.il, entry.clauses)

    def identity_of(self, method: MethodHandle) -> MethodIdentity:
        return MethodIdentity(
            method.module.name, method.declaring_type.name, method.name, method.signature
        )

    def is_async_entry_point(self, method: MethodHandle) -> bool:
        entry: ManifestMethod = method.payload
        return entry.is_async and entry.continuation is not None

    def find_continuation(self, method: MethodHandle) -> Optional[MethodHandle]:
        entry: ManifestMethod = method.payload
        if entry.continuation is None:
            return None
        type_name, name = entry.continuation
        type_handle = self.find_type(type_name, [method.module])
        if type_handle is None:
            raise MemberNotFound(f"continuation type '{type_name}' not found in {method.module.name}")
        found = pick_overload(self.find_methods(type_handle, name))
        if found is None:
            raise MemberNotFound(f"continuation method '{type_name}.{name}' not found")
        return found

    @staticmethod
    def _manifest(module: ModuleHandle) -> ModuleManifest:
        return module.content


__all__ = [
    "MANIFEST_SUFFIX",
    "ManifestMethod",
    "ManifestReference",
    "ModuleManifest",
    "ManifestIntrospectionService",
]
