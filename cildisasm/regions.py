"""Protected-region (exception handler) mapping.

Method bodies carry a table of exception clauses.  Each clause pairs a
protected ``try`` range with one handler (``catch``, ``finally``, ``fault`` or
a ``filter`` whose filter code precedes the handler).  :class:`RegionMap`
flattens such tables into :class:`ProtectedRegion` records and answers which
regions enclose a given offset.

The clause table is ordered innermost first, so lookups preserve table order:
the first region returned for an offset is the innermost one.

Validation never aborts mapping.  A region that violates an invariant is
recorded in :attr:`RegionMap.errors` and left out of the lookup, the remaining
regions stay usable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from .errors import MalformedRegion

logger = logging.getLogger(__name__)


class RegionKind(Enum):
    TRY = "try"
    CATCH = "catch"
    FINALLY = "finally"
    FAULT = "fault"
    FILTER = "filter"

    @property
    def is_handler(self) -> bool:
        return self is not RegionKind.TRY


@dataclass(frozen=True, eq=False)
class ProtectedRegion:
    """Half-open offset interval ``[start, end)`` with its role.

    Regions compare by identity: two clauses may legitimately describe the
    same interval with different handlers.
    """

    kind: RegionKind
    start: int
    end: int
    try_region: Optional["ProtectedRegion"] = None
    filter_start: Optional[int] = None
    filter_end: Optional[int] = None
    catch_type: Optional[str] = None

    def contains(self, offset: int) -> bool:
        if self.start <= offset < self.end:
            return True
        if self.kind is RegionKind.FILTER and self.filter_start is not None and self.filter_end is not None:
            return self.filter_start <= offset < self.filter_end
        return False

    def in_filter(self, offset: int) -> bool:
        if self.kind is not RegionKind.FILTER or self.filter_start is None or self.filter_end is None:
            return False
        return self.filter_start <= offset < self.filter_end

    def describe(self) -> str:
        text = f"{self.kind.value} [IL_{self.start:04X}, IL_{self.end:04X})"
        if self.kind is RegionKind.FILTER and self.filter_start is not None:
            text += f" filter [IL_{self.filter_start:04X}, IL_{self.filter_end or 0:04X})"
        if self.catch_type:
            text += f" catches {self.catch_type}"
        return text


@dataclass(frozen=True)
class ExceptionClause:
    """Raw exception clause as stored next to a method body."""

    kind: RegionKind
    try_offset: int
    try_length: int
    handler_offset: int
    handler_length: int
    filter_offset: Optional[int] = None
    catch_type: Optional[str] = None


def regions_from_clauses(clauses: Iterable[ExceptionClause]) -> List[ProtectedRegion]:
    """Expand clause records into try/handler regions.

    Clauses that protect the exact same range (one ``try`` with several
    ``catch`` blocks) share a single :class:`RegionKind.TRY` region.
    """

    regions: List[ProtectedRegion] = []
    tries: Dict[tuple, ProtectedRegion] = {}
    for clause in clauses:
        key = (clause.try_offset, clause.try_offset + clause.try_length)
        try_region = tries.get(key)
        if try_region is None:
            try_region = ProtectedRegion(RegionKind.TRY, key[0], key[1])
            tries[key] = try_region
            regions.append(try_region)

        filter_start = filter_end = None
        if clause.kind is RegionKind.FILTER:
            filter_start = clause.filter_offset
            filter_end = clause.handler_offset
        regions.append(
            ProtectedRegion(
                kind=clause.kind,
                start=clause.handler_offset,
                end=clause.handler_offset + clause.handler_length,
                try_region=try_region,
                filter_start=filter_start,
                filter_end=filter_end,
                catch_type=clause.catch_type,
            )
        )
    return regions


class RegionMap(Sequence[ProtectedRegion]):
    """Validated, ordered collection of protected regions."""

    def __init__(
        self,
        regions: Iterable[ProtectedRegion] = (),
        *,
        code_size: Optional[int] = None,
    ) -> None:
        self.code_size = code_size
        self.errors: List[MalformedRegion] = []
        self._regions: List[ProtectedRegion] = []
        for index, region in enumerate(regions):
            problem = self._validate(region)
            if problem is not None:
                error = MalformedRegion(problem, index)
                logger.warning("%s", error)
                self.errors.append(error)
                continue
            self._regions.append(region)

    @classmethod
    def from_clauses(
        cls, clauses: Iterable[ExceptionClause], *, code_size: Optional[int] = None
    ) -> "RegionMap":
        return cls(regions_from_clauses(clauses), code_size=code_size)

    def _validate(self, region: ProtectedRegion) -> Optional[str]:
        if region.start < 0 or region.end <= region.start:
            return f"empty or negative range [{region.start}, {region.end})"
        if self.code_size is not None and region.end > self.code_size:
            return f"range [{region.start}, {region.end}) exceeds code size {self.code_size}"

        if region.kind is RegionKind.TRY:
            if region.try_region is not None:
                return "try region must not reference another try region"
            return None

        owner = region.try_region
        if owner is None:
            return f"{region.kind.value} region has no associated try region"
        if owner.kind is not RegionKind.TRY:
            return f"{region.kind.value} region is associated with a {owner.kind.value} region"
        if not any(existing is owner for existing in self._regions):
            return f"{region.kind.value} region references a try region that is not mapped"
        # Handlers normally start where the protected range ends; overlap is
        # tolerated, a gap is not.  Filter code sits between the two.
        start = region.start
        if region.kind is RegionKind.FILTER and region.filter_start is not None:
            start = min(start, region.filter_start)
        if start > owner.end or owner.start > region.end:
            return (
                f"{region.kind.value} [{start}, {region.end}) is detached from "
                f"try [{owner.start}, {owner.end})"
            )

        if region.kind is RegionKind.FILTER:
            if region.filter_start is None or region.filter_end is None:
                return "filter region is missing its filter range"
            if region.filter_start >= region.filter_end:
                return f"empty filter range [{region.filter_start}, {region.filter_end})"
            if region.filter_end != region.start:
                return (
                    f"filter range ends at {region.filter_end} but its handler starts at {region.start}"
                )
        elif region.filter_start is not None or region.filter_end is not None:
            return f"{region.kind.value} region carries a filter range"
        return None

    # Sequence API -----------------------------------------------------
    def __len__(self) -> int:
        return len(self._regions)

    def __getitem__(self, index):  # type: ignore[override]
        return self._regions[index]

    def __iter__(self) -> Iterator[ProtectedRegion]:
        return iter(self._regions)

    # Queries ----------------------------------------------------------
    def regions_at(self, offset: int) -> List[ProtectedRegion]:
        """Return every region containing ``offset``, innermost first."""

        return [region for region in self._regions if region.contains(offset)]

    def innermost(self, offset: int) -> Optional[ProtectedRegion]:
        for region in self._regions:
            if region.contains(offset):
                return region
        return None

    def is_protected(self, offset: int) -> bool:
        return any(
            region.kind is RegionKind.TRY and region.contains(offset) for region in self._regions
        )

    def handlers_for(self, try_region: ProtectedRegion) -> List[ProtectedRegion]:
        return [region for region in self._regions if region.try_region is try_region]

    def boundaries(self) -> List[int]:
        """Offsets where a region (or a filter block) begins or ends."""

        points = set()
        for region in self._regions:
            points.add(region.start)
            points.add(region.end)
            if region.filter_start is not None:
                points.add(region.filter_start)
        return sorted(points)

    def describe(self) -> List[dict]:
        return [
            {
                "kind": region.kind.value,
                "start": region.start,
                "end": region.end,
                "filter_start": region.filter_start,
                "filter_end": region.filter_end,
                "try_index": self._index_of(region.try_region),
                "catch_type": region.catch_type,
            }
            for region in self._regions
        ]

    def _index_of(self, region: Optional[ProtectedRegion]) -> Optional[int]:
        if region is None:
            return None
        for index, candidate in enumerate(self._regions):
            if candidate is region:
                return index
        return None


__all__ = [
    "RegionKind",
    "ProtectedRegion",
    "ExceptionClause",
    "regions_from_clauses",
    "RegionMap",
]
