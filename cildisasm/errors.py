"""Exception taxonomy shared by the decoder, mapper and call-graph walker.

Every error raised by the package derives from :class:`AnalysisError`.  None
of them is fatal to a whole run: the decoder records them per method in
permissive mode, the region mapper keeps them on :attr:`RegionMap.errors` and
the call-graph walker attaches them to the failed node.
"""

from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base class for all recoverable analysis failures."""


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class DecodeError(AnalysisError):
    """The instruction stream could not be decoded at ``offset``."""

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message)
        self.offset = offset


class TruncatedStream(DecodeError):
    def __init__(self, offset: int, needed: int, available: int) -> None:
        super().__init__(
            f"truncated stream at IL_{offset:04X}: needed {needed} byte(s), {available} available",
            offset,
        )
        self.needed = needed
        self.available = available


class UnknownOpcode(DecodeError):
    def __init__(self, offset: int, byte: int, two_byte: bool = False) -> None:
        label = f"0xFE 0x{byte:02X}" if two_byte else f"0x{byte:02X}"
        super().__init__(f"unknown opcode {label} at IL_{offset:04X}", offset)
        self.byte = byte
        self.two_byte = two_byte


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ResolutionError(AnalysisError):
    """A branch target, token or member could not be resolved."""


class TargetOutOfRange(ResolutionError):
    def __init__(self, offset: int, target: int, code_size: int) -> None:
        super().__init__(
            f"branch at IL_{offset:04X} targets {target} outside [0, {code_size})"
        )
        self.offset = offset
        self.target = target
        self.code_size = code_size


class TokenUnresolvable(ResolutionError):
    def __init__(self, token: int, module: Optional[str] = None, detail: str = "") -> None:
        where = f" in module '{module}'" if module else ""
        suffix = f": {detail}" if detail else ""
        super().__init__(f"could not resolve token 0x{token:08X}{where}{suffix}")
        self.token = token
        self.module = module


class MemberNotFound(ResolutionError):
    """A type or method name is not present in the searched modules."""


# ---------------------------------------------------------------------------
# Exception regions
# ---------------------------------------------------------------------------


class RegionError(AnalysisError):
    pass


class MalformedRegion(RegionError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(f"region #{index}: {message}")
        self.index = index


# ---------------------------------------------------------------------------
# Module loading
# ---------------------------------------------------------------------------


class LoadError(AnalysisError):
    def __init__(self, message: str, locator: str) -> None:
        super().__init__(message)
        self.locator = locator


class ModuleNotFound(LoadError):
    def __init__(self, locator: str, searched: tuple = ()) -> None:
        detail = f" (searched: {', '.join(str(path) for path in searched)})" if searched else ""
        super().__init__(f"module '{locator}' not found{detail}", locator)
        self.searched = searched


class ModuleLoadFailed(LoadError):
    pass


__all__ = [
    "AnalysisError",
    "DecodeError",
    "TruncatedStream",
    "UnknownOpcode",
    "ResolutionError",
    "TargetOutOfRange",
    "TokenUnresolvable",
    "MemberNotFound",
    "RegionError",
    "MalformedRegion",
    "LoadError",
    "ModuleNotFound",
    "ModuleLoadFailed",
]
