#!/usr/bin/env python3
"""Command-line interface for the CIL disassembler and call-graph walker."""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from cildisasm import (
    CallGraphWalker,
    DecodeMode,
    ManifestIntrospectionService,
    NodeStatus,
    TraversalOptions,
    call_graph_to_json,
    render_call_tree,
    render_method,
)
from cildisasm.callgraph import DEFAULT_MAX_DEPTH, TraversalResult

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("manifest", type=Path, help="Module manifest holding the root method")
    parser.add_argument("target", help="Root method as <Type>.<Method>, e.g. App.Program.Main")
    parser.add_argument(
        "--signature",
        default=None,
        help="Overload signature of the root method (first overload when omitted)",
    )
    parser.add_argument(
        "--depth",
        type=int,
        default=DEFAULT_MAX_DEPTH,
        help="Maximum call depth to expand",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail a method on the first decode error instead of skipping bad bytes",
    )
    parser.add_argument(
        "--search-path",
        type=Path,
        action="append",
        dest="search_paths",
        default=[],
        help="Directory searched for referenced module manifests (repeatable, in order)",
    )
    parser.add_argument(
        "--listing",
        action="store_true",
        help="Print the annotated listing of the root method",
    )
    parser.add_argument(
        "--json",
        type=Path,
        default=None,
        dest="json_out",
        help="Write the call graph as JSON to this path",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Mirror log output to this file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)
    if "." not in args.target:
        parser.error(f"target '{args.target}' must look like <Type>.<Method>")
    if args.depth < 0:
        parser.error("--depth must be non-negative")
    return args


def configure_logging(verbose: bool, log_file: Optional[Path]) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", force=True)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logging.getLogger().addHandler(file_handler)


def split_target(target: str) -> Tuple[str, str]:
    type_name, _, method_name = target.rpartition(".")
    return type_name, method_name


def resolve_search_paths(args: argparse.Namespace) -> List[Path]:
    """Explicit search paths first, then the root manifest's directory and its
    ``bin/`` and ``lib/`` subdirectories."""

    paths = list(args.search_paths)
    manifest_dir = args.manifest.parent
    for candidate in (manifest_dir, manifest_dir / "bin", manifest_dir / "lib"):
        if candidate not in paths:
            paths.append(candidate)
    return paths


def render_summary(result: TraversalResult, elapsed: float) -> str:
    lines = []
    if result.loaded_modules:
        lines.append("modules loaded:")
        for module in result.loaded_modules:
            lines.append(f"  {module.name} ({module.locator})")
    lines.append(f"methods analysed: {result.analyzed_count}")
    failed = result.count(NodeStatus.FAILED)
    if failed:
        lines.append(f"failed nodes: {failed}")
    if result.cancelled:
        lines.append("traversal cancelled")
    lines.append(f"total execution time: {elapsed:.2f}s")
    return "\n".join(lines)


def main(argv: Optional[Sequence[str]] = None) -> int:
    start_time = time.perf_counter()
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    if not args.manifest.exists():
        raise SystemExit(f"missing input file: {args.manifest}")

    service = ManifestIntrospectionService(resolve_search_paths(args))
    options = TraversalOptions(
        max_depth=args.depth,
        decode_mode=DecodeMode.STRICT if args.strict else DecodeMode.PERMISSIVE,
    )
    type_name, method_name = split_target(args.target)
    result = CallGraphWalker(service, options).walk(
        str(args.manifest), type_name, method_name, signature=args.signature
    )

    print(render_call_tree(result), end="")
    if args.listing and result.root.decoded is not None:
        print()
        print(render_method(result.root.decoded, title=result.root.label, include_blocks=True), end="")
    if args.json_out is not None:
        args.json_out.write_text(call_graph_to_json(result) + "\n", "utf-8")
        print(f"call graph written to {args.json_out}")

    print(render_summary(result, time.perf_counter() - start_time))
    return 1 if result.root.status is NodeStatus.FAILED else 0


if __name__ == "__main__":
    raise SystemExit(main())
