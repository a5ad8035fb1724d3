import json
import struct
from typing import Dict, List

import pytest

from cildisasm.callgraph import CallGraphWalker, NodeStatus, TraversalOptions
from cildisasm.instruction import DecodeMode
from cildisasm.manifest import ManifestIntrospectionService
from cildisasm.render import call_graph_to_dict, call_graph_to_json, render_call_tree


def _il(*tokens: int, opcode: int = 0x28) -> str:
    body = b"".join(bytes([opcode]) + struct.pack("<I", token) for token in tokens)
    return (body + bytes([0x2A])).hex()


def _method(name: str, token: int, calls=(), **extra) -> Dict[str, object]:
    entry: Dict[str, object] = {"name": name, "token": f"0x{token:08X}", "il": _il(*calls)}
    entry.update(extra)
    return entry


def _module(name: str, types: Dict[str, List[dict]], references=None) -> Dict[str, object]:
    return {
        "name": name,
        "types": {type_name: {"methods": methods} for type_name, methods in types.items()},
        "references": references or {},
    }


def _walk(modules, method: str = "Main", options=None, service=None):
    service = service or ManifestIntrospectionService.from_modules(modules)
    return CallGraphWalker(service, options).walk("App", "App.Program", method)


def _statuses(node):
    return [(child.label, child.status) for child in node.children]


def _cycle_module() -> Dict[str, object]:
    return _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x06000002]),
                _method("Other", 0x06000002, [0x06000001]),
            ]
        },
    )


@pytest.mark.parametrize("max_depth", [2, 3, 20])
def test_two_method_cycle_terminates(max_depth: int) -> None:
    result = _walk({"App": _cycle_module()}, options=TraversalOptions(max_depth=max_depth))

    root = result.root
    assert root.status is NodeStatus.ANALYZED
    assert _statuses(root) == [("App.Program.Other", NodeStatus.ANALYZED)]
    assert _statuses(root.children[0]) == [("App.Program.Main", NodeStatus.ALREADY_VISITED)]
    analyzed = [node.label for node in result.iter_nodes() if node.status is NodeStatus.ANALYZED]
    assert sorted(analyzed) == ["App.Program.Main", "App.Program.Other"]
    assert len(result.visited) == 2
    assert result.count(NodeStatus.DEPTH_EXCEEDED) == 0


def test_depth_limit_of_one_analyses_only_the_root() -> None:
    result = _walk({"App": _cycle_module()}, options=TraversalOptions(max_depth=1))

    assert result.root.status is NodeStatus.ANALYZED
    assert _statuses(result.root) == [("App.Program.Other", NodeStatus.DEPTH_EXCEEDED)]
    assert result.root.children[0].children == []
    assert len(result.visited) == 1


def test_depth_limit_stops_deep_chain() -> None:
    chain = [
        _method(f"M{index}", 0x06000001 + index, [0x06000002 + index] if index < 24 else [])
        for index in range(25)
    ]
    app = _module("App", {"App.Program": chain})
    service = ManifestIntrospectionService.from_modules({"App": app})

    result = CallGraphWalker(service).walk("App", "App.Program", "M0")

    nodes = list(result.iter_nodes())
    assert max(node.depth for node in nodes) == 20
    assert result.analyzed_count == 20
    deepest = nodes[-1]
    assert deepest.depth == 20
    assert deepest.status is NodeStatus.DEPTH_EXCEEDED
    assert deepest.label == "App.Program.M20"
    assert deepest.children == []

    unlimited = CallGraphWalker(service, TraversalOptions(max_depth=30)).walk(
        "App", "App.Program", "M0"
    )
    assert unlimited.analyzed_count == 25
    assert unlimited.count(NodeStatus.DEPTH_EXCEEDED) == 0


def test_unresolvable_token_does_not_abort_siblings() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x0A0000FF, 0x06000002]),
                _method("Helper", 0x06000002),
            ]
        },
    )
    result = _walk({"App": app})

    failed, helper = result.root.children
    assert failed.status is NodeStatus.FAILED
    assert "0x0A0000FF" in failed.reason
    assert failed.call_site.offset == 0
    assert helper.status is NodeStatus.ANALYZED
    assert helper.label == "App.Program.Helper"


def test_indirect_call_signature_token_is_a_failed_leaf() -> None:
    app = _module(
        "App",
        {"App.Program": [{"name": "Main", "token": 1, "il": _il(0x11000001, opcode=0x29)}]},
    )
    result = _walk({"App": app})

    (node,) = result.root.children
    assert node.status is NodeStatus.FAILED
    assert node.call_site.kind.value == "calli"


def test_cross_module_reference_loads_module_lazily() -> None:
    app = _module(
        "App",
        {"App.Program": [_method("Main", 0x06000001, [0x0A000001])]},
        references={"0x0A000001": {"module": "Lib", "type": "Lib.Util", "name": "Run"}},
    )
    lib = _module("Lib", {"Lib.Util": [_method("Run", 0x06000001, [0x06000002]), _method("Step", 0x06000002)]})
    unused = _module("Unused", {"Unused.Type": [_method("Never", 0x06000001)]})

    result = _walk({"App": app, "Lib": lib, "Unused": unused})

    assert [module.name for module in result.loaded_modules] == ["App", "Lib"]
    (run,) = result.root.children
    assert run.status is NodeStatus.ANALYZED
    assert run.module == "Lib"
    # Tokens inside Lib resolve against Lib, not against the caller.
    assert _statuses(run) == [("Lib.Util.Step", NodeStatus.ANALYZED)]


class _CountingService(ManifestIntrospectionService):
    def __init__(self, modules) -> None:
        super().__init__(modules=modules)
        self.loads: List[str] = []

    def load_module(self, locator):
        self.loads.append(locator)
        return super().load_module(locator)


def test_missing_module_fails_each_call_site_but_loads_once() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x0A000001, 0x0A000002, 0x06000002]),
                _method("Local", 0x06000002),
            ]
        },
        references={
            "0x0A000001": {"module": "Missing", "type": "Missing.Type", "name": "A"},
            "0x0A000002": {"module": "Missing", "type": "Missing.Type", "name": "B"},
        },
    )
    service = _CountingService({"App": app})
    result = _walk(None, service=service)

    first, second, local = result.root.children
    assert first.status is NodeStatus.FAILED
    assert "module 'Missing' not found" in first.reason
    assert first.label == "Missing.Type.A"
    assert second.status is NodeStatus.FAILED
    assert local.status is NodeStatus.ANALYZED
    assert service.loads == ["App", "Missing"]
    assert [module.name for module in result.loaded_modules] == ["App"]


def _external_then_local(module_name: str) -> Dict[str, object]:
    return _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x0A000001, 0x06000002]),
                _method("Helper", 0x06000002),
            ]
        },
        references={"0x0A000001": {"module": module_name, "type": "Lib.Util", "name": "Run"}},
    )


def test_overlong_module_name_fails_only_its_call_site(tmp_path) -> None:
    service = ManifestIntrospectionService([tmp_path], modules={"App": _external_then_local("L" * 300)})

    result = _walk(None, service=service)

    assert _statuses(result.root) == [
        ("Lib.Util.Run", NodeStatus.FAILED),
        ("App.Program.Helper", NodeStatus.ANALYZED),
    ]


class _BrokenDiskService(ManifestIntrospectionService):
    def load_module(self, locator):
        if locator == "Lib":
            raise OSError("disk read error")
        return super().load_module(locator)


def test_io_error_from_service_becomes_failed_leaf() -> None:
    app = _external_then_local("Lib")
    app["types"]["App.Program"]["methods"][0] = _method(
        "Main", 0x06000001, [0x0A000001, 0x0A000001, 0x06000002]
    )
    service = _BrokenDiskService(modules={"App": app})

    result = _walk(None, service=service)

    first, second, helper = result.root.children
    assert first.status is NodeStatus.FAILED
    assert "disk read error" in first.reason
    assert second.status is NodeStatus.FAILED
    assert second.reason == first.reason
    assert helper.status is NodeStatus.ANALYZED
    assert [module.name for module in result.loaded_modules] == ["App"]


def test_async_entry_point_expands_continuation_first_and_once() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method(
                    "Main",
                    0x06000001,
                    [0x06000002],
                    **{
                        "async": True,
                        "continuation": {"type": "App.Program/<Main>d__0", "name": "MoveNext"},
                    },
                ),
                _method("Start", 0x06000002, [0x06000003]),
            ],
            "App.Program/<Main>d__0": [_method("MoveNext", 0x06000003)],
        },
    )
    result = _walk({"App": app})

    continuation, start = result.root.children
    assert continuation.is_continuation
    assert continuation.call_site is None
    assert continuation.depth == 1
    assert continuation.label == "App.Program/<Main>d__0.MoveNext"
    assert continuation.status is NodeStatus.ANALYZED
    assert start.label == "App.Program.Start"
    assert _statuses(start) == [("App.Program/<Main>d__0.MoveNext", NodeStatus.ALREADY_VISITED)]

    skipped = _walk({"App": app}, options=TraversalOptions(expand_continuations=False))
    assert [child.label for child in skipped.root.children] == ["App.Program.Start"]
    assert _statuses(skipped.root.children[0]) == [
        ("App.Program/<Main>d__0.MoveNext", NodeStatus.ANALYZED)
    ]


def test_missing_continuation_is_a_failed_child() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method(
                    "Main",
                    0x06000001,
                    **{"async": True, "continuation": {"type": "Gone", "name": "MoveNext"}},
                )
            ]
        },
    )
    result = _walk({"App": app})

    (continuation,) = result.root.children
    assert continuation.is_continuation
    assert continuation.status is NodeStatus.FAILED
    assert "Gone" in continuation.reason


def test_foundational_calls_are_leaves_without_loading_modules() -> None:
    app = _module(
        "App",
        {"App.Program": [_method("Main", 0x06000001, [0x0A000001, 0x0A000002])]},
        references={
            "0x0A000001": {"module": "System.Runtime", "type": "System.Object", "name": ".ctor"},
            "0x0A000002": {"module": "System.Console", "type": "System.Console", "name": "WriteLine"},
        },
    )
    result = _walk({"App": app})

    assert _statuses(result.root) == [
        ("System.Object..ctor", NodeStatus.FOUNDATIONAL),
        ("System.Console.WriteLine", NodeStatus.FOUNDATIONAL),
    ]
    assert [module.name for module in result.loaded_modules] == ["App"]


def test_foundational_prefixes_are_configurable() -> None:
    app = _module(
        "App",
        {"App.Program": [_method("Main", 0x06000001, [0x0A000001])]},
        references={"0x0A000001": {"module": "Lib", "type": "Lib.Util", "name": "Run"}},
    )
    options = TraversalOptions(foundational_prefixes=("Lib",))
    result = _walk({"App": app}, options=options)

    assert _statuses(result.root) == [("Lib.Util.Run", NodeStatus.FOUNDATIONAL)]
    assert not options.is_foundational("Library.Thing")


def test_abstract_method_has_no_body() -> None:
    app = _module(
        "App",
        {
            "App.Program": [_method("Main", 0x06000001, [0x06000002])],
            "App.IRunner": [{"name": "Run", "token": "0x06000002", "abstract": True}],
        },
    )
    result = _walk({"App": app})

    assert _statuses(result.root) == [("App.IRunner.Run", NodeStatus.NO_BODY)]


def test_diamond_reports_shared_callee_once() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x06000002, 0x06000003]),
                _method("Left", 0x06000002, [0x06000004]),
                _method("Right", 0x06000003, [0x06000004]),
                _method("Shared", 0x06000004),
            ]
        },
    )
    result = _walk({"App": app})

    left, right = result.root.children
    assert _statuses(left) == [("App.Program.Shared", NodeStatus.ANALYZED)]
    assert _statuses(right) == [("App.Program.Shared", NodeStatus.ALREADY_VISITED)]
    assert result.analyzed_count == 4


def test_overload_is_chosen_by_signature() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x0A000001]),
                _method("Run", 0x06000002, signature="(int)"),
                _method("Run", 0x06000003, signature="(string)"),
            ]
        },
        references={
            "0x0A000001": {"module": "App", "type": "App.Program", "name": "Run", "signature": "(string)"}
        },
    )
    result = _walk({"App": app})

    (run,) = result.root.children
    assert run.method.signature == "(string)"


def test_step_budget_cancels_with_partial_tree() -> None:
    chain = [
        _method(f"M{index}", 0x06000001 + index, [0x06000002 + index] if index < 4 else [])
        for index in range(5)
    ]
    app = _module("App", {"App.Program": chain})
    service = ManifestIntrospectionService.from_modules({"App": app})

    result = CallGraphWalker(service, TraversalOptions(max_steps=2)).walk("App", "App.Program", "M0")

    assert result.cancelled
    assert result.steps == 2
    statuses = [node.status for node in result.iter_nodes()]
    assert statuses == [NodeStatus.ANALYZED, NodeStatus.ANALYZED, NodeStatus.CANCELLED]
    assert "partial" in render_call_tree(result)


def test_should_cancel_callback_is_polled() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x06000002, 0x06000003]),
                _method("A", 0x06000002),
                _method("B", 0x06000003),
            ]
        },
    )
    polls: List[int] = []

    def should_cancel() -> bool:
        polls.append(1)
        return len(polls) > 2

    result = _walk({"App": app}, options=TraversalOptions(should_cancel=should_cancel))

    assert result.cancelled
    assert _statuses(result.root) == [
        ("App.Program.A", NodeStatus.ANALYZED),
        ("<unresolved>", NodeStatus.CANCELLED),
    ]


def test_root_resolution_failures() -> None:
    app = _module("App", {"App.Program": [_method("Main", 0x06000001)]})
    service = ManifestIntrospectionService.from_modules({"App": app})
    walker = CallGraphWalker(service)

    missing_method = walker.walk("App", "App.Program", "Nope")
    assert missing_method.root.status is NodeStatus.FAILED
    assert "App.Program.Nope" in missing_method.root.reason

    missing_module = walker.walk("Elsewhere", "App.Program", "Main")
    assert missing_module.root.status is NodeStatus.FAILED
    assert missing_module.loaded_modules == []


def test_strict_decode_failure_is_reported_on_the_node() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x06000002]),
                {"name": "Broken", "token": "0x06000002", "il": "00242A"},
            ]
        },
    )

    strict = _walk({"App": app}, options=TraversalOptions(decode_mode=DecodeMode.STRICT))
    (broken,) = strict.root.children
    assert broken.status is NodeStatus.FAILED
    assert "unknown opcode" in broken.reason

    permissive = _walk({"App": app})
    (broken,) = permissive.root.children
    assert broken.status is NodeStatus.ANALYZED
    assert broken.code_size == 3
    assert len(broken.warnings) == 1


def test_walks_are_independent() -> None:
    app = _module(
        "App",
        {
            "App.Program": [
                _method("Main", 0x06000001, [0x06000002]),
                _method("Helper", 0x06000002),
            ]
        },
    )
    walker = CallGraphWalker(ManifestIntrospectionService.from_modules({"App": app}))

    first = walker.walk("App", "App.Program", "Main")
    second = walker.walk("App", "App.Program", "Main")

    assert _statuses(first.root) == _statuses(second.root)
    assert second.root.children[0].status is NodeStatus.ANALYZED


def test_call_graph_serialisation() -> None:
    app = _module(
        "App",
        {"App.Program": [_method("Main", 0x06000001, [0x06000002, 0x0A0000FF]), _method("Helper", 0x06000002)]},
    )
    result = _walk({"App": app})

    payload = json.loads(call_graph_to_json(result))
    assert payload == call_graph_to_dict(result)
    assert payload["root"]["method"] == "App.Program.Main"
    assert payload["counts"] == {"analyzed": 2, "failed": 1}
    helper, failed = payload["root"]["children"]
    assert helper["call_site"] == {"offset": 0, "kind": "call", "token": 0x06000002}
    assert failed["status"] == "failed"
    assert "reason" in failed

    tree = render_call_tree(result).splitlines()
    assert tree[0] == "App.Program.Main"
    assert tree[1] == "  IL_0000 call App.Program.Helper"
    assert tree[2].startswith("  IL_0005 call <unresolved> (failed: could not resolve token 0x0A0000FF")
