"""Tests for the function registry."""

from __future__ import annotations

from chatruntime.ai.orchestration.tools.registry import FunctionRegistry
from chatruntime.ai.orchestration.tools.types import FunctionDefinition, FunctionSpec


def _definition(name: str, description: str = "") -> FunctionDefinition:
    return FunctionDefinition(
        spec=FunctionSpec(name=name, description=description or name),
        handler=lambda arguments, report_progress: name,
    )


def test_register_and_lookup() -> None:
    registry = FunctionRegistry([_definition("search")])

    assert "search" in registry
    assert registry.get("search").name == "search"
    assert registry.get("missing") is None
    assert len(registry) == 1


def test_later_registration_replaces_earlier() -> None:
    registry = FunctionRegistry()
    registry.register(_definition("search", "first"))
    registry.register(_definition("search", "second"))

    assert registry.names() == ["search"]
    assert registry.get("search").spec.description == "second"


def test_unregister_reports_whether_removed() -> None:
    registry = FunctionRegistry([_definition("search")])

    assert registry.unregister("search") is True
    assert registry.unregister("search") is False


def test_openai_tools_use_default_schema() -> None:
    registry = FunctionRegistry([_definition("search"), _definition("open")])

    tools = registry.get_openai_tools(filter_names=["open"])

    assert tools == [
        {
            "type": "function",
            "function": {"name": "open", "description": "open", "parameters": {"type": "object", "properties": {}}},
        }
    ]


def test_merged_with_leaves_original_untouched() -> None:
    registry = FunctionRegistry([_definition("search", "base")])

    merged = registry.merged_with([_definition("search", "turn"), _definition("open")])

    assert registry.names() == ["search"]
    assert registry.get("search").spec.description == "base"
    assert merged.names() == ["search", "open"]
    assert merged.get("search").spec.description == "turn"
