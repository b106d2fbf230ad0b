"""Tests for scope parsing and context collection."""

from __future__ import annotations

import pytest

from chatruntime.ai.ai_types import ChatReference
from chatruntime.ai.memory.embeddings import EmbeddingError, LocalEmbeddingProvider
from chatruntime.ai.memory.vector_index import VectorIndexError
from chatruntime.ai.memory.vector_store import Document
from chatruntime.ai.orchestration.context import (
    ChatContext,
    ChatContextScope,
    RetrievalContextCollector,
    RetrievedContent,
    StaticContextCollector,
    collect_contexts,
    merge_contexts,
    parse_scopes,
)
from chatruntime.ai.orchestration.tools.types import FunctionDefinition, FunctionSpec


class _FakeStore:
    def __init__(self, hits=None, error: Exception | None = None) -> None:
        self._hits = hits or []
        self._error = error
        self.queries: list[tuple[list[float], int]] = []

    async def search_with_distance(self, embeddings, count):
        self.queries.append((list(embeddings), count))
        if self._error is not None:
            raise self._error
        return self._hits[:count]


def _embedder(dimensions: int = 2) -> LocalEmbeddingProvider:
    return LocalEmbeddingProvider(
        embed_batch=lambda texts: [[float(len(text)), 1.0] for text in texts],
        dimensions=dimensions,
    )


def _reference(title: str) -> ChatReference:
    return ChatReference(title=title, content=title)


def _function(name: str, description: str = "") -> FunctionDefinition:
    return FunctionDefinition(
        spec=FunctionSpec(name=name, description=description or name),
        handler=lambda arguments, report_progress: None,
    )


# -----------------------------------------------------------------------------
# Scopes
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("message", "scopes", "rest"),
    [
        ("@file+web explain this", {ChatContextScope.FILE, ChatContextScope.WEB}, "explain this"),
        ("@c  two spaces", {ChatContextScope.CODE}, "two spaces"),
        ("@proj what is\nthis", {ChatContextScope.PROJECT}, "what is\nthis"),
        ("@xyz hello", set(), "hello"),
        ("plain message", set(), "plain message"),
        ("@file", set(), "@file"),
        ("email me@host.com", set(), "email me@host.com"),
    ],
)
def test_parse_scopes(message: str, scopes: set, rest: str) -> None:
    parsed, remainder = parse_scopes(message)

    assert parsed == frozenset(scopes)
    assert remainder == rest


def test_scope_abbreviation_resolves_to_first_match() -> None:
    assert ChatContextScope.from_text("S") is ChatContextScope.SENSE
    assert ChatContextScope.from_text("p") is ChatContextScope.PROJECT
    assert ChatContextScope.from_text("zzz") is None


# -----------------------------------------------------------------------------
# Collectors
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_static_collector_respects_scope_gate(configuration) -> None:
    collector = StaticContextCollector(
        system_prompt="You can read files.",
        functions=[_function("read_file")],
        scopes=[ChatContextScope.FILE],
    )

    gated = await collector.generate_context([], frozenset(), "hi", configuration)
    opened = await collector.generate_context([], frozenset({ChatContextScope.FILE}), "hi", configuration)

    assert gated == ChatContext.empty()
    assert opened.system_prompt == "You can read files."
    assert [definition.name for definition in opened.functions] == ["read_file"]


@pytest.mark.asyncio
async def test_retrieval_collector_ranks_closest_first(configuration) -> None:
    store = _FakeStore(
        hits=[
            (Document("near", {"path": "src/near.py"}), 0.1),
            (Document("far", {"title": "Far away"}), 0.7),
        ]
    )
    collector = RetrievalContextCollector(store, _embedder(), top_k=5, system_prompt="Use the documents.")

    context = await collector.generate_context([], frozenset({ChatContextScope.PROJECT}), "query", configuration)

    assert store.queries == [([5.0, 1.0], 5)]
    assert [item.document.content for item in context.retrieved_content] == ["near", "far"]
    assert [item.priority for item in context.retrieved_content] == [2, 1]
    near = context.retrieved_content[0].document
    assert (near.title, near.uri) == ("src/near.py", "src/near.py")
    assert near.metadata["distance"] == 0.1
    assert context.retrieved_content[1].document.title == "Far away"
    assert context.system_prompt == "Use the documents."


@pytest.mark.asyncio
async def test_retrieval_collector_needs_matching_scope(configuration) -> None:
    store = _FakeStore(hits=[(Document("near"), 0.1)])
    collector = RetrievalContextCollector(store, _embedder())

    context = await collector.generate_context([], frozenset({ChatContextScope.WEB}), "query", configuration)

    assert context == ChatContext.empty()
    assert store.queries == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [VectorIndexError("index missing"), EmbeddingError("bad")])
async def test_retrieval_failures_yield_empty_context(configuration, error: Exception) -> None:
    collector = RetrievalContextCollector(_FakeStore(error=error), _embedder())

    context = await collector.generate_context([], frozenset({ChatContextScope.PROJECT}), "query", configuration)

    assert context == ChatContext.empty()


@pytest.mark.asyncio
async def test_wrong_embedding_size_is_treated_as_failure(configuration) -> None:
    collector = RetrievalContextCollector(_FakeStore(), _embedder(dimensions=3))

    context = await collector.generate_context([], frozenset({ChatContextScope.PROJECT}), "query", configuration)

    assert context.retrieved_content == []


@pytest.mark.asyncio
async def test_collect_contexts_keeps_collector_order(configuration) -> None:
    collectors = [
        StaticContextCollector(system_prompt="first"),
        StaticContextCollector(system_prompt="second"),
    ]

    contexts = await collect_contexts(collectors, [], frozenset(), "hi", configuration)

    assert [context.system_prompt for context in contexts] == ["first", "second"]
    assert await collect_contexts([], [], frozenset(), "hi", configuration) == []


def test_merge_contexts_orders_by_priority_and_dedupes_functions() -> None:
    merged = merge_contexts(
        [
            ChatContext(
                system_prompt="Project rules.",
                retrieved_content=[RetrievedContent(_reference("a"), 1), RetrievedContent(_reference("b"), 3)],
                functions=[_function("search", "old")],
            ),
            ChatContext(system_prompt="   "),
            ChatContext(
                system_prompt="Web rules.",
                retrieved_content=[RetrievedContent(_reference("c"), 3)],
                functions=[_function("search", "new"), _function("fetch")],
            ),
        ]
    )

    assert merged.system_prompt == "Project rules.\n\nWeb rules."
    assert [item.document.title for item in merged.retrieved_content] == ["b", "c", "a"]
    assert [(definition.name, definition.spec.description) for definition in merged.functions] == [
        ("search", "new"),
        ("fetch", "fetch"),
    ]
