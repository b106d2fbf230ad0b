"""Tests for embedding providers."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, cast

import numpy as np
import pytest

from openai import AsyncOpenAI

from chatruntime.ai.memory.embeddings import (
    EmbeddingError,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    embed_in_batches,
)


class _FakeEmbeddings:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def create(self, *, model: str, input: list[str]) -> SimpleNamespace:
        self.calls.append({"model": model, "input": list(input)})
        data = [SimpleNamespace(index=index, embedding=[float(len(text)), 0.0]) for index, text in enumerate(input)]
        return SimpleNamespace(data=list(reversed(data)))


@pytest.mark.asyncio
async def test_local_provider_accepts_numpy_output() -> None:
    provider = LocalEmbeddingProvider(
        embed_batch=lambda texts: np.ones((len(texts), 3), dtype=np.float64),
        dimensions=3,
    )

    vectors = await provider.embed_documents(["a", "b"])

    assert vectors == [[1.0, 1.0, 1.0], [1.0, 1.0, 1.0]]
    assert isinstance(provider, EmbeddingProvider)


@pytest.mark.asyncio
async def test_local_provider_supports_async_query_embedder() -> None:
    async def embed_query(text: str) -> list[float]:
        return [0.5, 0.25]

    provider = LocalEmbeddingProvider(embed_batch=lambda texts: [], dimensions=2, embed_query=embed_query)

    assert await provider.embed_query("q") == [0.5, 0.25]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "output",
    [None, "text", [[1.0, 2.0]], [[1.0, 2.0, 3.0], [1.0]], [["x", "y", "z"], [1.0, 2.0, 3.0]]],
)
async def test_local_provider_rejects_malformed_output(output: Any) -> None:
    provider = LocalEmbeddingProvider(embed_batch=lambda texts: output, dimensions=3)

    with pytest.raises(EmbeddingError):
        await provider.embed_documents(["a", "b"])


@pytest.mark.asyncio
async def test_openai_provider_orders_vectors_by_index() -> None:
    embeddings = _FakeEmbeddings()
    provider = OpenAIEmbeddingProvider(
        client=cast(AsyncOpenAI, SimpleNamespace(embeddings=embeddings)),
        model="text-embedding-3-small",
        dimensions=2,
    )

    vectors = await provider.embed_documents(["a", "bbb"])

    assert vectors == [[1.0, 0.0], [3.0, 0.0]]
    assert embeddings.calls == [{"model": "text-embedding-3-small", "input": ["a", "bbb"]}]
    assert provider.name == "openai:text-embedding-3-small"
    assert await provider.embed_documents([]) == []


@pytest.mark.asyncio
async def test_embed_in_batches_respects_batch_size() -> None:
    batches: list[list[str]] = []

    def embed(texts: list[str]) -> list[list[float]]:
        batches.append(texts)
        return [[float(len(text))] for text in texts]

    provider = LocalEmbeddingProvider(embed_batch=embed, dimensions=1, max_batch_size=2)

    vectors = await embed_in_batches(provider, ["a", "bb", "ccc", "dddd", "eeeee"])

    assert batches == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]
    assert vectors == [[1.0], [2.0], [3.0], [4.0], [5.0]]
