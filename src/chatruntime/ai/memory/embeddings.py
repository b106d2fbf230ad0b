"""Embedding provider adapters used by retrieval."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

import numpy as np
from openai import AsyncOpenAI

__all__ = [
    "EmbeddingProvider",
    "EmbeddingError",
    "AsyncRateLimiter",
    "LocalEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "embed_in_batches",
]

LOGGER = logging.getLogger(__name__)

BatchEmbedder = Callable[[Sequence[str]], Sequence[Sequence[float]] | Awaitable[Sequence[Sequence[float]]]]
QueryEmbedder = Callable[[str], Sequence[float] | Awaitable[Sequence[float]]]


class EmbeddingError(RuntimeError):
    """Raised when a provider returns vectors that cannot be used."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into fixed-dimension float vectors."""

    name: str
    dimensions: int
    max_batch_size: int

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per input text, in input order."""
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Return the vector for a search query."""
        ...


class AsyncRateLimiter:
    """Spaces out requests so no more than ``rate_per_minute`` start per minute."""

    def __init__(self, *, rate_per_minute: int | None = None) -> None:
        self._interval = 60.0 / float(rate_per_minute) if rate_per_minute and rate_per_minute > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def acquire(self) -> None:
        if self._interval <= 0:
            return
        async with self._lock:
            delay = self._next_slot - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            self._next_slot = time.monotonic() + self._interval


class LocalEmbeddingProvider:
    """Embedding provider backed by plain (sync or async) callables."""

    def __init__(
        self,
        *,
        embed_batch: BatchEmbedder,
        dimensions: int,
        embed_query: QueryEmbedder | None = None,
        name: str = "local",
        max_batch_size: int = 32,
    ) -> None:
        self._embed_batch = embed_batch
        self._embed_query = embed_query
        self.name = name
        self.dimensions = int(dimensions)
        self.max_batch_size = max(1, int(max_batch_size))

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        raw = await _maybe_await(self._embed_batch(list(texts)))
        return _checked_batch(raw, expected=len(texts), dimensions=self.dimensions)

    async def embed_query(self, text: str) -> list[float]:
        if self._embed_query is None:
            return (await self.embed_documents([text]))[0]
        raw = await _maybe_await(self._embed_query(text))
        return _checked_vector(raw, self.dimensions)


class OpenAIEmbeddingProvider:
    """Embedding provider that wraps :class:`openai.AsyncOpenAI`."""

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model: str,
        dimensions: int = 1536,
        name: str | None = None,
        max_batch_size: int = 16,
        rate_limiter: AsyncRateLimiter | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self.dimensions = int(dimensions)
        self.name = name or f"openai:{model}"
        self.max_batch_size = max(1, int(max_batch_size))
        self._rate_limiter = rate_limiter or AsyncRateLimiter()

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        await self._rate_limiter.acquire()
        response = await self._client.embeddings.create(model=self._model, input=list(texts))
        data = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        return _checked_batch(
            [getattr(item, "embedding", None) for item in data],
            expected=len(texts),
            dimensions=self.dimensions,
        )

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_documents([text]))[0]


async def embed_in_batches(provider: EmbeddingProvider, texts: Sequence[str]) -> list[list[float]]:
    """Embed ``texts`` in chunks no larger than the provider's batch size."""

    vectors: list[list[float]] = []
    size = max(1, int(getattr(provider, "max_batch_size", 16)))
    for start in range(0, len(texts), size):
        batch = list(texts[start : start + size])
        vectors.extend(await provider.embed_documents(batch))
        LOGGER.debug("Embedded %s/%s texts with %s", len(vectors), len(texts), provider.name)
    return vectors


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _checked_batch(value: Any, *, expected: int, dimensions: int) -> list[list[float]]:
    if value is None or isinstance(value, (str, bytes)) or not hasattr(value, "__len__"):
        raise EmbeddingError("Embedding batch must be a sequence")
    if len(value) != expected:
        raise EmbeddingError(f"Expected {expected} embeddings, received {len(value)}")
    return [_checked_vector(vector, dimensions) for vector in value]


def _checked_vector(value: Any, dimensions: int) -> list[float]:
    if value is None or isinstance(value, (str, bytes)):
        raise EmbeddingError("Embedding vector must be a sequence of numbers")
    try:
        vector = np.asarray(value, dtype=np.float32).ravel().tolist()
    except (TypeError, ValueError) as exc:
        raise EmbeddingError("Embedding vector must be a sequence of numbers") from exc
    if dimensions and len(vector) != dimensions:
        raise EmbeddingError(f"Embedding has {len(vector)} dimensions, expected {dimensions}")
    return vector
