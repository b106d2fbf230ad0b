"""Embeddings, vector storage, and the broadcast channel."""

from .broadcast import BroadcastChannel, Subscription
from .embeddings import (
    EmbeddingError,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    embed_in_batches,
)
from .vector_index import (
    AlreadyLoadedError,
    DimensionMismatchError,
    IndexMetric,
    IndexNotFoundError,
    IndexState,
    MutationNotAllowedError,
    VectorIndex,
    VectorIndexError,
)
from .vector_store import Document, DocumentsNotFoundError, EmbeddedDocument, TemporaryVectorStore

__all__ = [
    "BroadcastChannel",
    "Subscription",
    "EmbeddingError",
    "EmbeddingProvider",
    "LocalEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "embed_in_batches",
    "AlreadyLoadedError",
    "DimensionMismatchError",
    "IndexMetric",
    "IndexNotFoundError",
    "IndexState",
    "MutationNotAllowedError",
    "VectorIndex",
    "VectorIndexError",
    "Document",
    "DocumentsNotFoundError",
    "EmbeddedDocument",
    "TemporaryVectorStore",
]
