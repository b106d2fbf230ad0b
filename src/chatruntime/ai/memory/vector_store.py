"""Persistent document store pairing a vector index with its source documents."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from .vector_index import IndexMetric, IndexState, MutationNotAllowedError, VectorIndex, VectorIndexError

__all__ = ["Document", "EmbeddedDocument", "TemporaryVectorStore", "DocumentsNotFoundError"]

LOGGER = logging.getLogger(__name__)
_DEFAULT_DIRECTORY = Path.home() / ".chatruntime" / "indexes"
_INDEX_PREFIX = "chatruntime-index-"
_DOCUMENTS_PREFIX = "chatruntime-documents-"


class DocumentsNotFoundError(VectorIndexError):
    """Raised when an index file exists without its document mapping."""


@dataclass(slots=True)
class Document:
    """Text plus free-form metadata stored next to a vector."""

    page_content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"page_content": self.page_content, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Document":
        return cls(page_content=str(payload.get("page_content", "")), metadata=dict(payload.get("metadata") or {}))


@dataclass(slots=True, frozen=True)
class EmbeddedDocument:
    document: Document
    embeddings: Sequence[float]


class TemporaryVectorStore:
    """Small on-disk vector store keyed by a caller-supplied identifier.

    The identifier is MD5-hashed to name two files in ``directory``: the FAISS
    index and a JSON list mapping labels to documents. ``set`` rebuilds both
    off to the side and swaps them in under a lock. Searches run under the same
    lock, so a search sees either the previous pair or the new one.
    """

    def __init__(
        self,
        identifier: str,
        *,
        dimensions: int = 1536,
        directory: Path | str | None = None,
        metric: IndexMetric | str = IndexMetric.IP,
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ) -> None:
        self.identifier = hashlib.md5(identifier.encode("utf-8")).hexdigest()
        self.directory = Path(directory).expanduser() if directory else _DEFAULT_DIRECTORY
        self._index_options = {
            "metric": metric,
            "connectivity": connectivity,
            "expansion_add": expansion_add,
            "expansion_search": expansion_search,
        }
        self.dimensions = int(dimensions)
        self._index = self._new_index()
        self._documents: dict[int, Document] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, identifier: str, settings: Any) -> "TemporaryVectorStore":
        return cls(
            identifier,
            dimensions=settings.embedding_dimensions,
            directory=settings.resolved_storage_dir(),
            metric=settings.index_metric,
            connectivity=settings.index_connectivity,
            expansion_add=settings.index_expansion_add,
            expansion_search=settings.index_expansion_search,
        )

    @property
    def index_path(self) -> Path:
        return self.directory / f"{_INDEX_PREFIX}{self.identifier}.faiss"

    @property
    def documents_path(self) -> Path:
        return self.directory / f"{_DOCUMENTS_PREFIX}{self.identifier}.json"

    @property
    def is_read_only(self) -> bool:
        return self._index.state is IndexState.VIEWING

    def __len__(self) -> int:
        return len(self._documents)

    # ------------------------------------------------------------------
    # Opening persisted stores
    # ------------------------------------------------------------------
    @classmethod
    async def load(cls, identifier: str, **kwargs: Any) -> "TemporaryVectorStore | None":
        """Return the persisted store for ``identifier`` or ``None`` if it is missing."""

        return await cls._open(identifier, read_only=False, **kwargs)

    @classmethod
    async def view(cls, identifier: str, **kwargs: Any) -> "TemporaryVectorStore | None":
        """Like :meth:`load` but the returned store rejects mutations."""

        return await cls._open(identifier, read_only=True, **kwargs)

    @classmethod
    async def _open(cls, identifier: str, *, read_only: bool, **kwargs: Any) -> "TemporaryVectorStore | None":
        store = cls(identifier, **kwargs)
        try:
            await asyncio.to_thread(store._read_from_disk, read_only)
        except (VectorIndexError, OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.debug("No usable store for %s: %s", store.identifier, exc)
            return None
        return store

    def _read_from_disk(self, read_only: bool) -> None:
        if read_only:
            self._index.view(self.index_path)
        else:
            self._index.load(self.index_path)
        if not self.documents_path.exists():
            raise DocumentsNotFoundError(f"Missing documents file {self.documents_path}")
        payload = json.loads(self.documents_path.read_text(encoding="utf-8"))
        self._documents = {int(item["label"]): Document.from_dict(item["document"]) for item in payload}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    async def save(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_to_disk, self._index, dict(self._documents))

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._index.clear)
            self._documents = {}

    async def add(self, documents: Sequence[EmbeddedDocument]) -> list[int]:
        """Append ``documents`` with labels after the current maximum and persist."""

        async with self._lock:
            start = max(self._documents, default=-1) + 1
            labels = list(range(start, start + len(documents)))
            mapping = dict(self._documents)

            def _apply() -> None:
                for label, item in zip(labels, documents):
                    self._index.add(label, item.embeddings)

            await asyncio.to_thread(_apply)
            for label, item in zip(labels, documents):
                mapping[label] = item.document
            self._documents = mapping
            await asyncio.to_thread(self._write_to_disk, self._index, mapping)
        return labels

    async def set(self, documents: Sequence[EmbeddedDocument]) -> None:
        """Replace every stored document with ``documents`` (labels ``0..n-1``) and persist."""

        if self.is_read_only:
            raise MutationNotAllowedError()
        fresh = self._new_index()
        mapping = {label: item.document for label, item in enumerate(documents)}
        await asyncio.to_thread(fresh.set, [(label, item.embeddings) for label, item in enumerate(documents)])
        async with self._lock:
            self._index = fresh
            self._documents = mapping
            await asyncio.to_thread(self._write_to_disk, fresh, mapping)
        LOGGER.debug("Rebuilt store %s with %s documents", self.identifier, len(mapping))

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------
    async def search_with_distance(self, embeddings: Sequence[float], count: int) -> list[tuple[Document, float]]:
        async with self._lock:
            hits = await asyncio.to_thread(self._index.search, embeddings, count)
            mapping = self._documents
        return [(mapping[label], distance) for label, distance in hits if label in mapping]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _new_index(self) -> VectorIndex:
        return VectorIndex(self.dimensions, **self._index_options)

    def _write_to_disk(self, index: VectorIndex, mapping: dict[int, Document]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        index.save(self.index_path)
        payload = [{"label": label, "document": document.to_dict()} for label, document in sorted(mapping.items())]
        tmp_path = self.documents_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.documents_path)
