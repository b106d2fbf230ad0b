"""Approximate nearest-neighbour index over labelled float vectors.

The index is a FAISS HNSW graph (``IndexHNSWFlat``) wrapped in an
``IndexIDMap2`` so callers address records by their own 64-bit labels.
Accuracy versus latency is tuned with three knobs:

``connectivity``
    Graph degree (HNSW ``M``). Higher values improve recall and memory use.
``expansion_add``
    Candidate list size while inserting (``efConstruction``).
``expansion_search``
    Candidate list size while searching (``efSearch``); raised to at least the
    number of requested results for every query.

Results are approximate for large corpora; exact recall is not guaranteed.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from pathlib import Path
from typing import Iterable, Sequence

import faiss
import numpy as np

__all__ = [
    "IndexMetric",
    "IndexState",
    "VectorIndex",
    "VectorIndexError",
    "IndexNotFoundError",
    "AlreadyLoadedError",
    "MutationNotAllowedError",
    "DimensionMismatchError",
    "MAX_LABEL",
]

LOGGER = logging.getLogger(__name__)
MAX_LABEL = 2**63 - 1
# Extra candidates fetched per query so equal distances at the cut-off can be
# ordered by insertion before truncating to ``k``.
_TIE_MARGIN = 8


class IndexMetric(str, enum.Enum):
    L2 = "l2"
    IP = "ip"


class IndexState(enum.Enum):
    INITIALIZED = "initialized"
    LOADED = "loaded"
    VIEWING = "viewing"


class VectorIndexError(RuntimeError):
    """Base class for vector index failures."""


class IndexNotFoundError(VectorIndexError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Can not find the index file: {path}")


class AlreadyLoadedError(VectorIndexError):
    def __init__(self) -> None:
        super().__init__("Index already loaded.")


class MutationNotAllowedError(VectorIndexError):
    def __init__(self) -> None:
        super().__init__("Mutation not allowed in a viewed index.")


class DimensionMismatchError(VectorIndexError):
    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"Vector has {received} dimensions, index expects {expected}")


class VectorIndex:
    """Thread-safe wrapper around a FAISS HNSW index.

    Re-adding an existing label overwrites it: the old vector is dropped, the
    graph is rebuilt, and the record counts as newly inserted when ties are
    broken. HNSW graphs do not support removal, which is why an overwrite
    costs a rebuild.

    Distances ascend: squared Euclidean for ``l2``; ``1 - dot`` for ``ip``.
    """

    def __init__(
        self,
        dimensions: int,
        *,
        metric: IndexMetric | str = IndexMetric.L2,
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = int(dimensions)
        self.metric = IndexMetric(metric)
        self.connectivity = max(2, int(connectivity))
        self.expansion_add = max(1, int(expansion_add))
        self.expansion_search = max(1, int(expansion_search))
        self.state = IndexState.INITIALIZED
        self._lock = threading.RLock()
        self._counter = itertools.count()
        self._sequence: dict[int, int] = {}
        self._index = self._new_index()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        with self._lock:
            return int(self._index.ntotal)

    def __contains__(self, label: object) -> bool:
        with self._lock:
            return label in self._sequence

    @property
    def labels(self) -> list[int]:
        """Labels in insertion order."""

        with self._lock:
            return sorted(self._sequence, key=self._sequence.__getitem__)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def clear(self) -> None:
        with self._lock:
            self._ensure_mutable()
            self._reset()

    def add(self, label: int, vector: Sequence[float]) -> None:
        """Insert ``vector`` under ``label``, replacing any existing record."""

        with self._lock:
            self._ensure_mutable()
            key = _checked_label(label)
            row = self._as_matrix([vector])
            if key in self._sequence:
                LOGGER.debug("Overwriting vector for label %s", key)
                self._rebuild_without({key})
            self._insert(np.array([key], dtype=np.int64), row)

    def set(self, items: Iterable[tuple[int, Sequence[float]]]) -> None:
        """Replace the whole index with ``items``; later duplicates win."""

        with self._lock:
            self._ensure_mutable()
            latest: dict[int, Sequence[float]] = {}
            for label, vector in items:
                key = _checked_label(label)
                latest.pop(key, None)
                latest[key] = vector
            matrix = self._as_matrix(list(latest.values())) if latest else None
            self._reset()
            if matrix is not None:
                self._insert(np.fromiter(latest.keys(), dtype=np.int64, count=len(latest)), matrix)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------
    def search(self, vector: Sequence[float], count: int) -> list[tuple[int, float]]:
        """Return up to ``count`` ``(label, distance)`` pairs, nearest first."""

        with self._lock:
            query = self._as_matrix([vector])
            total = int(self._index.ntotal)
            if count <= 0 or total == 0:
                return []
            fetch = min(total, count + _TIE_MARGIN)
            self._set_search_expansion(fetch)
            raw_distances, raw_labels = self._index.search(query, fetch)
            hits: list[tuple[float, int, int]] = []
            for label, raw in zip(raw_labels[0].tolist(), raw_distances[0].tolist()):
                if label < 0:
                    continue
                distance = 1.0 - raw if self.metric is IndexMetric.IP else raw
                hits.append((distance, self._sequence.get(label, 0), label))
            hits.sort()
            return [(label, float(distance)) for distance, _seq, label in hits[:count]]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self, path: Path | str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            try:
                faiss.write_index(self._index, str(target))
            except RuntimeError as exc:
                raise VectorIndexError(f"Failed to save index to {target}: {exc}") from exc
        LOGGER.debug("Saved %s vectors to %s", len(self), target)

    def load(self, path: Path | str) -> None:
        """Read a saved index into memory; it stays mutable."""

        self._open(Path(path), read_only=False)

    def view(self, path: Path | str) -> None:
        """Open a saved index read-only; mutations then raise."""

        self._open(Path(path), read_only=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _new_index(self) -> faiss.IndexIDMap2:
        if self.metric is IndexMetric.IP:
            base = faiss.IndexHNSWFlat(self.dimensions, self.connectivity, faiss.METRIC_INNER_PRODUCT)
        else:
            base = faiss.IndexHNSWFlat(self.dimensions, self.connectivity)
        base.hnsw.efConstruction = self.expansion_add
        base.hnsw.efSearch = self.expansion_search
        self._base = base
        return faiss.IndexIDMap2(base)

    def _reset(self) -> None:
        self._index = self._new_index()
        self._sequence.clear()

    def _insert(self, labels: np.ndarray, matrix: np.ndarray) -> None:
        try:
            self._index.add_with_ids(matrix, labels)
        except RuntimeError as exc:
            raise VectorIndexError(f"Failed to add vectors: {exc}") from exc
        for label in labels.tolist():
            self._sequence[label] = next(self._counter)

    def _rebuild_without(self, dropped: set[int]) -> None:
        labels, matrix = self._export()
        keep = np.array([label not in dropped for label in labels.tolist()], dtype=bool)
        order = {label: self._sequence[label] for label in labels.tolist() if label not in dropped}
        self._index = self._new_index()
        if keep.any():
            self._index.add_with_ids(matrix[keep], labels[keep])
        self._sequence = order

    def _export(self) -> tuple[np.ndarray, np.ndarray]:
        total = int(self._index.ntotal)
        labels = faiss.vector_to_array(self._index.id_map).astype(np.int64)
        if total == 0:
            return labels, np.empty((0, self.dimensions), dtype=np.float32)
        return labels, self._index.index.reconstruct_n(0, total)

    def _open(self, path: Path, *, read_only: bool) -> None:
        with self._lock:
            if self.state is IndexState.LOADED:
                raise AlreadyLoadedError()
            if not path.exists():
                raise IndexNotFoundError(path)
            flags = faiss.IO_FLAG_MMAP | faiss.IO_FLAG_READ_ONLY if read_only else 0
            try:
                index = faiss.read_index(str(path), flags)
            except RuntimeError as exc:
                raise VectorIndexError(f"Failed to read index {path}: {exc}") from exc
            if not isinstance(index, faiss.IndexIDMap2):
                raise VectorIndexError(f"Index file {path} does not hold a labelled index")
            if index.d != self.dimensions:
                raise DimensionMismatchError(self.dimensions, int(index.d))
            self._index = index
            self._base = faiss.downcast_index(index.index)
            labels = faiss.vector_to_array(self._index.id_map).astype(np.int64).tolist()
            self._counter = itertools.count()
            self._sequence = {label: next(self._counter) for label in labels}
            self.state = IndexState.VIEWING if read_only else IndexState.LOADED
        LOGGER.debug("Opened index %s (%s vectors, read_only=%s)", path, len(labels), read_only)

    def _set_search_expansion(self, fetch: int) -> None:
        self._base.hnsw.efSearch = max(self.expansion_search, fetch)

    def _ensure_mutable(self) -> None:
        if self.state is IndexState.VIEWING:
            raise MutationNotAllowedError()

    def _as_matrix(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        rows = []
        for vector in vectors:
            row = np.asarray(vector, dtype=np.float32).reshape(-1)
            if row.shape[0] != self.dimensions:
                raise DimensionMismatchError(self.dimensions, int(row.shape[0]))
            rows.append(row)
        return np.ascontiguousarray(np.vstack(rows), dtype=np.float32)


def _checked_label(label: int) -> int:
    key = int(label)
    if key < 0 or key > MAX_LABEL:
        raise ValueError(f"Label {label} is outside 0..{MAX_LABEL}")
    return key
