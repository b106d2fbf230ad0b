"""Tests for the FAISS-backed vector index."""

from __future__ import annotations

import math
from pathlib import Path

import pytest

from chatruntime.ai.memory.vector_index import (
    MAX_LABEL,
    AlreadyLoadedError,
    DimensionMismatchError,
    IndexMetric,
    IndexNotFoundError,
    IndexState,
    MutationNotAllowedError,
    VectorIndex,
)


def _unit(*values: float) -> list[float]:
    norm = math.sqrt(sum(value * value for value in values))
    return [value / norm for value in values]


@pytest.fixture
def index() -> VectorIndex:
    vectors = VectorIndex(3)
    vectors.add(1, [0.0, 0.0, 0.0])
    vectors.add(2, [1.0, 0.0, 0.0])
    vectors.add(3, [5.0, 5.0, 5.0])
    return vectors


def test_search_returns_nearest_first(index: VectorIndex) -> None:
    hits = index.search([0.9, 0.0, 0.0], 2)

    assert [label for label, _ in hits] == [2, 1]
    assert hits[0][1] == pytest.approx(0.01, abs=1e-5)
    assert hits[1][1] == pytest.approx(0.81, abs=1e-5)


def test_search_never_returns_more_than_stored(index: VectorIndex) -> None:
    assert len(index.search([0.0, 0.0, 0.0], 10)) == 3
    assert index.search([0.0, 0.0, 0.0], 0) == []
    assert VectorIndex(3).search([0.0, 0.0, 0.0], 5) == []


def test_equal_distances_keep_insertion_order() -> None:
    vectors = VectorIndex(2)
    vectors.add(9, [1.0, 1.0])
    vectors.add(4, [1.0, 1.0])
    vectors.add(7, [1.0, 1.0])

    assert [label for label, _ in vectors.search([1.0, 1.0], 3)] == [9, 4, 7]


def test_adding_existing_label_overwrites(index: VectorIndex) -> None:
    index.add(1, [5.0, 5.0, 4.0])

    assert len(index) == 3
    assert index.search([0.0, 0.0, 0.0], 1)[0][0] == 2
    assert index.search([5.0, 5.0, 4.0], 1) == [(1, pytest.approx(0.0, abs=1e-5))]
    assert index.labels == [2, 3, 1]


def test_set_replaces_contents_and_last_duplicate_wins(index: VectorIndex) -> None:
    index.set([(10, [1.0, 0.0, 0.0]), (11, [0.0, 1.0, 0.0]), (10, [0.0, 0.0, 1.0])])

    assert len(index) == 2
    assert 1 not in index
    assert index.search([0.0, 0.0, 1.0], 1)[0][0] == 10


def test_clear_empties_index(index: VectorIndex) -> None:
    index.clear()

    assert len(index) == 0
    assert index.labels == []


def test_dimension_mismatch_is_rejected(index: VectorIndex) -> None:
    with pytest.raises(DimensionMismatchError) as excinfo:
        index.add(4, [1.0, 2.0])
    assert (excinfo.value.expected, excinfo.value.received) == (3, 2)

    with pytest.raises(DimensionMismatchError):
        index.search([1.0], 1)


@pytest.mark.parametrize("label", [-1, MAX_LABEL + 1])
def test_labels_outside_int64_range_are_rejected(label: int) -> None:
    with pytest.raises(ValueError):
        VectorIndex(2).add(label, [0.0, 0.0])


def test_inner_product_distance_is_one_minus_dot() -> None:
    vectors = VectorIndex(2, metric=IndexMetric.IP)
    vectors.add(0, _unit(1.0, 0.0))
    vectors.add(1, _unit(0.0, 1.0))
    vectors.add(2, _unit(1.0, 1.0))

    hits = vectors.search(_unit(1.0, 0.0), 3)

    assert [label for label, _ in hits] == [0, 2, 1]
    assert hits[0][1] == pytest.approx(0.0, abs=1e-5)
    assert hits[1][1] == pytest.approx(1.0 - math.sqrt(0.5), abs=1e-5)
    assert hits[2][1] == pytest.approx(1.0, abs=1e-5)


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


def test_save_and_load_round_trip(index: VectorIndex, tmp_path: Path) -> None:
    path = tmp_path / "nested" / "index.faiss"
    index.save(path)

    restored = VectorIndex(3)
    restored.load(path)

    assert restored.state is IndexState.LOADED
    assert restored.labels == [1, 2, 3]
    assert restored.search([0.9, 0.0, 0.0], 1)[0][0] == 2
    restored.add(4, [2.0, 0.0, 0.0])
    assert len(restored) == 4


def test_loading_twice_raises(index: VectorIndex, tmp_path: Path) -> None:
    path = tmp_path / "index.faiss"
    index.save(path)
    restored = VectorIndex(3)
    restored.load(path)

    with pytest.raises(AlreadyLoadedError):
        restored.load(path)
    with pytest.raises(AlreadyLoadedError):
        restored.view(path)


def test_viewed_index_rejects_mutation(index: VectorIndex, tmp_path: Path) -> None:
    path = tmp_path / "index.faiss"
    index.save(path)
    viewer = VectorIndex(3)
    viewer.view(path)

    assert viewer.state is IndexState.VIEWING
    assert viewer.search([0.0, 0.0, 0.0], 1)[0][0] == 1
    with pytest.raises(MutationNotAllowedError):
        viewer.add(8, [0.0, 0.0, 1.0])
    with pytest.raises(MutationNotAllowedError):
        viewer.set([])
    with pytest.raises(MutationNotAllowedError):
        viewer.clear()


def test_missing_file_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(IndexNotFoundError) as excinfo:
        VectorIndex(3).load(tmp_path / "absent.faiss")
    assert excinfo.value.path == tmp_path / "absent.faiss"


def test_loading_other_dimensions_is_rejected(index: VectorIndex, tmp_path: Path) -> None:
    path = tmp_path / "index.faiss"
    index.save(path)

    with pytest.raises(DimensionMismatchError):
        VectorIndex(4).load(path)
