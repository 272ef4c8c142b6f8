"""Tests for nearest-embedding matching."""

import math

import numpy as np
import pytest

from conftest import make_face
from faceclock.core.errors import EmbeddingDimensionError
from faceclock.data.gallery import Gallery
from faceclock.recognition.matcher import (
    compute_distances,
    confidence_from_distance,
    find_best_match,
    rank_matches,
)


def test_close_query_matches_enrolled_face() -> None:
    gallery = Gallery([make_face("E", [1.0, 0.0, 0.0])])

    match = find_best_match([1.0, 0.0, 0.05], gallery, 0.6)

    assert match is not None
    assert match.employee_id == "E"
    assert match.distance == pytest.approx(0.05, abs=1e-6)
    assert match.confidence == 95


def test_distant_query_is_rejected() -> None:
    gallery = Gallery([make_face("E", [1.0, 0.0, 0.0])])

    assert find_best_match([0.0, 1.0, 0.0], gallery, 0.6) is None
    distances = compute_distances([0.0, 1.0, 0.0], gallery)
    assert distances[0] == pytest.approx(math.sqrt(2), abs=1e-6)


def test_threshold_is_strict() -> None:
    gallery = Gallery([make_face("E", [0.0, 0.0])])

    assert find_best_match([0.5, 0.0], gallery, 0.5) is None
    assert find_best_match([0.5, 0.0], gallery, 0.5001) is not None


def test_empty_gallery_never_matches() -> None:
    assert find_best_match([1.0, 0.0], Gallery.empty(2), 10.0) is None
    assert rank_matches([1.0, 0.0], Gallery.empty(2)) == []


def test_tie_goes_to_first_face_in_gallery_order() -> None:
    gallery = Gallery([
        make_face("first", [1.0, 0.0]),
        make_face("second", [-1.0, 0.0]),
    ])

    match = find_best_match([0.0, 0.0], gallery, 2.0)

    assert match.employee_id == "first"


def test_best_match_is_the_minimum_distance_entry() -> None:
    rng = np.random.default_rng(7)
    embeddings = rng.normal(size=(20, 16)).astype(np.float32)
    gallery = Gallery([make_face(f"E{i}", e) for i, e in enumerate(embeddings)])

    for _ in range(25):
        query = rng.normal(size=16).astype(np.float32)
        distances = np.linalg.norm(embeddings - query, axis=1)
        best = int(np.argmin(distances))

        match = find_best_match(query, gallery, float("inf"))
        assert match.employee_id == f"E{best}"

        below = find_best_match(query, gallery, float(distances[best]))
        assert below is None


def test_raising_threshold_never_loses_a_match() -> None:
    rng = np.random.default_rng(11)
    gallery = Gallery([make_face(f"E{i}", rng.normal(size=8)) for i in range(10)])
    query = rng.normal(size=8)

    thresholds = np.linspace(0.0, 6.0, 40)
    results = [find_best_match(query, gallery, t) for t in thresholds]

    first_hit = next(i for i, r in enumerate(results) if r is not None)
    assert all(r is not None for r in results[first_hit:])
    assert len({r.employee_id for r in results[first_hit:]}) == 1


def test_unusable_entries_are_ignored() -> None:
    gallery = Gallery([
        make_face("no-embedding", None),
        make_face("nan", [float("nan"), 0.0, 0.0]),
        make_face("ok", [0.0, 1.0, 0.0]),
    ])

    assert [f.employee_id for f in gallery.matchable] == ["ok"]
    match = find_best_match([1.0, 0.0, 0.0], gallery, 5.0)
    assert match.employee_id == "ok"


def test_query_dimension_mismatch_raises() -> None:
    gallery = Gallery([make_face("E", [1.0, 0.0, 0.0])])

    with pytest.raises(EmbeddingDimensionError):
        find_best_match([1.0, 0.0], gallery, 0.6)


def test_invalid_query_raises_value_error() -> None:
    gallery = Gallery([make_face("E", [1.0, 0.0])])

    with pytest.raises(ValueError):
        find_best_match([[1.0, 0.0]], gallery, 0.6)
    with pytest.raises(ValueError):
        find_best_match([float("inf"), 0.0], gallery, 0.6)


def test_rank_matches_orders_by_distance() -> None:
    gallery = Gallery([
        make_face("far", [5.0, 0.0]),
        make_face("near", [1.0, 0.0]),
        make_face("mid", [3.0, 0.0]),
    ])

    ranked = rank_matches([0.0, 0.0], gallery, top_k=2)

    assert [m.employee_id for m in ranked] == ["near", "mid"]


def test_confidence_decreases_with_distance() -> None:
    assert confidence_from_distance(0.0) == 100
    assert confidence_from_distance(0.3) == 70
    assert confidence_from_distance(1.5) == 0
