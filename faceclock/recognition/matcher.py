# faceclock/recognition/matcher.py
"""
Nearest-embedding matching under a distance threshold.

Distance is Euclidean (L2) between embeddings, lower = more similar.
A candidate is accepted only if its distance is strictly below threshold.
"""
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from ..core.errors import EmbeddingDimensionError
from ..data.gallery import Gallery


@dataclass(frozen=True)
class MatchResult:
    employee_id: str
    display_name: str
    distance: float
    confidence: int      # display only, see confidence_from_distance()


def confidence_from_distance(distance: float) -> int:
    """Percentage for display. Monotonically decreasing in distance."""
    return int(round(max(0.0, 1.0 - float(distance)) * 100))


def _as_query(query) -> np.ndarray:
    arr = np.asarray(query, dtype=np.float32)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"query must be a non-empty 1-D vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("query contains NaN or infinite values")
    return arr


def compute_distances(query, gallery: Gallery) -> np.ndarray:
    """
    L2 distance from query to every matchable face, in gallery order.

    Raises:
        EmbeddingDimensionError: query and gallery sizes differ
    """
    query = _as_query(query)
    matrix = gallery.matrix
    if matrix.shape[0] == 0:
        return np.empty((0,), dtype=np.float32)
    if matrix.shape[1] != query.shape[0]:
        raise EmbeddingDimensionError(matrix.shape[1], query.shape[0])
    return np.linalg.norm(matrix - query, axis=1)


def find_best_match(query, gallery: Gallery, threshold: float) -> Optional[MatchResult]:
    """
    Closest enrolled face if its distance is below threshold, else None.
    Equal distances resolve to the earliest face in gallery order.
    """
    distances = compute_distances(query, gallery)
    if distances.size == 0:
        return None

    best = int(np.argmin(distances))  # first occurrence on ties
    best_distance = float(distances[best])
    if not best_distance < threshold:
        return None

    face = gallery.matchable[best]
    return MatchResult(
        employee_id=face.employee_id,
        display_name=face.display_name,
        distance=best_distance,
        confidence=confidence_from_distance(best_distance),
    )


def rank_matches(query, gallery: Gallery, top_k: Optional[int] = None) -> List[MatchResult]:
    """All candidates sorted by distance (stable), regardless of threshold."""
    distances = compute_distances(query, gallery)
    order = np.argsort(distances, kind='stable')
    if top_k is not None:
        order = order[:top_k]
    faces = gallery.matchable
    return [
        MatchResult(
            employee_id=faces[i].employee_id,
            display_name=faces[i].display_name,
            distance=float(distances[i]),
            confidence=confidence_from_distance(distances[i]),
        )
        for i in order
    ]
