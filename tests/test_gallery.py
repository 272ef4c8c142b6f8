"""Tests for gallery parsing and the caching loader."""

import json

import numpy as np
import pytest
import requests

from conftest import make_face
from faceclock.core.errors import EmbeddingDimensionError, GalleryLoadError
from faceclock.data.gallery import Gallery, GalleryLoader, build_gallery, parse_embedding


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def test_parse_embedding_accepts_array_json_and_descriptor() -> None:
    expected = np.array([0.1, 0.2, 0.3], dtype=np.float32)

    assert np.allclose(parse_embedding([0.1, 0.2, 0.3]), expected)
    assert np.allclose(parse_embedding("[0.1, 0.2, 0.3]"), expected)
    assert np.allclose(parse_embedding(b"[0.1, 0.2, 0.3]"), expected)
    assert np.allclose(parse_embedding(json.dumps({"descriptor": [0.1, 0.2, 0.3]})), expected)
    assert parse_embedding([1, 2]).dtype == np.float32


@pytest.mark.parametrize("raw", [
    None,
    "not json",
    "42",
    [],
    [[1.0, 2.0]],
    ["a", "b"],
    [1.0, float("nan")],
    {"other": [1.0]},
])
def test_parse_embedding_rejects_garbage(raw) -> None:
    with pytest.raises(ValueError):
        parse_embedding(raw)


def test_parse_embedding_checks_expected_dimension() -> None:
    with pytest.raises(ValueError):
        parse_embedding([1.0, 2.0], expected_dim=3)


def test_build_gallery_skips_bad_entries_and_keeps_order() -> None:
    payload = {
        "success": True,
        "data": [
            {"employeeId": "E1", "name": "Alice", "faceData": "[1, 0, 0]"},
            {"employeeId": "E2", "name": "Broken", "faceData": "{corrupt"},
            {"name": "No id", "embedding": [0, 1, 0]},
            "not an object",
            {"employee_id": 3, "displayName": "Carol", "descriptor": [0, 0, 1],
             "departmentName": "R&D"},
            {"id": "E1", "name": "Duplicate", "embedding": [0, 1, 0]},
            {"id": "E4", "name": "Short", "embedding": [0, 1]},
        ],
    }

    gallery = build_gallery(payload)

    assert [f.employee_id for f in gallery] == ["E1", "3"]
    assert gallery.get("E1").display_name == "Alice"
    assert gallery.get(3).department == "R&D"
    assert gallery.dimension == 3
    assert gallery.matrix.shape == (2, 3)


def test_build_gallery_accepts_bare_list() -> None:
    gallery = build_gallery([{"employeeId": "E1", "embedding": [1.0, 2.0]}])

    assert len(gallery) == 1
    assert gallery.get("E1").display_name == "E1"


def test_build_gallery_rejects_failed_envelope() -> None:
    with pytest.raises(GalleryLoadError, match="forbidden"):
        build_gallery({"success": False, "error": "forbidden"})
    with pytest.raises(GalleryLoadError):
        build_gallery({"data": "nope"})


def test_gallery_is_read_only_and_rejects_duplicates() -> None:
    gallery = Gallery([make_face("E1", [1.0, 0.0])])

    with pytest.raises(ValueError):
        gallery.matrix[0, 0] = 5.0
    with pytest.raises(ValueError):
        Gallery([make_face("E1", [1.0, 0.0]), make_face("E1", [0.0, 1.0])])


def test_gallery_rejects_mixed_dimensions() -> None:
    with pytest.raises(EmbeddingDimensionError):
        Gallery([make_face("E1", [1.0, 0.0]), make_face("E2", [0.0, 1.0, 0.0])])


# ----------------------------------------------------------------------
# Loader
# ----------------------------------------------------------------------
GOOD_BODY = {
    "success": True,
    "data": [
        {"employeeId": "E1", "name": "Alice", "embedding": [1.0, 0.0, 0.0]},
        {"employeeId": "E2", "name": "Bob", "embedding": [0.0, 1.0, 0.0]},
    ],
}


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def http(mocker):
    session = mocker.Mock()
    response = mocker.Mock()
    response.json.return_value = GOOD_BODY
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return session


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def loader(http, timers, clock):
    return GalleryLoader(
        url="https://hr.test/api/attendance/face-recognition-data",
        token="secret",
        http=http,
        timeout=1.0,
        dimension=3,
        retry_delay=5,
        max_retries=5,
        refresh_interval=30,
        cache_ttl=30,
        timer_factory=timers,
        clock=clock,
    )


def test_load_fetches_and_caches(loader, http, clock) -> None:
    gallery = loader.load()

    assert [f.employee_id for f in gallery] == ["E1", "E2"]
    assert loader.last_loaded_at == clock.now
    _, kwargs = http.get.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["headers"]["Cache-Control"] == "no-cache"

    assert loader.load() is gallery
    assert http.get.call_count == 1


def test_cache_expires_after_ttl(loader, http, clock) -> None:
    loader.load()
    clock.now += 31

    loader.load()

    assert http.get.call_count == 2


def test_failed_loads_fall_back_and_schedule_retry(loader, http, timers) -> None:
    http.get.side_effect = requests.ConnectionError("backend down")

    for attempt in range(1, 4):
        gallery = loader.load(force=True)

        assert len(gallery) == 0
        assert loader.consecutive_failures == attempt
        assert loader.retry_pending
        assert timers.pending[-1].delay == 5
        assert len(timers.pending) == 1

    assert "backend down" in loader.last_error


def test_failed_load_returns_stale_gallery(loader, http) -> None:
    first = loader.load()
    http.get.side_effect = requests.Timeout("slow")

    assert loader.load(force=True) is first
    assert loader.last_error is not None


def test_retry_timer_reloads_and_success_clears_retry(loader, http, timers) -> None:
    http.get.side_effect = [requests.ConnectionError("down"), http.get.return_value]

    loader.load(force=True)
    timers.fire_next()

    assert len(loader.gallery) == 2
    assert loader.consecutive_failures == 0
    assert loader.last_error is None
    assert not loader.retry_pending


def test_retries_stop_after_max_consecutive_failures(loader, http, timers) -> None:
    http.get.side_effect = requests.ConnectionError("down")

    for _ in range(5):
        loader.load(force=True)
    assert loader.retry_pending

    loader.load(force=True)
    started = len(timers.timers)
    loader.load(force=True)

    assert loader.consecutive_failures == 7
    assert len(timers.timers) == started


def test_non_json_response_counts_as_failure(loader, http) -> None:
    http.get.return_value.json.side_effect = ValueError("no json")

    gallery = loader.load(force=True)

    assert len(gallery) == 0
    assert loader.consecutive_failures == 1


def test_auto_refresh_reschedules_and_stop_cancels(loader, http, timers) -> None:
    loader.start_auto_refresh()
    loader.start_auto_refresh()
    assert len(timers.pending) == 1
    assert timers.pending[0].delay == 30

    timers.fire_next()
    assert http.get.call_count == 1
    assert len(timers.pending) == 1

    loader.stop()
    assert timers.pending == []
    assert not loader.retry_pending


def test_clear_cache_forces_refetch(loader, http) -> None:
    loader.load()
    loader.clear_cache()

    assert len(loader.gallery) == 0
    loader.load()
    assert http.get.call_count == 2
