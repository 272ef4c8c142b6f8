# faceclock/data/gallery.py
"""
Enrolled face gallery and its loader.

The backend owns enrollment; this module keeps a read-only copy. A Gallery
is never mutated: every refresh builds a new one and swaps the reference,
so a match already running keeps using the gallery it started with.

Usage:
    loader = GalleryLoader(settings.gallery_url)
    gallery = loader.load()
    loader.start_auto_refresh()
"""
import json
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Sequence

import numpy as np
import requests

from ..core.errors import EmbeddingDimensionError, GalleryLoadError
from ..core.settings import settings

logger = logging.getLogger(__name__)

ID_KEYS = ('employeeId', 'employee_id', 'id')
NAME_KEYS = ('displayName', 'display_name', 'name')
EMBEDDING_KEYS = ('embedding', 'descriptor', 'faceData')
DEPARTMENT_KEYS = ('department', 'departmentName')


@dataclass(frozen=True, eq=False)
class EnrolledFace:
    """One enrolled employee. embedding is None when it could not be used."""
    employee_id: str
    display_name: str
    embedding: Optional[np.ndarray]
    department: Optional[str] = None

    @property
    def usable(self) -> bool:
        emb = self.embedding
        return (
            isinstance(emb, np.ndarray)
            and emb.ndim == 1
            and emb.size > 0
            and bool(np.all(np.isfinite(emb)))
        )


class Gallery:
    """
    Ordered, immutable collection of EnrolledFace keyed by employee_id.

    Usable embeddings are stacked into one read-only matrix (rows in gallery
    order) for vectorized distance computation.
    """

    def __init__(self, faces: Sequence[EnrolledFace] = (), dimension: Optional[int] = None):
        by_id: Dict[str, EnrolledFace] = {}
        for face in faces:
            if face.employee_id in by_id:
                raise ValueError(f"Duplicate employee_id in gallery: {face.employee_id}")
            by_id[face.employee_id] = face

        usable = [f for f in faces if f.usable]
        for face in usable:
            size = face.embedding.shape[0]
            if dimension is None:
                dimension = size
            elif size != dimension:
                raise EmbeddingDimensionError(dimension, size)

        self._faces = tuple(faces)
        self._by_id = by_id
        self._dimension = dimension
        self._matched_faces = tuple(usable)
        if usable:
            matrix = np.vstack([f.embedding for f in usable]).astype(np.float32)
        else:
            matrix = np.empty((0, dimension or 0), dtype=np.float32)
        matrix.setflags(write=False)
        self._matrix = matrix

    @classmethod
    def empty(cls, dimension: Optional[int] = None) -> 'Gallery':
        return cls((), dimension=dimension)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def matchable(self) -> tuple:
        """Faces with usable embeddings, aligned with matrix rows."""
        return self._matched_faces

    def get(self, employee_id) -> Optional[EnrolledFace]:
        return self._by_id.get(str(employee_id))

    def __contains__(self, employee_id) -> bool:
        return str(employee_id) in self._by_id

    def __iter__(self) -> Iterator[EnrolledFace]:
        return iter(self._faces)

    def __len__(self) -> int:
        return len(self._faces)

    def __repr__(self):
        return f"Gallery({len(self)} faces, dim={self._dimension})"


# ============================================================================
# PARSING
# ============================================================================
def _first(entry: dict, keys):
    for key in keys:
        value = entry.get(key)
        if value is not None and value != '':
            return value
    return None


def parse_embedding(raw, expected_dim: Optional[int] = None) -> np.ndarray:
    """
    Decode an embedding delivered as a numeric array, a JSON string of an
    array, or a JSON object with a 'descriptor' array.

    Raises:
        ValueError: undecodable, not 1-D, empty, non-finite, or wrong size
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode('utf-8')
    if isinstance(raw, str):
        raw = json.loads(raw)
    if isinstance(raw, dict):
        raw = raw.get('descriptor')
    if raw is None or isinstance(raw, (str, bool, int, float)):
        raise ValueError("embedding is not an array")

    try:
        arr = np.asarray(raw, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValueError(f"embedding is not numeric: {e}") from None

    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"embedding must be a non-empty 1-D array, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("embedding contains NaN or infinite values")
    if expected_dim is not None and arr.shape[0] != expected_dim:
        raise ValueError(f"embedding has {arr.shape[0]} values, expected {expected_dim}")
    return arr


def build_gallery(payload, dimension: Optional[int] = None) -> Gallery:
    """
    Build a Gallery from a gallery endpoint response body.

    Bad entries are logged and left out; they never abort the build.

    Raises:
        GalleryLoadError: the body itself is unusable
    """
    if isinstance(payload, dict):
        if payload.get('success') is False:
            raise GalleryLoadError(payload.get('error') or 'backend reported failure')
        payload = payload.get('data')
    if not isinstance(payload, list):
        raise GalleryLoadError(f"expected a list of faces, got {type(payload).__name__}")

    faces = []
    seen = set()
    skipped = 0
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            logger.warning(f"[Gallery] Entry {index}: not an object, skipped")
            skipped += 1
            continue

        employee_id = _first(entry, ID_KEYS)
        if employee_id is None:
            logger.warning(f"[Gallery] Entry {index}: no employee id, skipped")
            skipped += 1
            continue
        employee_id = str(employee_id)

        if employee_id in seen:
            logger.warning(f"[Gallery] {employee_id}: duplicate entry, keeping the first")
            skipped += 1
            continue

        try:
            embedding = parse_embedding(_first(entry, EMBEDDING_KEYS), dimension)
        except ValueError as e:
            logger.warning(f"[Gallery] {employee_id}: bad embedding ({e}), skipped")
            skipped += 1
            continue

        if dimension is None:
            dimension = embedding.shape[0]

        seen.add(employee_id)
        faces.append(EnrolledFace(
            employee_id=employee_id,
            display_name=str(_first(entry, NAME_KEYS) or employee_id),
            embedding=embedding,
            department=_first(entry, DEPARTMENT_KEYS),
        ))

    if skipped:
        logger.warning(f"[Gallery] {skipped} of {len(payload)} entries skipped")
    return Gallery(faces, dimension=dimension)


# ============================================================================
# LOADER
# ============================================================================
class GalleryLoader:
    """
    Fetches the gallery from the backend and caches it.

    On failure load() returns the last good gallery (or an empty one) and
    schedules a retry after retry_delay seconds, at most max_retries times
    in a row. The periodic refresh runs on its own timer.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        http=None,
        timeout: Optional[float] = None,
        dimension: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        refresh_interval: Optional[float] = None,
        cache_ttl: Optional[float] = None,
        timer_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url or settings.gallery_url
        self.token = settings.API_TOKEN if token is None else token
        self.timeout = settings.HTTP_TIMEOUT if timeout is None else timeout
        self.dimension = settings.EMBEDDING_DIM if dimension is None else dimension
        self.retry_delay = settings.GALLERY_RETRY_DELAY if retry_delay is None else retry_delay
        self.max_retries = settings.GALLERY_MAX_RETRIES if max_retries is None else max_retries
        self.refresh_interval = (
            settings.GALLERY_REFRESH_INTERVAL if refresh_interval is None else refresh_interval
        )
        self.cache_ttl = settings.GALLERY_CACHE_TTL if cache_ttl is None else cache_ttl

        self._http = http or requests.Session()
        self._timer_factory = timer_factory or threading.Timer
        self._clock = clock

        self._lock = threading.Lock()        # guards the fields below
        self._load_lock = threading.Lock()   # one fetch at a time
        self._gallery: Optional[Gallery] = None
        self._last_loaded_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._retry_timer = None
        self._refresh_timer = None
        self._stopped = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def gallery(self) -> Gallery:
        """Current cached gallery, empty if nothing has loaded yet."""
        with self._lock:
            return self._gallery if self._gallery is not None else Gallery.empty(self.dimension)

    @property
    def last_loaded_at(self) -> Optional[float]:
        with self._lock:
            return self._last_loaded_at

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def retry_pending(self) -> bool:
        with self._lock:
            return self._retry_timer is not None

    def is_fresh(self) -> bool:
        with self._lock:
            return (
                self._gallery is not None
                and self._last_loaded_at is not None
                and self._clock() - self._last_loaded_at < self.cache_ttl
            )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def fetch(self) -> Gallery:
        """
        One request to the backend, no caching.

        Raises:
            GalleryLoadError
        """
        headers = {'Cache-Control': 'no-cache'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        try:
            response = self._http.get(self.url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise GalleryLoadError(f"request to {self.url} failed: {e}") from e
        except ValueError as e:
            raise GalleryLoadError(f"response is not JSON: {e}") from e
        return build_gallery(payload, self.dimension)

    def load(self, force: bool = False) -> Gallery:
        """
        Return a gallery, fetching unless the cache is still fresh.
        Never raises for backend problems.
        """
        if not force and self.is_fresh():
            return self.gallery

        with self._load_lock:
            try:
                gallery = self.fetch()
            except GalleryLoadError as e:
                return self._on_failure(e)

            with self._lock:
                previous = len(self._gallery) if self._gallery is not None else 0
                self._gallery = gallery
                self._last_loaded_at = self._clock()
                self._last_error = None
                self._consecutive_failures = 0
                timer, self._retry_timer = self._retry_timer, None
            if timer is not None:
                timer.cancel()

        logger.info(f"[Gallery] Loaded {len(gallery)} faces (was {previous})")
        return gallery

    def _on_failure(self, error: GalleryLoadError) -> Gallery:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = str(error)
            failures = self._consecutive_failures
            fallback = self._gallery if self._gallery is not None else Gallery.empty(self.dimension)
            stale = self._gallery is not None

        logger.warning(
            f"[Gallery] Load failed ({failures} in a row): {error}; "
            f"using {'cached' if stale else 'empty'} gallery ({len(fallback)} faces)"
        )
        self._schedule_retry(failures)
        return fallback

    def _schedule_retry(self, failures: int):
        if failures > self.max_retries:
            logger.error(
                f"[Gallery] {failures} failures in a row, automatic retry paused "
                f"until the next refresh"
            )
            return
        with self._lock:
            if self._stopped:
                return
            old, self._retry_timer = self._retry_timer, None
            timer = self._timer_factory(self.retry_delay, self._retry)
            timer.daemon = True
            self._retry_timer = timer
        if old is not None:
            old.cancel()
        logger.info(f"[Gallery] Retry in {self.retry_delay:g}s")
        timer.start()

    def _retry(self):
        with self._lock:
            self._retry_timer = None
            if self._stopped:
                return
        self.load(force=True)

    def clear_cache(self):
        with self._lock:
            self._gallery = None
            self._last_loaded_at = None
        logger.info("[Gallery] Cache cleared")

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------
    def start_auto_refresh(self):
        with self._lock:
            self._stopped = False
            if self._refresh_timer is not None:
                return
        self._schedule_refresh()

    def _schedule_refresh(self):
        with self._lock:
            if self._stopped:
                return
            timer = self._timer_factory(self.refresh_interval, self._refresh_tick)
            timer.daemon = True
            self._refresh_timer = timer
        timer.start()

    def _refresh_tick(self):
        with self._lock:
            if self._stopped:
                return
        try:
            self.load(force=True)
        finally:
            self._schedule_refresh()

    def stop(self):
        """Cancel refresh and retry timers."""
        with self._lock:
            self._stopped = True
            timers = [self._retry_timer, self._refresh_timer]
            self._retry_timer = None
            self._refresh_timer = None
        for timer in timers:
            if timer is not None:
                timer.cancel()
