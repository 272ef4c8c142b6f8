# faceclock/recognition/extractor.py
"""
Embedding extractor: frame in, (embedding, bounding box) out.

Runs the detector, keeps the largest face that is big enough, and embeds
the crop. One extraction runs at a time per extractor.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..core.settings import settings
from .detector import UltraLightFaceDetector
from .embedder import FaceEmbedder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    embedding: np.ndarray
    box: Tuple[int, int, int, int]   # x, y, w, h
    confidence: float


class EmbeddingExtractor:

    def __init__(self, detector, embedder, min_face_size=60):
        self.detector = detector
        self.embedder = embedder
        self.min_face_size = min_face_size
        self._lock = threading.Lock()

    @property
    def embedding_dim(self) -> int:
        return self.embedder.embedding_dim

    def detect(self, frame) -> Optional[Detection]:
        """
        Returns:
            Detection for the largest usable face, or None if there is none.
        """
        if frame is None or getattr(frame, 'size', 0) == 0:
            return None

        with self._lock:
            faces = self.detector.detect_faces(frame)
            faces = [
                f for f in faces
                if f['box'][2] >= self.min_face_size and f['box'][3] >= self.min_face_size
            ]
            if not faces:
                return None

            best = max(faces, key=lambda f: f['box'][2] * f['box'][3])
            x, y, w, h = best['box']
            crop = frame[y:y + h, x:x + w]
            if crop.size == 0:
                return None
            embedding = self.embedder.embed(crop)

        return Detection(
            embedding=embedding,
            box=(int(x), int(y), int(w), int(h)),
            confidence=float(best['confidence']),
        )


def create_extractor(detection_model=None, recognition_model=None, conf_threshold=None,
                     min_face_size=None, num_threads=None) -> EmbeddingExtractor:
    """
    Build the extractor from settings.

    Raises:
        ModelAssetsMissingError, UnsupportedRuntimeError, ModelDownloadError
    """
    detection_model = detection_model or settings.DETECTION_MODEL
    recognition_model = recognition_model or settings.RECOGNITION_MODEL
    if conf_threshold is None:
        conf_threshold = settings.DETECTION_CONFIDENCE
    if min_face_size is None:
        min_face_size = settings.MIN_FACE_SIZE

    detector = UltraLightFaceDetector(
        model_path=detection_model,
        conf_threshold=conf_threshold,
        num_threads=num_threads,
    )
    embedder = FaceEmbedder(
        model_path=recognition_model,
        num_threads=num_threads,
        enable_histogram_eq=not settings.IS_PI,
    )
    if embedder.embedding_dim != settings.EMBEDDING_DIM:
        logger.warning(
            f"[Extractor] Model embedding dim {embedder.embedding_dim} "
            f"differs from EMBEDDING_DIM={settings.EMBEDDING_DIM}"
        )
    return EmbeddingExtractor(detector, embedder, min_face_size=min_face_size)
