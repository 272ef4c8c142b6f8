# faceclock/recognition/__init__.py
"""
Recognition modules.

- detector: Ultra-Light face detector (TFLite)
- embedder: Face embedding model (TFLite)
- extractor: frame -> largest face -> embedding
- matcher: nearest enrolled face under a distance threshold
"""

from .detector import UltraLightFaceDetector
from .embedder import FaceEmbedder
from .extractor import Detection, EmbeddingExtractor, create_extractor
from .matcher import MatchResult, find_best_match, rank_matches, compute_distances

__all__ = [
    'UltraLightFaceDetector',
    'FaceEmbedder',
    'Detection',
    'EmbeddingExtractor',
    'create_extractor',
    'MatchResult',
    'find_best_match',
    'rank_matches',
    'compute_distances',
]
