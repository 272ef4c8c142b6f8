# faceclock/core/__init__.py
"""
Core modules - Infrastructure & Configuration.

- settings: Unified configuration
- errors: Exception hierarchy
- camera: Camera management
- tflite_helper: TFLite interpreter helper
- environment: Startup capability checks
"""

from .settings import settings, Settings
from .errors import (
    FaceClockError,
    EnvironmentIncompatibleError,
    DeviceAcquisitionError,
    CameraTimeoutError,
    ModelLoadError,
    ModelAssetsMissingError,
    UnsupportedRuntimeError,
    ModelDownloadError,
    GalleryLoadError,
    EmbeddingDimensionError,
    SessionStateError,
)
from .camera import CameraManager, CameraConfig, create_camera
from .tflite_helper import get_interpreter
from .environment import EnvironmentGuard, check_environment

__all__ = [
    'settings',
    'Settings',
    'FaceClockError',
    'EnvironmentIncompatibleError',
    'DeviceAcquisitionError',
    'CameraTimeoutError',
    'ModelLoadError',
    'ModelAssetsMissingError',
    'UnsupportedRuntimeError',
    'ModelDownloadError',
    'GalleryLoadError',
    'EmbeddingDimensionError',
    'SessionStateError',
    'CameraManager',
    'CameraConfig',
    'create_camera',
    'get_interpreter',
    'EnvironmentGuard',
    'check_environment',
]
