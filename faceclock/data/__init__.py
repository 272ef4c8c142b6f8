# faceclock/data/__init__.py
"""
Data layer - backend gallery and attendance reporting.
"""

from .gallery import EnrolledFace, Gallery, GalleryLoader, build_gallery, parse_embedding
from .reporter import AttendanceMode, AttendanceReporter, ReportResult

__all__ = [
    'EnrolledFace',
    'Gallery',
    'GalleryLoader',
    'build_gallery',
    'parse_embedding',
    'AttendanceMode',
    'AttendanceReporter',
    'ReportResult',
]
