# faceclock/capture/__init__.py
"""
Capture session - camera lifecycle and detection loop.
"""

from .state import SessionState, ActivePhase, DetectionOutcome, SessionStatus
from .session import CaptureSession

__all__ = [
    'SessionState',
    'ActivePhase',
    'DetectionOutcome',
    'SessionStatus',
    'CaptureSession',
]
