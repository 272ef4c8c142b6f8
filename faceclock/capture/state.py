# faceclock/capture/state.py
"""
Capture session states and the status snapshot exposed to callers.
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..recognition.matcher import MatchResult


class SessionState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    TERMINATED = "terminated"


class ActivePhase(Enum):
    """Sub-state while ACTIVE."""
    DETECTING = "detecting"       # waiting for the next tick
    RECOGNIZING = "recognizing"   # one extraction + match in flight
    REPORTING = "reporting"       # report in flight or waiting to resume


class DetectionOutcome(Enum):
    SKIPPED = "skipped"           # guard refused the tick
    NO_FRAME = "no_frame"
    NO_FACE = "no_face"
    NO_MATCH = "no_match"
    MATCHED = "matched"
    ERROR = "error"


def _match_dict(match: Optional[MatchResult]):
    if match is None:
        return None
    distance = match.distance if math.isfinite(match.distance) else None
    return {
        'employeeId': match.employee_id,
        'displayName': match.display_name,
        'distance': distance,
        'confidence': match.confidence,
    }


@dataclass(frozen=True)
class SessionStatus:
    state: SessionState
    phase: Optional[ActivePhase]
    mode: str
    message: str
    consecutive_failures: int
    manual_entry_available: bool
    last_match: Optional[MatchResult]
    recognized: Optional[MatchResult]
    last_error: Optional[str]
    confirming: bool
    gallery_size: int
    last_latency_ms: Optional[int]

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'phase': self.phase.value if self.phase else None,
            'mode': self.mode,
            'message': self.message,
            'consecutiveFailures': self.consecutive_failures,
            'manualEntryAvailable': self.manual_entry_available,
            'lastMatch': _match_dict(self.last_match),
            'recognized': _match_dict(self.recognized),
            'lastError': self.last_error,
            'confirming': self.confirming,
            'gallerySize': self.gallery_size,
            'lastLatencyMs': self.last_latency_ms,
        }
