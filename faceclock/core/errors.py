# faceclock/core/errors.py
"""
Exception types.

No face / no match are normal polling outcomes and have no exception here.
Report failures come back as ReportResult(success=False).
"""


class FaceClockError(Exception):
    """Base class for all faceclock errors."""


class EnvironmentIncompatibleError(FaceClockError):
    """The host cannot run a capture session at all. Not retried."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class DeviceAcquisitionError(FaceClockError):
    """Camera could not be acquired for this start attempt."""

    PERMISSION_DENIED = "permission_denied"
    BUSY = "busy"
    NOT_FOUND = "not_found"
    OVERCONSTRAINED = "overconstrained"
    LOST = "lost"

    MESSAGES = {
        PERMISSION_DENIED: "Camera access denied. Grant this user access to the video device.",
        BUSY: "Camera is in use by another process.",
        NOT_FOUND: "No camera found. Check that a camera is connected.",
        OVERCONSTRAINED: "Camera does not support the requested settings.",
        LOST: "Camera stopped delivering frames.",
    }

    def __init__(self, reason, detail=None, message=None):
        self.reason = reason
        self.detail = detail
        if message is None:
            message = self.MESSAGES.get(reason, f"Camera error ({reason})")
        if detail:
            message = f"{message} [{detail}]"
        super().__init__(message)


class CameraTimeoutError(DeviceAcquisitionError):
    """Camera opened but produced no frame in time."""

    def __init__(self, timeout):
        self.timeout = timeout
        super().__init__(
            "timeout",
            message=f"Camera produced no frame within {timeout:g}s"
        )


class ModelLoadError(FaceClockError):
    """Base class for model loading failures."""


class ModelAssetsMissingError(ModelLoadError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"Model file not found: {path}")


class UnsupportedRuntimeError(ModelLoadError):
    """No usable TFLite runtime, or the runtime rejected the model."""


class ModelDownloadError(ModelLoadError):
    """Remote model asset could not be fetched."""

    def __init__(self, url, detail):
        self.url = url
        super().__init__(f"Could not download model {url}: {detail}")


class GalleryLoadError(FaceClockError):
    """Gallery fetch or decode failed."""


class EmbeddingDimensionError(FaceClockError, ValueError):
    def __init__(self, expected, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class SessionStateError(FaceClockError):
    """Operation not allowed in the session's current state."""
