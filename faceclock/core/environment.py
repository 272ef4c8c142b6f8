# faceclock/core/environment.py
"""
Host capability checks run before a capture session starts.
"""
import logging
import threading
from urllib.parse import urlparse

import cv2

from .errors import EnvironmentIncompatibleError
from .tflite_helper import runtime_available

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def has_video_backend() -> bool:
    registry = getattr(cv2, "videoio_registry", None)
    if registry is None:
        return True
    return len(registry.getCameraBackends()) > 0


def is_secure_url(url: str) -> bool:
    """HTTPS, or plain HTTP to this machine."""
    parsed = urlparse(url)
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in LOCAL_HOSTS


def check_environment(api_base_url, require_secure=True, require_runtime=True):
    """
    Returns:
        List of problems, each with a remediation hint. Empty when compatible.
    """
    problems = []
    if not has_video_backend():
        problems.append(
            "OpenCV was built without a camera backend; install opencv-python "
            "(not opencv-python-headless built without V4L/DirectShow)"
        )
    if require_runtime and not runtime_available():
        problems.append(
            "No TFLite runtime for face embeddings; pip install tflite-runtime or tensorflow"
        )
    if require_secure and not is_secure_url(api_base_url):
        problems.append(
            f"Backend {api_base_url} is not HTTPS; biometric data may only be "
            "exchanged over HTTPS or with localhost"
        )
    return problems


class EnvironmentGuard:
    """Runs the check once and remembers the verdict."""

    def __init__(self, api_base_url, require_secure=True, require_runtime=True):
        self.api_base_url = api_base_url
        self.require_secure = require_secure
        self.require_runtime = require_runtime
        self._problems = None
        self._lock = threading.Lock()

    def ensure(self):
        """
        Raises:
            EnvironmentIncompatibleError: on every call once the check failed
        """
        with self._lock:
            if self._problems is None:
                self._problems = check_environment(
                    self.api_base_url,
                    require_secure=self.require_secure,
                    require_runtime=self.require_runtime,
                )
                for problem in self._problems:
                    logger.error(f"❌ Environment: {problem}")
            problems = self._problems
        if problems:
            raise EnvironmentIncompatibleError(problems)
