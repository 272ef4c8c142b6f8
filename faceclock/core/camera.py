# faceclock/core/camera.py
"""
Camera manager.

Opens the capture device through a fallback chain and guarantees that at
most one stream is held by the process at any time.

Usage:
    from faceclock.core.camera import CameraManager

    camera = CameraManager()
    camera.open()
    camera.wait_for_first_frame(timeout=10)
    frame = camera.read()
    camera.release()
"""
import os
import sys
import time
import logging
import threading
from typing import Callable, Optional, Tuple
from dataclasses import dataclass

import cv2

from .errors import CameraTimeoutError, DeviceAcquisitionError

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    width: int = 640
    height: int = 480
    fps: int = 30
    min_width: int = 320
    min_height: int = 240
    buffer_size: int = 1
    warmup_frames: int = 3
    max_devices: int = 4      # indices tried by the any-device fallback
    use_mjpg: bool = False    # MJPG codec, better on a Pi


class CameraManager:
    """
    Owns one capture device.

    open() tries, in order:
      1. ideal:  configured device with resolution, fps and minimum size checks
      2. basic:  configured device, resolution only
      3. any:    first video device index that opens
    """

    # Stream currently held by the process
    _active: Optional['CameraManager'] = None
    _active_lock = threading.Lock()

    def __init__(
        self,
        device_id: int = 0,
        config: Optional[CameraConfig] = None,
        capture_factory: Optional[Callable] = None,
    ):
        self.device_id = device_id
        self.config = config or CameraConfig()
        self._capture_factory = capture_factory or cv2.VideoCapture

        self._cap = None
        self._lock = threading.Lock()
        self.strategy: Optional[str] = None
        self.opened_device: Optional[int] = None
        # called with no arguments when another manager takes the stream
        self.on_preempted: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------
    def open(self) -> str:
        """
        Acquire the camera. Any stream held by another manager is released
        first.

        Returns:
            Name of the strategy that succeeded ('ideal', 'basic' or 'any').

        Raises:
            DeviceAcquisitionError
        """
        preempted = None
        try:
            with CameraManager._active_lock:
                previous = CameraManager._active
                if previous is not None and previous is not self:
                    logger.warning("📹 Releasing camera held by a previous session")
                    previous._release_unlocked()
                    preempted = previous
                self._release_unlocked()
                return self._acquire()
        finally:
            # outside the lock: the handler usually releases its own manager
            if preempted is not None:
                preempted._notify_preempted()

    def _acquire(self) -> str:
        """Run the fallback chain. Caller holds _active_lock."""
        for strategy, attempt in (
            ('ideal', self._open_ideal),
            ('basic', self._open_basic),
            ('any', self._open_any),
        ):
            try:
                cap, device = attempt()
            except DeviceAcquisitionError as e:
                logger.warning(f"Camera strategy '{strategy}' rejected: {e}")
                continue
            except cv2.error as e:
                logger.warning(f"Camera strategy '{strategy}' failed: {e}")
                continue
            if cap is None:
                continue

            with self._lock:
                self._cap = cap
                self.strategy = strategy
                self.opened_device = device
            CameraManager._active = self
            self._warmup()
            w, h = self.get_resolution()
            logger.info(f"📹 Camera {device} opened ({strategy}): {w}x{h}")
            return strategy

        raise DeviceAcquisitionError(self._classify_failure(), detail=f"device {self.device_id}")

    def _notify_preempted(self):
        if self.on_preempted is None:
            return
        try:
            self.on_preempted()
        except Exception:
            logger.exception("Camera preemption handler failed")

    def _try_device(self, device_id: int):
        cap = self._capture_factory(device_id)
        if cap is not None and cap.isOpened():
            return cap
        if cap is not None:
            cap.release()
        return None

    def _open_ideal(self):
        cap = self._try_device(self.device_id)
        if cap is None:
            return None, None
        cfg = self.config
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.height)
        cap.set(cv2.CAP_PROP_FPS, cfg.fps)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, cfg.buffer_size)
        if cfg.use_mjpg:
            cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*'MJPG'))

        actual_w = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_h = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        # Drivers that ignore the request report 0x0; treat that as accepted
        if (actual_w and actual_w < cfg.min_width) or (actual_h and actual_h < cfg.min_height):
            cap.release()
            raise DeviceAcquisitionError(
                DeviceAcquisitionError.OVERCONSTRAINED,
                detail=f"{actual_w}x{actual_h} below {cfg.min_width}x{cfg.min_height}"
            )
        return cap, self.device_id

    def _open_basic(self):
        """Configured device, resolution request only, no minimum checks."""
        cap = self._try_device(self.device_id)
        if cap is None:
            return None, None
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        return cap, self.device_id

    def _open_any(self):
        for device_id in range(self.config.max_devices):
            if device_id == self.device_id:
                continue
            cap = self._try_device(device_id)
            if cap is not None:
                return cap, device_id
        return None, None

    def _classify_failure(self) -> str:
        """Best guess at why no device opened."""
        if sys.platform.startswith('linux'):
            node = f"/dev/video{self.device_id}"
            if not os.path.exists(node):
                return DeviceAcquisitionError.NOT_FOUND
            if not os.access(node, os.R_OK | os.W_OK):
                return DeviceAcquisitionError.PERMISSION_DENIED
            return DeviceAcquisitionError.BUSY
        return DeviceAcquisitionError.NOT_FOUND

    def _warmup(self):
        """Drop the first frames while exposure settles."""
        for _ in range(self.config.warmup_frames):
            if not self.grab():
                break

    def wait_for_first_frame(self, timeout: float, poll_interval: float = 0.05):
        """
        Block until the device delivers a frame.

        Raises:
            CameraTimeoutError: no frame within timeout seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            frame = self.read()
            if frame is not None:
                return frame
            if time.monotonic() >= deadline:
                raise CameraTimeoutError(timeout)
            time.sleep(poll_interval)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------
    def read(self):
        """Read one frame, None if the device is closed or the read failed."""
        with self._lock:
            if self._cap is None:
                return None
            ret, frame = self._cap.read()
        if not ret:
            logger.debug("Frame read failed")
            return None
        return frame

    def grab(self) -> bool:
        """Advance the buffer without decoding."""
        with self._lock:
            if self._cap is None:
                return False
            return bool(self._cap.grab())

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------
    def release(self):
        """Release the device. Safe to call more than once."""
        with CameraManager._active_lock:
            self._release_unlocked()

    def _release_unlocked(self):
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info("📹 Camera released")
        if CameraManager._active is self:
            CameraManager._active = None

    def is_opened(self) -> bool:
        with self._lock:
            return self._cap is not None and self._cap.isOpened()

    def get_resolution(self) -> Tuple[int, int]:
        with self._lock:
            if self._cap is None:
                return (0, 0)
            return (
                int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            )

    @classmethod
    def active(cls) -> Optional['CameraManager']:
        """Manager currently holding a stream, if any."""
        return cls._active

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def create_camera(
    device_id: int = 0,
    width: int = 640,
    height: int = 480,
    fps: int = 30,
    is_pi: bool = False,
    capture_factory: Optional[Callable] = None,
) -> CameraManager:
    """Build a CameraManager with platform-appropriate settings."""
    if is_pi:
        width = min(width, 320)
        height = min(height, 240)
        fps = min(fps, 15)

    config = CameraConfig(
        width=width,
        height=height,
        fps=fps,
        min_width=min(320, width),
        min_height=min(240, height),
        use_mjpg=is_pi,
    )
    return CameraManager(device_id=device_id, config=config, capture_factory=capture_factory)
