# faceclock/capture/session.py
"""
Capture session - camera lifecycle and the timed detection loop.

    IDLE -> INITIALIZING -> ACTIVE(DETECTING | RECOGNIZING | REPORTING) -> TERMINATED

Usage:
    session = CaptureSession(extractor, loader, reporter, camera)
    session.start("checkIn")
    ...
    session.stop()

Every exit path (match reported, stop(), fatal error, interpreter exit)
goes through _teardown(), which releases the camera, cancels timers and
bumps the generation counter. Timer and worker callbacks carry the
generation they were scheduled under and do nothing once it is stale.
"""
import atexit
import time
import logging
import threading
import weakref
from functools import partial
from typing import Callable, Optional

from ..core.camera import CameraManager, create_camera
from ..core.errors import DeviceAcquisitionError, EmbeddingDimensionError, SessionStateError
from ..core.settings import settings
from ..data.reporter import AttendanceMode, ReportResult
from ..recognition.matcher import MatchResult, find_best_match
from .state import ActivePhase, DetectionOutcome, SessionState, SessionStatus

logger = logging.getLogger(__name__)


def _spawn_thread(fn):
    threading.Thread(target=fn, name="faceclock-report", daemon=True).start()


def _weakly(method, *args):
    """Wrap a bound method so the wrapper does not keep its object alive."""
    ref = weakref.WeakMethod(method)

    def call():
        fn = ref()
        if fn is not None:
            fn(*args)
    return call


class CaptureSession:

    def __init__(
        self,
        extractor,
        gallery_source,
        reporter,
        camera: Optional[CameraManager] = None,
        threshold: Optional[float] = None,
        interval: Optional[float] = None,
        ready_timeout: Optional[float] = None,
        manual_entry_after: Optional[int] = None,
        confirmation_seconds: Optional[float] = None,
        report_retry_delay: Optional[float] = None,
        camera_lost_after: Optional[int] = None,
        environment=None,
        timer_factory: Optional[Callable] = None,
        spawn: Optional[Callable] = None,
        on_recognized: Optional[Callable] = None,
        on_state_change: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            extractor: object with detect(frame) -> Detection | None
            gallery_source: object with a .gallery property (GalleryLoader)
            reporter: object with report(employee_id, mode) -> ReportResult
                and resolve_mode(employee_id) -> AttendanceMode
            camera: CameraManager, built from settings if None
            camera_lost_after: consecutive empty reads that end an active
                session with a device error
            environment: EnvironmentGuard checked on every start, or None
            timer_factory: threading.Timer-compatible (delay, fn)
            spawn: runs the report call off the tick thread
            on_recognized: called with (MatchResult, ReportResult) after a
                successful report
            on_state_change: called with a SessionStatus after transitions
        """
        self.extractor = extractor
        self.gallery_source = gallery_source
        self.reporter = reporter
        self.camera = camera or create_camera(
            device_id=settings.CAMERA_ID,
            width=settings.CAMERA_WIDTH,
            height=settings.CAMERA_HEIGHT,
            fps=settings.CAMERA_FPS,
            is_pi=settings.IS_PI,
        )
        self.threshold = settings.MATCH_THRESHOLD if threshold is None else threshold
        self.interval = settings.DETECTION_INTERVAL if interval is None else interval
        self.ready_timeout = settings.CAMERA_READY_TIMEOUT if ready_timeout is None else ready_timeout
        self.manual_entry_after = (
            settings.MANUAL_ENTRY_AFTER_FAILURES if manual_entry_after is None else manual_entry_after
        )
        self.confirmation_seconds = (
            settings.CONFIRMATION_SECONDS if confirmation_seconds is None else confirmation_seconds
        )
        self.report_retry_delay = (
            settings.REPORT_RETRY_DELAY if report_retry_delay is None else report_retry_delay
        )
        self.camera_lost_after = (
            settings.CAMERA_LOST_AFTER_FRAMES if camera_lost_after is None else camera_lost_after
        )
        self.environment = environment
        self.on_recognized = on_recognized
        self.on_state_change = on_state_change

        self._timer_factory = timer_factory or threading.Timer
        self._spawn = spawn or _spawn_thread
        self._clock = clock

        self._lock = threading.RLock()
        self._generation = 0
        self._state = SessionState.IDLE
        self._phase: Optional[ActivePhase] = None
        self._mode = AttendanceMode.parse(settings.DEFAULT_MODE)
        self._message = "Idle"
        self._failures = 0
        self._missed_frames = 0
        self._manual_entry = False
        self._in_flight = False
        self._last_match: Optional[MatchResult] = None
        self._recognized: Optional[MatchResult] = None
        self._last_error: Optional[str] = None
        self._latency_ms: Optional[int] = None
        self._confirm_until = 0.0
        self._poll_timer = None
        self._delay_timer = None

        # weak so the camera and the exit hook do not keep discarded sessions alive
        self.camera.on_preempted = _weakly(self._on_camera_preempted)
        self._atexit_hook = _weakly(self.stop, "Interpreter exiting")
        atexit.register(self._atexit_hook)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def phase(self) -> Optional[ActivePhase]:
        with self._lock:
            return self._phase

    @property
    def manual_entry_available(self) -> bool:
        with self._lock:
            return self._manual_entry

    def _confirming(self) -> bool:
        return self._clock() < self._confirm_until

    def status(self) -> SessionStatus:
        with self._lock:
            return SessionStatus(
                state=self._state,
                phase=self._phase,
                mode=self._mode.value,
                message=self._message,
                consecutive_failures=self._failures,
                manual_entry_available=self._manual_entry,
                last_match=self._last_match,
                recognized=self._recognized,
                last_error=self._last_error,
                confirming=self._confirming(),
                gallery_size=len(self.gallery_source.gallery),
                last_latency_ms=self._latency_ms,
            )

    def _notify(self):
        if self.on_state_change is not None:
            self.on_state_change(self.status())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, mode=None):
        """
        Acquire the camera and begin polling. Blocks until the first frame
        arrives.

        Raises:
            SessionStateError: already running, or still confirming the last result
            EnvironmentIncompatibleError, DeviceAcquisitionError, CameraTimeoutError
        """
        mode = AttendanceMode.parse(mode or settings.DEFAULT_MODE)
        with self._lock:
            if self._state in (SessionState.INITIALIZING, SessionState.ACTIVE):
                raise SessionStateError("A capture session is already running")
            if self._confirming():
                raise SessionStateError("Still showing the last result, try again in a moment")
            self._generation += 1
            generation = self._generation
            self._mode = mode
            self._failures = 0
            self._missed_frames = 0
            self._manual_entry = False
            self._in_flight = False
            self._last_match = None
            self._recognized = None
            self._last_error = None
            self._state = SessionState.INITIALIZING
            self._phase = None
            self._message = "Starting camera..."
        logger.info(f"▶️ Session starting ({mode.value})")
        self._notify()

        try:
            if self.environment is not None:
                self.environment.ensure()
            self.camera.open()
            self.camera.wait_for_first_frame(self.ready_timeout)
        except Exception as e:
            with self._lock:
                if generation == self._generation:
                    self._last_error = str(e)
                    self._teardown(SessionState.IDLE, str(e))
                else:
                    self.camera.release()
            logger.error(f"❌ Session start failed: {e}")
            self._notify()
            raise

        with self._lock:
            if generation != self._generation:
                # stop() arrived while the camera was opening
                self.camera.release()
                raise SessionStateError("Session was stopped while starting")
            self._state = SessionState.ACTIVE
            self._phase = ActivePhase.DETECTING
            self._message = "Camera active - please face the camera"
            self._schedule_tick(generation)
        logger.info("✅ Session active")
        self._notify()

    def stop(self, message: str = "Stopped"):
        """Release the camera and cancel all pending work. Idempotent."""
        with self._lock:
            if self._state is SessionState.INITIALIZING:
                self._teardown(SessionState.IDLE, message)
            elif self._state is SessionState.ACTIVE:
                self._teardown(SessionState.TERMINATED, message)
            else:
                self.camera.release()
                return
        logger.info(f"⏹️ Session stopped: {message}")
        self._notify()

    def close(self):
        self.stop()
        atexit.unregister(self._atexit_hook)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _teardown(self, state: SessionState, message: str):
        """Single exit path. Caller holds self._lock."""
        self._generation += 1
        for timer in (self._poll_timer, self._delay_timer):
            if timer is not None:
                timer.cancel()
        self._poll_timer = None
        self._delay_timer = None
        self._in_flight = False
        self.camera.release()
        self._state = state
        self._phase = None
        self._message = message

    def _on_camera_preempted(self):
        """Another manager opened the camera and closed our stream."""
        with self._lock:
            if self._state is SessionState.ACTIVE:
                error = DeviceAcquisitionError(
                    DeviceAcquisitionError.BUSY, detail="taken over by another session"
                )
                self._last_error = str(error)
                self._teardown(SessionState.TERMINATED, str(error))
            elif self._state is SessionState.INITIALIZING:
                self._teardown(SessionState.IDLE, "Camera taken over by another session")
            else:
                return
        logger.warning("📹 Session ended: camera taken over by another session")
        self._notify()

    # ------------------------------------------------------------------
    # Detection loop
    # ------------------------------------------------------------------
    def _schedule_tick(self, generation: int):
        """Caller holds self._lock."""
        timer = self._timer_factory(self.interval, partial(self._on_tick, generation))
        timer.daemon = True
        self._poll_timer = timer
        timer.start()

    def _on_tick(self, generation: int):
        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACTIVE:
                return
            self._poll_timer = None
        try:
            self._run_detection(generation)
        finally:
            with self._lock:
                if generation == self._generation and self._state is SessionState.ACTIVE:
                    self._schedule_tick(generation)

    def trigger_detection(self) -> DetectionOutcome:
        """Run one detection now, subject to the same in-flight guard."""
        with self._lock:
            generation = self._generation
        return self._run_detection(generation)

    def _run_detection(self, generation: int) -> DetectionOutcome:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACTIVE:
                return DetectionOutcome.SKIPPED
            if self._in_flight:
                logger.debug("Tick skipped: previous attempt still in flight")
                return DetectionOutcome.SKIPPED
            self._in_flight = True
            self._phase = ActivePhase.RECOGNIZING
            gallery = self.gallery_source.gallery

        started = time.perf_counter()
        frame = detection = match = None
        error = lost = None
        try:
            frame = self.camera.read()
            if frame is not None:
                detection = self.extractor.detect(frame)
            if detection is not None:
                match = find_best_match(detection.embedding, gallery, self.threshold)
        except EmbeddingDimensionError as e:
            logger.error(f"❌ {e}")
            with self._lock:
                if generation == self._generation:
                    self._last_error = str(e)
                    self._teardown(SessionState.TERMINATED, f"Configuration error: {e}")
            self._notify()
            return DetectionOutcome.ERROR
        except Exception as e:
            logger.exception("Detection attempt failed")
            error = e
        latency_ms = int((time.perf_counter() - started) * 1000)

        with self._lock:
            if generation != self._generation:
                return DetectionOutcome.SKIPPED
            self._latency_ms = latency_ms
            if frame is not None:
                self._missed_frames = 0

            if error is not None:
                self._finish_attempt(f"Detection error: {error}")
                self._last_error = str(error)
                outcome = DetectionOutcome.ERROR
            elif frame is None:
                self._missed_frames += 1
                if self._missed_frames >= self.camera_lost_after:
                    lost = DeviceAcquisitionError(
                        DeviceAcquisitionError.LOST,
                        detail=f"{self._missed_frames} consecutive empty reads",
                    )
                    self._last_error = str(lost)
                    self._teardown(SessionState.TERMINATED, str(lost))
                    outcome = DetectionOutcome.ERROR
                else:
                    self._finish_attempt("Waiting for camera...")
                    outcome = DetectionOutcome.NO_FRAME
            elif detection is None:
                self._finish_attempt("No face detected - please face the camera")
                self._register_failure()
                outcome = DetectionOutcome.NO_FACE
            elif match is None:
                self._finish_attempt("Face not recognized, try again")
                self._register_failure()
                outcome = DetectionOutcome.NO_MATCH
            else:
                # _in_flight stays set until the report resolves
                self._phase = ActivePhase.REPORTING
                self._failures = 0
                self._last_match = match
                self._message = (
                    f"Recognized {match.display_name} ({match.confidence}%) - "
                    f"recording {self._mode.value}..."
                )
                outcome = DetectionOutcome.MATCHED

        if outcome is DetectionOutcome.MATCHED:
            logger.info(
                f"🎉 Recognized {match.display_name} ({match.employee_id}) "
                f"distance={match.distance:.3f} in {latency_ms}ms"
            )
            self._spawn(partial(self._report, generation, match))
        elif lost is not None:
            logger.error(f"❌ {lost}")
            self._notify()
        else:
            logger.debug(f"Detection outcome: {outcome.value} ({latency_ms}ms)")
        return outcome

    def _finish_attempt(self, message: str):
        """Caller holds self._lock."""
        self._in_flight = False
        self._phase = ActivePhase.DETECTING
        self._message = message

    def _register_failure(self):
        """Caller holds self._lock."""
        self._failures += 1
        if not self._manual_entry and self._failures >= self.manual_entry_after:
            self._manual_entry = True
            logger.info(f"⌨️ Manual entry unlocked after {self._failures} failed attempts")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def submit_manual_entry(self, employee_id):
        """
        Report attendance for an operator-typed employee id.

        Raises:
            SessionStateError: no active session, manual entry still locked,
                or a report is already in progress
            ValueError: empty id
        """
        employee_id = str(employee_id or '').strip()
        if not employee_id:
            raise ValueError("Employee id is required")

        with self._lock:
            if self._state is not SessionState.ACTIVE:
                raise SessionStateError("No active capture session")
            if not self._manual_entry:
                raise SessionStateError("Manual entry is not available yet")
            if self._in_flight:
                raise SessionStateError("An attendance report is already in progress")
            face = self.gallery_source.gallery.get(employee_id)
            match = MatchResult(
                employee_id=employee_id,
                display_name=face.display_name if face is not None else employee_id,
                distance=float('inf'),
                confidence=0,
            )
            self._in_flight = True
            self._phase = ActivePhase.REPORTING
            self._last_match = match
            self._message = f"Recording {self._mode.value} for {match.display_name}..."
            generation = self._generation

        logger.info(f"⌨️ Manual entry: {employee_id}")
        self._spawn(partial(self._report, generation, match))

    def _report(self, generation: int, match: MatchResult):
        with self._lock:
            mode = self._mode
        try:
            if mode is AttendanceMode.AUTO:
                mode = self.reporter.resolve_mode(match.employee_id)
                logger.info(f"🔀 {match.employee_id}: recording {mode.value}")
            result = self.reporter.report(match.employee_id, mode)
        except Exception as e:
            logger.exception("Attendance reporter raised")
            result = ReportResult(success=False, message=str(e))

        with self._lock:
            if generation != self._generation:
                logger.warning(
                    f"Report for {match.employee_id} finished after the session ended "
                    f"(success={result.success})"
                )
                return
            if result.success:
                self._recognized = match
                self._confirm_until = self._clock() + self.confirmation_seconds
                self._teardown(SessionState.TERMINATED, f"{match.display_name}: {result.message}")
            else:
                self._last_error = result.message
                self._message = f"{result.message} - resuming shortly"
                timer = self._timer_factory(
                    self.report_retry_delay, partial(self._resume_detecting, generation)
                )
                timer.daemon = True
                self._delay_timer = timer
                timer.start()

        if result.success:
            logger.info(f"✅ {match.display_name} - {mode.value} recorded")
            if self.on_recognized is not None:
                self.on_recognized(match, result)
        self._notify()

    def _resume_detecting(self, generation: int):
        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACTIVE:
                return
            self._delay_timer = None
            self._finish_attempt("Please face the camera")
        self._notify()
