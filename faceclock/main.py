# faceclock/main.py
"""
faceclock - Kiosk runner.

Wires the modules together:
- core/: settings, camera, environment checks
- recognition/: embedding extractor
- data/: gallery loader, attendance reporter
- capture/: capture session
- web/: control API

Usage:
    python -m faceclock.main                          # Run with defaults
    python -m faceclock.main --threshold 0.55         # Custom match threshold
    python -m faceclock.main --autostart --mode checkOut
    python -m faceclock.main --api-url https://hr.example.com --no-web
"""
import os
import time
import threading
import logging
import argparse

# === DISPLAY SETUP BEFORE IMPORTING CV2 ===
if os.environ.get("DISPLAY", "") == "":
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import cv2

from .core import settings, CameraConfig, CameraManager, EnvironmentGuard, FaceClockError
from .recognition import create_extractor
from .data import GalleryLoader, AttendanceReporter, AttendanceMode
from .capture import CaptureSession

logger = logging.getLogger(__name__)


def setup_logging():
    if settings.IS_PI:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler('faceclock.log', encoding='utf-8'),
                logging.StreamHandler()
            ]
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s'
        )


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='faceclock - Face Recognition Attendance Kiosk',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m faceclock.main                        # Run with defaults
  python -m faceclock.main --threshold 0.55       # Custom threshold
  python -m faceclock.main --autostart --mode checkOut
        """
    )

    # Recognition settings
    parser.add_argument(
        '--threshold', '-t',
        type=float,
        metavar='VALUE',
        help=f'Match distance threshold (default: {settings.MATCH_THRESHOLD})'
    )
    parser.add_argument(
        '--interval', '-i',
        type=float,
        metavar='SECONDS',
        help=f'Seconds between detection attempts (default: {settings.DETECTION_INTERVAL})'
    )

    # Backend
    parser.add_argument(
        '--api-url',
        type=str,
        metavar='URL',
        help=f'Attendance backend base URL (default: {settings.API_BASE_URL})'
    )

    # Web server
    parser.add_argument(
        '--no-web',
        action='store_true',
        help='Disable control API'
    )
    parser.add_argument(
        '--port', '-p',
        type=int,
        metavar='PORT',
        help=f'Control API port (default: {settings.WEB_PORT})'
    )

    # Camera settings
    parser.add_argument(
        '--camera', '-c',
        type=int,
        metavar='ID',
        help=f'Camera device ID (default: {settings.CAMERA_ID})'
    )
    parser.add_argument(
        '--resolution', '-r',
        type=str,
        metavar='WxH',
        help=f'Camera resolution (default: {settings.CAMERA_WIDTH}x{settings.CAMERA_HEIGHT})'
    )

    # Session
    parser.add_argument(
        '--mode', '-m',
        type=str,
        choices=[m.value for m in AttendanceMode],
        help=f'Attendance mode (default: {settings.DEFAULT_MODE})'
    )
    parser.add_argument(
        '--autostart',
        action='store_true',
        help='Start a capture session immediately'
    )

    # Debug
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose logging'
    )

    return parser.parse_args(argv)


def apply_arguments(args):
    """Apply command line arguments to settings."""
    changes = []

    if args.threshold is not None:
        settings.MATCH_THRESHOLD = args.threshold
        changes.append(f"Threshold: {args.threshold}")
    if args.interval is not None:
        settings.DETECTION_INTERVAL = args.interval
        changes.append(f"Interval: {args.interval}s")

    if args.api_url:
        settings.API_BASE_URL = args.api_url.rstrip('/')
        changes.append(f"API: {settings.API_BASE_URL}")

    if args.no_web:
        settings.ENABLE_WEB_SERVER = False
        changes.append("Web: disabled")
    if args.port:
        settings.WEB_PORT = args.port
        changes.append(f"Port: {args.port}")

    if args.camera is not None:
        settings.CAMERA_ID = args.camera
        changes.append(f"Camera: {args.camera}")
    if args.resolution:
        try:
            w, h = map(int, args.resolution.lower().split('x'))
            settings.CAMERA_WIDTH = w
            settings.CAMERA_HEIGHT = h
            changes.append(f"Resolution: {w}x{h}")
        except ValueError:
            logger.warning(f"⚠️ Invalid resolution format: {args.resolution} (use WxH, e.g., 640x480)")

    if args.mode:
        settings.DEFAULT_MODE = args.mode
        changes.append(f"Mode: {args.mode}")

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        changes.append("Verbose: ON")

    return changes


def build_session(loader):
    """Create extractor, reporter, camera and the capture session from settings."""
    extractor = create_extractor(num_threads=settings.tflite_num_threads)
    reporter = AttendanceReporter()
    camera = CameraManager(
        device_id=settings.CAMERA_ID,
        config=CameraConfig(
            width=settings.CAMERA_WIDTH,
            height=settings.CAMERA_HEIGHT,
            fps=settings.CAMERA_FPS,
            min_width=settings.CAMERA_MIN_WIDTH,
            min_height=settings.CAMERA_MIN_HEIGHT,
            max_devices=settings.CAMERA_MAX_DEVICES,
        ),
    )
    environment = EnvironmentGuard(
        settings.API_BASE_URL,
        require_secure=settings.REQUIRE_SECURE_BACKEND,
    )

    def on_recognized(match, result):
        logger.info(f"🟢 {match.display_name} ({match.employee_id}) - {result.message}")

    return CaptureSession(
        extractor,
        loader,
        reporter,
        camera=camera,
        environment=environment,
        on_recognized=on_recognized,
    )


def start_web_server(session, loader):
    """Run the control API in its own thread."""
    from .web.server import create_app, run_server
    try:
        app = create_app(session, loader)
        run_server(app, host=settings.WEB_HOST, port=settings.WEB_PORT)
    except Exception as e:
        logger.error(f"Web server error: {e}")


def print_startup_info(loader):
    print("\n" + "=" * 50)
    print("🕐 FACECLOCK ATTENDANCE KIOSK")
    print("=" * 50)
    print(f"📍 Platform: {'Pi' if settings.IS_PI else ('Windows' if settings.IS_WINDOWS else 'Desktop')}")
    print(f"🔗 Backend: {settings.API_BASE_URL}")
    print(f"👥 Gallery: {len(loader.gallery)} enrolled faces")
    print(f"🎯 Threshold: {settings.MATCH_THRESHOLD} | Interval: {settings.DETECTION_INTERVAL}s")
    if settings.ENABLE_WEB_SERVER:
        print(f"🌐 Control API: http://{settings.WEB_HOST}:{settings.WEB_PORT}")
    print("-" * 50)
    print("⌨️  Ctrl+C to quit")
    print("=" * 50 + "\n")


def main(argv=None):
    """Main entry point."""
    setup_logging()

    args = parse_arguments(argv)
    arg_changes = apply_arguments(args)
    if arg_changes:
        print("🔧 Command-line overrides:")
        for change in arg_changes:
            print(f"   • {change}")
        print()

    if settings.IS_PI:
        cv2.setNumThreads(1)

    loader = GalleryLoader()
    loader.load()
    loader.start_auto_refresh()

    try:
        session = build_session(loader)
    except FaceClockError as e:
        logger.error(f"❌ Initialization failed: {e}")
        loader.stop()
        return 1

    print_startup_info(loader)

    if settings.ENABLE_WEB_SERVER:
        web_thread = threading.Thread(
            target=start_web_server,
            args=(session, loader),
            daemon=True
        )
        web_thread.start()

    if args.autostart:
        try:
            session.start(settings.DEFAULT_MODE)
        except FaceClockError as e:
            logger.error(f"❌ Autostart failed: {e}")

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("\n🛑 Stopped (Ctrl+C)")
    finally:
        session.close()
        loader.stop()
        print("👋 Bye!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
