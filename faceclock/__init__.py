# faceclock package
"""
faceclock - Face Recognition Attendance Kiosk

Structure:
    faceclock/
    ├── core/                     # Core infrastructure
    │   ├── settings.py           # Configuration
    │   ├── errors.py             # Exception hierarchy
    │   ├── camera.py             # Camera management
    │   ├── tflite_helper.py      # TFLite interpreter helper
    │   └── environment.py        # Startup capability checks
    ├── recognition/              # Face detection + embedding + matching
    │   ├── detector.py
    │   ├── embedder.py
    │   ├── extractor.py
    │   └── matcher.py
    ├── data/                     # Backend data
    │   ├── gallery.py            # Enrolled face gallery + loader
    │   └── reporter.py           # Check-in / check-out reporter
    ├── capture/                  # Capture session state machine
    ├── web/                      # Flask control API
    └── main.py                   # Kiosk runner

Usage:
    from faceclock import CaptureSession, GalleryLoader, create_extractor

    loader = GalleryLoader()
    loader.load()
    session = CaptureSession(create_extractor(), loader, AttendanceReporter())
    session.start("checkIn")
"""

from .core.settings import settings
from .capture.session import CaptureSession
from .data.gallery import GalleryLoader
from .data.reporter import AttendanceReporter
from .recognition.extractor import create_extractor

__version__ = "1.0.0"
