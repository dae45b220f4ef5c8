"""
Shared paths, executables and timing constants for the flow recorder.

Every value can be overridden from the environment; components also take
their constants as constructor arguments so callers (and tests) can tune them.
"""

from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Paths & Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent

DATA_DIR = Path(os.getenv("FLOW_RECORDER_DATA_DIR", str(BASE_DIR / "data")))

RECORDINGS_DIR = DATA_DIR / "maestro-recordings"
PENDING_SESSION_FILE = DATA_DIR / ".maestro-pending-session.json"

# Session directory layout
SCREENSHOTS_SUBDIR = "screenshots"
FLOW_FILENAME = "test.yaml"
VIDEO_FILENAME = "recording.mp4"
SESSION_METADATA_FILENAME = "session.json"

# External executables
ADB_PATH = os.getenv("ADB_PATH", "adb")
XCRUN_PATH = os.getenv("XCRUN_PATH", "xcrun")
IDB_PATH = os.getenv("IDB_PATH", "idb")
MAESTRO_PATH = os.getenv("MAESTRO_PATH", "")

# Screenshot scheduling (seconds)
SCREENSHOT_BASE_INTERVAL = float(os.getenv("FLOW_RECORDER_SCREENSHOT_INTERVAL", "2.0"))
SCREENSHOT_MAX_INTERVAL = float(os.getenv("FLOW_RECORDER_SCREENSHOT_MAX_INTERVAL", "12.0"))
SCREENSHOT_BACKOFF_THRESHOLD = 3

# Subprocess bounds (seconds)
NATIVE_STOP_TIMEOUT = 5.0
FORCE_KILL_GRACE = 2.0
FLOW_SETTLE_DELAY = 1.0
VIDEO_STOP_WAIT = 2.0
DEVICE_PULL_TIMEOUT = 60.0
BRIDGE_COMMAND_TIMEOUT = 10.0
TAP_TIMEOUT = 5.0
MAESTRO_VERSION_TIMEOUT = 10.0
MAESTRO_TEST_TIMEOUT = 300.0
ANDROID_SCREENRECORD_LIMIT = 180
ANDROID_VIDEO_REMOTE_PATH = "/sdcard/maestro-recording.mp4"

# Gesture classification
SWIPE_THRESHOLD_PX = 50
LONG_PRESS_THRESHOLD_MS = 500
RAW_AXIS_MAX = 32767
DEFAULT_SCREEN_SIZE = (1080, 1920)
