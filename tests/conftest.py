"""
Shared fixtures for the flow recorder test suite.

Provides fake subprocess handles, a fake device bridge and isolated storage
so that no test touches adb, xcrun, idb or maestro.
"""

import asyncio
import signal
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from flow_recorder.device_bridge import BridgeResult, Platform


# ---------------------------------------------------------------------------
# Fake subprocess
# ---------------------------------------------------------------------------

class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    Must be created inside a running event loop when ``stdout_lines`` is
    given.  ``exit_on_sigint=False`` simulates a process that hangs until
    killed.
    """

    def __init__(
        self,
        pid: int = 4242,
        exit_on_sigint: bool = True,
        stdout_lines: Optional[List[str]] = None,
        eof: bool = True,
    ):
        self.pid = pid
        self.returncode: Optional[int] = None
        self.exit_on_sigint = exit_on_sigint
        self.signals: List[int] = []
        self.killed = False
        self._exited = asyncio.Event()
        self.stdout = None
        self.stderr = None
        if stdout_lines is not None:
            reader = asyncio.StreamReader()
            for line in stdout_lines:
                reader.feed_data(line.encode("utf-8") + b"\n")
            if eof:
                reader.feed_eof()
            self.stdout = reader

    def finish(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError()
        self.signals.append(sig)
        if self.exit_on_sigint and sig == signal.SIGINT:
            self.finish(0)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError()
        self.killed = True
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


# ---------------------------------------------------------------------------
# Fake bridge
# ---------------------------------------------------------------------------

class FakeBridge:
    """Device bridge writing fake screenshots and handing out FakeProcesses."""

    def __init__(
        self,
        platform: Platform = Platform.ANDROID,
        event_lines: Optional[List[str]] = None,
        frame: bytes = b"frame-1",
        video_ok: bool = True,
        video_exit_on_sigint: bool = True,
    ):
        self.platform = platform
        self.supports_raw_events = platform == Platform.ANDROID
        self.event_lines = event_lines or []
        self.frame = frame
        self.video_ok = video_ok
        self.video_exit_on_sigint = video_exit_on_sigint
        self.screenshots: List[Path] = []
        self.event_streams: List[FakeProcess] = []
        self.video_proc: Optional[FakeProcess] = None
        self.finish_calls = 0

    async def capture_screenshot(self, device_id: str, path: Path) -> BridgeResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.frame)
        self.screenshots.append(path)
        return BridgeResult(success=True, output=str(path))

    async def screen_size(self, device_id: str):
        return (1080, 1920)

    async def spawn_event_stream(self, device_id: str) -> FakeProcess:
        proc = FakeProcess(pid=5000 + len(self.event_streams),
                           stdout_lines=self.event_lines, eof=False)
        self.event_streams.append(proc)
        return proc

    async def spawn_screen_recording(self, device_id: str, video_path: Path) -> FakeProcess:
        self.video_proc = FakeProcess(pid=6000, exit_on_sigint=self.video_exit_on_sigint)
        return self.video_proc

    async def finish_screen_recording(self, device_id: str, video_path: Path,
                                      timeout: float = 60) -> BridgeResult:
        self.finish_calls += 1
        if not self.video_ok:
            return BridgeResult(success=False, error="pull failed")
        video_path.parent.mkdir(parents=True, exist_ok=True)
        video_path.write_bytes(b"mp4")
        return BridgeResult(success=True, output=str(video_path))


@pytest.fixture
def fake_bridge():
    return FakeBridge()


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def recordings_dir(tmp_path):
    path = tmp_path / "maestro-recordings"
    path.mkdir()
    return path


@pytest.fixture
def pending_file(tmp_path):
    return tmp_path / ".maestro-pending-session.json"


@pytest.fixture
def store(recordings_dir, pending_file):
    from flow_recorder.session_store import SessionStore

    return SessionStore(recordings_dir=recordings_dir, pending_file=pending_file)


@pytest.fixture
def make_recorder(recordings_dir, pending_file):
    """Factory for recorders wired to a fake bridge and fast timeouts."""
    from flow_recorder.recorder import MaestroRecorder
    from flow_recorder.session_store import SessionStore

    def _make(bridge=None, maestro_command=None, store=None, **overrides):
        bridge = bridge or FakeBridge()
        options = dict(
            stop_timeout=0.2,
            kill_grace=0.2,
            video_stop_wait=0.2,
            pull_timeout=1.0,
            flow_settle_delay=0,
            screenshot_interval=3600,
        )
        options.update(overrides)
        return MaestroRecorder(
            store=store or SessionStore(recordings_dir=recordings_dir, pending_file=pending_file),
            bridge_factory=lambda platform: bridge,
            maestro_resolver=AsyncMock(return_value=maestro_command),
            **options,
        )

    return _make


@pytest.fixture
def fake_process():
    """The FakeProcess class; instantiate inside async tests."""
    return FakeProcess


@pytest.fixture
def bridge_factory():
    """The FakeBridge class, for tests needing non-default bridges."""
    return FakeBridge
