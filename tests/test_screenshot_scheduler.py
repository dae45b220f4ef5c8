"""Test screenshot_scheduler — dedup and backoff."""
from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

try:
    from PIL import Image

    from flow_recorder.device_bridge import BridgeResult
    from flow_recorder.screenshot_scheduler import (
        ScreenshotCaptureState,
        ScreenshotScheduler,
        content_hash,
    )
    HAS_MODULE = True
except ImportError:
    HAS_MODULE = False

pytestmark = pytest.mark.skipif(not HAS_MODULE, reason="screenshot_scheduler not available")


class FakeScreen:
    """Capture function writing the current frame; clock advanced by hand."""

    def __init__(self, frame=b"screen-A"):
        self.frame = frame
        self.now = 0.0
        self.fail = False
        self.calls = 0

    async def capture(self, path: Path) -> BridgeResult:
        self.calls += 1
        if self.fail:
            return BridgeResult(success=False, error="device offline")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.frame)
        return BridgeResult(success=True, output=str(path))

    def clock(self) -> float:
        return self.now


@pytest.fixture
def screen():
    return FakeScreen()


@pytest.fixture
def scheduler(screen, tmp_path):
    return ScreenshotScheduler(
        capture_fn=screen.capture,
        screenshots_dir=tmp_path / "screenshots",
        base_interval=2.0,
        max_interval=12.0,
        backoff_threshold=3,
        clock=screen.clock,
    )


async def _poll(scheduler, screen, times):
    """Run *times* periodic polls, each as soon as the scheduler allows."""
    accepted = []
    for _ in range(times):
        screen.now = max(screen.now, scheduler.state.next_capture_at)
        path = await scheduler.capture()
        if path:
            accepted.append(path)
    return accepted


class TestContentHash:
    def test_same_pixels_same_hash_despite_encoding(self, tmp_path):
        img = Image.new("RGB", (8, 8), (10, 20, 30))
        img.save(tmp_path / "a.png")
        img.save(tmp_path / "b.png", optimize=True, compress_level=9)
        assert content_hash(tmp_path / "a.png") == content_hash(tmp_path / "b.png")

    def test_different_pixels_differ(self, tmp_path):
        Image.new("RGB", (8, 8), (0, 0, 0)).save(tmp_path / "a.png")
        Image.new("RGB", (8, 8), (0, 0, 1)).save(tmp_path / "b.png")
        assert content_hash(tmp_path / "a.png") != content_hash(tmp_path / "b.png")

    def test_non_image_falls_back_to_bytes(self, tmp_path):
        (tmp_path / "x.png").write_bytes(b"not an image")
        (tmp_path / "y.png").write_bytes(b"not an image")
        assert content_hash(tmp_path / "x.png") == content_hash(tmp_path / "y.png")


class TestDedupBackoff:
    @pytest.mark.asyncio
    async def test_first_capture_accepted(self, scheduler, screen):
        path = await scheduler.capture()
        assert path is not None
        assert Path(path).exists()

    @pytest.mark.asyncio
    async def test_unchanged_frames_discarded_and_deleted(self, scheduler, screen, tmp_path):
        accepted = await _poll(scheduler, screen, 10)
        assert len(accepted) == 1
        assert list((tmp_path / "screenshots").glob("*.png")) == [Path(accepted[0])]
        assert scheduler.state.unchanged_count == 9

    @pytest.mark.asyncio
    async def test_interval_doubles_after_threshold_and_caps(self, scheduler, screen):
        await _poll(scheduler, screen, 3)  # 1 accepted + 2 unchanged
        assert scheduler.state.interval == 2.0
        await _poll(scheduler, screen, 1)  # third unchanged frame
        assert scheduler.state.interval == 4.0
        await _poll(scheduler, screen, 1)
        assert scheduler.state.interval == 8.0
        await _poll(scheduler, screen, 5)
        assert scheduler.state.interval == 12.0

    @pytest.mark.asyncio
    async def test_change_after_idle_accepted_once_and_resets(self, scheduler, screen):
        await _poll(scheduler, screen, 8)
        screen.frame = b"screen-B"
        accepted = await _poll(scheduler, screen, 3)
        assert len(accepted) == 1
        assert scheduler.state.interval == 2.0
        assert scheduler.state.unchanged_count == 2

    @pytest.mark.asyncio
    async def test_poll_before_due_is_skipped(self, scheduler, screen):
        await scheduler.capture()
        screen.now = 1.0
        assert await scheduler.capture() is None
        assert screen.calls == 1

    @pytest.mark.asyncio
    async def test_forced_capture_bypasses_dedup(self, scheduler, screen):
        first = await scheduler.capture()
        forced = await scheduler.capture("action_001", force=True)
        assert forced is not None
        assert forced.endswith("action_001.png")
        assert first != forced

    @pytest.mark.asyncio
    async def test_forced_capture_resets_backoff(self, scheduler, screen):
        await _poll(scheduler, screen, 6)
        assert scheduler.state.interval > 2.0
        await scheduler.capture("action_001", force=True)
        assert scheduler.state.interval == 2.0
        assert scheduler.state.unchanged_count == 0

    @pytest.mark.asyncio
    async def test_failed_capture_returns_none(self, scheduler, screen):
        screen.fail = True
        assert await scheduler.capture(force=True) is None
        assert scheduler.state.last_hash is None

    @pytest.mark.asyncio
    async def test_on_capture_callback(self, screen, tmp_path):
        seen = []
        scheduler = ScreenshotScheduler(screen.capture, tmp_path, clock=screen.clock,
                                        on_capture=seen.append)
        path = await scheduler.capture()
        assert seen == [path]

    @pytest.mark.asyncio
    async def test_hash_runs_off_the_event_loop_thread(self, screen, tmp_path):
        threads = []

        def _hash(path):
            threads.append(threading.get_ident())
            return content_hash(path)

        scheduler = ScreenshotScheduler(screen.capture, tmp_path, clock=screen.clock,
                                        hash_fn=_hash)
        assert await scheduler.capture(force=True)
        assert threads and threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_unreadable_screenshot_returns_none(self, screen, tmp_path):
        def _hash(path):
            raise OSError("gone")

        scheduler = ScreenshotScheduler(screen.capture, tmp_path, clock=screen.clock,
                                        hash_fn=_hash)
        assert await scheduler.capture(force=True) is None
        assert scheduler.state.last_hash is None


class TestLifecycle:
    def test_reset(self, scheduler):
        scheduler.state.interval = 8.0
        scheduler.state.last_hash = "abc"
        scheduler.reset()
        assert scheduler.state == ScreenshotCaptureState(interval=2.0)

    @pytest.mark.asyncio
    async def test_periodic_loop_start_stop(self, screen, tmp_path):
        scheduler = ScreenshotScheduler(screen.capture, tmp_path, base_interval=0.01,
                                        clock=screen.clock)
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert not scheduler.running
        assert screen.calls >= 1
