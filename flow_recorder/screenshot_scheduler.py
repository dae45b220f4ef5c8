"""
Screenshot Capture Scheduler — deduplicated, adaptively throttled captures.

Two triggers share one scheduler per session:

    forced    — one capture per recorded action, always kept
    periodic  — polled every ``base_interval`` while recording; a frame whose
                content hash matches the last accepted one is deleted, and
                after ``backoff_threshold`` unchanged frames in a row the
                polling interval doubles (capped at ``max_interval``).  The
                first changed frame resets the interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from PIL import Image

from flow_recorder.config import (
    SCREENSHOT_BACKOFF_THRESHOLD,
    SCREENSHOT_BASE_INTERVAL,
    SCREENSHOT_MAX_INTERVAL,
)
from flow_recorder.device_bridge import BridgeResult

logger = logging.getLogger("screenshot_scheduler")

CaptureFn = Callable[[Path], Awaitable[BridgeResult]]


def content_hash(path: Path) -> str:
    """SHA-1 of the decoded pixels, or of the raw bytes for non-images."""
    try:
        with Image.open(path) as img:
            pixels = img.convert("RGB")
            digest = hashlib.sha1(f"{pixels.size}".encode("ascii"))
            digest.update(pixels.tobytes())
            return digest.hexdigest()
    except OSError:
        return hashlib.sha1(path.read_bytes()).hexdigest()


@dataclass
class ScreenshotCaptureState:
    """Per-session polling state.  Never persisted."""

    interval: float = SCREENSHOT_BASE_INTERVAL
    last_hash: Optional[str] = None
    unchanged_count: int = 0
    next_capture_at: float = 0.0


class ScreenshotScheduler:
    """Captures screenshots into ``screenshots_dir`` through *capture_fn*."""

    def __init__(
        self,
        capture_fn: CaptureFn,
        screenshots_dir: Path,
        base_interval: float = SCREENSHOT_BASE_INTERVAL,
        max_interval: float = SCREENSHOT_MAX_INTERVAL,
        backoff_threshold: int = SCREENSHOT_BACKOFF_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        hash_fn: Callable[[Path], str] = content_hash,
        on_capture: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._capture = capture_fn
        self.screenshots_dir = Path(screenshots_dir)
        self.base_interval = base_interval
        self.max_interval = max_interval
        self.backoff_threshold = backoff_threshold
        self._clock = clock
        self._hash = hash_fn
        self._on_capture = on_capture
        self._counter = 0
        self._task: Optional[asyncio.Task] = None
        self.state = ScreenshotCaptureState(interval=base_interval)

    def reset(self) -> None:
        self._counter = 0
        self.state = ScreenshotCaptureState(interval=self.base_interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(self, name: Optional[str] = None, force: bool = False) -> Optional[str]:
        """Take one screenshot.  Returns its path, or None when skipped,
        discarded as a duplicate, or failed."""
        if not force and self._clock() < self.state.next_capture_at:
            return None

        self._counter += 1
        path = self.screenshots_dir / f"{name or f'screen_{self._counter:04d}'}.png"
        try:
            result = await self._capture(path)
        except OSError as exc:
            result = BridgeResult(success=False, error=str(exc))
        if not result.success:
            logger.warning("Screenshot %s failed: %s", path.name, result.error)
            return None

        try:
            # Image decoding runs in a worker thread.
            digest = await asyncio.get_running_loop().run_in_executor(None, self._hash, path)
        except OSError as exc:
            logger.warning("Cannot hash screenshot %s: %s", path.name, exc)
            return None

        now = self._clock()
        state = self.state
        if not force and digest == state.last_hash:
            path.unlink(missing_ok=True)
            state.unchanged_count += 1
            if state.unchanged_count >= self.backoff_threshold:
                state.interval = min(state.interval * 2, self.max_interval)
            state.next_capture_at = now + state.interval
            logger.debug("Unchanged frame #%d, next poll in %.1fs",
                         state.unchanged_count, state.interval)
            return None

        state.last_hash = digest
        state.unchanged_count = 0
        state.interval = self.base_interval
        state.next_capture_at = now + self.base_interval
        if self._on_capture is not None:
            self._on_capture(str(path))
        return str(path)

    # ------------------------------------------------------------------
    # Periodic polling
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.base_interval)
            await self.capture()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
