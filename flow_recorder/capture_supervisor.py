"""
Capture Strategy Supervisor.

Runs one of two capture strategies for a session and owns every subprocess
the session needs:

    native  — ``maestro record <flow>`` writes the flow itself
    manual  — ``adb shell getevent -lt`` fed through the DeviceEventInterpreter
              (iOS simulators have no raw events and rely on screenshots)

State machine::

    idle -> recording_native | recording_manual -> stopped
    recording_native -> recording_manual     (at most once per session)

Process exits are not handled in callbacks.  Watcher tasks post
``LifecycleEvent`` messages to an inbox that the supervisor consumes one at
a time, so a late exit can never race ``stop()``: once stopping has begun the
events are ignored.  The companion screen recording (a watchable video,
independent of the action stream) runs alongside either strategy.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from flow_recorder.actions import RecordedAction
from flow_recorder.config import (
    DEFAULT_SCREEN_SIZE,
    DEVICE_PULL_TIMEOUT,
    FORCE_KILL_GRACE,
    NATIVE_STOP_TIMEOUT,
    VIDEO_STOP_WAIT,
)
from flow_recorder.device_bridge import DeviceBridge
from flow_recorder.device_events import DeviceEventInterpreter
from flow_recorder.screenshot_scheduler import ScreenshotScheduler
from flow_recorder.session_store import CaptureMode, RecordingSession

logger = logging.getLogger("capture_supervisor")

ActionSink = Callable[[RecordedAction], Awaitable[Any]]


class SupervisorState(str, Enum):
    IDLE = "idle"
    RECORDING_NATIVE = "recording_native"
    RECORDING_MANUAL = "recording_manual"
    STOPPED = "stopped"
    ERROR = "error"


class LifecycleKind(str, Enum):
    EXITED = "exited"
    ERRORED = "errored"


@dataclass
class LifecycleEvent:
    """Message posted by a process watcher."""

    kind: LifecycleKind
    source: str = "native"
    returncode: Optional[int] = None
    error: Optional[str] = None


@dataclass
class StopReport:
    """What stop() found and did."""

    native_mode: bool = False
    native_exited_cleanly: bool = False
    forced_kill: bool = False
    video_path: Optional[str] = None


class CaptureSupervisor:
    """Starts, supervises and stops the capture processes of one session."""

    def __init__(
        self,
        session: RecordingSession,
        bridge: DeviceBridge,
        on_action: ActionSink,
        scheduler: Optional[ScreenshotScheduler] = None,
        maestro_command: Optional[str] = None,
        record_video: bool = True,
        stop_timeout: float = NATIVE_STOP_TIMEOUT,
        kill_grace: float = FORCE_KILL_GRACE,
        video_stop_wait: float = VIDEO_STOP_WAIT,
        pull_timeout: float = DEVICE_PULL_TIMEOUT,
        on_mode_change: Optional[Callable[[CaptureMode], Any]] = None,
    ) -> None:
        self.session = session
        self.bridge = bridge
        self.scheduler = scheduler
        self.maestro_command = maestro_command
        self.record_video = record_video
        self.stop_timeout = stop_timeout
        self.kill_grace = kill_grace
        self.video_stop_wait = video_stop_wait
        self.pull_timeout = pull_timeout
        self._on_action = on_action
        self._on_mode_change = on_mode_change

        self.state = SupervisorState.IDLE
        self._fallback_armed = False
        self._inbox: Optional[asyncio.Queue] = None
        self._native_proc: Optional[asyncio.subprocess.Process] = None
        self._listener_proc: Optional[asyncio.subprocess.Process] = None
        self._video_proc: Optional[asyncio.subprocess.Process] = None
        self._lifecycle_task: Optional[asyncio.Task] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self.state in (SupervisorState.RECORDING_NATIVE, SupervisorState.RECORDING_MANUAL)

    @property
    def fallback_armed(self) -> bool:
        return self._fallback_armed

    @staticmethod
    def _alive(proc: Optional[asyncio.subprocess.Process]) -> bool:
        return proc is not None and proc.returncode is None

    def has_live_capture(self) -> bool:
        """True while some capture process or poller is still attached."""
        if not self.is_recording:
            return False
        return (
            self._alive(self._native_proc)
            or self._alive(self._listener_proc)
            or (self.scheduler is not None and self.scheduler.running)
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, prefer_native: bool = True) -> CaptureMode:
        """Start native capture when possible, manual capture otherwise."""
        self._inbox = asyncio.Queue()

        if prefer_native and self.maestro_command and await self._spawn_native():
            self._set_mode(CaptureMode.NATIVE)
            self.state = SupervisorState.RECORDING_NATIVE
        else:
            self._set_mode(CaptureMode.MANUAL)
            self.state = SupervisorState.RECORDING_MANUAL
            await self._start_manual()

        await self._start_video()
        if self.scheduler is not None:
            self.scheduler.start()
        self._lifecycle_task = asyncio.create_task(self._lifecycle_loop())
        logger.info("Capture started for %s in %s mode",
                    self.session.id, self.session.capture_mode.value)
        return self.session.capture_mode

    def _set_mode(self, mode: CaptureMode) -> None:
        self.session.capture_mode = mode
        if self._on_mode_change is not None:
            self._on_mode_change(mode)

    def _spawn_task(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        return task

    async def _spawn_native(self) -> bool:
        flow_path = self.session.flow_path or str(self.session.session_dir / "test.yaml")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.maestro_command, "--device", self.session.device_id,
                "record", flow_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("Could not start maestro record: %s", exc)
            return False

        self._native_proc = proc
        self._spawn_task(self._watch_native(proc))
        for stream, label in ((proc.stdout, "stdout"), (proc.stderr, "stderr")):
            if stream is not None:
                self._spawn_task(self._drain(stream, f"maestro record {label}"))
        logger.info("maestro record started (pid=%s) -> %s", proc.pid, flow_path)
        return True

    async def _start_manual(self) -> None:
        device_id = self.session.device_id
        if not getattr(self.bridge, "supports_raw_events", False):
            logger.info("No raw input events on %s; relying on periodic screenshots",
                        self.session.platform.value)
            return

        width, height = await self.bridge.screen_size(device_id) or DEFAULT_SCREEN_SIZE
        try:
            proc = await self.bridge.spawn_event_stream(device_id)
        except OSError as exc:
            logger.error("Event listener failed to start on %s: %s", device_id, exc)
            return

        if self.state != SupervisorState.RECORDING_MANUAL:
            # stop() ran while the listener was starting
            self._kill_quietly(proc)
            return

        self._listener_proc = proc
        interpreter = DeviceEventInterpreter(screen_width=width, screen_height=height)
        self._spawn_task(self._read_events(proc, interpreter))
        logger.info("Event listener started on %s (%dx%d)", device_id, width, height)

    async def _start_video(self) -> None:
        if not self.record_video or not self.session.video_path:
            return
        try:
            self._video_proc = await self.bridge.spawn_screen_recording(
                self.session.device_id, Path(self.session.video_path),
            )
        except OSError as exc:
            logger.warning("Screen recording unavailable: %s", exc)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _watch_native(self, proc: asyncio.subprocess.Process) -> None:
        try:
            returncode = await proc.wait()
        except Exception as exc:
            self.notify(LifecycleEvent(LifecycleKind.ERRORED, error=str(exc)))
            return
        self.notify(LifecycleEvent(LifecycleKind.EXITED, returncode=returncode))

    async def _drain(self, stream: asyncio.StreamReader, label: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("[%s] %s", label, line.decode("utf-8", errors="replace").rstrip())

    async def _read_events(
        self,
        proc: asyncio.subprocess.Process,
        interpreter: DeviceEventInterpreter,
    ) -> None:
        if proc.stdout is None:
            return
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            action = interpreter.feed(raw.decode("utf-8", errors="replace"))
            if action is not None and self.state == SupervisorState.RECORDING_MANUAL:
                await self._on_action(action)
        if self.state == SupervisorState.RECORDING_MANUAL:
            logger.warning("Event listener on %s ended", self.session.device_id)

    # ------------------------------------------------------------------
    # Lifecycle inbox
    # ------------------------------------------------------------------

    def notify(self, event: LifecycleEvent) -> None:
        """Post a lifecycle event for the state machine."""
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        self._inbox.put_nowait(event)

    async def _lifecycle_loop(self) -> None:
        inbox = self._inbox
        if inbox is None:
            logger.debug("No lifecycle inbox for %s", self.session.id)
            return
        while True:
            event = await inbox.get()
            await self._handle_lifecycle(event)

    async def process_pending_events(self) -> None:
        """Handle every event already in the inbox."""
        if self._inbox is None:
            return
        while not self._inbox.empty():
            await self._handle_lifecycle(self._inbox.get_nowait())

    async def _handle_lifecycle(self, event: LifecycleEvent) -> None:
        if event.kind == LifecycleKind.ERRORED:
            logger.error("%s process error: %s", event.source, event.error)
        else:
            logger.info("%s process exited with code %s", event.source, event.returncode)

        if self.state != SupervisorState.RECORDING_NATIVE or self._fallback_armed:
            return

        self._fallback_armed = True
        self.state = SupervisorState.RECORDING_MANUAL
        self._set_mode(CaptureMode.MANUAL)
        logger.warning("Native capture for %s ended; falling back to manual capture",
                       self.session.id)
        await self._start_manual()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self) -> StopReport:
        """Stop every capture process within bounded time."""
        report = StopReport(native_mode=self.state == SupervisorState.RECORDING_NATIVE)
        self.state = SupervisorState.STOPPED

        if self._lifecycle_task is not None:
            await self._cancel(self._lifecycle_task)
            self._lifecycle_task = None
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self._stop_listener()

        (clean, forced), video_path = await asyncio.gather(
            self._stop_native(), self._stop_video(),
        )
        report.native_exited_cleanly = clean
        report.forced_kill = forced
        report.video_path = video_path

        for task in self._tasks:
            await self._cancel(task)
        self._tasks.clear()
        logger.info("Capture stopped for %s", self.session.id)
        return report

    async def abort(self) -> None:
        """Tear everything down after a failed start."""
        await self.stop()
        self.state = SupervisorState.ERROR

    async def _stop_listener(self) -> None:
        proc = self._listener_proc
        if proc is None:
            return
        self._kill_quietly(proc)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), self.kill_grace)

    async def _stop_native(self) -> Tuple[bool, bool]:
        proc = self._native_proc
        if proc is None:
            return False, False
        if proc.returncode is not None:
            return proc.returncode == 0, False
        return await self._terminate(proc, "maestro record", self.stop_timeout)

    async def _stop_video(self) -> Optional[str]:
        proc = self._video_proc
        if proc is None or not self.session.video_path:
            return None
        if proc.returncode is None:
            await self._terminate(proc, "screen recording", self.video_stop_wait)

        video_path = Path(self.session.video_path)
        result = await self.bridge.finish_screen_recording(
            self.session.device_id, video_path, timeout=self.pull_timeout,
        )
        if not result.success:
            logger.warning("Video for %s not saved: %s", self.session.id, result.error)
            return None
        return str(video_path)

    async def _terminate(
        self,
        proc: asyncio.subprocess.Process,
        label: str,
        timeout: float,
    ) -> Tuple[bool, bool]:
        """SIGINT, wait *timeout*, then SIGKILL.  Returns (clean, forced)."""
        try:
            proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return True, False
        try:
            await asyncio.wait_for(proc.wait(), timeout)
            return True, False
        except asyncio.TimeoutError:
            logger.warning("%s did not exit within %.1fs; killing it", label, timeout)

        self._kill_quietly(proc)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace)
        except asyncio.TimeoutError:
            logger.error("%s still running after SIGKILL", label)
        return False, True

    @staticmethod
    def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        if task.done():
            if not task.cancelled() and task.exception() is not None:
                logger.warning("Capture task failed: %s", task.exception())
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
