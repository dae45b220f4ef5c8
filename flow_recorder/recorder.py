"""
Maestro Recorder — records a device session into a replayable Maestro flow.

Ties the pieces together for one session at a time:

    SessionStore        — the live session handle, snapshot and recovery
    CaptureSupervisor   — native ``maestro record`` or raw-event capture
    ScreenshotScheduler — a screenshot per action plus deduplicated polling
    Flow Synthesizer    — flow file generation and parsing
    Reconciler          — merges the native flow with local screenshots

Data stored under:  data/maestro-recordings/<session-id>/
Pending snapshot:   data/.maestro-pending-session.json

Usage:
    from flow_recorder.recorder import get_recorder

    recorder = get_recorder()
    session = await recorder.start_recording("Checkout", "emulator-5554",
                                             device_name="Pixel 7", platform="android")
    await recorder.add_manual_action("tap", x=540, y=1200)
    result = await recorder.stop_recording()
    print(result.flow_yaml)

CLI:
    flow-recorder devices
    flow-recorder record "Checkout" --device emulator-5554 [--manual] [--duration 60]
    flow-recorder recover
    flow-recorder list
    flow-recorder show <recording-id>
    flow-recorder replay <recording-id> [--device ID]
    flow-recorder delete <recording-id>
    flow-recorder parse path/to/flow.yaml
    flow-recorder tap 540 1200 --device emulator-5554
    flow-recorder maestro
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from flow_recorder.actions import SCREENSHOT_ACTION_TYPES, RecordedAction, make_action
from flow_recorder.capture_supervisor import CaptureSupervisor, StopReport, SupervisorState
from flow_recorder.config import (
    DEVICE_PULL_TIMEOUT,
    FLOW_SETTLE_DELAY,
    FORCE_KILL_GRACE,
    NATIVE_STOP_TIMEOUT,
    SCREENSHOT_BACKOFF_THRESHOLD,
    SCREENSHOT_BASE_INTERVAL,
    SCREENSHOT_MAX_INTERVAL,
    VIDEO_STOP_WAIT,
)
from flow_recorder.device_bridge import DeviceBridge, get_bridge, list_all_devices
from flow_recorder.flow_synthesizer import parse_flow_yaml
from flow_recorder.maestro_cli import (
    get_maestro_version,
    kill_zombie_maestro_processes,
    resolve_maestro_command,
)
from flow_recorder.reconciler import reconcile_actions
from flow_recorder.screenshot_scheduler import ScreenshotScheduler
from flow_recorder.session_store import (
    CaptureMode,
    NoActiveRecordingError,
    RecordingInProgressError,
    RecordingSession,
    SessionRecoveredError,
    SessionStatus,
    SessionStore,
)

logger = logging.getLogger("recorder")

Listener = Callable[[str, Dict[str, Any]], Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RecordingResult:
    """A finalized session and the flow written for it."""

    session: RecordingSession
    flow_yaml: str = ""
    video_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "flow_yaml": self.flow_yaml,
            "video_path": self.video_path,
        }


# ===================================================================
# MAESTRO RECORDER
# ===================================================================

class MaestroRecorder:
    """Records one device session at a time into a Maestro flow."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        bridge_factory: Callable[[Any], DeviceBridge] = get_bridge,
        maestro_resolver: Callable[[], Awaitable[Optional[str]]] = resolve_maestro_command,
        screenshot_interval: float = SCREENSHOT_BASE_INTERVAL,
        screenshot_max_interval: float = SCREENSHOT_MAX_INTERVAL,
        screenshot_backoff_threshold: int = SCREENSHOT_BACKOFF_THRESHOLD,
        stop_timeout: float = NATIVE_STOP_TIMEOUT,
        kill_grace: float = FORCE_KILL_GRACE,
        video_stop_wait: float = VIDEO_STOP_WAIT,
        pull_timeout: float = DEVICE_PULL_TIMEOUT,
        flow_settle_delay: float = FLOW_SETTLE_DELAY,
        record_video: bool = True,
    ) -> None:
        self.store = store if store is not None else SessionStore()
        self._bridge_factory = bridge_factory
        self._maestro_resolver = maestro_resolver
        self.screenshot_interval = screenshot_interval
        self.screenshot_max_interval = screenshot_max_interval
        self.screenshot_backoff_threshold = screenshot_backoff_threshold
        self.stop_timeout = stop_timeout
        self.kill_grace = kill_grace
        self.video_stop_wait = video_stop_wait
        self.pull_timeout = pull_timeout
        self.flow_settle_delay = flow_settle_delay
        self.record_video = record_video

        self._supervisor: Optional[CaptureSupervisor] = None
        self._scheduler: Optional[ScreenshotScheduler] = None
        self._action_lock: Optional[asyncio.Lock] = None
        self._listeners: List[Listener] = []
        self._stopping = False
        active = self.store.active
        self._action_counter = len(active.actions) if active else 0

    # ------------------------------------------------------------------
    # State & events
    # ------------------------------------------------------------------

    def get_session(self) -> Optional[RecordingSession]:
        return self.store.active

    def is_recording(self) -> bool:
        session = self.store.active
        return session is not None and session.status == SessionStatus.RECORDING

    @property
    def is_recovered(self) -> bool:
        return self.store.is_recovered

    @property
    def supervisor(self) -> Optional[CaptureSupervisor]:
        return self._supervisor

    def subscribe(self, callback: Listener) -> None:
        """Register ``callback(event, payload)`` for status, action,
        screenshot and stopped events."""
        self._listeners.append(callback)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Listener failed on %s event", event)

    def _lock(self) -> asyncio.Lock:
        if self._action_lock is None:
            self._action_lock = asyncio.Lock()
        return self._action_lock

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_recording(
        self,
        name: str,
        device_id: str,
        device_name: str = "",
        platform: Any = "android",
        app_id: Optional[str] = None,
        prefer_native: bool = True,
    ) -> RecordingSession:
        """Create a session and start capturing.

        Raises RecordingInProgressError when a session with live capture
        processes exists, and SessionSetupError when the session directories
        cannot be created.
        """
        current = self.store.active
        if current is not None and current.status == SessionStatus.RECORDING:
            if self._supervisor is not None and self._supervisor.has_live_capture():
                raise RecordingInProgressError("Recording already in progress")
            if self._supervisor is not None:
                await self._supervisor.stop()
            self._supervisor = None
            self.store.discard()
        elif current is not None:
            self.store.release()

        session = self.store.create_session(
            name=name,
            device_id=device_id,
            device_name=device_name or device_id,
            platform=platform,
            app_id=app_id,
        )
        self._action_counter = 0
        self._action_lock = asyncio.Lock()

        bridge = self._bridge_factory(session.platform)
        self._scheduler = ScreenshotScheduler(
            capture_fn=functools.partial(bridge.capture_screenshot, session.device_id),
            screenshots_dir=Path(session.screenshots_dir),
            base_interval=self.screenshot_interval,
            max_interval=self.screenshot_max_interval,
            backoff_threshold=self.screenshot_backoff_threshold,
            on_capture=lambda path: self._emit("screenshot", {"session_id": session.id,
                                                              "path": path}),
        )
        maestro_command = await self._maestro_resolver() if prefer_native else None
        self._supervisor = CaptureSupervisor(
            session,
            bridge,
            on_action=self.record_action,
            scheduler=self._scheduler,
            maestro_command=maestro_command,
            record_video=self.record_video,
            stop_timeout=self.stop_timeout,
            kill_grace=self.kill_grace,
            video_stop_wait=self.video_stop_wait,
            pull_timeout=self.pull_timeout,
            on_mode_change=functools.partial(self._on_mode_change, session),
        )

        try:
            await self._supervisor.start(prefer_native=prefer_native)
        except Exception:
            session.status = SessionStatus.ERROR
            await self._supervisor.abort()
            self._supervisor = None
            self._scheduler = None
            self.store.discard()
            raise

        logger.info("Recording %s started on %s (%s, %s capture)", session.id,
                    session.device_name, session.platform.value, session.capture_mode.value)
        self._emit("status", {"session_id": session.id, "status": session.status.value,
                              "capture_mode": session.capture_mode.value})
        return session

    def _on_mode_change(self, session: RecordingSession, mode: CaptureMode) -> None:
        if self.store.active is not session:
            return
        if session.actions:
            self.store.persist(write_flow=mode == CaptureMode.MANUAL)
        self._emit("status", {"session_id": session.id, "status": session.status.value,
                              "capture_mode": mode.value})

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _owns_flow_file(self) -> bool:
        return (
            self._supervisor is None
            or self._supervisor.state != SupervisorState.RECORDING_NATIVE
        )

    async def record_action(self, action: RecordedAction) -> Optional[RecordedAction]:
        """Stamp, screenshot and append *action* to the live session.

        Returns None when no session is recording or the session is stopping.
        """
        session = self.store.active
        if session is None or session.status != SessionStatus.RECORDING:
            logger.debug("No recording in progress; dropping %s", action.action_type.value)
            return None
        if self._stopping:
            logger.debug("Recording is stopping; dropping %s", action.action_type.value)
            return None
        if self.store.is_recovered:
            raise SessionRecoveredError(
                f"Session {session.id} was recovered from a snapshot; it can only be stopped"
            )

        async with self._lock():
            if session.status != SessionStatus.RECORDING or self._stopping:
                return None
            self._action_counter += 1
            action_id = f"action_{self._action_counter:03d}"

            screenshot: Optional[str] = None
            if self._scheduler is not None and action.action_type in SCREENSHOT_ACTION_TYPES:
                screenshot = await self._scheduler.capture(action_id, force=True)

            stamped = action.with_capture(action_id, _now_iso(), screenshot)
            self.store.append_action(stamped, write_flow=self._owns_flow_file())

        logger.info("Recorded %s: %s", stamped.id, stamped.label)
        self._emit("action", {"session_id": session.id, "action": stamped.to_dict()})
        return stamped

    async def add_manual_action(self, action_type: Any, **values: Any) -> RecordedAction:
        """Record an action supplied by the caller (e.g. an injected tap)."""
        action = make_action(action_type, **values)
        session = self.store.require_active()
        if self.store.is_recovered:
            raise SessionRecoveredError(
                f"Session {session.id} was recovered from a snapshot; it can only be stopped"
            )
        if session.status != SessionStatus.RECORDING:
            raise NoActiveRecordingError("No active recording")
        recorded = await self.record_action(action)
        if recorded is None:
            raise NoActiveRecordingError("Recording stopped before the action was recorded")
        return recorded

    def schedule_manual_action(self, action_type: Any, **values: Any) -> asyncio.Task:
        """Fire-and-forget variant of add_manual_action."""
        task = asyncio.ensure_future(self.add_manual_action(action_type, **values))

        def _report(done: asyncio.Task) -> None:
            if not done.cancelled() and done.exception() is not None:
                logger.error("Manual %s action failed: %s", action_type, done.exception())

        task.add_done_callback(_report)
        return task

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_recording(self) -> RecordingResult:
        """Stop capture, finalize the flow and release the session.

        Completes in bounded time even when a capture process hangs.
        """
        session = self.store.require_active()
        # Set before the first await: actions arriving from here on are dropped
        # so none of them can rewrite the native flow file.
        self._stopping = True
        try:
            flow_yaml = await self._finalize(session)
        finally:
            self._stopping = False

        self._action_lock = None
        self._action_counter = 0
        logger.info("Recording %s stopped with %d action(s)", session.id, len(session.actions))
        self._emit("stopped", {"session_id": session.id, "action_count": len(session.actions)})
        return RecordingResult(session=session, flow_yaml=flow_yaml,
                               video_path=session.video_path)

    async def _finalize(self, session: RecordingSession) -> str:
        report = StopReport()
        if self._supervisor is not None:
            report = await self._supervisor.stop()
            self._supervisor = None
        self._scheduler = None
        if report.forced_kill:
            await kill_zombie_maestro_processes()

        async with self._lock():
            session.status = SessionStatus.STOPPED
            session.ended_at = _now_iso()

            flow_yaml: Optional[str] = None
            if report.native_mode:
                await asyncio.sleep(self.flow_settle_delay)
                flow_yaml = self._reconcile_native_flow(session)
            if flow_yaml is None:
                flow_yaml = self.store.render_flow(session)
                self.store.write_flow(flow_yaml)

            if report.video_path:
                session.video_path = report.video_path
            elif session.video_path and not Path(session.video_path).exists():
                session.video_path = None

            self.store.write_session_metadata()
            self.store.clear_pending_snapshot()
            self.store.release()
        return flow_yaml

    def _reconcile_native_flow(self, session: RecordingSession) -> Optional[str]:
        """Merge the flow written by ``maestro record`` into the session.

        Returns the native flow text, or None when it is missing or holds no
        recognizable commands (the caller then regenerates the flow).
        """
        text = self.store.read_flow()
        if not text:
            logger.warning("maestro record left no flow for %s; regenerating", session.id)
            return None

        parsed = parse_flow_yaml(text)
        if parsed.app_id and not session.app_id:
            session.app_id = parsed.app_id
        if not parsed.actions:
            logger.warning("No commands recognized in native flow for %s; regenerating",
                           session.id)
            return None

        session.actions = reconcile_actions(parsed.actions, session.actions)
        logger.info("Reconciled %d native action(s) for %s", len(session.actions), session.id)
        return text

    # ==================================================================
    # SYNC WRAPPERS
    # ==================================================================

    def stop_recording_sync(self) -> RecordingResult:
        return self._run_sync(self.stop_recording())

    @staticmethod
    def _run_sync(coro: Any) -> Any:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return asyncio.run(coro)


# ===================================================================
# SINGLETON
# ===================================================================

_recorder_instance: Optional[MaestroRecorder] = None


def get_recorder() -> MaestroRecorder:
    """
    Get the global MaestroRecorder singleton.

    Creates the instance on first call, recovering any session left in the
    pending snapshot by a crashed process.
    """
    global _recorder_instance
    if _recorder_instance is None:
        _recorder_instance = MaestroRecorder()
    return _recorder_instance


# ===================================================================
# CLI HELPER FUNCTIONS
# ===================================================================

def _format_table(headers: List[str], rows: List[List[str]], max_col: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"

    trunc = [[v[:max_col - 3] + "..." if len(v) > max_col else v for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in trunc:
        for i, v in enumerate(row[:len(widths)]):
            widths[i] = max(widths[i], len(v))

    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in widths)]
    for row in trunc:
        lines.append(fmt.format(*(row + [""] * (len(headers) - len(row)))))
    return "\n".join(lines)


def _cmd_devices(args: argparse.Namespace) -> None:
    devices = asyncio.run(list_all_devices())
    rows = [[d.device_id, d.name, d.platform.value, d.status] for d in devices]
    print(_format_table(["ID", "Name", "Platform", "Status"], rows))


def _cmd_maestro(args: argparse.Namespace) -> None:
    async def _check() -> None:
        command = await resolve_maestro_command()
        if command is None:
            print("Maestro CLI not found. Install it from https://maestro.mobile.dev")
            return
        print(f"Maestro: {command}")
        print(f"Version: {await get_maestro_version() or 'unknown'}")

    asyncio.run(_check())


async def _record(args: argparse.Namespace) -> RecordingResult:
    device_id, platform, device_name = args.device, args.platform, args.device_name
    if not device_id:
        devices = await list_all_devices()
        if not devices:
            raise SystemExit("No connected devices. Start an emulator or simulator first.")
        device_id, platform, device_name = devices[0].device_id, devices[0].platform, devices[0].name

    recorder = MaestroRecorder()
    session = await recorder.start_recording(
        args.name,
        device_id,
        device_name=device_name or "",
        platform=platform,
        app_id=args.app or None,
        prefer_native=not args.manual,
    )
    print(f"Session ID:   {session.id}")
    print(f"Capture mode: {session.capture_mode.value}")

    if args.duration:
        print(f"Recording for {args.duration}s...")
        await asyncio.sleep(args.duration)
    else:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, input, "Recording. Press Enter to stop.\n")
    return await recorder.stop_recording()


def _print_result(result: RecordingResult) -> None:
    session = result.session
    print(f"Recording stopped: {session.name} (id={session.id})")
    print(f"Actions: {len(session.actions)}")
    print(f"Flow:    {session.flow_path}")
    if result.video_path:
        print(f"Video:   {result.video_path}")
    print()
    print(result.flow_yaml)


def _cmd_record(args: argparse.Namespace) -> None:
    _print_result(asyncio.run(_record(args)))


def _cmd_recover(args: argparse.Namespace) -> None:
    recorder = get_recorder()
    if not recorder.is_recovered:
        print("No recoverable session.")
        return
    session = recorder.get_session()
    print(f"Recovered session {session.id} with {len(session.actions)} action(s)")
    _print_result(recorder.stop_recording_sync())


def _cmd_list(args: argparse.Namespace) -> None:
    from flow_recorder.library import list_recordings

    rows = [
        [r["id"], r["name"], r["platform"], str(r["action_count"]), r["status"],
         (r["started_at"] or "")[:19]]
        for r in list_recordings()
    ]
    print(_format_table(["ID", "Name", "Platform", "Actions", "Status", "Started"], rows))


def _cmd_show(args: argparse.Namespace) -> None:
    from flow_recorder.library import get_recording

    try:
        recording = get_recording(args.recording_id)
    except (KeyError, ValueError) as exc:
        print(f"Show failed: {exc}")
        return
    session = recording["session"]
    print(f"{session.get('name', '')} ({session.get('id', args.recording_id)})")
    print(f"Screenshots: {len(recording['screenshots'])}")
    print()
    print(recording["flow_code"] or "(no flow file)")


def _cmd_replay(args: argparse.Namespace) -> None:
    from flow_recorder.library import replay_recording

    try:
        result = asyncio.run(replay_recording(args.recording_id, device=args.device))
    except (KeyError, ValueError) as exc:
        print(f"Replay failed: {exc}")
        return
    status = "PASSED" if result.success else "FAILED"
    print(f"Replay {status} in {result.duration_ms / 1000:.1f}s")
    if result.error:
        print(f"Error: {result.error}")


def _cmd_delete(args: argparse.Namespace) -> None:
    from flow_recorder.library import delete_recording

    try:
        delete_recording(args.recording_id)
        print(f"Deleted {args.recording_id}")
    except (KeyError, ValueError) as exc:
        print(f"Delete failed: {exc}")


def _cmd_parse(args: argparse.Namespace) -> None:
    try:
        text = Path(args.file).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Cannot read {args.file}: {exc}")
        return
    parsed = parse_flow_yaml(text)
    print(json.dumps({
        "app_id": parsed.app_id,
        "actions": [a.to_dict() for a in parsed.actions],
    }, indent=2))


def _cmd_tap(args: argparse.Namespace) -> None:
    bridge = get_bridge(args.platform)
    result = asyncio.run(bridge.inject_tap(args.device, args.x, args.y, app_id=args.app or None))
    if result.success:
        print(f"Tapped ({args.x}, {args.y}) in {result.duration_ms:.0f}ms")
    else:
        print(f"Tap failed: {result.error}")
        sys.exit(1)


# ===================================================================
# CLI ENTRY POINT
# ===================================================================

def main() -> None:
    """CLI entry point for the flow recorder."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    parser = argparse.ArgumentParser(
        prog="flow-recorder",
        description="Record mobile sessions as Maestro flows",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp_devices = subparsers.add_parser("devices", help="List connected devices")
    sp_devices.set_defaults(func=_cmd_devices)

    sp_maestro = subparsers.add_parser("maestro", help="Check the Maestro installation")
    sp_maestro.set_defaults(func=_cmd_maestro)

    sp_record = subparsers.add_parser("record", help="Record a session")
    sp_record.add_argument("name", help="Name for the recording")
    sp_record.add_argument("--device", type=str, default="", help="Device id (default: first found)")
    sp_record.add_argument("--device-name", type=str, default="", help="Display name for the device")
    sp_record.add_argument("--platform", choices=["android", "ios"], default="android")
    sp_record.add_argument("--app", type=str, default="", help="App id under test")
    sp_record.add_argument("--manual", action="store_true", help="Skip maestro record")
    sp_record.add_argument("--duration", type=float, default=0, help="Stop after N seconds")
    sp_record.set_defaults(func=_cmd_record)

    sp_recover = subparsers.add_parser("recover", help="Finalize a session left by a crash")
    sp_recover.set_defaults(func=_cmd_recover)

    sp_list = subparsers.add_parser("list", help="List recordings")
    sp_list.set_defaults(func=_cmd_list)

    sp_show = subparsers.add_parser("show", help="Show a recording and its flow")
    sp_show.add_argument("recording_id")
    sp_show.set_defaults(func=_cmd_show)

    sp_replay = subparsers.add_parser("replay", help="Replay a recording with maestro test")
    sp_replay.add_argument("recording_id")
    sp_replay.add_argument("--device", type=str, default=None)
    sp_replay.set_defaults(func=_cmd_replay)

    sp_delete = subparsers.add_parser("delete", help="Delete a recording")
    sp_delete.add_argument("recording_id")
    sp_delete.set_defaults(func=_cmd_delete)

    sp_parse = subparsers.add_parser("parse", help="Parse a flow file into actions")
    sp_parse.add_argument("file")
    sp_parse.set_defaults(func=_cmd_parse)

    sp_tap = subparsers.add_parser("tap", help="Inject a single tap")
    sp_tap.add_argument("x", type=int)
    sp_tap.add_argument("y", type=int)
    sp_tap.add_argument("--device", required=True)
    sp_tap.add_argument("--platform", choices=["android", "ios"], default="android")
    sp_tap.add_argument("--app", type=str, default="")
    sp_tap.set_defaults(func=_cmd_tap)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
