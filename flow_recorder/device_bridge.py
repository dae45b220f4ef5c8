"""
Device bridges — adb for Android emulators, xcrun simctl / idb for iOS
simulators.

Every command runs as a subprocess with a bounded timeout.  Command failures
(non-zero exit, missing binary, timeout) come back as a failed
``BridgeResult``; they never raise and never change session state.
Long-running streams (``getevent``, screen recording) are returned as live
``asyncio.subprocess.Process`` handles owned by the caller.

Usage:
    from flow_recorder.device_bridge import get_bridge, list_all_devices

    devices = await list_all_devices()
    bridge = get_bridge("android")
    result = await bridge.capture_screenshot("emulator-5554", Path("shot.png"))
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from flow_recorder.config import (
    ADB_PATH,
    ANDROID_SCREENRECORD_LIMIT,
    ANDROID_VIDEO_REMOTE_PATH,
    BRIDGE_COMMAND_TIMEOUT,
    DEVICE_PULL_TIMEOUT,
    FORCE_KILL_GRACE,
    IDB_PATH,
    TAP_TIMEOUT,
    XCRUN_PATH,
)

logger = logging.getLogger("device_bridge")


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"


# ===================================================================
# Data Models
# ===================================================================

@dataclass
class DeviceInfo:
    """A connected emulator or booted simulator."""

    device_id: str
    name: str
    platform: Platform
    status: str = "device"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "platform": self.platform.value,
            "status": self.status,
        }


@dataclass
class BridgeResult:
    """Outcome of a single bridge command."""

    success: bool = False
    output: str = ""
    error: Optional[str] = None
    duration_ms: float = 0.0
    data: bytes = field(default=b"", repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


# ===================================================================
# Subprocess helper
# ===================================================================

async def run_command(
    args: Sequence[str],
    timeout: float = BRIDGE_COMMAND_TIMEOUT,
) -> BridgeResult:
    """Run *args* to completion, bounded by *timeout* seconds."""
    started = time.monotonic()

    def elapsed() -> float:
        return round((time.monotonic() - started) * 1000, 1)

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return BridgeResult(success=False, error=f"{args[0]} not found", duration_ms=elapsed())
    except OSError as exc:
        return BridgeResult(success=False, error=f"Failed to start {args[0]}: {exc}",
                            duration_ms=elapsed())

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        # Reap the killed child so it does not linger as a zombie.
        try:
            await asyncio.wait_for(proc.wait(), timeout=FORCE_KILL_GRACE)
        except asyncio.TimeoutError:
            logger.warning("Killed process %s did not exit: %s", proc.pid, args[0])
        logger.debug("Command timed out after %.0fs: %s", timeout, " ".join(args))
        return BridgeResult(success=False, error=f"Timed out after {timeout:g}s",
                            duration_ms=elapsed())

    stdout = stdout or b""
    output = stdout.decode("utf-8", errors="replace")
    if proc.returncode == 0:
        return BridgeResult(success=True, output=output, data=stdout, duration_ms=elapsed())

    err_text = (stderr or b"").decode("utf-8", errors="replace").strip()
    return BridgeResult(
        success=False,
        output=output,
        error=err_text or f"Exit code {proc.returncode}",
        duration_ms=elapsed(),
    )


# ===================================================================
# Output parsers
# ===================================================================

def parse_adb_devices(output: str) -> List[DeviceInfo]:
    """Parse ``adb devices -l`` output, keeping devices in the ``device`` state."""
    devices: List[DeviceInfo] = []
    for line in output.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2 or parts[1] != "device":
            continue
        name = parts[0]
        for token in parts[2:]:
            if token.startswith("model:"):
                name = token[len("model:"):].replace("_", " ")
                break
        devices.append(DeviceInfo(device_id=parts[0], name=name,
                                  platform=Platform.ANDROID, status=parts[1]))
    return devices


def parse_simctl_devices(output: str) -> List[DeviceInfo]:
    """Parse ``xcrun simctl list devices -j`` output, keeping booted simulators."""
    try:
        data = json.loads(output or "{}")
    except json.JSONDecodeError:
        logger.warning("simctl returned invalid JSON")
        return []
    devices: List[DeviceInfo] = []
    for entries in data.get("devices", {}).values():
        for entry in entries:
            if entry.get("state") != "Booted":
                continue
            devices.append(DeviceInfo(
                device_id=entry.get("udid", ""),
                name=entry.get("name", ""),
                platform=Platform.IOS,
                status="booted",
            ))
    return devices


def parse_wm_size(output: str) -> Optional[Tuple[int, int]]:
    """Parse ``wm size`` output; an override size wins over the physical one."""
    sizes: Dict[str, Tuple[int, int]] = {}
    for line in output.splitlines():
        label, _, value = line.partition(":")
        width, sep, height = value.strip().partition("x")
        if not sep:
            continue
        try:
            sizes[label.strip().lower()] = (int(width), int(height))
        except ValueError:
            continue
    return sizes.get("override size") or sizes.get("physical size")


# ===================================================================
# Android
# ===================================================================

class AndroidBridge:
    """adb-backed bridge.  Screen recordings buffer on the device."""

    platform = Platform.ANDROID
    supports_raw_events = True

    def __init__(self, adb_path: str = ADB_PATH) -> None:
        self.adb_path = adb_path

    def _adb(self, device_id: str, *args: str) -> List[str]:
        return [self.adb_path, "-s", device_id, *args]

    async def list_devices(self) -> List[DeviceInfo]:
        result = await run_command([self.adb_path, "devices", "-l"])
        if not result.success:
            logger.warning("adb devices failed: %s", result.error)
            return []
        return parse_adb_devices(result.output)

    async def screen_size(self, device_id: str) -> Optional[Tuple[int, int]]:
        result = await run_command(self._adb(device_id, "shell", "wm", "size"))
        if not result.success:
            return None
        return parse_wm_size(result.output)

    async def capture_screenshot(self, device_id: str, path: Path) -> BridgeResult:
        result = await run_command(self._adb(device_id, "exec-out", "screencap", "-p"))
        if not result.success:
            return result
        if not result.data:
            return BridgeResult(success=False, error="Empty screenshot",
                                duration_ms=result.duration_ms)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(result.data)
        except OSError as exc:
            return BridgeResult(success=False, error=f"Cannot write {path}: {exc}",
                                duration_ms=result.duration_ms)
        return BridgeResult(success=True, output=str(path), duration_ms=result.duration_ms)

    async def pull_file(
        self,
        device_id: str,
        remote_path: str,
        local_path: Path,
        timeout: float = DEVICE_PULL_TIMEOUT,
    ) -> BridgeResult:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        return await run_command(
            self._adb(device_id, "pull", remote_path, str(local_path)), timeout=timeout,
        )

    async def remove_file(self, device_id: str, remote_path: str) -> BridgeResult:
        return await run_command(self._adb(device_id, "shell", "rm", "-f", remote_path))

    async def inject_tap(
        self,
        device_id: str,
        x: int,
        y: int,
        app_id: Optional[str] = None,
        attempts: int = 2,
        timeout: float = TAP_TIMEOUT,
    ) -> BridgeResult:
        result = BridgeResult(success=False, error="No attempts made")
        for attempt in range(1, attempts + 1):
            result = await run_command(
                self._adb(device_id, "shell", "input", "tap", str(x), str(y)),
                timeout=timeout,
            )
            if result.success:
                return result
            logger.warning("Tap attempt %d/%d on %s failed: %s",
                           attempt, attempts, device_id, result.error)
        return result

    async def spawn_event_stream(self, device_id: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self._adb(device_id, "shell", "getevent", "-lt"),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def spawn_screen_recording(
        self, device_id: str, video_path: Path,
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self._adb(
                device_id, "shell", "screenrecord",
                "--time-limit", str(ANDROID_SCREENRECORD_LIMIT),
                ANDROID_VIDEO_REMOTE_PATH,
            ),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def finish_screen_recording(
        self,
        device_id: str,
        video_path: Path,
        timeout: float = DEVICE_PULL_TIMEOUT,
    ) -> BridgeResult:
        """Pull the on-device recording to *video_path* and delete it remotely."""
        result = await self.pull_file(device_id, ANDROID_VIDEO_REMOTE_PATH, video_path,
                                      timeout=timeout)
        if result.success:
            await self.remove_file(device_id, ANDROID_VIDEO_REMOTE_PATH)
        return result


# ===================================================================
# iOS
# ===================================================================

class IOSBridge:
    """simctl-backed bridge.  Simulators write files straight to the host."""

    platform = Platform.IOS
    supports_raw_events = False

    def __init__(self, xcrun_path: str = XCRUN_PATH, idb_path: str = IDB_PATH) -> None:
        self.xcrun_path = xcrun_path
        self.idb_path = idb_path

    def _simctl(self, *args: str) -> List[str]:
        return [self.xcrun_path, "simctl", *args]

    async def list_devices(self) -> List[DeviceInfo]:
        result = await run_command(self._simctl("list", "devices", "-j"))
        if not result.success:
            logger.warning("simctl list failed: %s", result.error)
            return []
        return parse_simctl_devices(result.output)

    async def screen_size(self, device_id: str) -> Optional[Tuple[int, int]]:
        return None

    async def capture_screenshot(self, device_id: str, path: Path) -> BridgeResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        result = await run_command(self._simctl("io", device_id, "screenshot", str(path)))
        if result.success and not path.exists():
            return BridgeResult(success=False, error="Screenshot file not written",
                                duration_ms=result.duration_ms)
        return result

    async def pull_file(
        self,
        device_id: str,
        remote_path: str,
        local_path: Path,
        timeout: float = DEVICE_PULL_TIMEOUT,
    ) -> BridgeResult:
        return BridgeResult(success=False, error="Simulators share the host filesystem")

    def has_idb(self) -> bool:
        return shutil.which(self.idb_path) is not None

    async def inject_tap(
        self,
        device_id: str,
        x: int,
        y: int,
        app_id: Optional[str] = None,
        timeout: float = TAP_TIMEOUT,
    ) -> BridgeResult:
        if self.has_idb():
            result = await run_command(
                [self.idb_path, "ui", "tap", str(x), str(y), "--udid", device_id],
                timeout=timeout,
            )
            if result.success:
                return result
            logger.warning("idb tap failed (%s), falling back to maestro", result.error)

        from flow_recorder.maestro_cli import tap_via_maestro

        return await tap_via_maestro(device_id, x, y, app_id=app_id)

    async def spawn_screen_recording(
        self, device_id: str, video_path: Path,
    ) -> asyncio.subprocess.Process:
        video_path.parent.mkdir(parents=True, exist_ok=True)
        return await asyncio.create_subprocess_exec(
            *self._simctl("io", device_id, "recordVideo", "--force", str(video_path)),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def finish_screen_recording(
        self,
        device_id: str,
        video_path: Path,
        timeout: float = DEVICE_PULL_TIMEOUT,
    ) -> BridgeResult:
        if video_path.exists():
            return BridgeResult(success=True, output=str(video_path))
        return BridgeResult(success=False, error="Video file not written")


DeviceBridge = Union[AndroidBridge, IOSBridge]


def get_bridge(platform: Union[str, Platform]) -> DeviceBridge:
    """Return the bridge for *platform* (``android`` or ``ios``)."""
    if Platform(platform) == Platform.ANDROID:
        return AndroidBridge()
    return IOSBridge()


async def list_all_devices() -> List[DeviceInfo]:
    """List Android and iOS devices concurrently."""
    android, ios = await asyncio.gather(
        AndroidBridge().list_devices(),
        IOSBridge().list_devices(),
    )
    return android + ios
