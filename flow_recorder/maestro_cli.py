"""
Maestro CLI integration — command resolution, test runs, and one-off
invocations outside of recording.

Maestro writes its logs to a fixed location, so concurrent one-off
invocations (tap injection, replays) corrupt each other.  They are queued
through ``MaestroInvocationLock``: one in flight at a time, FIFO.

Usage:
    from flow_recorder.maestro_cli import resolve_maestro_command, run_maestro_test

    command = await resolve_maestro_command()
    result = await run_maestro_test("data/maestro-recordings/<id>/test.yaml",
                                    device="emulator-5554")
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from flow_recorder.actions import TapAction
from flow_recorder.config import MAESTRO_PATH, MAESTRO_TEST_TIMEOUT, MAESTRO_VERSION_TIMEOUT
from flow_recorder.device_bridge import BridgeResult, run_command
from flow_recorder.flow_synthesizer import generate_flow_yaml

logger = logging.getLogger("maestro_cli")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAESTRO_HOME_BINARY = Path.home() / ".maestro" / "bin" / "maestro"
HOMEBREW_BINARIES = ("/opt/homebrew/bin/maestro", "/usr/local/bin/maestro")
DEFAULT_TAP_APP_ID = "com.apple.springboard"
ZOMBIE_PATTERNS = ("maestro test", "maestro record")
ONE_OFF_TAP_TIMEOUT = 30.0


# ===================================================================
# Resolution
# ===================================================================

def maestro_command_candidates() -> List[str]:
    """Places to look for the maestro binary, most specific first."""
    candidates: List[str] = []
    for candidate in (MAESTRO_PATH, str(MAESTRO_HOME_BINARY), *HOMEBREW_BINARIES, "maestro"):
        if candidate and candidate not in candidates:
            candidates.append(candidate)
    return candidates


async def resolve_maestro_command(
    timeout: float = MAESTRO_VERSION_TIMEOUT,
) -> Optional[str]:
    """Return the first candidate whose ``--version`` exits cleanly."""
    for candidate in maestro_command_candidates():
        if os.sep in candidate and not Path(candidate).exists():
            continue
        result = await run_command([candidate, "--version"], timeout=timeout)
        if result.success:
            return candidate
        logger.debug("maestro candidate %s not runnable: %s", candidate, result.error)
    return None


async def is_maestro_runnable() -> bool:
    return await resolve_maestro_command() is not None


async def get_maestro_version() -> Optional[str]:
    command = await resolve_maestro_command()
    if command is None:
        return None
    result = await run_command([command, "--version"], timeout=MAESTRO_VERSION_TIMEOUT)
    if not result.success:
        return None
    return result.output.strip() or None


# ===================================================================
# Test runs
# ===================================================================

@dataclass
class MaestroTestResult:
    """Outcome of ``maestro test``."""

    success: bool = False
    flow_path: str = ""
    output: str = ""
    error: Optional[str] = None
    duration_ms: float = 0.0
    report_path: Optional[str] = None
    screenshots: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def run_maestro_test(
    flow_path: Union[str, Path],
    device: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = MAESTRO_TEST_TIMEOUT,
    output_dir: Optional[Union[str, Path]] = None,
    command: Optional[str] = None,
) -> MaestroTestResult:
    """Run a flow with ``maestro test``; failures come back in the result."""
    flow_path = Path(flow_path)
    if not flow_path.exists():
        return MaestroTestResult(flow_path=str(flow_path),
                                 error=f"Flow file not found: {flow_path}")

    command = command or await resolve_maestro_command()
    if command is None:
        return MaestroTestResult(flow_path=str(flow_path), error="Maestro CLI not found")

    args = [command]
    if device:
        args.extend(["--device", device])
    args.extend(["test", str(flow_path)])
    for key, value in (env or {}).items():
        args.extend(["-e", f"{key}={value}"])

    report_path: Optional[Path] = None
    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        report_path = output_dir / "report.xml"
        args.extend(["--format", "junit", "--output", str(report_path)])

    logger.info("Running maestro test: %s", flow_path)
    result = await run_command(args, timeout=timeout)
    screenshots = (
        sorted(str(p) for p in Path(output_dir).glob("*.png")) if output_dir is not None else []
    )
    if not result.success:
        logger.warning("maestro test failed for %s: %s", flow_path, result.error)

    return MaestroTestResult(
        success=result.success,
        flow_path=str(flow_path),
        output=result.output,
        error=result.error,
        duration_ms=result.duration_ms,
        report_path=str(report_path) if report_path and report_path.exists() else None,
        screenshots=screenshots,
    )


async def kill_zombie_maestro_processes(
    patterns: Sequence[str] = ZOMBIE_PATTERNS,
) -> None:
    """Best-effort ``pkill -f`` of leftover maestro processes."""
    for pattern in patterns:
        result = await run_command(["pkill", "-f", pattern], timeout=5)
        # pkill exits 1 when nothing matched
        if result.success:
            logger.info("Killed leftover '%s' processes", pattern)


# ===================================================================
# One-off invocation queue
# ===================================================================

class MaestroInvocationLock:
    """FIFO acquire/release queue for one-off maestro invocations."""

    def __init__(self) -> None:
        self._lock: Optional[asyncio.Lock] = None
        self._waiting = 0

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def locked(self) -> bool:
        return self._lock is not None and self._lock.locked()

    @property
    def waiting(self) -> int:
        return self._waiting

    async def acquire(self) -> None:
        self._waiting += 1
        try:
            await self._get_lock().acquire()
        finally:
            self._waiting -= 1

    def release(self) -> None:
        self._get_lock().release()

    async def __aenter__(self) -> MaestroInvocationLock:
        await self.acquire()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.release()


_invocation_lock: Optional[MaestroInvocationLock] = None


def get_invocation_lock() -> MaestroInvocationLock:
    global _invocation_lock
    if _invocation_lock is None:
        _invocation_lock = MaestroInvocationLock()
    return _invocation_lock


async def tap_via_maestro(
    device_id: str,
    x: int,
    y: int,
    app_id: Optional[str] = None,
    lock: Optional[MaestroInvocationLock] = None,
    timeout: float = ONE_OFF_TAP_TIMEOUT,
) -> BridgeResult:
    """Inject a tap by running a throwaway one-command flow."""
    lock = lock or get_invocation_lock()
    flow_text = generate_flow_yaml(
        [TapAction(x=x, y=y, description=f"Tap at ({x}, {y})")],
        app_id=app_id or DEFAULT_TAP_APP_ID,
        name="one-off tap",
    )

    async with lock:
        fd, tmp_name = tempfile.mkstemp(prefix="maestro-tap-", suffix=".yaml")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(flow_text)
            result = await run_maestro_test(tmp_path, device=device_id, timeout=timeout)
        finally:
            tmp_path.unlink(missing_ok=True)
            await kill_zombie_maestro_processes(("maestro test",))

    return BridgeResult(
        success=result.success,
        output=result.output,
        error=result.error,
        duration_ms=result.duration_ms,
    )
