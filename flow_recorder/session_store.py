"""
Session Store & Crash Recovery.

Owns the single live RecordingSession of the process.  Every change to the
action list is mirrored, best-effort, to three files:

    <recordings>/<id>/test.yaml      — the generated flow (manual capture)
    <recordings>/<id>/session.json   — metadata read by listings
    <data>/.maestro-pending-session.json — the pending snapshot

Writes are atomic (temp file + ``os.replace``) and a failed write is logged,
never raised, so durability degrades without interrupting recording.  On
construction the store reloads a pending snapshot whose status is still
``recording`` as a *recovered* session: its history can be stopped and
exported, but no new actions can be captured.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from flow_recorder.actions import LaunchAction, RecordedAction, action_from_dict
from flow_recorder.config import (
    FLOW_FILENAME,
    PENDING_SESSION_FILE,
    RECORDINGS_DIR,
    SCREENSHOTS_SUBDIR,
    SESSION_METADATA_FILENAME,
    VIDEO_FILENAME,
)
from flow_recorder.device_bridge import Platform
from flow_recorder.flow_synthesizer import generate_flow_yaml

logger = logging.getLogger("session_store")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now_utc().isoformat()


def _new_session_id() -> str:
    return f"maestro_{int(_now_utc().timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(str(tmp), str(path))
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def _save_json(path: Path, data: Any) -> None:
    _write_atomic(path, json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordingError(RuntimeError):
    """Base exception for recording lifecycle errors."""


class RecordingInProgressError(RecordingError):
    """A session with live capture processes already exists."""


class NoActiveRecordingError(RecordingError):
    """The operation needs a session and there is none."""


class SessionSetupError(RecordingError):
    """Session directories could not be created."""


class SessionRecoveredError(RecordingError):
    """The session was restored from a snapshot and cannot capture actions."""


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    RECORDING = "recording"
    STOPPED = "stopped"
    ERROR = "error"


class CaptureMode(str, Enum):
    NATIVE = "native"
    MANUAL = "manual"


@dataclass
class RecordingSession:
    """A recording, live or finished."""

    id: str = field(default_factory=_new_session_id)
    name: str = ""
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    device_id: str = ""
    device_name: str = ""
    platform: Platform = Platform.ANDROID
    app_id: Optional[str] = None
    actions: List[RecordedAction] = field(default_factory=list)
    screenshots_dir: str = ""
    flow_path: Optional[str] = None
    video_path: Optional[str] = None
    capture_mode: CaptureMode = CaptureMode.MANUAL
    status: SessionStatus = SessionStatus.RECORDING

    @property
    def session_dir(self) -> Path:
        return Path(self.screenshots_dir).parent

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["platform"] = self.platform.value
        d["capture_mode"] = self.capture_mode.value
        d["status"] = self.status.value
        d["actions"] = [a.to_dict() for a in self.actions]
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RecordingSession:
        data = dict(data)
        raw_actions = data.pop("actions", [])
        valid = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid}
        session = cls(**filtered)
        session.platform = Platform(session.platform)
        session.capture_mode = CaptureMode(session.capture_mode)
        session.status = SessionStatus(session.status)
        for raw in raw_actions:
            try:
                session.actions.append(action_from_dict(raw))
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable action in session %s: %s", session.id, exc)
        return session


# ===================================================================
# SESSION STORE
# ===================================================================

class SessionStore:
    """Holds the one live session handle and mirrors it to disk."""

    def __init__(
        self,
        recordings_dir: Optional[Path] = None,
        pending_file: Optional[Path] = None,
        recover: bool = True,
    ) -> None:
        self.recordings_dir = Path(recordings_dir if recordings_dir is not None else RECORDINGS_DIR)
        self.pending_file = Path(pending_file if pending_file is not None else PENDING_SESSION_FILE)
        self._session: Optional[RecordingSession] = None
        self._recovered = False
        if recover:
            self.recover()

    @property
    def active(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def is_recovered(self) -> bool:
        return self._session is not None and self._recovered

    def require_active(self) -> RecordingSession:
        if self._session is None:
            raise NoActiveRecordingError("No active recording")
        return self._session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def recover(self) -> Optional[RecordingSession]:
        """Load a pending snapshot left behind by a crashed process."""
        if not self.pending_file.exists():
            return None
        try:
            data = json.loads(self.pending_file.read_text(encoding="utf-8"))
            session = RecordingSession.from_dict(data)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable pending snapshot %s: %s", self.pending_file, exc)
            self.clear_pending_snapshot()
            return None

        if session.status != SessionStatus.RECORDING:
            self.clear_pending_snapshot()
            return None

        self._session = session
        self._recovered = True
        logger.info("Recovered session %s (%d action(s)) from pending snapshot",
                    session.id, len(session.actions))
        return session

    def create_session(
        self,
        name: str,
        device_id: str,
        device_name: str,
        platform: Any,
        app_id: Optional[str] = None,
    ) -> RecordingSession:
        """Create the session directories and make the new session live.

        Raises SessionSetupError without leaving anything behind when the
        directories cannot be created.
        """
        session = RecordingSession(
            name=name,
            device_id=device_id,
            device_name=device_name,
            platform=Platform(platform),
            app_id=app_id or None,
        )
        session_dir = self.recordings_dir / session.id
        screenshots_dir = session_dir / SCREENSHOTS_SUBDIR
        try:
            screenshots_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            shutil.rmtree(session_dir, ignore_errors=True)
            raise SessionSetupError(f"Cannot create session directory {session_dir}: {exc}") from exc

        session.screenshots_dir = str(screenshots_dir)
        session.flow_path = str(session_dir / FLOW_FILENAME)
        session.video_path = str(session_dir / VIDEO_FILENAME)

        self._session = session
        self._recovered = False
        logger.info("Created session %s in %s", session.id, session_dir)
        return session

    def discard(self) -> None:
        """Drop the current session without finalizing it."""
        if self._session is not None:
            logger.info("Discarding stale session %s", self._session.id)
        self._session = None
        self._recovered = False
        self.clear_pending_snapshot()

    def release(self) -> Optional[RecordingSession]:
        """Detach and return the current session after a clean stop."""
        session = self._session
        self._session = None
        self._recovered = False
        return session

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_action(self, action: RecordedAction, write_flow: bool = True) -> None:
        """Append *action* and mirror the session to disk (best effort)."""
        session = self.require_active()
        session.actions.append(action)
        if isinstance(action, LaunchAction) and action.app_id and not session.app_id:
            session.app_id = action.app_id
        self.persist(write_flow=write_flow)

    def persist(self, write_flow: bool = True) -> None:
        session = self.require_active()
        if write_flow:
            self.write_flow(self.render_flow(session))
        self.write_session_metadata()
        self.save_pending_snapshot()

    @staticmethod
    def render_flow(session: RecordingSession) -> str:
        return generate_flow_yaml(
            session.actions,
            app_id=session.app_id,
            name=session.name,
            recorded_at=session.started_at,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def write_flow(self, text: str) -> bool:
        session = self.require_active()
        if not session.flow_path:
            return False
        try:
            _write_atomic(Path(session.flow_path), text)
            return True
        except OSError as exc:
            logger.warning("Failed to write flow file %s: %s", session.flow_path, exc)
            return False

    def read_flow(self) -> Optional[str]:
        session = self.require_active()
        if not session.flow_path:
            return None
        try:
            return Path(session.flow_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read flow file %s: %s", session.flow_path, exc)
            return None

    def write_session_metadata(self) -> bool:
        session = self.require_active()
        path = session.session_dir / SESSION_METADATA_FILENAME
        try:
            _save_json(path, session.to_dict())
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write session metadata %s: %s", path, exc)
            return False

    def save_pending_snapshot(self) -> bool:
        session = self.require_active()
        try:
            _save_json(self.pending_file, session.to_dict())
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write pending snapshot: %s", exc)
            return False

    def clear_pending_snapshot(self) -> None:
        try:
            self.pending_file.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove pending snapshot: %s", exc)
