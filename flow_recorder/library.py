"""
Recording library — finished recordings on disk.

Each recording lives in ``<recordings>/<id>/`` with ``session.json``,
``test.yaml``, ``screenshots/`` and an optional ``recording.mp4``.  The
library lists, shows, edits, deletes and replays them without touching the
live session.
"""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from flow_recorder.config import (
    FLOW_FILENAME,
    RECORDINGS_DIR,
    SCREENSHOTS_SUBDIR,
    SESSION_METADATA_FILENAME,
)
from flow_recorder.flow_synthesizer import validate_flow_yaml
from flow_recorder.maestro_cli import MaestroTestResult, get_invocation_lock, run_maestro_test

logger = logging.getLogger("library")


def _recordings_root(recordings_dir: Optional[Path]) -> Path:
    return Path(recordings_dir if recordings_dir is not None else RECORDINGS_DIR)


def _recording_dir(recording_id: str, recordings_dir: Optional[Path] = None) -> Path:
    if not recording_id or "/" in recording_id or "\\" in recording_id or recording_id in (".", ".."):
        raise ValueError(f"Invalid recording id: {recording_id!r}")
    path = _recordings_root(recordings_dir) / recording_id
    if not path.is_dir():
        raise KeyError(f"Recording not found: {recording_id}")
    return path


def _load_metadata(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable %s: %s", path, exc)
        return None


def _summary(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": data.get("id", ""),
        "name": data.get("name", ""),
        "started_at": data.get("started_at", ""),
        "ended_at": data.get("ended_at"),
        "device_name": data.get("device_name", ""),
        "platform": data.get("platform", ""),
        "app_id": data.get("app_id"),
        "status": data.get("status", ""),
        "capture_mode": data.get("capture_mode", ""),
        "action_count": len(data.get("actions", [])),
        "flow_path": data.get("flow_path"),
        "video_path": data.get("video_path"),
    }


def list_recordings(recordings_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Summaries of every recording with a session.json, newest first."""
    root = _recordings_root(recordings_dir)
    if not root.is_dir():
        return []
    summaries = []
    for meta_path in root.glob(f"*/{SESSION_METADATA_FILENAME}"):
        data = _load_metadata(meta_path)
        if data:
            summaries.append(_summary(data))
    summaries.sort(key=lambda s: s["started_at"] or "", reverse=True)
    return summaries


def get_recording(recording_id: str, recordings_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Session metadata, flow code and screenshot paths of one recording."""
    rec_dir = _recording_dir(recording_id, recordings_dir)
    session = _load_metadata(rec_dir / SESSION_METADATA_FILENAME) or {}
    flow_file = rec_dir / FLOW_FILENAME
    flow_code = flow_file.read_text(encoding="utf-8") if flow_file.exists() else None
    screenshots = sorted(str(p) for p in (rec_dir / SCREENSHOTS_SUBDIR).glob("*.png"))
    return {"session": session, "flow_code": flow_code, "screenshots": screenshots}


def save_flow(recording_id: str, code: str, recordings_dir: Optional[Path] = None) -> Path:
    """Replace a recording's flow after checking it is valid YAML."""
    rec_dir = _recording_dir(recording_id, recordings_dir)
    error = validate_flow_yaml(code)
    if error:
        raise ValueError(f"Invalid flow YAML: {error}")
    flow_file = rec_dir / FLOW_FILENAME
    flow_file.write_text(code, encoding="utf-8")
    logger.info("Saved edited flow for %s", recording_id)
    return flow_file


def delete_recording(recording_id: str, recordings_dir: Optional[Path] = None) -> None:
    rec_dir = _recording_dir(recording_id, recordings_dir)
    shutil.rmtree(rec_dir)
    logger.info("Deleted recording %s", recording_id)


async def replay_recording(
    recording_id: str,
    device: Optional[str] = None,
    recordings_dir: Optional[Path] = None,
) -> MaestroTestResult:
    """Run the recording's flow with ``maestro test``, one replay at a time."""
    rec_dir = _recording_dir(recording_id, recordings_dir)
    flow_file = rec_dir / FLOW_FILENAME
    if not flow_file.exists():
        raise KeyError(f"Recording {recording_id} has no flow file")

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    async with get_invocation_lock():
        return await run_maestro_test(
            flow_file, device=device, output_dir=rec_dir / "replays" / stamp,
        )
