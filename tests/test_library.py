"""Test library — listing, editing, deleting and replaying recordings."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

try:
    from flow_recorder.actions import TapAction
    from flow_recorder.library import (
        delete_recording,
        get_recording,
        list_recordings,
        replay_recording,
        save_flow,
    )
    from flow_recorder.maestro_cli import MaestroTestResult
    HAS_MODULE = True
except ImportError:
    HAS_MODULE = False

pytestmark = pytest.mark.skipif(not HAS_MODULE, reason="library not available")


def _finished(store, name, started_at):
    session = store.create_session(name=name, device_id="emulator-5554",
                                   device_name="Pixel 7", platform="android")
    session.started_at = started_at
    store.append_action(TapAction(x=1, y=2).with_capture("action_001", started_at))
    Path(session.screenshots_dir, "action_001.png").write_bytes(b"png")
    store.clear_pending_snapshot()
    store.release()
    return session


class TestListing:
    def test_newest_first(self, store, recordings_dir):
        old = _finished(store, "Old", "2026-01-01T00:00:00+00:00")
        new = _finished(store, "New", "2026-02-01T00:00:00+00:00")
        summaries = list_recordings(recordings_dir)
        assert [s["id"] for s in summaries] == [new.id, old.id]
        assert summaries[0]["action_count"] == 1
        assert summaries[0]["platform"] == "android"

    def test_skips_unreadable_metadata(self, store, recordings_dir):
        good = _finished(store, "Good", "2026-01-01T00:00:00+00:00")
        broken = recordings_dir / "maestro_broken"
        broken.mkdir()
        (broken / "session.json").write_text("{not json")
        assert [s["id"] for s in list_recordings(recordings_dir)] == [good.id]

    def test_missing_root(self, tmp_path):
        assert list_recordings(tmp_path / "nowhere") == []


class TestShowAndEdit:
    def test_get_recording(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        recording = get_recording(session.id, recordings_dir)
        assert recording["session"]["name"] == "Login"
        assert "tapOn" in recording["flow_code"]
        assert recording["screenshots"] == [str(Path(session.screenshots_dir) / "action_001.png")]

    def test_unknown_recording(self, recordings_dir):
        with pytest.raises(KeyError):
            get_recording("maestro_missing", recordings_dir)

    @pytest.mark.parametrize("bad_id", ["", "..", "../etc", "a/b"])
    def test_rejects_path_traversal(self, recordings_dir, bad_id):
        with pytest.raises(ValueError):
            get_recording(bad_id, recordings_dir)

    def test_save_flow(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        code = "appId: com.example.app\n---\n- tapOn: \"OK\"\n"
        path = save_flow(session.id, code, recordings_dir)
        assert path.read_text(encoding="utf-8") == code

    def test_save_invalid_flow(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        before = Path(session.flow_path).read_text(encoding="utf-8")
        with pytest.raises(ValueError):
            save_flow(session.id, "- tapOn: [unclosed\n", recordings_dir)
        assert Path(session.flow_path).read_text(encoding="utf-8") == before

    def test_delete(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        delete_recording(session.id, recordings_dir)
        assert not (recordings_dir / session.id).exists()
        with pytest.raises(KeyError):
            delete_recording(session.id, recordings_dir)


class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_runs_flow(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        outcome = MaestroTestResult(success=True, flow_path=session.flow_path)
        with patch("flow_recorder.library.run_maestro_test",
                   AsyncMock(return_value=outcome)) as mock_run:
            result = await replay_recording(session.id, device="emulator-5554",
                                            recordings_dir=recordings_dir)
        assert result.success
        args, kwargs = mock_run.call_args
        assert args[0] == Path(session.flow_path)
        assert kwargs["device"] == "emulator-5554"
        assert kwargs["output_dir"].parent == recordings_dir / session.id / "replays"

    @pytest.mark.asyncio
    async def test_replay_without_flow(self, store, recordings_dir):
        session = _finished(store, "Login", "2026-01-01T00:00:00+00:00")
        Path(session.flow_path).unlink()
        with pytest.raises(KeyError):
            await replay_recording(session.id, recordings_dir=recordings_dir)
