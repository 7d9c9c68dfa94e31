"""Unit tests for session workspaces."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from gdbuild.core.errors import InvalidSessionError
from gdbuild.services.workspace import LocalSessionWorkspace, validate_session_id


@pytest.mark.parametrize("session_id", ["", "../etc", "a/b", "..", ".hidden", "x" * 200, "a..b"])
def test_invalid_session_ids_are_rejected(session_id: str) -> None:
  with pytest.raises(InvalidSessionError):
    validate_session_id(session_id)


def test_materialize_writes_document(tmp_path: Path) -> None:
  workspace = LocalSessionWorkspace(tmp_path / "sessions")
  path = workspace.materialize("session-1", {"properties": {"name": "Demo"}})
  assert path == tmp_path / "sessions" / "session-1" / "game.json"
  assert json.loads(path.read_text()) == {"properties": {"name": "Demo"}}
  assert not list(path.parent.glob("*.tmp"))


def test_active_session_count_uses_recent_activity(tmp_path: Path) -> None:
  workspace = LocalSessionWorkspace(tmp_path / "sessions", active_window_seconds=3600)
  assert workspace.active_session_count() == 0
  workspace.materialize("fresh", {})
  stale = workspace.project_dir("stale")
  stale.mkdir(parents=True)
  stamp = time.time() - 7200
  os.utime(stale, (stamp, stamp))
  assert workspace.active_session_count() == 1
