"""Session workspace contract and the local filesystem implementation."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Protocol

import msgspec

from gdbuild.config import Settings
from gdbuild.core.errors import InvalidSessionError

logger = logging.getLogger(__name__)

GAME_JSON_FILENAME = "game.json"
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_ACTIVE_WINDOW_SECONDS = 3600


class SessionWorkspace(Protocol):
  """Storage contract for per-session project directories."""

  def project_dir(self, session_id: str) -> Path:
    """Return the directory that holds the session's project files."""

  def materialize(self, session_id: str, game_json: dict[str, Any], *, filename: str = GAME_JSON_FILENAME) -> Path:
    """Write the game document into the project directory and return its path."""

  def active_session_count(self) -> int:
    """Return how many sessions were touched recently."""


def validate_session_id(session_id: str) -> str:
  """Reject ids that could escape the sessions directory."""
  if not isinstance(session_id, str) or not _SESSION_ID_PATTERN.match(session_id) or ".." in session_id:
    raise InvalidSessionError(f"Invalid session id: {session_id!r}")
  return session_id


class LocalSessionWorkspace:
  """Session directories under ``<storage_root>/<sessions_path>``."""

  def __init__(self, root: Path, *, active_window_seconds: int = _ACTIVE_WINDOW_SECONDS) -> None:
    self._root = root
    self._active_window_seconds = active_window_seconds
    self._encoder = msgspec.json.Encoder()

  @classmethod
  def from_settings(cls, settings: Settings) -> LocalSessionWorkspace:
    return cls(settings.sessions_dir)

  @property
  def root(self) -> Path:
    return self._root

  def project_dir(self, session_id: str) -> Path:
    return self._root / validate_session_id(session_id)

  def materialize(self, session_id: str, game_json: dict[str, Any], *, filename: str = GAME_JSON_FILENAME) -> Path:
    project_dir = self.project_dir(session_id)
    project_dir.mkdir(parents=True, exist_ok=True)
    target = project_dir / filename
    # Write then rename so the CLI never reads a half-written document.
    staging = target.with_suffix(".json.tmp")
    staging.write_bytes(self._encoder.encode(game_json))
    staging.replace(target)
    logger.debug("Materialized game JSON for session %s at %s", session_id, target)
    return target

  def active_session_count(self) -> int:
    if not self._root.is_dir():
      return 0
    cutoff = time.time() - self._active_window_seconds
    count = 0
    for entry in self._root.iterdir():
      try:
        if entry.is_dir() and entry.stat().st_mtime >= cutoff:
          count += 1
      except FileNotFoundError:
        continue
    return count
