"""Shared fixtures: isolated settings, a scriptable fake GDevelop CLI and game documents."""

from __future__ import annotations

import shlex
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from gdbuild.config import Settings, load_settings

# The fake CLI picks its behaviour from ``properties.description`` in the game document.
FAKE_CLI_SOURCE = textwrap.dedent(
  """
  import json
  import os
  import signal
  import sys
  import time
  from pathlib import Path

  args = sys.argv[1:]
  if args == ["--version"]:
    print("gdexport 5.4.0 (fake)")
    sys.exit(0)

  game_path = Path(args[0])
  output = Path(args[args.index("--output") + 1])
  game = json.loads(game_path.read_text())
  behavior = game.get("properties", {}).get("description", "ok")

  calls = Path(__file__).with_name("calls.log")
  with calls.open("a") as handle:
    handle.write(behavior + "\\n")
  count = calls.read_text().splitlines().count(behavior)

  def succeed():
    output.mkdir(parents=True, exist_ok=True)
    (output / "index.html").write_text("<html><body>" + game["properties"]["name"] + "</body></html>")
    (output / "code0.js").write_text("var x = 1;" * 200)
    (output / "cli-args.txt").write_text(" ".join(args[1:]))
    print("Export completed")
    sys.exit(0)

  if behavior == "ok":
    succeed()
  if behavior == "slow":
    time.sleep(0.5)
    succeed()
  if behavior == "hang":
    time.sleep(60)
  if behavior == "enoent":
    sys.stderr.write("ENOENT: gdexport not found")
    sys.exit(1)
  if behavior == "timeout-twice":
    if count <= 2:
      sys.exit(124)
    succeed()
  if behavior == "sigkill-once":
    if count <= 1:
      os.kill(os.getpid(), signal.SIGKILL)
    succeed()
  if behavior == "busy":
    sys.stderr.write("Error: resource busy, try again")
    sys.exit(1)
  if behavior == "corrupt":
    sys.stderr.write("Error: invalid project structure")
    sys.exit(2)
  if behavior == "no-index":
    print("nothing to do")
    sys.exit(0)
  sys.stderr.write("unexpected behaviour " + behavior)
  sys.exit(3)
  """
)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def fake_cli(tmp_path: Path) -> Path:
  script = tmp_path / "bin" / "fake_gdexport.py"
  script.parent.mkdir(parents=True, exist_ok=True)
  script.write_text(FAKE_CLI_SOURCE, encoding="utf-8")
  return script


@pytest.fixture
def cli_calls(fake_cli: Path) -> Callable[[], list[str]]:
  """Return a reader for the behaviours the fake CLI has executed so far."""

  def _read() -> list[str]:
    log = fake_cli.with_name("calls.log")
    if not log.exists():
      return []
    return log.read_text().splitlines()

  return _read


@pytest.fixture
def make_settings(tmp_path: Path, fake_cli: Path) -> Callable[..., Settings]:
  """Build settings rooted in ``tmp_path``; keyword overrides use GDEVELOP_* names without the prefix."""

  def _make(**overrides: Any) -> Settings:
    env = {
      "GDEVELOP_STORAGE_ROOT": str(tmp_path / "storage"),
      "GDEVELOP_LOG_DIR": str(tmp_path / "logs"),
      "GDEVELOP_CLI_PATH": shlex.join([sys.executable, str(fake_cli)]),
      "GDEVELOP_RETRY_DELAY": "0.01",
      "GDEVELOP_QUEUE_RETRY_DELAY": "1",
      "GDEVELOP_QUEUE_RETRY_ATTEMPTS": "1",
      "GDEVELOP_MONITORING_ENABLED": "false",
      "GDEVELOP_HEALTH_CHECK_TIMEOUT": "10",
    }
    env.update({f"GDEVELOP_{key.upper()}": str(value) for key, value in overrides.items()})
    return load_settings(env)

  return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
  return make_settings()
