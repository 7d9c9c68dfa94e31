"""Optional ``.env`` support for local runs of the build engine."""

from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from pathlib import Path

ENV_PREFIX = "GDEVELOP_"
ENV_FILE_VARIABLE = "GDEVELOP_ENV_FILE"
_QUOTES = ("'", '"')


def env_file_path(environ: Mapping[str, str] | None = None) -> Path:
  """``GDEVELOP_ENV_FILE`` when set, otherwise ``.env`` next to the ``gdbuild`` package."""
  source = os.environ if environ is None else environ
  configured = source.get(ENV_FILE_VARIABLE, "").strip()
  if configured:
    return Path(configured).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
    return value[1:-1]
  # Unquoted values may carry a trailing ``# comment``.
  comment = value.find(" #")
  return value[:comment].rstrip() if comment != -1 else value


def parse_env_file(text: str, *, prefix: str = ENV_PREFIX) -> dict[str, str]:
  """
  Parse ``KEY=value`` lines, keeping only keys that start with ``prefix``.

  Blank lines, ``#`` comments and lines without ``=`` are skipped; a leading
  ``export`` is accepted so the same file can be sourced from a shell.
  """
  values: dict[str, str] = {}
  for line in text.splitlines():
    entry = line.strip()
    if entry.startswith("export "):
      entry = entry.removeprefix("export ").lstrip()
    name, separator, raw = entry.partition("=")
    name = name.strip()
    if not separator or not name.startswith(prefix):
      continue
    values[name] = _unquote(raw.strip())
  return values


def apply_env_file(path: Path, *, environ: MutableMapping[str, str] | None = None, override: bool = False) -> int:
  """Copy engine settings from ``path`` into ``environ``; returns how many were applied."""
  target = os.environ if environ is None else environ
  if not path.is_file():
    return 0
  applied = 0
  for name, value in parse_env_file(path.read_text(encoding="utf-8")).items():
    if name in target and not override:
      continue
    target[name] = value
    applied += 1
  return applied
