"""Unit tests for log file naming and formatting."""

from __future__ import annotations

import logging
import sys

from gdbuild.core.logging import LOG_LINE_FORMAT, TruncatedFormatter, _rotated_name


def test_rotated_name_uses_dash_suffix() -> None:
  assert _rotated_name("/var/log/gdbuild_20260101_000000.log.3") == "/var/log/gdbuild_20260101_000000.log-3"
  assert _rotated_name("/var/log/gdbuild.txt") == "/var/log/gdbuild.txt"


def _deep(depth: int) -> None:
  if depth == 0:
    raise RuntimeError("cli crashed")
  _deep(depth - 1)


def test_truncated_formatter_keeps_tail_of_traceback() -> None:
  try:
    _deep(10)
  except RuntimeError:
    exc_info = sys.exc_info()
  record = logging.LogRecord("gdbuild", logging.ERROR, __file__, 1, "build failed", None, exc_info)
  formatted = TruncatedFormatter(LOG_LINE_FORMAT).format(record)
  assert "    ...\n" in formatted
  assert formatted.rstrip().endswith("RuntimeError: cli crashed")
