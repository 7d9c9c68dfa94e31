import logging
import logging.handlers
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from gdbuild.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
_TRACEBACK_TAIL = 5
# Server loggers that would otherwise attach their own handlers.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

_log_file_path: Path | None = None


class TruncatedFormatter(logging.Formatter):
  """Keep the exception header and the innermost frames of long tracebacks."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) <= _TRACEBACK_TAIL + 1:
      return "".join(lines)
    return "".join([lines[0], "    ...\n", *lines[-_TRACEBACK_TAIL:]])


def _rotated_name(default_name: str) -> str:
  """Name backups ``gdbuild_x.log-1`` instead of ``gdbuild_x.log.1``."""
  base_filename, _, num = default_name.rpartition(".")
  if num.isdigit() and base_filename.endswith(".log"):
    return f"{base_filename}-{num}"
  return default_name


def _open_log_file(log_dir: Path) -> Path:
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"gdbuild_{time.strftime('%Y%m%d_%H%M%S')}.log"
    # Create the file up front so operators can tail it before the first flush.
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Cannot prepare log file under {log_dir}: {exc}") from exc
  return log_path


def _build_handlers(settings: Settings) -> tuple[list[logging.Handler], Path]:
  """Console handler plus a size-rotated file handler under ``settings.log_dir``."""
  log_path = _open_log_file(settings.log_dir)

  console = logging.StreamHandler(sys.stdout)
  console.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))

  rotating = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  rotating.namer = _rotated_name
  rotating.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return [console, rotating], log_path


def setup_logging(settings: Settings) -> Path:
  """Route the root logger and the server loggers through the same handlers."""
  handlers, log_path = _build_handlers(settings)
  level = logging.getLevelName(settings.log_level)
  if not isinstance(level, int):
    level = logging.INFO

  for name in _SERVER_LOGGERS:
    server_logger = logging.getLogger(name)
    server_logger.handlers = list(handlers)
    server_logger.propagate = False

  logging.basicConfig(level=level, handlers=handlers, force=True)
  return log_path


def _log_cli_configuration(logger: logging.Logger, settings: Settings) -> None:
  logger.info(
    "GDevelop CLI=%s pool_size=%d max_concurrent=%d storage_root=%s cache_enabled=%s",
    settings.cli_path,
    settings.process_pool_size,
    settings.max_concurrent_operations,
    settings.storage_root,
    settings.cache_enabled,
  )


def _initialize_logging(settings: Settings) -> None:
  """Configure logging once per process and record the effective build configuration."""
  global _log_file_path
  if _log_file_path is not None:
    return
  _log_file_path = setup_logging(settings)
  logger = logging.getLogger("gdbuild.core.logging")
  logger.info("Logging initialized. Writing to %s", _log_file_path)
  _log_cli_configuration(logger, settings)
