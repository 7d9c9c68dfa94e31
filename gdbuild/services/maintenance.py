"""Maintenance services for scheduled background cleanup tasks."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from gdbuild.config import Settings
from gdbuild.jobs.cache import BuildCache
from gdbuild.jobs.dispatcher import BuildDispatcher
from gdbuild.jobs.monitor import HealthMonitor

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
  removed: int = 0
  bytes_freed: int = 0
  errors: list[str] = field(default_factory=list)

  def to_dict(self) -> dict[str, Any]:
    return {"removed": self.removed, "space_freed_mb": round(self.bytes_freed / 1024 / 1024, 2), "errors": list(self.errors)}


def _size_of(path: Path) -> int:
  if path.is_file():
    return path.stat().st_size
  return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


def _remove_expired(path: Path, cutoff: float, result: CleanupResult) -> None:
  """Delete ``path`` when it was last modified before ``cutoff``."""
  try:
    if path.stat().st_mtime >= cutoff:
      return
    size = _size_of(path)
    if path.is_dir():
      shutil.rmtree(path)
    else:
      path.unlink()
  except FileNotFoundError:
    # Already gone: a finishing build clears its own output directory.
    return
  except OSError as exc:
    # One unremovable entry must not stop the sweep.
    logger.warning("Failed to clean up %s: %s", path, exc)
    result.errors.append(f"{path}: {exc}")
    return
  result.removed += 1
  result.bytes_freed += size


def _remove_if_empty(directory: Path) -> None:
  try:
    if not any(directory.iterdir()):
      directory.rmdir()
  except OSError as exc:
    # A new build may have written into the session since the listing.
    logger.debug("Kept session directory %s: %s", directory, exc)


def prune_finished_jobs(dispatcher: BuildDispatcher, *, max_age_hours: int, now: datetime | None = None) -> int:
  """Forget terminal jobs that finished more than ``max_age_hours`` ago."""
  cutoff = (now or datetime.now(UTC)) - timedelta(hours=max_age_hours)
  expired = [job.job_id for job in dispatcher.jobs() if job.is_terminal and job.finished_at is not None and job.finished_at < cutoff]
  for job_id in expired:
    dispatcher.forget(job_id)
  return len(expired)


def cleanup_expired_exports(exports_dir: Path, *, max_age_seconds: float, now: float | None = None) -> CleanupResult:
  """Delete export packages and leftover build directories older than the cutoff.

  Layout: ``<exports_dir>/<session>/<key>.zip`` and ``<exports_dir>/<session>/<key>/``.
  Empty session directories are removed afterwards.
  """
  result = CleanupResult()
  if not exports_dir.is_dir():
    return result
  cutoff = (now if now is not None else time.time()) - max_age_seconds
  for session_dir in exports_dir.iterdir():
    if not session_dir.is_dir():
      continue
    for entry in session_dir.iterdir():
      _remove_expired(entry, cutoff, result)
    _remove_if_empty(session_dir)
  return result


def cleanup_expired_previews(sessions_dir: Path, *, max_age_seconds: float, now: float | None = None) -> CleanupResult:
  """Delete preview builds (``<session>/preview/<key>/``) older than the preview cache TTL."""
  result = CleanupResult()
  if not sessions_dir.is_dir():
    return result
  cutoff = (now if now is not None else time.time()) - max_age_seconds
  for preview_root in sessions_dir.glob("*/preview"):
    if not preview_root.is_dir():
      continue
    for entry in preview_root.iterdir():
      _remove_expired(entry, cutoff, result)
  return result


async def run_maintenance(settings: Settings, *, dispatcher: BuildDispatcher, cache: BuildCache, monitor: HealthMonitor | None = None) -> dict[str, Any]:
  """Run one full sweep: expired jobs, exports, previews, cache entries and metrics."""
  # In-memory state is touched on the event loop; only filesystem sweeps go to a thread.
  jobs_pruned = prune_finished_jobs(dispatcher, max_age_hours=settings.export_cleanup_hours)
  exports = await asyncio.to_thread(cleanup_expired_exports, settings.exports_dir, max_age_seconds=settings.export_cleanup_hours * 3600)
  previews = await asyncio.to_thread(cleanup_expired_previews, settings.sessions_dir, max_age_seconds=settings.preview_cache_ttl_minutes * 60)
  cache_purged = cache.purge_expired()
  metrics_pruned = monitor.prune() if monitor is not None else 0
  summary = {
    "jobs_pruned": jobs_pruned,
    "exports": exports.to_dict(),
    "previews": previews.to_dict(),
    "cache_entries_purged": cache_purged,
    "metrics_pruned": metrics_pruned,
  }
  logger.info("Build engine maintenance completed: %s", summary)
  return summary
