"""BuildEngine facade wiring the cache, pool, dispatcher and monitor together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from gdbuild.config import Settings
from gdbuild.core.errors import EngineNotRunningError
from gdbuild.jobs.cache import BuildCache
from gdbuild.jobs.dispatcher import BuildDispatcher
from gdbuild.jobs.models import BuildJob, JobKind
from gdbuild.jobs.monitor import HealthMonitor, HealthReport
from gdbuild.jobs.pool import ProcessPool
from gdbuild.services.callbacks import CallbackNotifier
from gdbuild.services.events import UsageEventSink
from gdbuild.services.maintenance import run_maintenance
from gdbuild.services.templates import TemplateCatalog
from gdbuild.services.workspace import LocalSessionWorkspace, SessionWorkspace

logger = logging.getLogger(__name__)


class BuildEngine:
  """Caller-facing surface: submit, status, cancel and health."""

  def __init__(
    self,
    settings: Settings,
    *,
    workspace: SessionWorkspace | None = None,
    events: UsageEventSink | None = None,
    callbacks: CallbackNotifier | None = None,
    cache: BuildCache | None = None,
    pool: ProcessPool | None = None,
  ) -> None:
    self.settings = settings
    self.workspace = workspace or LocalSessionWorkspace.from_settings(settings)
    self.cache = cache or BuildCache.from_settings(settings)
    self.pool = pool or ProcessPool.from_settings(settings)
    self.templates = TemplateCatalog.from_settings(settings)
    self.monitor = HealthMonitor(settings, pool=self.pool, workspace=self.workspace)
    self.dispatcher = BuildDispatcher(
      settings,
      pool=self.pool,
      cache=self.cache,
      workspace=self.workspace,
      monitor=self.monitor,
      templates=self.templates,
      events=events,
      callbacks=callbacks if callbacks is not None else CallbackNotifier.from_settings(settings),
    )
    self.monitor.bind_queue_stats(self.dispatcher.queue_statistics)
    self.monitor.bind_recycled(self.dispatcher.wake)
    self._stop = asyncio.Event()
    self._background: list[asyncio.Task[None]] = []
    self._running = False

  @property
  def running(self) -> bool:
    return self._running

  async def start(self) -> None:
    """Prepare storage, warm the template cache and start background loops."""
    if self._running:
      return
    settings = self.settings
    for directory in (settings.templates_dir, settings.sessions_dir, settings.exports_dir):
      directory.mkdir(parents=True, exist_ok=True)
    self.templates.load()
    warmed = self.templates.warm(self.cache)
    logger.info("Warmed %d template(s) into the cache", warmed)

    self._stop = asyncio.Event()
    self.dispatcher.start()
    if settings.monitoring_enabled:
      self._background.append(asyncio.create_task(self.monitor.run(self._stop), name="gdbuild-health"))
    self._background.append(asyncio.create_task(self._maintenance_loop(), name="gdbuild-maintenance"))
    self._running = True
    logger.info("Build engine started: pool_size=%d queues=%s,%s", self.pool.size, settings.preview_queue, settings.export_queue)

  async def stop(self) -> None:
    """Stop background loops, cancel in-flight runs and kill any CLI children."""
    if not self._running:
      return
    self._running = False
    self._stop.set()
    await self.dispatcher.stop()
    self.pool.shutdown()
    for task in self._background:
      task.cancel()
    await asyncio.gather(*self._background, return_exceptions=True)
    self._background.clear()
    logger.info("Build engine stopped")

  async def __aenter__(self) -> BuildEngine:
    await self.start()
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.stop()

  def _require_running(self) -> None:
    if not self.settings.enabled:
      raise EngineNotRunningError("GDevelop builds are disabled (GDEVELOP_ENABLED=false).")
    if not self._running:
      raise EngineNotRunningError("Build engine is not running.")

  async def submit(self, kind: JobKind, session_id: str, game_json: dict[str, Any], *, options: dict[str, Any] | None = None, callback_url: str | None = None) -> BuildJob:
    self._require_running()
    return await self.dispatcher.submit(kind, session_id, game_json, options=options, callback_url=callback_url)

  def status(self, job_id: str) -> BuildJob:
    return self.dispatcher.status(job_id)

  def cancel(self, job_id: str) -> bool:
    return self.dispatcher.cancel(job_id)

  def health(self) -> HealthReport:
    return self.monitor.snapshot()

  async def refresh_health(self) -> HealthReport:
    return await self.monitor.refresh()

  def statistics(self) -> dict[str, Any]:
    return {
      "queues": self.dispatcher.queue_statistics(),
      "pool": self.pool.statistics(),
      "cache": self.cache.statistics(),
      "metrics": self.monitor.metric_statistics(),
    }

  async def run_maintenance(self) -> dict[str, Any]:
    return await run_maintenance(self.settings, dispatcher=self.dispatcher, cache=self.cache, monitor=self.monitor)

  async def _maintenance_loop(self) -> None:
    interval = self.settings.cleanup_interval
    while not self._stop.is_set():
      try:
        await asyncio.wait_for(self._stop.wait(), timeout=interval)
        return
      except TimeoutError:
        pass
      try:
        await self.run_maintenance()
      except Exception:  # noqa: BLE001
        logger.error("Build engine maintenance pass failed", exc_info=True)
