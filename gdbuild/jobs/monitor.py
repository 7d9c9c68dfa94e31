"""Health probes, rolling metrics and slow-operation alerts for the build engine."""

from __future__ import annotations

import asyncio
import logging
import resource
import shlex
import shutil
import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from gdbuild.config import Settings
from gdbuild.jobs.pool import UNREACHABLE_EXIT_CODES, ProcessPool, run_command
from gdbuild.services.workspace import SessionWorkspace

logger = logging.getLogger(__name__)

HealthStatus = Literal["healthy", "degraded", "unknown"]
CheckStatus = Literal["pass", "fail"]

METRIC_TYPES: tuple[str, ...] = ("preview_generation", "export_generation", "cli_execution")
ERROR_RATE_DEGRADED_PERCENT = 50.0
_ALERT_LIMIT = 100


@dataclass(frozen=True)
class MetricSample:
  operation: str
  duration: float
  success: bool
  recorded_at: float
  job_id: str | None = None
  session_id: str | None = None


@dataclass(frozen=True)
class PerformanceAlert:
  operation: str
  duration: float
  threshold: float
  raised_at: str
  job_id: str | None = None
  session_id: str | None = None


@dataclass(frozen=True)
class HealthCheck:
  name: str
  status: CheckStatus
  detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
  """Point-in-time view of engine health."""

  status: HealthStatus
  checked_at: str | None
  checks: dict[str, HealthCheck]
  pool: dict[str, Any]
  queues: dict[str, Any]
  metrics: dict[str, Any]
  alerts: list[PerformanceAlert]

  def to_dict(self) -> dict[str, Any]:
    return {
      "status": self.status,
      "checked_at": self.checked_at,
      "checks": {name: asdict(check) for name, check in self.checks.items()},
      "pool": self.pool,
      "queues": self.queues,
      "metrics": self.metrics,
      "alerts": [asdict(alert) for alert in self.alerts],
    }


def _process_memory_bytes() -> int:
  """Peak resident set size of this process."""
  usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
  # Linux reports kilobytes, macOS reports bytes.
  if sys.platform == "darwin":
    return int(usage)
  return int(usage) * 1024


class HealthMonitor:
  """Observes the pool and queues; never aborts or rejects jobs itself."""

  def __init__(
    self,
    settings: Settings,
    *,
    pool: ProcessPool,
    workspace: SessionWorkspace,
    queue_stats: Callable[[], dict[str, Any]] | None = None,
    on_recycled: Callable[[], None] | None = None,
    clock: Callable[[], float] = time.time,
    memory_probe: Callable[[], int] = _process_memory_bytes,
  ) -> None:
    self._settings = settings
    self._pool = pool
    self._workspace = workspace
    self._queue_stats = queue_stats
    self._on_recycled = on_recycled
    self._clock = clock
    self._memory_probe = memory_probe
    self._metrics: dict[str, deque[MetricSample]] = {name: deque(maxlen=settings.metrics_history_limit) for name in METRIC_TYPES}
    self._outcomes: deque[tuple[float, bool]] = deque()
    self._alerts: deque[PerformanceAlert] = deque(maxlen=_ALERT_LIMIT)
    self._checks: dict[str, HealthCheck] = {}
    self._checked_at: str | None = None

  def bind_queue_stats(self, queue_stats: Callable[[], dict[str, Any]]) -> None:
    self._queue_stats = queue_stats

  def bind_recycled(self, on_recycled: Callable[[], None]) -> None:
    """Call ``on_recycled`` whenever a health pass returns slots to service."""
    self._on_recycled = on_recycled

  def record_operation(self, operation: str, duration: float, success: bool, *, job_id: str | None = None, session_id: str | None = None) -> None:
    """Record one timed operation and raise a slow-operation alert when warranted."""
    now = self._clock()
    series = self._metrics.get(operation)
    if series is None:
      series = self._metrics.setdefault(operation, deque(maxlen=self._settings.metrics_history_limit))
    series.append(MetricSample(operation=operation, duration=duration, success=success, recorded_at=now, job_id=job_id, session_id=session_id))
    # CLI attempts feed the error rate; generation metrics would double count them.
    if operation == "cli_execution":
      self._outcomes.append((now, success))
    if self._settings.performance_alerts_enabled and duration > self._settings.slow_operation_threshold:
      self._raise_slow_alert(operation, duration, job_id=job_id, session_id=session_id)

  def _raise_slow_alert(self, operation: str, duration: float, *, job_id: str | None, session_id: str | None) -> None:
    alert = PerformanceAlert(
      operation=operation,
      duration=duration,
      threshold=self._settings.slow_operation_threshold,
      raised_at=datetime.now(UTC).isoformat(),
      job_id=job_id,
      session_id=session_id,
    )
    self._alerts.append(alert)
    logger.warning("Slow GDevelop operation detected: operation=%s duration=%.2fs threshold=%.2fs job=%s session=%s", operation, duration, alert.threshold, job_id, session_id)

  @property
  def alerts(self) -> list[PerformanceAlert]:
    return list(self._alerts)

  def prune(self) -> int:
    """Drop samples older than the metrics TTL and outcomes outside the error window."""
    now = self._clock()
    removed = 0
    metrics_cutoff = now - self._settings.metrics_ttl
    for series in self._metrics.values():
      while series and series[0].recorded_at < metrics_cutoff:
        series.popleft()
        removed += 1
    error_cutoff = now - self._settings.error_tracking_duration
    while self._outcomes and self._outcomes[0][0] < error_cutoff:
      self._outcomes.popleft()
    return removed

  def error_rate(self) -> float:
    """Percentage of failed CLI executions inside the tracking window."""
    self.prune()
    if not self._outcomes:
      return 0.0
    failures = sum(1 for _, success in self._outcomes if not success)
    return failures / len(self._outcomes) * 100

  def metric_statistics(self) -> dict[str, dict[str, Any]]:
    self.prune()
    stats: dict[str, dict[str, Any]] = {}
    for name, series in self._metrics.items():
      if not series:
        stats[name] = {"count": 0, "average_time": 0.0, "min_time": 0.0, "max_time": 0.0, "success_rate": 0.0}
        continue
      durations = [sample.duration for sample in series]
      successes = sum(1 for sample in series if sample.success)
      stats[name] = {
        "count": len(series),
        "average_time": sum(durations) / len(durations),
        "min_time": min(durations),
        "max_time": max(durations),
        "success_rate": successes / len(series) * 100,
      }
    return stats

  def average_duration(self, operation: str) -> float:
    series = self._metrics.get(operation)
    if not series:
      return 0.0
    return sum(sample.duration for sample in series) / len(series)

  async def _check_cli(self) -> HealthCheck:
    argv = [*shlex.split(self._settings.cli_path), "--version"]
    result = await run_command(argv, timeout=self._settings.health_check_timeout)
    available = result.exit_code not in UNREACHABLE_EXIT_CODES
    detail: dict[str, Any] = {"command": result.command, "exit_code": result.exit_code}
    if available:
      detail["version"] = result.stdout.strip()[:200]
    else:
      detail["error"] = result.stderr.strip()[:200]
    return HealthCheck(name="cli_available", status="pass" if available else "fail", detail=detail)

  def _check_disk(self) -> HealthCheck:
    # Probe the nearest existing ancestor so a fresh install still reports.
    path = self._settings.storage_root.resolve()
    while not path.exists() and path != path.parent:
      path = path.parent
    usage = shutil.disk_usage(path)
    sufficient = usage.free > self._settings.disk_space_threshold
    detail = {"path": str(path), "free_bytes": usage.free, "free_gb": round(usage.free / 1024**3, 2), "threshold_bytes": self._settings.disk_space_threshold}
    return HealthCheck(name="disk_space", status="pass" if sufficient else "fail", detail=detail)

  def _check_memory(self) -> HealthCheck:
    used = self._memory_probe()
    within = used <= self._settings.memory_limit
    detail = {"peak_bytes": used, "peak_mb": round(used / 1024**2, 2), "limit_bytes": self._settings.memory_limit}
    return HealthCheck(name="memory_usage", status="pass" if within else "fail", detail=detail)

  def _check_sessions(self) -> HealthCheck:
    count = self._workspace.active_session_count()
    return HealthCheck(name="active_sessions", status="pass", detail={"count": count})

  def _check_error_rate(self) -> HealthCheck:
    rate = self.error_rate()
    detail = {"error_rate_percent": round(rate, 2), "window_seconds": self._settings.error_tracking_duration, "samples": len(self._outcomes)}
    return HealthCheck(name="error_rate", status="pass" if rate < ERROR_RATE_DEGRADED_PERCENT else "fail", detail=detail)

  async def refresh(self) -> HealthReport:
    """Run every enabled probe, recycle unhealthy slots and return a fresh report."""
    settings = self._settings
    checks: dict[str, HealthCheck] = {}
    if settings.check_cli_availability:
      checks["cli_available"] = await self._check_cli()
    probes: list[tuple[bool, Callable[[], HealthCheck]]] = [
      (settings.check_disk_space, self._check_disk),
      (settings.check_memory_usage, self._check_memory),
      (settings.check_active_sessions, self._check_sessions),
      (settings.check_error_rate, self._check_error_rate),
    ]
    for enabled, probe in probes:
      if not enabled:
        continue
      try:
        check = probe()
      except OSError as exc:
        logger.warning("Health probe %s failed: %s", probe.__name__, exc)
        check = HealthCheck(name=probe.__name__.removeprefix("_check_"), status="fail", detail={"error": str(exc)})
      checks[check.name] = check

    recycled = await self._pool.recycle()
    if recycled:
      logger.info("Health pass restored %d process slot(s)", recycled)
      # Queue heads only move when a slot frees up.
      if self._on_recycled is not None:
        self._on_recycled()

    self._checks = checks
    self._checked_at = datetime.now(UTC).isoformat()
    report = self.snapshot()
    if report.status != "healthy":
      failing = [name for name, check in checks.items() if check.status == "fail"]
      logger.warning("Build engine health degraded: failing checks=%s", failing)
    return report

  def snapshot(self) -> HealthReport:
    """Return the latest probe results with current pool, queue and metric state."""
    if self._checked_at is None:
      status: HealthStatus = "unknown"
    elif any(check.status == "fail" for check in self._checks.values()):
      status = "degraded"
    else:
      status = "healthy"
    queues = self._queue_stats() if self._queue_stats is not None else {}
    return HealthReport(
      status=status,
      checked_at=self._checked_at,
      checks=dict(self._checks),
      pool=self._pool.statistics(),
      queues=queues,
      metrics=self.metric_statistics(),
      alerts=self.alerts,
    )

  async def run(self, stop: asyncio.Event) -> None:
    """Probe every ``health_check_interval`` seconds until ``stop`` is set."""
    interval = self._settings.health_check_interval
    while not stop.is_set():
      try:
        await self.refresh()
      except Exception:  # noqa: BLE001
        logger.error("Health check pass failed", exc_info=True)
      try:
        await asyncio.wait_for(stop.wait(), timeout=interval)
      except TimeoutError:
        continue
