"""Build job queue: admission, FIFO dispatch onto the process pool, retries and caching."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from gdbuild.config import Settings
from gdbuild.core.errors import AdmissionRejectedError, GameJsonValidationError, JobNotFoundError
from gdbuild.jobs.cache import MISS, BuildCache
from gdbuild.jobs.classifier import ErrorClassification, build_debug_payload, classify, fallback_suggestions
from gdbuild.jobs.commands import build_cli_args, build_key, build_paths, finalize_build, prepare_output_dir, resolve_options, write_output_logs
from gdbuild.jobs.models import CANCELLABLE_STATUSES, JOB_KINDS, BuildArtifact, BuildJob, CommandResult, JobKind
from gdbuild.jobs.monitor import HealthMonitor
from gdbuild.jobs.pool import ProcessPool, ProcessSlot
from gdbuild.jobs.validation import validate_game_json
from gdbuild.services.callbacks import CallbackNotifier, CallbackPayload
from gdbuild.services.events import LoggingUsageEventSink, UsageEvent, UsageEventSink
from gdbuild.services.templates import TemplateCatalog
from gdbuild.services.workspace import SessionWorkspace, validate_session_id
from gdbuild.utils.ids import content_hash, generate_job_id, short_hash

logger = logging.getLogger(__name__)

# Fallback suggestions start once a session has failed this many times in a row.
FALLBACK_ERROR_THRESHOLD = 2


def compute_retry_delay(attempt: int, *, retry_delay_seconds: float, backoff_multiplier: float, max_delay: float) -> float:
  """Exponential back-off for the retry that follows ``attempt``, capped at ``max_delay``."""
  delay = retry_delay_seconds * (backoff_multiplier ** (attempt - 1))
  return min(delay, max_delay)


def _utcnow() -> datetime:
  return datetime.now(UTC)


class BuildDispatcher:
  """Owns every BuildJob record; the only component that mutates them."""

  def __init__(
    self,
    settings: Settings,
    *,
    pool: ProcessPool,
    cache: BuildCache,
    workspace: SessionWorkspace,
    monitor: HealthMonitor | None = None,
    templates: TemplateCatalog | None = None,
    events: UsageEventSink | None = None,
    callbacks: CallbackNotifier | None = None,
    classifier: Callable[[int, str], ErrorClassification] = classify,
    clock: Callable[[], datetime] = _utcnow,
  ) -> None:
    self._settings = settings
    self._pool = pool
    self._cache = cache
    self._workspace = workspace
    self._monitor = monitor
    self._templates = templates
    self._events = events or LoggingUsageEventSink()
    self._callbacks = callbacks
    self._classify = classifier
    self._clock = clock
    self._jobs: dict[str, BuildJob] = {}
    self._payloads: dict[str, dict[str, Any]] = {}
    self._queues: dict[str, deque[BuildJob]] = {settings.preview_queue: deque(), settings.export_queue: deque()}
    self._rotation: deque[str] = deque([settings.preview_queue, settings.export_queue])
    self._retry_timers: dict[str, asyncio.TimerHandle] = {}
    self._tasks: set[asyncio.Task[Any]] = set()
    self._session_failures: dict[tuple[str, str], deque[datetime]] = {}
    self._accepting = False

  def start(self) -> None:
    self._accepting = True
    self._schedule()

  async def stop(self) -> None:
    """Stop dispatching, drop retry timers and cancel in-flight runs."""
    self._accepting = False
    for handle in self._retry_timers.values():
      handle.cancel()
    self._retry_timers.clear()
    tasks = list(self._tasks)
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)

  @property
  def accepting(self) -> bool:
    return self._accepting

  def wake(self) -> None:
    """Dispatch queued jobs onto slots that came back outside a job completion."""
    self._schedule()

  async def submit(self, kind: JobKind, session_id: str, game_json: dict[str, Any], *, options: dict[str, Any] | None = None, callback_url: str | None = None) -> BuildJob:
    """Accept a preview or export request and return its job record."""
    if kind not in JOB_KINDS:
      raise ValueError(f"Unsupported build kind: {kind}")
    validate_session_id(session_id)

    # Fingerprint the document once; every cache key derives from it.
    game_json_hash = content_hash(game_json)
    self._validate(session_id, game_json_hash, game_json)
    resolved_options = resolve_options(kind, self._settings, options)

    # Identical in-flight work is shared instead of built twice.
    existing = self._find_in_flight(kind, session_id, game_json_hash, resolved_options)
    if existing is not None:
      logger.info("Coalesced %s submission for session %s onto job %s", kind, session_id, existing.job_id)
      return existing

    cached = self._cached_artifact(kind, game_json_hash, resolved_options)
    if cached is not None:
      return self._record_cache_hit(kind, session_id, game_json_hash, resolved_options, cached, callback_url)

    in_flight = self.in_flight_count()
    if in_flight >= self._settings.max_concurrent_operations:
      logger.warning("Rejected %s submission for session %s: in_flight=%d limit=%d", kind, session_id, in_flight, self._settings.max_concurrent_operations)
      raise AdmissionRejectedError(limit=self._settings.max_concurrent_operations, in_flight=in_flight)

    job = BuildJob(
      job_id=generate_job_id(),
      kind=kind,
      session_id=session_id,
      game_json_hash=game_json_hash,
      status="queued",
      attempt=1,
      max_attempts=self._settings.max_attempts,
      created_at=self._clock(),
      queue_name=self._settings.queue_name_for(kind),
      options=resolved_options,
      callback_url=callback_url,
    )
    self._jobs[job.job_id] = job
    self._payloads[job.job_id] = game_json
    self._queues[job.queue_name].append(job)
    logger.info("Queued %s job %s for session %s on %s (hash=%s)", kind, job.job_id, session_id, job.queue_name, short_hash(game_json_hash))
    self._schedule()
    return job

  def status(self, job_id: str) -> BuildJob:
    job = self._jobs.get(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    return job

  def cancel(self, job_id: str) -> bool:
    """Cancel a queued or retrying job; running and finished jobs are left alone."""
    job = self.status(job_id)
    if job.status not in CANCELLABLE_STATUSES:
      return False
    if job.status == "queued":
      queue = self._queues[job.queue_name]
      if job in queue:
        queue.remove(job)
    else:
      handle = self._retry_timers.pop(job_id, None)
      if handle is not None:
        handle.cancel()
    job.status = "cancelled"
    job.next_attempt_at = None
    job.finished_at = self._clock()
    self._payloads.pop(job_id, None)
    logger.info("Cancelled %s job %s (attempt %d/%d)", job.kind, job_id, job.attempt, job.max_attempts)
    return True

  def jobs(self) -> list[BuildJob]:
    return list(self._jobs.values())

  def in_flight_count(self) -> int:
    return sum(1 for job in self._jobs.values() if job.in_flight)

  def queue_statistics(self) -> dict[str, Any]:
    """Queue depths, running/retrying counts and a rough wait estimate."""
    running = sum(1 for job in self._jobs.values() if job.status == "running")
    retrying = sum(1 for job in self._jobs.values() if job.status == "retrying")
    depths = {name: len(queue) for name, queue in self._queues.items()}
    queued = sum(depths.values())
    estimated_wait = 0.0
    if self._monitor is not None and queued:
      average = self._monitor.average_duration("cli_execution")
      estimated_wait = average * queued / self._pool.size
    return {
      "queues": depths,
      "queued": queued,
      "running": running,
      "retrying": retrying,
      "in_flight": queued + running + retrying,
      "max_concurrent_operations": self._settings.max_concurrent_operations,
      "estimated_wait_seconds": round(estimated_wait, 2),
    }

  def forget(self, job_id: str) -> bool:
    """Drop a terminal job from the registry."""
    job = self._jobs.get(job_id)
    if job is None or not job.is_terminal:
      return False
    del self._jobs[job_id]
    return True

  def _validate(self, session_id: str, game_json_hash: str, game_json: dict[str, Any]) -> None:
    cached = self._cache.get("validation", game_json_hash)
    if cached is MISS:
      _, errors, _ = validate_game_json(game_json)
      cached = tuple(errors)
      self._cache.put("validation", game_json_hash, cached)
    if not cached:
      return
    suggestions = self._track_failure(session_id, "validation")
    logger.info("Rejected game JSON for session %s: %d validation error(s)", session_id, len(cached))
    raise GameJsonValidationError(list(cached), suggestions=suggestions)

  def _artifact_tier(self, kind: JobKind, game_json_hash: str) -> str:
    if kind == "export":
      return "assets"
    if self._templates is not None and self._templates.template_for_hash(game_json_hash) is not None:
      return "templates"
    return "game_structure"

  def _cache_allowed(self, kind: JobKind) -> bool:
    return kind == "export" or self._settings.preview_caching_enabled

  def _cached_artifact(self, kind: JobKind, game_json_hash: str, options: dict[str, Any]) -> str | None:
    if not self._cache_allowed(kind):
      return None
    tier = self._artifact_tier(kind, game_json_hash)
    key = build_key(kind, game_json_hash, options)
    cached = self._cache.get(tier, key)
    if cached is MISS:
      return None
    # The sweep may have deleted the artifact while the entry was still live.
    if not Path(cached).exists():
      self._cache.invalidate(tier, key)
      logger.info("Cached %s artifact %s is gone; rebuilding", kind, cached)
      return None
    return str(cached)

  def _record_cache_hit(self, kind: JobKind, session_id: str, game_json_hash: str, options: dict[str, Any], result_path: str, callback_url: str | None) -> BuildJob:
    now = self._clock()
    job = BuildJob(
      job_id=generate_job_id(),
      kind=kind,
      session_id=session_id,
      game_json_hash=game_json_hash,
      status="succeeded",
      attempt=1,
      max_attempts=self._settings.max_attempts,
      created_at=now,
      queue_name=self._settings.queue_name_for(kind),
      started_at=now,
      finished_at=now,
      exit_code=0,
      result_path=result_path,
      cache_hit=True,
      options=options,
      callback_url=callback_url,
    )
    self._jobs[job.job_id] = job
    logger.info("Served %s job %s for session %s from cache: %s", kind, job.job_id, session_id, result_path)
    self._notify(job)
    return job

  def _find_in_flight(self, kind: JobKind, session_id: str, game_json_hash: str, options: dict[str, Any]) -> BuildJob | None:
    for job in self._jobs.values():
      if job.in_flight and job.kind == kind and job.session_id == session_id and job.game_json_hash == game_json_hash and job.options == options:
        return job
    return None

  def _next_queue(self) -> str | None:
    for name in self._rotation:
      if self._queues[name]:
        return name
    return None

  def _schedule(self) -> None:
    """Move queue heads onto free slots, alternating between the two queues."""
    while self._accepting:
      name = self._next_queue()
      if name is None:
        return
      job = self._queues[name][0]
      slot = self._pool.acquire(job.job_id)
      # Busy pool: the head keeps its place until a slot is released.
      if slot is None:
        return
      self._queues[name].popleft()
      self._rotation.remove(name)
      self._rotation.append(name)
      self._start(job, slot)

  def _start(self, job: BuildJob, slot: ProcessSlot) -> None:
    job.status = "running"
    job.next_attempt_at = None
    if job.started_at is None:
      job.started_at = self._clock()
    logger.info("Running %s job %s on slot %s (attempt %d/%d)", job.kind, job.job_id, slot.slot_id, job.attempt, job.max_attempts)
    task = asyncio.get_running_loop().create_task(self._run(job, slot), name=f"build-{job.job_id}")
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)

  async def _run(self, job: BuildJob, slot: ProcessSlot) -> None:
    try:
      try:
        result, artifact, refs = await self._execute(job, slot)
      finally:
        self._pool.release(slot)
    except asyncio.CancelledError:
      job.status = "cancelled"
      job.finished_at = self._clock()
      self._payloads.pop(job.job_id, None)
      logger.warning("Build job %s interrupted by shutdown", job.job_id)
      raise
    except Exception as exc:  # noqa: BLE001
      logger.error("Build job %s failed unexpectedly", job.job_id, exc_info=True)
      result, artifact, refs = CommandResult(exit_code=1, stdout="", stderr=f"internal error: {exc}", command=self._settings.cli_path), None, (None, None)
    job.stdout_ref, job.stderr_ref = refs
    self._complete(job, result, artifact)
    self._schedule()

  async def _execute(self, job: BuildJob, slot: ProcessSlot) -> tuple[CommandResult, BuildArtifact | None, tuple[str | None, str | None]]:
    settings = self._settings
    project_dir = self._workspace.project_dir(job.session_id)
    paths = build_paths(job.kind, settings, project_dir, job.session_id, build_key(job.kind, job.game_json_hash, job.options))
    payload = self._payloads[job.job_id]

    # Workspace failures are reported as command results so the classifier sees them.
    try:
      game_path = await asyncio.to_thread(self._workspace.materialize, job.session_id, payload, filename=f"game-{short_hash(job.game_json_hash)}.json")
      await asyncio.to_thread(prepare_output_dir, paths)
    except OSError as exc:
      logger.error("Failed to prepare workspace for job %s: %s", job.job_id, exc)
      return CommandResult(exit_code=1, stdout="", stderr=f"workspace error: {exc}", command=settings.cli_path), None, (None, None)

    args = build_cli_args(job.kind, game_path, paths.output_dir, job.options)
    result = await self._pool.execute(slot, settings.cli_path, args, settings.timeout_for(job.kind), cwd=project_dir)
    refs = await self._store_output(job, project_dir, result)
    result, artifact = await asyncio.to_thread(finalize_build, job.kind, result, paths, options=job.options, max_export_size=settings.max_export_size)
    return result, artifact, refs

  async def _store_output(self, job: BuildJob, project_dir: Path, result: CommandResult) -> tuple[str | None, str | None]:
    try:
      return await asyncio.to_thread(write_output_logs, project_dir / "logs", job.job_id, job.attempt, result)
    except OSError as exc:
      logger.warning("Could not persist CLI output for job %s: %s", job.job_id, exc)
      return None, None

  def _complete(self, job: BuildJob, result: CommandResult, artifact: BuildArtifact | None) -> None:
    job.exit_code = result.exit_code
    success = artifact is not None
    if self._monitor is not None:
      self._monitor.record_operation("cli_execution", result.duration, success, job_id=job.job_id, session_id=job.session_id)

    if artifact is not None:
      job.status = "succeeded"
      job.result_path = str(artifact.path)
      job.last_error = None
      job.finished_at = self._clock()
      if self._cache_allowed(job.kind):
        self._cache.put(self._artifact_tier(job.kind, job.game_json_hash), build_key(job.kind, job.game_json_hash, job.options), job.result_path)
      logger.info("Build job %s succeeded on attempt %d: %s (%d bytes)", job.job_id, job.attempt, job.result_path, artifact.size_bytes)
      self._finish(job)
      return

    # Only the classifier interprets stderr.
    classification = self._classify(result.exit_code, result.stderr)
    job.last_error = classification
    job.debug = build_debug_payload(
      command=result.command,
      exit_code=result.exit_code,
      stdout=result.stdout,
      stderr=result.stderr,
      classification=classification,
      session_id=job.session_id,
      artifact_path=job.result_path,
    )
    logger.warning(
      "Build job %s failed: attempt=%d/%d, category=%s, retryable=%s, exit_code=%s",
      job.job_id,
      job.attempt,
      job.max_attempts,
      classification.category,
      classification.retryable,
      result.exit_code,
    )

    if classification.retryable and job.attempt < job.max_attempts:
      delay = compute_retry_delay(job.attempt, retry_delay_seconds=self._settings.retry_delay_seconds, backoff_multiplier=self._settings.backoff_multiplier, max_delay=self._settings.queue_retry_delay)
      job.status = "retrying"
      job.next_attempt_at = self._clock() + timedelta(seconds=delay)
      self._retry_timers[job.job_id] = asyncio.get_running_loop().call_later(delay, self._requeue, job.job_id)
      logger.info("Retrying build job %s after backoff: attempt=%d/%d, delay=%.2fs, category=%s", job.job_id, job.attempt, job.max_attempts, delay, classification.category)
      return

    job.status = "failed"
    job.finished_at = self._clock()
    if not classification.retryable:
      logger.error("Build job %s failed with non-retryable error: category=%s - failing immediately", job.job_id, classification.category)
    else:
      logger.error("Build job %s failed after %d attempts: category=%s - giving up", job.job_id, job.attempt, classification.category)
    self._finish(job)

  def _requeue(self, job_id: str) -> None:
    self._retry_timers.pop(job_id, None)
    job = self._jobs.get(job_id)
    if job is None or job.status != "retrying":
      return
    job.attempt += 1
    job.status = "queued"
    job.next_attempt_at = None
    # Retries keep their submission-time position among queued jobs.
    queue = self._queues[job.queue_name]
    index = next((position for position, queued in enumerate(queue) if queued.created_at > job.created_at), len(queue))
    queue.insert(index, job)
    self._schedule()

  def _track_failure(self, session_id: str, kind: str) -> list[str]:
    """Count a failure for the session and return fallback suggestions once the threshold is met."""
    now = self._clock()
    window = timedelta(seconds=self._settings.error_tracking_duration)
    failures = self._session_failures.setdefault((session_id, kind), deque())
    failures.append(now)
    while failures and now - failures[0] > window:
      failures.popleft()
    if self._settings.enable_fallback_suggestions and len(failures) >= FALLBACK_ERROR_THRESHOLD:
      return fallback_suggestions(kind)
    return []

  def _finish(self, job: BuildJob) -> None:
    """Side effects shared by every succeeded or failed build."""
    self._payloads.pop(job.job_id, None)
    success = job.status == "succeeded"
    if success:
      self._session_failures.pop((job.session_id, job.kind), None)
    else:
      job.fallback_suggestions = self._track_failure(job.session_id, job.kind)

    duration = job.duration_seconds() or 0.0
    if self._monitor is not None:
      self._monitor.record_operation(f"{job.kind}_generation", duration, success, job_id=job.job_id, session_id=job.session_id)

    event = UsageEvent(
      session_id=job.session_id,
      kind=job.kind,
      success=success,
      job_id=job.job_id,
      attempts=job.attempt,
      duration_seconds=round(duration, 3),
      error_category=job.last_error.category if job.last_error is not None else None,
    )
    try:
      self._events.emit(event)
    except Exception:  # noqa: BLE001
      logger.error("Usage event sink failed for job %s", job.job_id, exc_info=True)
    self._notify(job)

  def _notify(self, job: BuildJob) -> None:
    if self._callbacks is None or not job.callback_url:
      return
    payload = CallbackPayload(
      job_id=job.job_id,
      session_id=job.session_id,
      kind=job.kind,
      status=job.status,
      success=job.status == "succeeded",
      result_path=job.result_path,
      error_category=job.last_error.category if job.last_error is not None else None,
      user_message=job.last_error.user_message if job.last_error is not None else None,
      cache_hit=job.cache_hit,
    )
    task = asyncio.get_running_loop().create_task(self._callbacks.notify(job.callback_url, payload), name=f"callback-{job.job_id}")
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
