"""Fixed-size pool of CLI execution slots."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gdbuild.config import Settings
from gdbuild.jobs.classifier import TIMEOUT_EXIT_CODE
from gdbuild.jobs.models import CommandResult

logger = logging.getLogger(__name__)

MISSING_BINARY_EXIT_CODE = 127
PERMISSION_EXIT_CODE = 126
# Exit codes that mean the binary never ran to completion.
UNREACHABLE_EXIT_CODES = frozenset({TIMEOUT_EXIT_CODE, PERMISSION_EXIT_CODE, MISSING_BINARY_EXIT_CODE})


@dataclass
class ProcessSlot:
  """One execution lane; runs at most one CLI invocation at a time."""

  slot_id: int
  busy: bool = False
  assigned_job_id: str | None = None
  pid: int | None = None
  started_at: datetime | None = None
  healthy: bool = True
  runs: int = 0
  process: asyncio.subprocess.Process | None = field(default=None, repr=False)


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
  """Kill the child and anything it spawned."""
  if process.returncode is not None:
    return
  try:
    os.killpg(process.pid, signal.SIGKILL)
  except (ProcessLookupError, PermissionError):
    # The group is gone or was never ours; fall back to the direct child.
    try:
      process.kill()
    except ProcessLookupError:
      pass


def _decode(raw: bytes | None) -> str:
  if not raw:
    return ""
  return raw.decode("utf-8", errors="replace")


async def run_command(argv: Sequence[str], *, timeout: float, cwd: Path | str | None = None, on_spawn: Callable[[asyncio.subprocess.Process], None] | None = None) -> CommandResult:
  """Run one command to completion under a hard wall-clock timeout.

  Spawn failures and timeouts are reported as exit codes rather than raised so the
  caller always receives a ``CommandResult``.
  """
  command = shlex.join(argv)
  started = time.monotonic()
  # Translate spawn failures into the conventional shell exit codes.
  try:
    process = await asyncio.create_subprocess_exec(*argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, cwd=str(cwd) if cwd is not None else None, start_new_session=True)
  except FileNotFoundError:
    return CommandResult(exit_code=MISSING_BINARY_EXIT_CODE, stdout="", stderr=f"ENOENT: {argv[0]} not found", command=command, duration=time.monotonic() - started)
  except PermissionError:
    return CommandResult(exit_code=PERMISSION_EXIT_CODE, stdout="", stderr=f"EACCES: permission denied executing {argv[0]}", command=command, duration=time.monotonic() - started)

  if on_spawn is not None:
    on_spawn(process)

  try:
    stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
  except TimeoutError:
    # Kill the whole group and reap it before reporting.
    _kill_process_group(process)
    await process.wait()
    logger.warning("Command timed out after %.1fs: %s", timeout, command)
    return CommandResult(exit_code=TIMEOUT_EXIT_CODE, stdout="", stderr="timeout", command=command, duration=time.monotonic() - started, timed_out=True)
  except asyncio.CancelledError:
    _kill_process_group(process)
    await process.wait()
    raise

  returncode = process.returncode if process.returncode is not None else -1
  stderr_text = _decode(stderr)
  signalled = returncode < 0
  # A signal death carries no stderr of its own; record which signal it was.
  if signalled and not stderr_text.strip():
    try:
      stderr_text = f"terminated by signal {signal.Signals(-returncode).name}"
    except ValueError:
      stderr_text = f"terminated by signal {-returncode}"
  return CommandResult(exit_code=returncode, stdout=_decode(stdout), stderr=stderr_text, command=command, duration=time.monotonic() - started, signalled=signalled)


class ProcessPool:
  """Fixed set of slots; the slot table is guarded by a lock."""

  def __init__(self, size: int, *, process_timeout: float, probe_argv: Sequence[str] | None = None, probe_timeout: float = 30) -> None:
    if size < 1:
      raise ValueError("Process pool size must be at least 1.")
    self._slots: tuple[ProcessSlot, ...] = tuple(ProcessSlot(slot_id=index) for index in range(size))
    self._lock = threading.Lock()
    self._process_timeout = process_timeout
    self._probe_argv = list(probe_argv) if probe_argv else None
    self._probe_timeout = probe_timeout
    self._closed = False

  @classmethod
  def from_settings(cls, settings: Settings) -> ProcessPool:
    return cls(settings.process_pool_size, process_timeout=settings.process_timeout, probe_argv=[*shlex.split(settings.cli_path), "--version"], probe_timeout=settings.health_check_timeout)

  @property
  def size(self) -> int:
    return len(self._slots)

  @property
  def slots(self) -> tuple[ProcessSlot, ...]:
    return self._slots

  def acquire(self, job_id: str) -> ProcessSlot | None:
    """Claim a free healthy slot for ``job_id``; ``None`` means the pool is busy."""
    with self._lock:
      if self._closed:
        return None
      for slot in self._slots:
        if slot.busy or not slot.healthy:
          continue
        slot.busy = True
        slot.assigned_job_id = job_id
        slot.started_at = datetime.now(UTC)
        return slot
    return None

  async def execute(self, slot: ProcessSlot, command: str, args: Sequence[str], timeout_seconds: float, cwd: Path | str | None = None) -> CommandResult:
    """Run ``command`` with ``args`` in ``slot`` and capture its output."""
    if not slot.busy:
      raise RuntimeError(f"Slot {slot.slot_id} is not acquired.")
    argv = [*shlex.split(command), *args]
    timeout = min(timeout_seconds, self._process_timeout)

    def _track(process: asyncio.subprocess.Process) -> None:
      slot.process = process
      slot.pid = process.pid

    logger.debug("Slot %s executing job %s: %s", slot.slot_id, slot.assigned_job_id, shlex.join(argv))
    try:
      result = await run_command(argv, timeout=timeout, cwd=cwd, on_spawn=_track)
    finally:
      slot.process = None
      slot.pid = None
      slot.runs += 1

    # Signal deaths (OOM kills included) take the slot out of rotation.
    if result.signalled:
      slot.healthy = False
      logger.warning("Slot %s marked unhealthy after signal termination: job=%s exit_code=%s", slot.slot_id, slot.assigned_job_id, result.exit_code)
    return result

  def release(self, slot: ProcessSlot) -> None:
    """Return ``slot`` to the pool, killing any child still attached to it."""
    process = slot.process
    if process is not None:
      _kill_process_group(process)
    with self._lock:
      slot.busy = False
      slot.assigned_job_id = None
      slot.started_at = None
      slot.process = None
      slot.pid = None

  async def recycle(self) -> int:
    """Restore unhealthy slots once the CLI answers a version probe."""
    with self._lock:
      candidates = [slot for slot in self._slots if not slot.healthy and not slot.busy]
    if not candidates:
      return 0
    if self._probe_argv is None:
      reachable = True
    else:
      probe = await run_command(self._probe_argv, timeout=self._probe_timeout)
      reachable = probe.exit_code not in UNREACHABLE_EXIT_CODES
    if not reachable:
      logger.warning("CLI probe failed; %d slot(s) remain unhealthy", len(candidates))
      return 0
    with self._lock:
      for slot in candidates:
        slot.healthy = True
    logger.info("Recycled %d unhealthy slot(s)", len(candidates))
    return len(candidates)

  def shutdown(self) -> None:
    """Refuse new work and kill every running child."""
    with self._lock:
      self._closed = True
      running = [slot.process for slot in self._slots if slot.process is not None]
    for process in running:
      _kill_process_group(process)
    if running:
      logger.info("Killed %d running CLI process(es) on shutdown", len(running))

  def statistics(self) -> dict[str, Any]:
    with self._lock:
      busy = sum(1 for slot in self._slots if slot.busy)
      unhealthy = sum(1 for slot in self._slots if not slot.healthy)
      slots = [{"slot_id": slot.slot_id, "busy": slot.busy, "healthy": slot.healthy, "job_id": slot.assigned_job_id, "pid": slot.pid, "runs": slot.runs} for slot in self._slots]
    return {"pool_size": len(self._slots), "busy": busy, "free": len(self._slots) - busy, "unhealthy": unhealthy, "process_timeout": self._process_timeout, "slots": slots}
