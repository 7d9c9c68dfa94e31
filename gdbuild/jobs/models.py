"""Domain models for preview and export build jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from gdbuild.jobs.classifier import ErrorClassification

JobKind = Literal["preview", "export"]
JobStatus = Literal["queued", "running", "retrying", "succeeded", "failed", "cancelled"]

JOB_KINDS: tuple[JobKind, ...] = ("preview", "export")
TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled"})
IN_FLIGHT_STATUSES: frozenset[str] = frozenset({"queued", "running", "retrying"})
CANCELLABLE_STATUSES: frozenset[str] = frozenset({"queued", "retrying"})


@dataclass
class BuildJob:
  """One request to produce a preview or export artifact from a game JSON document."""

  job_id: str
  kind: JobKind
  session_id: str
  game_json_hash: str
  status: JobStatus
  attempt: int
  max_attempts: int
  created_at: datetime
  queue_name: str
  started_at: datetime | None = None
  finished_at: datetime | None = None
  exit_code: int | None = None
  stdout_ref: str | None = None
  stderr_ref: str | None = None
  result_path: str | None = None
  last_error: ErrorClassification | None = None
  cache_hit: bool = False
  options: dict[str, Any] = field(default_factory=dict)
  callback_url: str | None = None
  next_attempt_at: datetime | None = None
  fallback_suggestions: list[str] = field(default_factory=list)
  debug: dict[str, Any] | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  @property
  def in_flight(self) -> bool:
    return self.status in IN_FLIGHT_STATUSES

  def duration_seconds(self) -> float | None:
    """Wall-clock time between the first start and the terminal transition."""
    if self.started_at is None or self.finished_at is None:
      return None
    return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class CommandResult:
  """Raw outcome of one CLI invocation as surfaced by the process pool."""

  exit_code: int
  stdout: str
  stderr: str
  command: str
  duration: float = 0.0
  timed_out: bool = False
  signalled: bool = False

  @property
  def succeeded(self) -> bool:
    return self.exit_code == 0


@dataclass(frozen=True)
class BuildArtifact:
  """Location of a finished build output."""

  kind: JobKind
  path: Path
  size_bytes: int
