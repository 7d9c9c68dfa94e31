from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

from gdbuild.jobs.classifier import ErrorCategory
from gdbuild.jobs.models import BuildJob, JobKind, JobStatus


class ExportOptions(BaseModel):
  """Export overrides; omitted fields fall back to the configured defaults."""

  minify: StrictBool | None = Field(default=None, description="Minify generated JavaScript.")
  mobile_optimized: StrictBool | None = Field(default=None, description="Pass --mobile-optimized to the CLI.")
  compression_level: Literal["none", "standard", "maximum"] | None = Field(default=None, description="ZIP compression applied to the export package.")
  model_config = ConfigDict(extra="forbid")

  def as_options(self) -> dict[str, Any]:
    return self.model_dump(exclude_none=True)


class BuildSubmitRequest(BaseModel):
  """Request payload for a preview or export build."""

  kind: JobKind = Field(description="Build kind: preview (HTML5 directory) or export (ZIP package).")
  session_id: StrictStr = Field(min_length=1, max_length=128, description="Session that owns the game project.", examples=["session-42"])
  game_json: dict[str, Any] = Field(description="Complete GDevelop project document.")
  options: ExportOptions | None = Field(default=None, description="Export options; ignored for previews.")
  callback_url: StrictStr | None = Field(default=None, min_length=1, description="Optional URL that receives a POST when the job finishes.")
  model_config = ConfigDict(extra="forbid")


class ErrorClassificationModel(BaseModel):
  category: ErrorCategory
  retryable: bool
  user_message: StrictStr
  suggested_action: StrictStr


class BuildJobResponse(BaseModel):
  """Status payload for a build job."""

  job_id: StrictStr
  kind: JobKind
  session_id: StrictStr
  status: JobStatus
  attempt: int
  max_attempts: int
  queue_name: StrictStr
  game_json_hash: StrictStr
  created_at: datetime
  started_at: datetime | None = None
  finished_at: datetime | None = None
  next_attempt_at: datetime | None = None
  exit_code: int | None = None
  result_path: StrictStr | None = None
  cache_hit: bool = False
  error: ErrorClassificationModel | None = None
  fallback_suggestions: list[str] = Field(default_factory=list)
  debug: dict[str, Any] | None = None

  @classmethod
  def from_job(cls, job: BuildJob, *, include_debug: bool = False) -> BuildJobResponse:
    error = ErrorClassificationModel(**job.last_error.to_dict()) if job.last_error is not None else None
    return cls(
      job_id=job.job_id,
      kind=job.kind,
      session_id=job.session_id,
      status=job.status,
      attempt=job.attempt,
      max_attempts=job.max_attempts,
      queue_name=job.queue_name,
      game_json_hash=job.game_json_hash,
      created_at=job.created_at,
      started_at=job.started_at,
      finished_at=job.finished_at,
      next_attempt_at=job.next_attempt_at,
      exit_code=job.exit_code,
      result_path=job.result_path,
      cache_hit=job.cache_hit,
      error=error,
      fallback_suggestions=list(job.fallback_suggestions),
      debug=job.debug if include_debug else None,
    )


class BuildCancelResponse(BaseModel):
  job_id: StrictStr
  cancelled: bool
  status: JobStatus


class HealthResponse(BaseModel):
  """Health snapshot for operators and load balancers."""

  status: Literal["healthy", "degraded", "unknown"]
  checked_at: StrictStr | None = None
  checks: dict[str, Any]
  pool: dict[str, Any]
  queues: dict[str, Any]
  metrics: dict[str, Any]
  alerts: list[dict[str, Any]]
