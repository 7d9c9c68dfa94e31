"""Domain exceptions raised by the build engine."""

from __future__ import annotations


class BuildEngineError(Exception):
  """Base class for all build engine failures surfaced to callers."""


class JobNotFoundError(BuildEngineError):
  """Raised when a job id is unknown or has been expired by maintenance."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Build job not found: {job_id}")
    self.job_id = job_id


class AdmissionRejectedError(BuildEngineError):
  """Raised when accepting a job would exceed the in-flight ceiling."""

  def __init__(self, *, limit: int, in_flight: int) -> None:
    super().__init__(f"Concurrency limit reached for builds. Limit: {limit}, Active: {in_flight}. Please wait for a running build to complete.")
    self.limit = limit
    self.in_flight = in_flight


class GameJsonValidationError(BuildEngineError):
  """Raised when a submitted game document fails structural validation."""

  def __init__(self, errors: list[str], *, suggestions: list[str] | None = None) -> None:
    super().__init__("Game JSON failed validation.")
    # Keep the full list so API responses can show every problem at once.
    self.errors = list(errors)
    self.suggestions = list(suggestions or [])


class InvalidSessionError(BuildEngineError):
  """Raised when a session id cannot be mapped to a workspace directory."""


class EngineNotRunningError(BuildEngineError):
  """Raised when work is submitted before start() or after stop()."""
