"""Usage events emitted on every terminal build transition."""

from __future__ import annotations

import logging
from typing import Protocol

import msgspec

logger = logging.getLogger(__name__)


class UsageEvent(msgspec.Struct, frozen=True):
  """Billing-relevant record of one finished build."""

  session_id: str
  kind: str
  success: bool
  job_id: str
  attempts: int
  cache_hit: bool = False
  duration_seconds: float | None = None
  error_category: str | None = None


class UsageEventSink(Protocol):
  """Consumer contract for usage events (billing, analytics)."""

  def emit(self, event: UsageEvent) -> None:
    """Record one usage event; must not block the dispatcher."""


class LoggingUsageEventSink:
  """Default sink that writes each event to the log as JSON."""

  def __init__(self, logger_name: str = "gdbuild.usage") -> None:
    self._logger = logging.getLogger(logger_name)
    self._encoder = msgspec.json.Encoder()

  def emit(self, event: UsageEvent) -> None:
    self._logger.info("usage_event %s", self._encoder.encode(event).decode("utf-8"))


class RecordingUsageEventSink:
  """In-memory sink used by embedding applications that poll events."""

  def __init__(self) -> None:
    self.events: list[UsageEvent] = []

  def emit(self, event: UsageEvent) -> None:
    self.events.append(event)
