"""HTTP completion callbacks for finished build jobs."""

from __future__ import annotations

import asyncio
import logging

import httpx
import msgspec

from gdbuild.config import Settings

logger = logging.getLogger(__name__)


class CallbackPayload(msgspec.Struct, frozen=True):
  """Body POSTed to a job's callback URL."""

  job_id: str
  session_id: str
  kind: str
  status: str
  success: bool
  result_path: str | None = None
  error_category: str | None = None
  user_message: str | None = None
  cache_hit: bool = False


class CallbackNotifier:
  """Delivers completion callbacks with bounded retries."""

  def __init__(self, *, attempts: int, retry_delay: float, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._attempts = max(1, attempts)
    self._retry_delay = retry_delay
    self._timeout = timeout
    self._transport = transport

  @classmethod
  def from_settings(cls, settings: Settings) -> CallbackNotifier:
    return cls(attempts=settings.queue_retry_attempts, retry_delay=settings.queue_retry_delay, timeout=float(settings.health_check_timeout))

  def _build_client(self) -> httpx.AsyncClient:
    # Never trust environment proxy variables for callback delivery.
    return httpx.AsyncClient(transport=self._transport, timeout=self._timeout, trust_env=False)

  async def notify(self, url: str, payload: CallbackPayload) -> bool:
    """POST ``payload`` to ``url``; returns False once every attempt has failed."""
    body = msgspec.json.encode(payload)
    headers = {"content-type": "application/json"}
    for attempt in range(1, self._attempts + 1):
      try:
        async with self._build_client() as client:
          response = await client.post(url, content=body, headers=headers)
          response.raise_for_status()
        logger.info("Delivered callback for job %s to %s", payload.job_id, url)
        return True
      except httpx.HTTPStatusError as e:
        logger.error("Callback for job %s returned %s (attempt %d/%d): %s", payload.job_id, e.response.status_code, attempt, self._attempts, e.response.text)
      except httpx.RequestError as e:
        logger.error("Failed to deliver callback for job %s (attempt %d/%d): %s", payload.job_id, attempt, self._attempts, e)
      if attempt < self._attempts:
        await asyncio.sleep(self._retry_delay)
    return False
