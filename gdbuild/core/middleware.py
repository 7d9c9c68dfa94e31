import logging
import time
import uuid
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("gdbuild.core.middleware")

REQUEST_ID_HEADER = "x-request-id"


def _request_target(scope: Scope) -> str:
  """Path plus query string; request bodies (game documents) are never logged."""
  target = scope.get("path", "")
  raw_query: bytes = scope.get("query_string", b"")
  if raw_query:
    target = f"{target}?{raw_query.decode('latin-1')}"
  return target


class RequestLoggingMiddleware:
  """Tag each HTTP request with an id and log its outcome and latency."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    # Lifespan and websocket scopes pass straight through.
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Reuse an upstream id when a proxy already assigned one.
    request_id = Headers(scope=scope).get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "UNKNOWN")
    target = _request_target(scope)
    started = time.perf_counter()
    logger.info("Incoming request request_id=%s %s %s", request_id, method, target)

    response_status: dict[str, Any] = {"code": 0}

    async def send_with_request_id(message: Message) -> None:
      if message["type"] == "http.response.start":
        response_status["code"] = message.get("status", 0)
        headers = MutableHeaders(scope=message)
        headers.setdefault(REQUEST_ID_HEADER, request_id)
      await send(message)

    await self.app(scope, receive, send_with_request_id)

    elapsed_ms = (time.perf_counter() - started) * 1000
    level = logging.WARNING if response_status["code"] >= 500 else logging.INFO
    logger.log(level, "Response request_id=%s %s %s status=%s (took %.2fms)", request_id, method, target, response_status["code"], elapsed_ms)
