import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gdbuild.config import Settings, get_settings
from gdbuild.core.errors import AdmissionRejectedError, EngineNotRunningError, GameJsonValidationError, InvalidSessionError, JobNotFoundError


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  # Keep native JSON primitives unchanged.
  if value is None or isinstance(value, bool | int | float | str):
    return value
  # Recursively sanitize mapping values so nested contexts remain serializable.
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _settings_for(request: Request) -> Settings:
  settings = getattr(request.app.state, "settings", None)
  if settings is not None:
    return settings
  return get_settings()


def _error_payload(detail: Any, *, request_id: str | None = None, **extra: Any) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  payload.update({key: value for key, value in extra.items() if value is not None})
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  # Game documents can be large; never echo them back.
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  # Keep validation logs concise because 422s are client-correctable and expected.
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  settings = _settings_for(request)
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    detail = exc.detail if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE else "Internal Server Error"
    return JSONResponse(status_code=exc.status_code, content=_error_payload(detail, request_id=request_id))

  # Log 4xx HTTPExceptions when explicitly enabled for debugging.
  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))


async def job_not_found_exception_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_payload(str(exc), request_id=request_id))


async def admission_rejected_exception_handler(request: Request, exc: AdmissionRejectedError) -> JSONResponse:
  """Tell callers to back off while the engine is saturated."""
  request_id = getattr(request.state, "request_id", None)
  logging.getLogger("uvicorn.error").warning("Admission rejected request_id=%s in_flight=%s limit=%s", request_id, exc.in_flight, exc.limit)
  return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=_error_payload(str(exc), request_id=request_id), headers={"retry-after": "5"})


async def game_json_validation_exception_handler(request: Request, exc: GameJsonValidationError) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  content = _error_payload(exc.errors, request_id=request_id, suggestions=exc.suggestions or None)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=content)


async def invalid_session_exception_handler(request: Request, exc: InvalidSessionError) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(str(exc), request_id=request_id))


async def engine_not_running_exception_handler(request: Request, exc: EngineNotRunningError) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  logging.getLogger("uvicorn.error").warning("Build engine unavailable request_id=%s path=%s: %s", request_id, request.url.path, exc)
  return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=_error_payload(str(exc), request_id=request_id))
