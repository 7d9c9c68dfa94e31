from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from gdbuild.api.routes import builds, health
from gdbuild.config import Settings, get_settings
from gdbuild.core.errors import AdmissionRejectedError, EngineNotRunningError, GameJsonValidationError, InvalidSessionError, JobNotFoundError
from gdbuild.core.exceptions import (
  admission_rejected_exception_handler,
  engine_not_running_exception_handler,
  game_json_validation_exception_handler,
  global_exception_handler,
  http_exception_handler,
  invalid_session_exception_handler,
  job_not_found_exception_handler,
  request_validation_exception_handler,
)
from gdbuild.core.lifespan import lifespan
from gdbuild.core.middleware import RequestLoggingMiddleware
from gdbuild.engine import BuildEngine


def create_app(settings: Settings | None = None, engine: BuildEngine | None = None) -> FastAPI:
  """Build the HTTP surface around a build engine."""
  settings = settings or (engine.settings if engine is not None else get_settings())
  app = FastAPI(title="GDevelop Build Engine", version="0.1.0", lifespan=lifespan, docs_url=None, redoc_url=None)
  app.state.settings = settings
  app.state.engine = engine
  app.dependency_overrides[get_settings] = lambda: settings

  # Add exception handlers
  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  app.add_exception_handler(JobNotFoundError, job_not_found_exception_handler)
  app.add_exception_handler(AdmissionRejectedError, admission_rejected_exception_handler)
  app.add_exception_handler(GameJsonValidationError, game_json_validation_exception_handler)
  app.add_exception_handler(InvalidSessionError, invalid_session_exception_handler)
  app.add_exception_handler(EngineNotRunningError, engine_not_running_exception_handler)

  # Add middleware
  app.add_middleware(RequestLoggingMiddleware)

  app.include_router(health.router, tags=["health"])
  app.include_router(builds.router, prefix="/v1/builds", tags=["builds"])
  return app


app = create_app()
