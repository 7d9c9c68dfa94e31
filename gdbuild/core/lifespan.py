import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gdbuild.core.logging import _initialize_logging
from gdbuild.engine import BuildEngine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and run the build engine for the lifetime of the app."""
  from gdbuild.config import get_settings

  # Prefer settings pinned by create_app so tests and embedders control configuration.
  settings = getattr(app.state, "settings", None) or get_settings()
  logger = logging.getLogger("gdbuild.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    # Logging failures must not block the service from booting.
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  engine: BuildEngine | None = getattr(app.state, "engine", None)
  owns_engine = engine is None
  if engine is None:
    engine = BuildEngine(settings)
    app.state.engine = engine

  if not settings.enabled:
    logger.warning("GDevelop builds are disabled; build endpoints will return 503.")
  elif not engine.running:
    await engine.start()

  try:
    yield
  finally:
    if owns_engine or engine.running:
      await engine.stop()
      logger.info("Shutdown complete.")
