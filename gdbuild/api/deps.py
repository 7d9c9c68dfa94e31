from __future__ import annotations

from fastapi import HTTPException, Request, status

from gdbuild.engine import BuildEngine


def get_engine(request: Request) -> BuildEngine:
  """Return the engine attached to the application by the lifespan."""
  engine = getattr(request.app.state, "engine", None)
  if engine is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Build engine is not available.")
  return engine
