from typing import Any

from fastapi import APIRouter, Depends

from gdbuild.api.deps import get_engine
from gdbuild.api.models import HealthResponse
from gdbuild.engine import BuildEngine

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: BuildEngine = Depends(get_engine)) -> HealthResponse:  # noqa: B008
  """Return the latest health snapshot; probes run on the monitor's own schedule."""
  return HealthResponse(**engine.health().to_dict())


@router.get("/v1/stats")
async def build_statistics(engine: BuildEngine = Depends(get_engine)) -> dict[str, Any]:  # noqa: B008
  """Return queue, pool, cache and metric statistics."""
  return engine.statistics()
