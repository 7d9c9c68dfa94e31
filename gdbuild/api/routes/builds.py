import logging

from fastapi import APIRouter, Depends, status

from gdbuild.api.deps import get_engine
from gdbuild.api.models import BuildCancelResponse, BuildJobResponse, BuildSubmitRequest
from gdbuild.config import Settings, get_settings
from gdbuild.engine import BuildEngine

router = APIRouter()
logger = logging.getLogger("gdbuild.api.routes.builds")


@router.post("", response_model=BuildJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_build(  # noqa: B008
  request: BuildSubmitRequest,
  engine: BuildEngine = Depends(get_engine),  # noqa: B008
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> BuildJobResponse:
  """Submit a preview or export build for a session's game JSON."""
  options = request.options.as_options() if request.options is not None else None
  job = await engine.submit(request.kind, request.session_id, request.game_json, options=options, callback_url=request.callback_url)
  return BuildJobResponse.from_job(job, include_debug=settings.debug)


@router.get("/{job_id}", response_model=BuildJobResponse)
async def get_build_status(  # noqa: B008
  job_id: str,
  engine: BuildEngine = Depends(get_engine),  # noqa: B008
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> BuildJobResponse:
  """Fetch the status and result of a build job."""
  return BuildJobResponse.from_job(engine.status(job_id), include_debug=settings.debug)


@router.post("/{job_id}/cancel", response_model=BuildCancelResponse)
async def cancel_build(  # noqa: B008
  job_id: str,
  engine: BuildEngine = Depends(get_engine),  # noqa: B008
) -> BuildCancelResponse:
  """Cancel a queued or retrying build; running builds finish or time out."""
  cancelled = engine.cancel(job_id)
  job = engine.status(job_id)
  if not cancelled:
    logger.info("Cancel ignored for job %s in status %s", job_id, job.status)
  return BuildCancelResponse(job_id=job_id, cancelled=cancelled, status=job.status)
