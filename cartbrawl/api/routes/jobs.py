"""
Admin routes for the background jobs.

The same passes the ``cartbrawl-jobs`` CLI runs, for deployments that
trigger them over HTTP.
"""

from fastapi import APIRouter, Depends, HTTPException, status

import structlog

from cartbrawl.api.dependencies import require_admin, unwrap
from cartbrawl.api.schemas.common import SuccessResponse, create_success_response
from cartbrawl.api.schemas.competitions import JobAction, JobTriggerRequest
from cartbrawl.scheduler.jobs import BackgroundJobRunner


router = APIRouter()
logger = structlog.get_logger(__name__)


def get_job_runner() -> BackgroundJobRunner:
    return BackgroundJobRunner()


@router.get(
    "/status",
    response_model=SuccessResponse,
    summary="Background Job Status",
    description="Competition counts plus active and soon-to-start competitions"
)
async def get_job_status(
    admin_id: str = Depends(require_admin),
    runner: BackgroundJobRunner = Depends(get_job_runner)
):
    return create_success_response(data=await runner.lifecycle.get_job_status())


@router.post(
    "/trigger",
    response_model=SuccessResponse,
    summary="Trigger Background Job",
    description="Run one background job pass immediately"
)
async def trigger_job(
    request: JobTriggerRequest,
    admin_id: str = Depends(require_admin),
    runner: BackgroundJobRunner = Depends(get_job_runner)
):
    logger.info("Manual job trigger", admin_id=admin_id, action=request.action.value)

    if request.action == JobAction.RUN_ALL:
        data = (await runner.run_all()).to_dict()
    elif request.action == JobAction.UPDATE_STATUSES:
        data = (await runner.lifecycle.advance_statuses()).to_dict()
    elif request.action == JobAction.SEND_STARTING_NOTIFICATIONS:
        data = (await runner.lifecycle.notify_upcoming_starts()).to_dict()
    elif request.action == JobAction.SEND_ENDING_NOTIFICATIONS:
        data = (await runner.lifecycle.notify_ending_soon()).to_dict()
    elif request.action == JobAction.UPDATE_REVENUE:
        data = (await runner.sync_revenue(request.competition_id)).to_dict()
    else:
        if not request.competition_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "VALIDATION_ERROR", "message": "competition_id is required to settle"}
            )
        data = unwrap(await runner.settlement.settle(request.competition_id))

    return create_success_response(data=data, message=f"{request.action.value} completed")
