"""
Competition API routes.
Listing, creation, details, joining, leaderboard and manual start.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

import structlog

from cartbrawl.api.dependencies import (
    get_competitions,
    get_current_user,
    get_current_user_optional,
    unwrap
)
from cartbrawl.api.schemas.common import SuccessResponse, create_success_response
from cartbrawl.api.schemas.competitions import (
    CompetitionCreateRequest,
    CompetitionUpdateRequest,
    JoinCompetitionRequest
)
from cartbrawl.models import CompetitionStatus
from cartbrawl.scheduler.lifecycle import LifecycleScheduler
from cartbrawl.services.competition_service import CompetitionService


router = APIRouter()
logger = structlog.get_logger(__name__)


def get_lifecycle() -> LifecycleScheduler:
    return LifecycleScheduler()


@router.get(
    "",
    response_model=SuccessResponse,
    summary="List Competitions",
    description="Public paged listing, upcoming first, then active, then completed"
)
async def list_competitions(
    status_filter: Optional[CompetitionStatus] = Query(None, alias="status", description="Filter by status"),
    search: Optional[str] = Query(None, max_length=100, description="Search in title and description"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.list_competitions(
        status=status_filter.value if status_filter else None,
        search=search,
        page=page,
        limit=limit
    )
    return create_success_response(data=unwrap(result))


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Competition",
    description="Create a competition and escrow its prize from the creator's balance"
)
async def create_competition(
    request: CompetitionCreateRequest,
    user_id: str = Depends(get_current_user),
    service: CompetitionService = Depends(get_competitions)
):
    """
    Create a competition.

    The prize is held in escrow until the winner is paid. If escrow fails
    no competition is created.
    """
    logger.info("Create competition requested", user_id=user_id, prize=str(request.prize))

    result = await service.create_competition(
        creator_id=user_id,
        title=request.title,
        prize=request.prize,
        start_date=request.start_date,
        end_date=request.end_date,
        description=request.description
    )
    return create_success_response(data=unwrap(result), message="Competition created")


@router.get(
    "/{competition_id}",
    response_model=SuccessResponse,
    summary="Get Competition",
    description="Competition details; participants are included for signed-in users"
)
async def get_competition(
    competition_id: str = Path(..., description="Competition id"),
    user_id: Optional[str] = Depends(get_current_user_optional),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.get_competition_details(competition_id, viewer_id=user_id)
    return create_success_response(data=unwrap(result))


@router.patch(
    "/{competition_id}",
    response_model=SuccessResponse,
    summary="Update Competition",
    description="Creator-only edit of an upcoming competition"
)
async def update_competition(
    request: CompetitionUpdateRequest,
    competition_id: str = Path(..., description="Competition id"),
    user_id: str = Depends(get_current_user),
    service: CompetitionService = Depends(get_competitions)
):
    changes = request.model_dump(exclude_unset=True)
    result = await service.update_competition(competition_id, user_id, changes)
    return create_success_response(data=unwrap(result), message="Competition updated")


@router.post(
    "/{competition_id}/join",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Join Competition",
    description="Enter a Shopify store using an offline access token"
)
async def join_competition(
    request: JoinCompetitionRequest,
    competition_id: str = Path(..., description="Competition id"),
    user_id: str = Depends(get_current_user),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.join_competition(
        competition_id,
        user_id,
        request.shopify_domain,
        request.access_token
    )
    return create_success_response(data=unwrap(result), message="Joined competition")


@router.get(
    "/{competition_id}/leaderboard",
    response_model=SuccessResponse,
    summary="Get Leaderboard",
    description="Participants ranked by revenue, ties broken by join time"
)
async def get_leaderboard(
    competition_id: str = Path(..., description="Competition id"),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.get_leaderboard(competition_id)
    return create_success_response(data=unwrap(result))


@router.post(
    "/{competition_id}/start",
    response_model=SuccessResponse,
    summary="Start Competition",
    description="Creator-triggered start once the start time has been reached"
)
async def start_competition(
    competition_id: str = Path(..., description="Competition id"),
    user_id: str = Depends(get_current_user),
    lifecycle: LifecycleScheduler = Depends(get_lifecycle)
):
    result = await lifecycle.start_competition(competition_id, user_id)
    return create_success_response(data=unwrap(result), message="Competition started")
