"""
Signed-in user routes: own competitions and ledger balance.
"""

from fastapi import APIRouter, Depends

from cartbrawl.api.dependencies import get_competitions, get_current_user, unwrap
from cartbrawl.api.schemas.common import SuccessResponse, create_success_response
from cartbrawl.services.competition_service import CompetitionService


router = APIRouter()


@router.get(
    "/competitions",
    response_model=SuccessResponse,
    summary="My Competitions",
    description="Competitions the user created and entered"
)
async def get_my_competitions(
    user_id: str = Depends(get_current_user),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.get_user_competitions(user_id)
    return create_success_response(data=unwrap(result))


@router.get(
    "/balance",
    response_model=SuccessResponse,
    summary="My Balance",
    description="Ledger balance available for prizes"
)
async def get_my_balance(
    user_id: str = Depends(get_current_user),
    service: CompetitionService = Depends(get_competitions)
):
    result = await service.get_user_balance(user_id)
    return create_success_response(data=unwrap(result))
