"""
API dependencies for FastAPI endpoints.
Provides authentication and result-to-HTTP translation helpers.
"""

from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import ExternalServiceError
from cartbrawl.services.competition_service import CompetitionService, get_competition_service
from cartbrawl.services.types import OperationResult
from cartbrawl.services.whop_client import WhopClient, get_whop_client


logger = structlog.get_logger(__name__)


# Whop user token, sent as a bearer token or in the Whop iframe header
user_token_scheme = HTTPBearer(auto_error=False)


ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "AUTHENTICATION_ERROR": status.HTTP_401_UNAUTHORIZED,
    "AUTHORIZATION_ERROR": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CONFLICT": status.HTTP_409_CONFLICT,
    "NO_PARTICIPANTS": status.HTTP_409_CONFLICT,
    "EXTERNAL_SERVICE_ERROR": status.HTTP_502_BAD_GATEWAY,
}


def status_for(error_code: Optional[str]) -> int:
    return ERROR_STATUS.get(error_code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)


def unwrap(result: OperationResult) -> Any:
    """Return the result data or raise the matching HTTPException."""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=status_for(result.error_code),
        detail={
            "error": result.error_code or "INTERNAL_SERVER_ERROR",
            "message": result.error or "Request failed"
        }
    )


def get_ledger() -> WhopClient:
    return get_whop_client()


def get_competitions() -> CompetitionService:
    return get_competition_service()


async def _resolve_user(
    credentials: Optional[HTTPAuthorizationCredentials],
    whop_user_token: Optional[str],
    ledger: WhopClient
) -> Optional[str]:
    token = credentials.credentials if credentials else whop_user_token
    if not token:
        return None

    try:
        user_id = await ledger.verify_user_token(token)
    except ExternalServiceError as e:
        logger.warning("User token verification unavailable", error=e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": e.code, "message": "Could not verify user token"}
        )

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_ERROR", "message": "Invalid user token"}
        )
    return user_id


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(user_token_scheme),
    whop_user_token: Optional[str] = Header(None, alias="x-whop-user-token"),
    ledger: WhopClient = Depends(get_ledger)
) -> str:
    """Authenticated Whop user id."""
    user_id = await _resolve_user(credentials, whop_user_token, ledger)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_ERROR", "message": "Authentication required"}
        )
    return user_id


async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(user_token_scheme),
    whop_user_token: Optional[str] = Header(None, alias="x-whop-user-token"),
    ledger: WhopClient = Depends(get_ledger)
) -> Optional[str]:
    """Whop user id if a token was sent, None otherwise."""
    return await _resolve_user(credentials, whop_user_token, ledger)


async def require_admin(user_id: str = Depends(get_current_user)) -> str:
    if user_id not in settings.admin_user_ids:
        logger.warning("Admin access denied", user_id=user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "AUTHORIZATION_ERROR", "message": "Admin access required"}
        )
    return user_id
