"""
Shopify OAuth routes.

``/auth`` sends the user to Shopify to grant offline order access; the
``/callback`` exchanges the code and joins the competition named in the
signed state.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

import structlog

from cartbrawl.api.dependencies import get_competitions, get_current_user, unwrap
from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import CartBrawlException
from cartbrawl.services.competition_service import CompetitionService
from cartbrawl.services.shopify_client import (
    ShopifyClient,
    decode_state,
    encode_state,
    get_shopify_client
)
from cartbrawl.utils.validation import validate_store_domain


router = APIRouter()
logger = structlog.get_logger(__name__)


def get_shopify() -> ShopifyClient:
    return get_shopify_client()


def _bad_request(e: CartBrawlException) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": e.code, "message": e.message}
    )


@router.get(
    "/auth",
    summary="Start Shopify OAuth",
    description="Redirect to Shopify to connect a store for a competition"
)
async def shopify_auth(
    competition_id: str = Query(..., description="Competition to join"),
    shop: str = Query(..., description="Store domain, e.g. store-name.myshopify.com"),
    user_id: str = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify)
):
    try:
        domain = validate_store_domain(shop)
        url = client.build_authorize_url(domain, encode_state(competition_id, user_id))
    except CartBrawlException as e:
        logger.warning("Shopify auth rejected", shop=shop, error=e.message)
        raise _bad_request(e)

    logger.info("Redirecting to Shopify OAuth", user_id=user_id, competition_id=competition_id, shop=domain)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get(
    "/callback",
    summary="Shopify OAuth Callback",
    description="Exchange the authorization code and join the competition"
)
async def shopify_callback(
    code: str = Query(...),
    shop: str = Query(...),
    state: str = Query(...),
    client: ShopifyClient = Depends(get_shopify),
    service: CompetitionService = Depends(get_competitions)
):
    try:
        context = decode_state(state)
        domain = validate_store_domain(shop)
    except CartBrawlException as e:
        logger.warning("Shopify callback rejected", shop=shop, error=e.message)
        raise _bad_request(e)

    try:
        access_token = await client.exchange_code(domain, code)
    except CartBrawlException as e:
        logger.error("Shopify code exchange failed", shop=domain, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": e.code, "message": "Failed to obtain access token"}
        )

    competition_id = context["competition_id"]
    result = await service.join_competition(competition_id, context["user_id"], domain, access_token)
    unwrap(result)

    return RedirectResponse(
        f"{settings.frontend_url.rstrip('/')}/experiences/{competition_id}?joined=true",
        status_code=status.HTTP_302_FOUND
    )
