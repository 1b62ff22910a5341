"""
Shopify Admin API client - paid-order revenue totals and the OAuth
code-for-token exchange.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import ConfigurationError, ExternalServiceError, ValidationError

logger = structlog.get_logger(__name__)


ORDERS_REVENUE_QUERY = """
query GetRevenue($first: Int!, $cursor: String, $query: String!) {
  orders(first: $first, after: $cursor, query: $query) {
    edges {
      cursor
      node {
        currentTotalPriceSet {
          shopMoney {
            amount
            currencyCode
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""


def _format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_orders_filter(start: datetime, end: datetime) -> str:
    """Shopify search query for paid orders created within [start, end]."""
    return " ".join([
        f"created_at:>={_format_timestamp(start)}",
        f"created_at:<={_format_timestamp(end)}",
        "financial_status:paid",
        "status:any",
    ])


def _state_key() -> bytes:
    if not settings.encryption_key:
        raise ConfigurationError("ENCRYPTION_KEY is required to sign OAuth state")
    return hashlib.sha256(b"shopify-oauth-state:" + bytes.fromhex(settings.encryption_key)).digest()


def _sign(payload: str) -> str:
    return hmac.new(_state_key(), payload.encode("ascii"), hashlib.sha256).hexdigest()


def encode_state(competition_id: str, user_id: str) -> str:
    """Signed OAuth state carrying the join context through the Shopify redirect."""
    data = json.dumps({"competitionId": competition_id, "userId": user_id})
    payload = base64.urlsafe_b64encode(data.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{_sign(payload)}"


def decode_state(state: str) -> Dict[str, str]:
    """
    Verify and decode an OAuth state produced by :func:`encode_state`.

    Raises:
        ValidationError: If the state is malformed or its signature does not match
    """
    payload, _, signature = (state or "").partition(".")
    try:
        if not payload or not hmac.compare_digest(_sign(payload).encode(), signature.encode("utf-8")):
            raise ValidationError("Invalid OAuth state")
        padded = payload + "=" * (-len(payload) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, TypeError) as e:
        raise ValidationError("Invalid OAuth state", {"error": str(e)})

    if not isinstance(data, dict) or not data.get("competitionId") or not data.get("userId"):
        raise ValidationError("Invalid OAuth state")
    return {"competition_id": str(data["competitionId"]), "user_id": str(data["userId"])}


class ShopifyClient:
    """Async Shopify Admin API client shared across stores."""

    def __init__(
        self,
        api_version: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_version = api_version or settings.shopify_api_version
        self.page_size = page_size or settings.shopify_page_size
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = logger.bind(service="shopify_client")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def graphql_url(self, store_domain: str) -> str:
        return f"https://{store_domain}/admin/api/{self.api_version}/graphql.json"

    async def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        try:
            response = await self._get_client().post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise ExternalServiceError("Shopify request timed out", {"url": url})
        except httpx.HTTPError as e:
            raise ExternalServiceError("Shopify request failed", {"url": url, "error": str(e)})

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Shopify API returned {response.status_code}",
                {"url": url, "status_code": response.status_code},
                retryable=response.status_code >= 500 or response.status_code == 429
            )

        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError("Shopify returned a non-JSON response", {"url": url})

    async def sum_paid_orders(
        self,
        access_token: str,
        store_domain: str,
        start: datetime,
        end: datetime
    ) -> Decimal:
        """
        Sum paid-order totals created within [start, end].

        Every page is consumed before returning. Any failure on any page
        raises, so a truncated total is never returned.

        Raises:
            ExternalServiceError: On transport, HTTP or GraphQL errors
        """
        url = self.graphql_url(store_domain)
        headers = {"X-Shopify-Access-Token": access_token}
        search = build_orders_filter(start, end)

        total = Decimal("0")
        cursor: Optional[str] = None
        pages = 0

        while True:
            body = await self._post(
                url,
                {
                    "query": ORDERS_REVENUE_QUERY,
                    "variables": {"first": self.page_size, "cursor": cursor, "query": search},
                },
                headers=headers
            )
            pages += 1

            if body.get("errors"):
                raise ExternalServiceError(
                    "Shopify GraphQL error",
                    {"store_domain": store_domain, "errors": body["errors"], "page": pages}
                )

            try:
                orders = body["data"]["orders"]
                edges = orders["edges"]
                page_info = orders["pageInfo"]
                for edge in edges:
                    total += Decimal(str(edge["node"]["currentTotalPriceSet"]["shopMoney"]["amount"]))
            except (KeyError, TypeError, InvalidOperation) as e:
                raise ExternalServiceError(
                    "Malformed Shopify orders response",
                    {"store_domain": store_domain, "page": pages, "error": str(e)}
                )

            if not page_info.get("hasNextPage"):
                break

            cursor = page_info.get("endCursor") or (edges[-1].get("cursor") if edges else None)
            if not cursor:
                raise ExternalServiceError(
                    "Shopify reported more pages without a cursor",
                    {"store_domain": store_domain, "page": pages}
                )

        self.logger.debug(
            "Revenue computed",
            store_domain=store_domain,
            pages=pages,
            total=str(total)
        )
        return total

    def build_authorize_url(self, shop: str, state: str) -> str:
        """Shopify OAuth authorize URL requesting offline access."""
        if not settings.shopify_client_id:
            raise ExternalServiceError("Shopify client id is not configured", retryable=False)

        url = httpx.URL(
            f"https://{shop}/admin/oauth/authorize",
            params={
                "client_id": settings.shopify_client_id,
                "scope": settings.shopify_scopes,
                "redirect_uri": settings.shopify_redirect_url,
                "state": state,
            }
        )
        return str(url)

    async def exchange_code(self, shop: str, code: str) -> str:
        """
        Exchange an OAuth authorization code for an offline access token.

        Raises:
            ExternalServiceError: If Shopify rejects the code
        """
        body = await self._post(
            f"https://{shop}/admin/oauth/access_token",
            {
                "client_id": settings.shopify_client_id,
                "client_secret": settings.shopify_client_secret,
                "code": code,
            }
        )
        token = body.get("access_token")
        if not token:
            raise ExternalServiceError("Shopify did not return an access token", {"shop": shop}, retryable=False)

        self.logger.info("Shopify access token obtained", shop=shop, scope=body.get("scope"))
        return token


# Global client instance
_shopify_client: Optional[ShopifyClient] = None


def get_shopify_client() -> ShopifyClient:
    global _shopify_client
    if _shopify_client is None:
        _shopify_client = ShopifyClient()
    return _shopify_client


async def close_shopify_client() -> None:
    global _shopify_client
    if _shopify_client is not None:
        await _shopify_client.close()
        _shopify_client = None
