"""
Whop API client - balances, prize escrow, payouts, push notifications and
user token verification.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import ExternalServiceError

logger = structlog.get_logger(__name__)


@dataclass
class BalanceCheck:
    """Outcome of a balance verification."""
    has_balance: bool
    current_balance: Optional[Decimal] = None


class WhopClient:
    """
    Thin async wrapper over the Whop REST API.

    Every failure (timeout, transport error, non-2xx response, malformed
    body) is raised as ExternalServiceError; 5xx and timeouts are marked
    retryable, 4xx are not.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        agent_user_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key or settings.whop_api_key
        self.base_url = (base_url or settings.whop_api_url).rstrip("/")
        self.agent_user_id = agent_user_id or settings.whop_agent_user_id
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = logger.bind(service="whop_client")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        on_behalf_of: Optional[str] = None,
        token: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token or self.api_key}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        acting_user = on_behalf_of or self.agent_user_id
        if acting_user and token is None:
            headers["x-on-behalf-of"] = acting_user

        try:
            response = await self._get_client().request(
                method, path, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            self.logger.warning("Whop request timed out", path=path, error=str(e))
            raise ExternalServiceError("Whop request timed out", {"path": path})
        except httpx.HTTPError as e:
            self.logger.warning("Whop request failed", path=path, error=str(e))
            raise ExternalServiceError("Whop request failed", {"path": path, "error": str(e)})

        if response.status_code >= 400:
            message = _error_message(response)
            self.logger.warning(
                "Whop API error",
                path=path,
                status_code=response.status_code,
                error=message
            )
            raise ExternalServiceError(
                message,
                {"path": path, "status_code": response.status_code},
                retryable=response.status_code >= 500 or response.status_code == 429
            )

        if not response.content:
            return {}

        try:
            body = response.json()
        except ValueError:
            raise ExternalServiceError("Whop returned a non-JSON response", {"path": path})
        return body if isinstance(body, dict) else {"data": body}

    async def get_balance(self, user_id: str) -> Decimal:
        """Return the user's available balance."""
        body = await self._request("GET", f"/users/{user_id}/balance", on_behalf_of=user_id)
        try:
            return Decimal(str(body.get("balance", 0)))
        except InvalidOperation:
            raise ExternalServiceError("Whop returned an invalid balance", {"user_id": user_id})

    async def verify_balance(self, user_id: str, amount: Decimal) -> BalanceCheck:
        """Check that the user can cover `amount`. Lookup failures count as no balance."""
        try:
            balance = await self.get_balance(user_id)
        except ExternalServiceError as e:
            self.logger.warning("Balance lookup failed", user_id=user_id, error=e.message)
            return BalanceCheck(has_balance=False)

        return BalanceCheck(has_balance=balance >= amount, current_balance=balance)

    async def escrow(self, user_id: str, amount: Decimal, ref_id: str) -> str:
        """
        Hold `amount` from the user's balance against a competition.

        Returns:
            Escrow id
        """
        body = await self._request(
            "POST",
            "/escrows",
            json={
                "user_id": user_id,
                "amount": str(amount),
                "currency": settings.prize_currency,
                "description": f"Competition prize escrow for competition {ref_id}",
                "metadata": {"competition_id": ref_id, "type": "competition_prize"},
            },
            on_behalf_of=user_id
        )
        escrow_id = body.get("id")
        if not escrow_id:
            raise ExternalServiceError("Whop escrow response missing id", {"ref_id": ref_id})

        self.logger.info("Prize escrowed", user_id=user_id, amount=str(amount), escrow_id=escrow_id)
        return str(escrow_id)

    async def release_escrow(
        self,
        escrow_id: str,
        to_user_id: str,
        ref_id: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        """
        Release an escrow to the recipient.

        Repeating a release with the same idempotency key returns the
        original payout instead of paying twice.

        Returns:
            Payout id
        """
        body = await self._request(
            "POST",
            f"/escrows/{escrow_id}/release",
            json={
                "recipient_user_id": to_user_id,
                "description": description or f"Competition prize payout for competition {ref_id}",
                "metadata": {"competition_id": ref_id, "type": "competition_winner_payout"},
            },
            idempotency_key=idempotency_key
        )
        payout_id = body.get("payout_id")
        if not payout_id:
            raise ExternalServiceError("Whop release response missing payout_id", {"escrow_id": escrow_id})

        self.logger.info("Escrow released", escrow_id=escrow_id, to_user_id=to_user_id, payout_id=payout_id)
        return str(payout_id)

    async def get_escrow_payout(self, escrow_id: str) -> Optional[str]:
        """Payout id of an already released escrow, or None while it is still held."""
        body = await self._request("GET", f"/escrows/{escrow_id}")
        payout_id = body.get("payout_id")
        return str(payout_id) if payout_id else None

    async def notify(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        """Send a push notification to one user."""
        await self._request(
            "POST",
            "/notifications/push",
            json={"user_id": user_id, "title": title, "body": body, "data": data or {}},
            on_behalf_of=user_id
        )

    async def verify_user_token(self, token: str) -> Optional[str]:
        """
        Resolve a Whop user token to a user id.

        Returns:
            User id, or None if the token is invalid
        """
        if not token:
            return None
        try:
            body = await self._request("GET", "/me", token=token)
        except ExternalServiceError as e:
            if not e.retryable:
                return None
            raise
        user_id = body.get("id")
        return str(user_id) if user_id else None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Whop API returned {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message") or f"Whop API returned {response.status_code}"
        if isinstance(error, str):
            return error
        if body.get("message"):
            return str(body["message"])
    return f"Whop API returned {response.status_code}"


# Global client instance
_whop_client: Optional[WhopClient] = None


def get_whop_client() -> WhopClient:
    global _whop_client
    if _whop_client is None:
        _whop_client = WhopClient()
    return _whop_client


async def close_whop_client() -> None:
    global _whop_client
    if _whop_client is not None:
        await _whop_client.close()
        _whop_client = None
