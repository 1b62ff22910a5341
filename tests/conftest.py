"""
Shared fixtures: a throwaway SQLite database per test and in-memory
stand-ins for the Whop and Shopify clients.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ENCRYPTION_KEY", "0f" * 32)
os.environ.setdefault("SHOPIFY_CLIENT_ID", "test-client-id")
os.environ.setdefault("SHOPIFY_CLIENT_SECRET", "test-client-secret")

from datetime import datetime, timedelta
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from cartbrawl.core.database import init_database, close_database, get_async_session, DatabaseManager
from cartbrawl.core.exceptions import ExternalServiceError
from cartbrawl.models import Competition, CompetitionStatus, Participant
from cartbrawl.services.whop_client import BalanceCheck
from cartbrawl.utils.encryption import TokenCipher


class FakeLedger:
    """In-memory Whop ledger recording every call."""

    def __init__(self, balance: Decimal = Decimal("10000")):
        self.balance = balance
        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.releases: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.tokens: Dict[str, str] = {}
        self.fail_escrow = False
        self.fail_release = False
        self.fail_notify_for: set = set()
        self.payout_lookups: List[str] = []
        self._ids = count(1)

    async def get_balance(self, user_id: str) -> Decimal:
        return self.balance

    async def verify_balance(self, user_id: str, amount: Decimal) -> BalanceCheck:
        return BalanceCheck(has_balance=self.balance >= amount, current_balance=self.balance)

    async def escrow(self, user_id: str, amount: Decimal, ref_id: str) -> str:
        if self.fail_escrow:
            raise ExternalServiceError("Whop request timed out")
        escrow_id = f"esc_{next(self._ids)}"
        self.escrows[escrow_id] = {"user_id": user_id, "amount": amount, "ref_id": ref_id}
        return escrow_id

    async def release_escrow(
        self,
        escrow_id: str,
        to_user_id: str,
        ref_id: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        if self.fail_release:
            raise ExternalServiceError("Whop request timed out")
        for release in self.releases:
            if idempotency_key and release["idempotency_key"] == idempotency_key:
                return release["payout_id"]
        payout_id = f"pay_{next(self._ids)}"
        self.releases.append({
            "escrow_id": escrow_id,
            "to_user_id": to_user_id,
            "ref_id": ref_id,
            "description": description,
            "idempotency_key": idempotency_key,
            "payout_id": payout_id,
        })
        return payout_id

    async def get_escrow_payout(self, escrow_id: str) -> Optional[str]:
        self.payout_lookups.append(escrow_id)
        for release in self.releases:
            if release["escrow_id"] == escrow_id:
                return release["payout_id"]
        return None

    async def notify(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        if user_id in self.fail_notify_for:
            raise ExternalServiceError("Whop API returned 503")
        self.notifications.append({"user_id": user_id, "title": title, "body": body, "data": data or {}})

    async def verify_user_token(self, token: str) -> Optional[str]:
        return self.tokens.get(token)

    def sent(self, notice_type: str) -> List[Dict[str, Any]]:
        return [n for n in self.notifications if n["data"].get("type") == notice_type]


class FakeRevenueClient:
    """Revenue source returning configured totals per store domain."""

    def __init__(self):
        self.totals: Dict[str, Decimal] = {}
        self.failing: set = set()
        self.calls: List[Dict[str, Any]] = []

    async def sum_paid_orders(
        self,
        access_token: str,
        store_domain: str,
        start: datetime,
        end: datetime
    ) -> Decimal:
        self.calls.append({
            "access_token": access_token,
            "store_domain": store_domain,
            "start": start,
            "end": end,
        })
        if store_domain in self.failing:
            raise ExternalServiceError("Shopify request timed out")
        return self.totals.get(store_domain, Decimal("0"))


@pytest_asyncio.fixture
async def database(tmp_path):
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'cartbrawl_test.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 6, 1, 12, 0, 0)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def revenue_client() -> FakeRevenueClient:
    return FakeRevenueClient()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher()


@pytest.fixture
def make_competition(database, now):
    """Insert a competition row directly, bypassing creation rules."""

    async def _make(
        *,
        title: str = "Summer Sales Sprint",
        prize: str = "500.00",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        status: CompetitionStatus = CompetitionStatus.UPCOMING,
        creator_id: str = "user_creator",
        funds_tx_id: Optional[str] = "esc_seed"
    ) -> str:
        start_date = start_date or now + timedelta(hours=1)
        end_date = end_date or start_date + timedelta(hours=2)
        async with get_async_session() as db:
            competition = Competition(
                title=title,
                prize=Decimal(prize),
                start_date=start_date,
                end_date=end_date,
                status=status.value,
                creator_id=creator_id,
                funds_tx_id=funds_tx_id,
            )
            db.add(competition)
            await db.flush()
            return competition.id

    return _make


@pytest.fixture
def add_participant(database, now, cipher):
    """Insert a participant row directly with an encrypted token."""
    joined = count(1)

    async def _add(
        competition_id: str,
        user_id: str,
        store_domain: Optional[str] = None,
        *,
        revenue: str = "0",
        joined_at: Optional[datetime] = None,
        last_revenue_sync: Optional[datetime] = None,
        access_token: str = "shpat_test_token"
    ) -> str:
        async with get_async_session() as db:
            participant = Participant(
                competition_id=competition_id,
                user_id=user_id,
                store_domain=store_domain or f"{user_id.replace('_', '-')}.myshopify.com",
                access_token=cipher.encrypt(access_token),
                total_revenue=Decimal(revenue),
                last_revenue_sync=last_revenue_sync,
                joined_at=joined_at or now - timedelta(days=1) + timedelta(minutes=next(joined)),
            )
            db.add(participant)
            await db.flush()
            return participant.id

    return _add
