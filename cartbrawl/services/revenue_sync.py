"""
Revenue Sync Engine.

Recomputes each active participant's revenue from Shopify over the full
competition window. Totals are always overwritten with a fresh sum, never
incremented.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.orm import selectinload

import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.database import get_async_session
from cartbrawl.models import Competition, CompetitionStatus, Participant, utcnow
from cartbrawl.services.shopify_client import ShopifyClient, get_shopify_client
from cartbrawl.services.types import SyncOutcome, SyncStats
from cartbrawl.utils.encryption import TokenCipher, get_cipher

logger = structlog.get_logger(__name__)


class RevenueSyncService:
    """Keeps participant revenue current, one participant per unit of work."""

    def __init__(
        self,
        revenue_client: Optional[ShopifyClient] = None,
        cipher: Optional[TokenCipher] = None,
        max_workers: Optional[int] = None,
        min_resync_seconds: Optional[int] = None
    ):
        self.revenue_client = revenue_client or get_shopify_client()
        self._cipher = cipher
        self.max_workers = max_workers or settings.scheduler_max_workers
        self.min_resync_seconds = (
            min_resync_seconds if min_resync_seconds is not None
            else settings.revenue_min_resync_seconds
        )
        self.logger = logger.bind(service="revenue_sync")

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def sync_participant(
        self,
        participant_id: str,
        now: Optional[datetime] = None
    ) -> SyncOutcome:
        """
        Recompute one participant's revenue.

        Skipped when the competition is not ACTIVE or the last sync is more
        recent than the minimum resync interval. Any failure leaves the
        stored revenue and sync time untouched and is reported as FAILED.
        """
        now = now or utcnow()

        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(Participant)
                    .options(selectinload(Participant.competition))
                    .where(Participant.id == participant_id)
                )
                participant = result.scalar_one_or_none()
                if participant is None:
                    self.logger.warning("Participant not found", participant_id=participant_id)
                    return SyncOutcome.FAILED

                competition = participant.competition
                if competition.status != CompetitionStatus.ACTIVE.value:
                    return SyncOutcome.SKIPPED

                if not participant.is_sync_due(now, self.min_resync_seconds):
                    return SyncOutcome.SKIPPED

                encrypted_token = participant.access_token
                store_domain = participant.store_domain
                window_start = competition.start_date
                window_end = competition.end_date

        except Exception as e:
            self.logger.error("Failed to load participant", participant_id=participant_id, error=str(e))
            return SyncOutcome.FAILED

        try:
            access_token = self.cipher.decrypt(encrypted_token)
            revenue = await self.revenue_client.sum_paid_orders(
                access_token, store_domain, window_start, window_end
            )
        except Exception as e:
            self.logger.warning(
                "Revenue query failed",
                participant_id=participant_id,
                store_domain=store_domain,
                error=str(e)
            )
            return SyncOutcome.FAILED

        revenue = max(Decimal(str(revenue)), Decimal("0")).quantize(Decimal("0.01"))

        try:
            async with get_async_session() as db:
                await db.execute(
                    update(Participant)
                    .where(
                        Participant.id == participant_id,
                        or_(
                            Participant.last_revenue_sync.is_(None),
                            Participant.last_revenue_sync < now
                        )
                    )
                    .values(total_revenue=revenue, last_revenue_sync=now)
                )
        except Exception as e:
            self.logger.error("Failed to store revenue", participant_id=participant_id, error=str(e))
            return SyncOutcome.FAILED

        self.logger.debug(
            "Participant revenue updated",
            participant_id=participant_id,
            store_domain=store_domain,
            revenue=str(revenue)
        )
        return SyncOutcome.UPDATED

    async def _sync_many(
        self,
        participant_ids: List[str],
        now: datetime,
        semaphore: asyncio.Semaphore
    ) -> SyncStats:
        async def bounded(participant_id: str) -> SyncOutcome:
            async with semaphore:
                return await self.sync_participant(participant_id, now)

        outcomes = await asyncio.gather(
            *(bounded(pid) for pid in participant_ids),
            return_exceptions=True
        )

        stats = SyncStats()
        for participant_id, outcome in zip(participant_ids, outcomes):
            if isinstance(outcome, Exception):
                self.logger.error("Participant sync crashed", participant_id=participant_id, error=str(outcome))
                stats.failed += 1
            else:
                stats.record(outcome)
        return stats

    async def _participant_ids(self, competition_id: str) -> Optional[List[str]]:
        """Participant ids of an ACTIVE competition, or None if it is not active."""
        async with get_async_session() as db:
            competition = await db.get(Competition, competition_id)
            if competition is None or competition.status != CompetitionStatus.ACTIVE.value:
                return None
            result = await db.execute(
                select(Participant.id).where(Participant.competition_id == competition_id)
            )
            return list(result.scalars().all())

    async def sync_competition(
        self,
        competition_id: str,
        now: Optional[datetime] = None,
        semaphore: Optional[asyncio.Semaphore] = None
    ) -> SyncStats:
        """Sync every participant of an ACTIVE competition concurrently."""
        now = now or utcnow()
        semaphore = semaphore or asyncio.Semaphore(self.max_workers)

        try:
            participant_ids = await self._participant_ids(competition_id)
        except Exception as e:
            self.logger.error("Failed to load competition participants", competition_id=competition_id, error=str(e))
            return SyncStats(failed=1)

        if participant_ids is None:
            self.logger.debug("Competition not active, revenue sync skipped", competition_id=competition_id)
            return SyncStats()

        stats = await self._sync_many(participant_ids, now, semaphore)
        stats.competitions = 1

        self.logger.info(
            "Competition revenue synced",
            competition_id=competition_id,
            updated=stats.updated,
            skipped=stats.skipped,
            failed=stats.failed
        )
        return stats

    async def sync_all_active(self, now: Optional[datetime] = None) -> SyncStats:
        """Sync every ACTIVE competition; one competition never blocks another."""
        now = now or utcnow()
        semaphore = asyncio.Semaphore(self.max_workers)

        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(Competition.id).where(Competition.status == CompetitionStatus.ACTIVE.value)
                )
                competition_ids = list(result.scalars().all())
        except Exception as e:
            self.logger.error("Failed to load active competitions", error=str(e))
            return SyncStats(failed=1)

        totals = SyncStats()
        results = await asyncio.gather(
            *(self.sync_competition(cid, now, semaphore) for cid in competition_ids),
            return_exceptions=True
        )
        for competition_id, result in zip(competition_ids, results):
            if isinstance(result, Exception):
                self.logger.error("Competition sync crashed", competition_id=competition_id, error=str(result))
                totals.failed += 1
            else:
                totals.add(result)

        self.logger.info(
            "Revenue sync completed",
            competitions=totals.competitions,
            updated=totals.updated,
            skipped=totals.skipped,
            failed=totals.failed,
            success_rate=round(totals.success_rate, 3)
        )
        return totals
