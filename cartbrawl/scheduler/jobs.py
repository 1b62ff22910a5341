"""
Background job runner.

A single stateless pass over all periodic work: status transitions,
lifecycle notices, pending payout retries and revenue sync. An outside
trigger (cron, a managed job queue, or the admin API) decides when to run.
"""

from datetime import datetime
from typing import Optional

import structlog

from cartbrawl.models import utcnow
from cartbrawl.scheduler.lifecycle import LifecycleScheduler
from cartbrawl.services.notification_service import NotificationService
from cartbrawl.services.revenue_sync import RevenueSyncService
from cartbrawl.services.settlement import SettlementService
from cartbrawl.services.shopify_client import ShopifyClient, get_shopify_client
from cartbrawl.services.types import JobRunReport, SyncStats
from cartbrawl.services.whop_client import WhopClient, get_whop_client

logger = structlog.get_logger(__name__)


class BackgroundJobRunner:
    """Runs every periodic job once, isolating failures between jobs."""

    def __init__(
        self,
        ledger: Optional[WhopClient] = None,
        revenue_client: Optional[ShopifyClient] = None
    ):
        ledger = ledger or get_whop_client()
        notifier = NotificationService(ledger)
        self.settlement = SettlementService(ledger, notifier)
        self.lifecycle = LifecycleScheduler(ledger, self.settlement, notifier)
        self.revenue = RevenueSyncService(revenue_client or get_shopify_client())
        self.logger = logger.bind(service="background_jobs")

    async def run_all(
        self,
        now: Optional[datetime] = None,
        sync_revenue: bool = True
    ) -> JobRunReport:
        """
        Run all jobs in order. Revenue sync can be skipped when the caller
        triggers it on its own, slower cadence.
        """
        now = now or utcnow()
        report = JobRunReport(started_at=now)

        self.logger.info("Running background jobs", now=now.isoformat(), sync_revenue=sync_revenue)

        report.transitions = await self.lifecycle.advance_statuses(now)
        report.starting_soon = await self.lifecycle.notify_upcoming_starts(now)
        report.ending_soon = await self.lifecycle.notify_ending_soon(now)
        report.payouts = await self.settlement.retry_pending_payouts()

        if sync_revenue:
            report.revenue = await self.revenue.sync_all_active(now)

        report.finished_at = utcnow()

        log = self.logger.info if report.success else self.logger.warning
        log(
            "Background jobs finished",
            success=report.success,
            started=report.transitions.started,
            ended=report.transitions.ended,
            starting_notices=report.starting_soon.notified,
            ending_notices=report.ending_soon.notified,
            payouts_paid=report.payouts.paid,
            revenue_updated=report.revenue.updated,
            failed_units=report.failed_units
        )
        return report

    async def sync_revenue(self, competition_id: Optional[str] = None, now: Optional[datetime] = None) -> SyncStats:
        if competition_id:
            return await self.revenue.sync_competition(competition_id, now)
        return await self.revenue.sync_all_active(now)

