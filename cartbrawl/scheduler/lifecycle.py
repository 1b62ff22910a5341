"""
Competition Lifecycle Scheduler.

Advances competitions UPCOMING -> ACTIVE -> COMPLETED from wall-clock time
and sends the lifecycle notices. Each call is a complete, stateless batch
pass over the store; the caller supplies the trigger.

Status changes are compare-and-set on the status column, so overlapping or
repeated runs never transition or settle a competition twice.
"""

import asyncio
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.orm import selectinload

import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.database import get_async_session
from cartbrawl.core.exceptions import (
    AuthorizationError,
    CartBrawlException,
    CompetitionNotFoundError,
    ConflictError,
    ValidationError,
)
from cartbrawl.models import Competition, CompetitionStatus, Participant, utcnow
from cartbrawl.services.notification_service import FanoutResult, NotificationService
from cartbrawl.services.settlement import SettlementService
from cartbrawl.services.types import NotificationStats, OperationResult, TransitionStats
from cartbrawl.services.whop_client import WhopClient, get_whop_client

logger = structlog.get_logger(__name__)


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes from `now` to `target`, rounded half up."""
    return int(math.floor((target - now).total_seconds() / 60 + 0.5))


class LifecycleScheduler:
    """Time-driven status transitions and lifecycle notices."""

    def __init__(
        self,
        ledger: Optional[WhopClient] = None,
        settlement: Optional[SettlementService] = None,
        notifier: Optional[NotificationService] = None,
        max_workers: Optional[int] = None
    ):
        self.ledger = ledger or get_whop_client()
        self.notifier = notifier or NotificationService(self.ledger)
        self.settlement = settlement or SettlementService(self.ledger, self.notifier)
        self.max_workers = max_workers or settings.scheduler_max_workers
        self.logger = logger.bind(service="lifecycle_scheduler")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        competition_id: str,
        from_status: CompetitionStatus,
        to_status: CompetitionStatus,
        now: datetime
    ) -> Tuple[bool, Optional[str], List[str]]:
        """
        Compare-and-set one status step.

        Returns:
            (transitioned, title, participant user ids)
        """
        conditions = [Competition.id == competition_id, Competition.status == from_status.value]
        if to_status is CompetitionStatus.ACTIVE:
            conditions += [Competition.start_date <= now, Competition.funds_tx_id.is_not(None)]
        else:
            conditions.append(Competition.end_date <= now)

        async with get_async_session() as db:
            result = await db.execute(
                update(Competition)
                .where(*conditions)
                .values(status=to_status.value, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return False, None, []

            competition = await db.get(Competition, competition_id)
            participants = await db.execute(
                select(Participant.user_id).where(Participant.competition_id == competition_id)
            )
            return True, competition.title, list(participants.scalars().all())

    async def _start_one(self, competition_id: str, now: datetime) -> Tuple[bool, FanoutResult, bool]:
        started, title, user_ids = await self._transition(
            competition_id, CompetitionStatus.UPCOMING, CompetitionStatus.ACTIVE, now
        )
        if not started:
            return False, FanoutResult(), True

        self.logger.info(
            "Competition started",
            competition_id=competition_id,
            title=title,
            participants=len(user_ids)
        )
        fanout = FanoutResult()
        if user_ids:
            fanout = await self.notifier.competition_started(user_ids, title)
        return True, fanout, True

    async def _end_one(self, competition_id: str, now: datetime) -> Tuple[bool, FanoutResult, bool]:
        """
        End one competition and settle it.

        Returns:
            (transitioned, notice fan-out, settled). A settlement that failed
            for any reason other than missing participants is picked up
            again by the pending settlement pass.
        """
        ended, title, user_ids = await self._transition(
            competition_id, CompetitionStatus.ACTIVE, CompetitionStatus.COMPLETED, now
        )
        if not ended:
            return False, FanoutResult(), True

        self.logger.info("Competition ended", competition_id=competition_id, title=title)

        settlement = await self.settlement.settle(competition_id)
        settled = settlement.success or settlement.error_code == "NO_PARTICIPANTS"
        if settlement.success:
            self.logger.info(
                "Competition settled",
                competition_id=competition_id,
                winner=settlement.data["winner"]["user_id"],
                paid=settlement.data["paid"]
            )
        else:
            self.logger.warning(
                "Competition settlement incomplete",
                competition_id=competition_id,
                error=settlement.error,
                error_code=settlement.error_code
            )

        fanout = FanoutResult()
        if user_ids:
            fanout = await self.notifier.competition_ended(user_ids, title)
        return True, fanout, settled

    async def _run_each(
        self,
        competition_ids: List[str],
        unit: Callable[[str, datetime], Awaitable[Tuple[bool, FanoutResult, bool]]],
        now: datetime
    ) -> List[Any]:
        semaphore = asyncio.Semaphore(self.max_workers)

        async def bounded(competition_id: str):
            async with semaphore:
                return await unit(competition_id, now)

        return await asyncio.gather(
            *(bounded(cid) for cid in competition_ids),
            return_exceptions=True
        )

    async def _ids(self, *conditions) -> List[str]:
        async with get_async_session() as db:
            result = await db.execute(select(Competition.id).where(*conditions))
            return list(result.scalars().all())

    async def advance_statuses(self, now: Optional[datetime] = None) -> TransitionStats:
        """
        Start due UPCOMING competitions, then end due ACTIVE ones.

        Ending runs after starting so a competition whose whole window has
        passed still steps through ACTIVE before COMPLETED.
        """
        now = now or utcnow()
        stats = TransitionStats()

        phases = [
            (
                "start",
                self._start_one,
                (
                    Competition.status == CompetitionStatus.UPCOMING.value,
                    Competition.start_date <= now,
                    Competition.funds_tx_id.is_not(None),
                ),
            ),
            (
                "end",
                self._end_one,
                (
                    Competition.status == CompetitionStatus.ACTIVE.value,
                    Competition.end_date <= now,
                ),
            ),
        ]

        for phase, unit, conditions in phases:
            try:
                competition_ids = await self._ids(*conditions)
            except Exception as e:
                self.logger.error("Failed to load due competitions", phase=phase, error=str(e))
                stats.failed += 1
                stats.errors.append(f"{phase}: {e}")
                continue

            results = await self._run_each(competition_ids, unit, now)
            for competition_id, outcome in zip(competition_ids, results):
                if isinstance(outcome, Exception):
                    self.logger.error(
                        "Competition transition failed",
                        phase=phase,
                        competition_id=competition_id,
                        error=str(outcome)
                    )
                    stats.failed += 1
                    stats.errors.append(f"{competition_id}: {outcome}")
                    continue

                transitioned, fanout, settled = outcome
                if transitioned:
                    if phase == "start":
                        stats.started += 1
                    else:
                        stats.ended += 1
                if not settled:
                    stats.failed += 1
                    stats.errors.append(f"{competition_id}: settlement pending")
                stats.send_failures += fanout.failed

        await self._warn_unfunded(now)

        self.logger.info(
            "Competition statuses advanced",
            started=stats.started,
            ended=stats.ended,
            failed=stats.failed
        )
        return stats

    async def _warn_unfunded(self, now: datetime) -> None:
        try:
            stuck = await self._ids(
                Competition.status == CompetitionStatus.UPCOMING.value,
                Competition.start_date <= now,
                Competition.funds_tx_id.is_(None),
            )
        except Exception as e:
            self.logger.error("Failed to check unfunded competitions", error=str(e))
            return
        for competition_id in stuck:
            self.logger.warning("Competition due to start has no escrow", competition_id=competition_id)

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    async def _notify_window(
        self,
        status: CompetitionStatus,
        date_column,
        now: datetime,
        send: Callable[[List[str], str, int], Awaitable[FanoutResult]],
        label: str
    ) -> NotificationStats:
        window_start = now + timedelta(minutes=settings.notice_window_min_minutes)
        window_end = now + timedelta(minutes=settings.notice_window_max_minutes)
        stats = NotificationStats()

        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(Competition)
                    .options(selectinload(Competition.participants))
                    .where(
                        Competition.status == status.value,
                        date_column > window_start,
                        date_column <= window_end
                    )
                )
                due = [
                    (c.id, c.title, getattr(c, date_column.key), [p.user_id for p in c.participants])
                    for c in result.scalars().all()
                ]
        except Exception as e:
            self.logger.error("Failed to load competitions for notices", notice=label, error=str(e))
            stats.failed += 1
            return stats

        due = [item for item in due if item[3]]
        semaphore = asyncio.Semaphore(self.max_workers)

        async def notify(item) -> FanoutResult:
            _, title, moment, user_ids = item
            async with semaphore:
                return await send(user_ids, title, minutes_until(moment, now))

        results = await asyncio.gather(*(notify(item) for item in due), return_exceptions=True)
        for item, outcome in zip(due, results):
            if isinstance(outcome, Exception):
                self.logger.error("Notice dispatch failed", notice=label, competition_id=item[0], error=str(outcome))
                stats.failed += 1
                continue
            stats.notified += 1
            stats.sent += outcome.sent
            stats.send_failures += outcome.failed

        if due:
            self.logger.info(
                "Lifecycle notices sent",
                notice=label,
                competitions=stats.notified,
                sent=stats.sent,
                send_failures=stats.send_failures
            )
        return stats

    async def notify_upcoming_starts(self, now: Optional[datetime] = None) -> NotificationStats:
        """Send starting-soon notices for UPCOMING competitions inside the notice window."""
        return await self._notify_window(
            CompetitionStatus.UPCOMING,
            Competition.start_date,
            now or utcnow(),
            self.notifier.competition_starting,
            "starting_soon"
        )

    async def notify_ending_soon(self, now: Optional[datetime] = None) -> NotificationStats:
        """Send ending-soon notices for ACTIVE competitions inside the notice window."""
        return await self._notify_window(
            CompetitionStatus.ACTIVE,
            Competition.end_date,
            now or utcnow(),
            self.notifier.competition_ending_soon,
            "ending_soon"
        )

    # ------------------------------------------------------------------
    # Manual start
    # ------------------------------------------------------------------

    async def start_competition(
        self,
        competition_id: str,
        user_id: str,
        now: Optional[datetime] = None
    ) -> OperationResult:
        """Creator-triggered start once the start time has been reached."""
        now = now or utcnow()

        try:
            async with get_async_session() as db:
                competition = await db.get(Competition, competition_id)
                if competition is None:
                    raise CompetitionNotFoundError(competition_id)
                if competition.creator_id != user_id:
                    raise AuthorizationError("Only the creator can start this competition")
                if competition.status != CompetitionStatus.UPCOMING.value:
                    raise ConflictError(f"Competition is already {competition.status.lower()}")
                if now < competition.start_date:
                    hours = math.ceil((competition.start_date - now).total_seconds() / 3600)
                    raise ValidationError(
                        f"Competition cannot be started until {competition.start_date.isoformat()}Z. "
                        f"{hours} hours remaining."
                    )
                if not competition.funds_tx_id:
                    raise ConflictError("Competition funds must be escrowed before starting")

            started, fanout, _ = await self._start_one(competition_id, now)
            if not started:
                raise ConflictError("Competition was started concurrently")

        except CartBrawlException as e:
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to start competition", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to start competition", "DATABASE_ERROR")

        return OperationResult.ok({
            "id": competition_id,
            "status": CompetitionStatus.ACTIVE.value,
            "notified": fanout.sent,
        })

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_job_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Competition counts plus active and soon-to-start competitions."""
        now = now or utcnow()
        soon = now + timedelta(minutes=settings.notice_window_max_minutes)

        async with get_async_session() as db:
            counts = dict(
                (await db.execute(
                    select(Competition.status, func.count(Competition.id)).group_by(Competition.status)
                )).all()
            )

            active = await db.execute(
                select(Competition.id, Competition.title, Competition.start_date, Competition.end_date,
                       func.count(Participant.id))
                .outerjoin(Participant, Participant.competition_id == Competition.id)
                .where(Competition.status == CompetitionStatus.ACTIVE.value)
                .group_by(Competition.id, Competition.title, Competition.start_date, Competition.end_date)
            )
            upcoming = await db.execute(
                select(Competition.id, Competition.title, Competition.start_date)
                .where(
                    Competition.status == CompetitionStatus.UPCOMING.value,
                    Competition.start_date <= soon
                )
            )

            active_rows = active.all()
            upcoming_rows = upcoming.all()

        return {
            "success": True,
            "timestamp": now.isoformat(),
            "statistics": {
                "total": sum(counts.values()),
                "upcoming": counts.get(CompetitionStatus.UPCOMING.value, 0),
                "active": counts.get(CompetitionStatus.ACTIVE.value, 0),
                "completed": counts.get(CompetitionStatus.COMPLETED.value, 0),
            },
            "active_competitions": [
                {
                    "id": row[0],
                    "title": row[1],
                    "start_date": row[2].isoformat(),
                    "end_date": row[3].isoformat(),
                    "participant_count": row[4],
                }
                for row in active_rows
            ],
            "upcoming_competitions": [
                {"id": row[0], "title": row[1], "start_date": row[2].isoformat()}
                for row in upcoming_rows
            ],
        }
