"""
Settlement Engine.

Picks the winner of a COMPLETED competition and hands the escrowed prize
over exactly once:

1. An existing winner is returned as-is; only a missing payout is retried.
2. No participants means no winner.
3. Highest revenue wins; ties go to the earliest joiner.
4. The escrow is released to the winner and the payout id attached. A
   release that was attempted but never recorded is looked up on the
   ledger first instead of being sent again.
5. The winner is notified only after a successful payout.

Winner selection and fund release are separate steps so a ledger failure
never changes the winner on retry.
"""

from typing import Any, Dict, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

import structlog

from cartbrawl.core.database import get_async_session
from cartbrawl.core.exceptions import CartBrawlException, CompetitionNotFoundError, ConflictError
from cartbrawl.models import Competition, CompetitionStatus, Participant, Winner, utcnow
from cartbrawl.services.competition_service import rank_participants, serialize_winner
from cartbrawl.services.notification_service import NotificationService, format_prize
from cartbrawl.services.types import OperationResult, PayoutStats
from cartbrawl.services.whop_client import WhopClient, get_whop_client

logger = structlog.get_logger(__name__)


class SettlementService:
    """Winner determination and prize payout."""

    def __init__(
        self,
        ledger: Optional[WhopClient] = None,
        notifier: Optional[NotificationService] = None
    ):
        self.ledger = ledger or get_whop_client()
        self.notifier = notifier or NotificationService(self.ledger)
        self.logger = logger.bind(service="settlement")

    async def settle(self, competition_id: str) -> OperationResult:
        """
        Settle a COMPLETED competition. Safe to call any number of times.

        Returns:
            OperationResult whose data holds the winner, whether it was
            created by this call and whether the prize has been paid out
        """
        return await self._settle(competition_id, retry_on_conflict=True)

    async def _settle(self, competition_id: str, retry_on_conflict: bool) -> OperationResult:
        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(Competition)
                    .options(
                        selectinload(Competition.participants),
                        selectinload(Competition.winner)
                    )
                    .where(Competition.id == competition_id)
                )
                competition = result.scalar_one_or_none()
                if competition is None:
                    raise CompetitionNotFoundError(competition_id)

                if competition.status != CompetitionStatus.COMPLETED.value:
                    raise ConflictError(
                        "Competition is not completed",
                        {"competition_id": competition_id, "status": competition.status}
                    )

                winner = competition.winner
                created = False

                if winner is None:
                    if not competition.participants:
                        self.logger.info("No participants, no winner", competition_id=competition_id)
                        return OperationResult.fail("No participants in competition", "NO_PARTICIPANTS")

                    leader = rank_participants(list(competition.participants))[0]
                    winner = Winner(
                        competition_id=competition_id,
                        user_id=leader.user_id,
                        total_revenue=leader.total_revenue,
                        won_at=utcnow(),
                    )
                    db.add(winner)
                    created = True

        except IntegrityError as e:
            # Another settlement inserted the winner first; start over from the stored one
            if retry_on_conflict:
                self.logger.info("Winner already recorded concurrently", competition_id=competition_id)
                return await self._settle(competition_id, retry_on_conflict=False)
            self.logger.error("Failed to record winner", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to determine winner", "DATABASE_ERROR")
        except CartBrawlException as e:
            self.logger.warning("Settlement refused", competition_id=competition_id, error=e.message)
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to determine winner", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to determine winner", "DATABASE_ERROR")

        if created:
            self.logger.info(
                "Winner determined",
                competition_id=competition_id,
                user_id=winner.user_id,
                total_revenue=str(winner.total_revenue)
            )

        if not winner.is_paid and competition.funds_tx_id:
            await self._release_prize(competition, winner)

        return OperationResult.ok(self._describe(winner, created))

    async def _release_prize(self, competition: Competition, winner: Winner) -> bool:
        """
        Release the escrow to the winner and attach the payout id.

        The attempt is marked on the winner before the ledger is called.
        A marked winner without a payout id is first reconciled with the
        ledger, so a release whose result was never recorded is not paid
        again. Failures leave resumable state for the next settle() call.
        """
        escrow_id = competition.funds_tx_id
        payout_id: Optional[str] = None

        try:
            if winner.payout_attempted_at is not None:
                payout_id = await self.ledger.get_escrow_payout(escrow_id)
                if payout_id:
                    self.logger.info(
                        "Recovered unrecorded payout",
                        competition_id=competition.id,
                        escrow_id=escrow_id,
                        payout_id=payout_id
                    )
        except Exception as e:
            self.logger.warning(
                "Payout reconciliation failed, will retry",
                competition_id=competition.id,
                escrow_id=escrow_id,
                error=str(e)
            )
            return False

        if payout_id is None:
            if winner.payout_attempted_at is None:
                try:
                    await self._mark_attempt(winner)
                except Exception as e:
                    self.logger.error("Failed to mark payout attempt", competition_id=competition.id, error=str(e))
                    return False

            description = f"Prize of {format_prize(competition.prize)} for winning \"{competition.title}\""
            try:
                payout_id = await self.ledger.release_escrow(
                    escrow_id,
                    winner.user_id,
                    competition.id,
                    description,
                    idempotency_key=f"prize-{winner.id}"
                )
            except Exception as e:
                self.logger.warning(
                    "Prize payout failed, will retry",
                    competition_id=competition.id,
                    user_id=winner.user_id,
                    escrow_id=escrow_id,
                    error=str(e)
                )
                return False

        try:
            await self._record_payout(competition, winner, payout_id)
        except Exception as e:
            self.logger.critical(
                "Payout succeeded but could not be recorded",
                competition_id=competition.id,
                user_id=winner.user_id,
                payout_id=payout_id,
                error=str(e)
            )
            return False

        self.logger.info(
            "Prize paid out",
            competition_id=competition.id,
            user_id=winner.user_id,
            payout_id=payout_id
        )

        await self.notifier.competition_won(
            winner.user_id,
            competition.id,
            competition.title,
            competition.prize,
            payout_id
        )
        return True

    async def _mark_attempt(self, winner: Winner) -> None:
        attempted_at = utcnow()
        async with get_async_session() as db:
            await db.execute(
                update(Winner)
                .where(Winner.id == winner.id, Winner.payout_tx_id.is_(None))
                .values(payout_attempted_at=attempted_at)
            )
        winner.payout_attempted_at = attempted_at

    async def _record_payout(self, competition: Competition, winner: Winner, payout_id: str) -> None:
        released_at = utcnow()
        async with get_async_session() as db:
            await db.execute(
                update(Winner)
                .where(Winner.id == winner.id, Winner.payout_tx_id.is_(None))
                .values(payout_tx_id=payout_id)
            )
            await db.execute(
                update(Competition)
                .where(Competition.id == competition.id)
                .values(funds_released_at=released_at, updated_at=released_at)
            )
        winner.payout_tx_id = payout_id
        competition.funds_released_at = released_at

    @staticmethod
    def _describe(winner: Winner, created: bool) -> Dict[str, Any]:
        return {
            "competition_id": winner.competition_id,
            "winner": serialize_winner(winner),
            "created": created,
            "paid": winner.is_paid,
        }

    async def retry_pending_payouts(self) -> PayoutStats:
        """
        Resume settlement of every funded COMPLETED competition that still
        lacks a winner (with participants) or a payout.
        """
        stats = PayoutStats()

        try:
            async with get_async_session() as db:
                unpaid = await db.execute(
                    select(Winner.competition_id)
                    .join(Competition, Competition.id == Winner.competition_id)
                    .where(
                        Winner.payout_tx_id.is_(None),
                        Competition.funds_tx_id.is_not(None),
                        Competition.status == CompetitionStatus.COMPLETED.value
                    )
                )
                unsettled = await db.execute(
                    select(Competition.id)
                    .outerjoin(Winner, Winner.competition_id == Competition.id)
                    .where(
                        Winner.id.is_(None),
                        Competition.funds_tx_id.is_not(None),
                        Competition.status == CompetitionStatus.COMPLETED.value,
                        exists().where(Participant.competition_id == Competition.id)
                    )
                )
                competition_ids = list(unpaid.scalars().all()) + list(unsettled.scalars().all())
        except Exception as e:
            self.logger.error("Failed to load pending settlements", error=str(e))
            stats.failed += 1
            return stats

        for competition_id in competition_ids:
            outcome = await self.settle(competition_id)
            if outcome.success and outcome.data["paid"]:
                stats.paid += 1
            else:
                stats.failed += 1

        if competition_ids:
            self.logger.info("Pending settlements retried", paid=stats.paid, failed=stats.failed)
        return stats
