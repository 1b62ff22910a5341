"""
Competition notification dispatcher.

Best-effort fan-out of lifecycle events over Whop push notifications.
Failed sends are logged and counted, never raised and never retried
within the same run.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Protocol

import structlog

from cartbrawl.core.config import settings

logger = structlog.get_logger(__name__)


class PushSender(Protocol):
    async def notify(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        ...


@dataclass
class FanoutResult:
    """Delivery attempt counts for one broadcast."""
    sent: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


def format_prize(amount: Decimal) -> str:
    if settings.prize_currency == "USD":
        return f"${amount:,.2f}"
    return f"{amount:,.2f} {settings.prize_currency}"


class NotificationService:
    """Sends competition notices to participant user ids."""

    def __init__(self, sender: PushSender, max_concurrency: Optional[int] = None):
        self.sender = sender
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.scheduler_max_workers * 2)
        self.logger = logger.bind(service="notification_service")

    async def _send_one(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]]
    ) -> None:
        async with self._semaphore:
            await self.sender.notify(user_id, title, body, data)

    async def broadcast(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> FanoutResult:
        """Send one notice to every user id, tallying failures."""
        recipients = list(dict.fromkeys(user_ids))
        result = FanoutResult()
        if not recipients:
            return result

        outcomes = await asyncio.gather(
            *(self._send_one(user_id, title, body, data) for user_id in recipients),
            return_exceptions=True
        )

        for user_id, outcome in zip(recipients, outcomes):
            if isinstance(outcome, Exception):
                result.failed += 1
                self.logger.warning(
                    "Notification delivery failed",
                    user_id=user_id,
                    title=title,
                    error=str(outcome)
                )
            else:
                result.sent += 1

        self.logger.debug("Notification broadcast", title=title, sent=result.sent, failed=result.failed)
        return result

    async def competition_starting(self, user_ids: Iterable[str], title: str, minutes_until_start: int) -> FanoutResult:
        return await self.broadcast(
            user_ids,
            "Competition Starting Soon!",
            f'"{title}" starts in {minutes_until_start} minutes. Get ready!',
            {"type": "competition_starting", "minutesUntilStart": minutes_until_start}
        )

    async def competition_started(self, user_ids: Iterable[str], title: str) -> FanoutResult:
        return await self.broadcast(
            user_ids,
            "Competition Started! 🚀",
            f'"{title}" has begun! Start selling to climb the leaderboard.',
            {"type": "competition_started"}
        )

    async def competition_ending_soon(self, user_ids: Iterable[str], title: str, minutes_until_end: int) -> FanoutResult:
        return await self.broadcast(
            user_ids,
            "Final Sprint! ⏰",
            f'"{title}" ends in {minutes_until_end} minutes. Last chance to boost your sales!',
            {"type": "competition_ending", "minutesUntilEnd": minutes_until_end}
        )

    async def competition_ended(self, user_ids: Iterable[str], title: str) -> FanoutResult:
        return await self.broadcast(
            user_ids,
            "Competition Ended",
            f'"{title}" has finished. Check the final results!',
            {"type": "competition_ended"}
        )

    async def new_participant_joined(
        self,
        existing_user_ids: Iterable[str],
        title: str,
        participant_count: int
    ) -> FanoutResult:
        return await self.broadcast(
            existing_user_ids,
            "New Competitor!",
            f'Someone new joined "{title}". {participant_count} stores competing now!',
            {"type": "new_participant", "participantCount": participant_count}
        )

    async def competition_won(
        self,
        user_id: str,
        competition_id: str,
        title: str,
        prize: Decimal,
        payout_id: str
    ) -> FanoutResult:
        return await self.broadcast(
            [user_id],
            "🎉 Congratulations! You won!",
            f'You\'ve won {format_prize(prize)} in the competition "{title}". Your payout is being processed.',
            {
                "type": "competition_win",
                "competitionId": competition_id,
                "prizeAmount": str(prize),
                "payoutId": payout_id,
            }
        )

    async def competition_created(
        self,
        user_id: str,
        competition_id: str,
        prize: Decimal,
        escrow_id: str
    ) -> FanoutResult:
        return await self.broadcast(
            [user_id],
            "Competition Created",
            f"Your competition has been created with a prize of {format_prize(prize)}. Funds have been escrowed.",
            {"competitionId": competition_id, "prizeAmount": str(prize), "escrowId": escrow_id}
        )
