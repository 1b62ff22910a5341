"""
Test winner determination, prize payout and payout retries.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from cartbrawl.core.database import get_async_session
from cartbrawl.models import Competition, CompetitionStatus, Winner
from cartbrawl.scheduler.jobs import BackgroundJobRunner
from cartbrawl.services.competition_service import CompetitionService
from cartbrawl.services.notification_service import NotificationService
from cartbrawl.services.settlement import SettlementService
from cartbrawl.services.types import OperationResult


@pytest.fixture
def settlement(database, ledger):
    return SettlementService(ledger)


@pytest.fixture
def completed_competition(make_competition, now):
    async def _make(**kwargs):
        return await make_competition(
            start_date=now - timedelta(hours=3),
            end_date=now - timedelta(hours=1),
            status=CompetitionStatus.COMPLETED,
            **kwargs
        )
    return _make


async def _winners(competition_id: str):
    async with get_async_session() as db:
        result = await db.execute(select(Winner).where(Winner.competition_id == competition_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_highest_revenue_wins_ties_to_earliest_joiner(settlement, ledger, completed_competition, add_participant, now):
    competition_id = await completed_competition(title="Tie Breaker", prize="250")
    await add_participant(competition_id, "user_a", revenue="100", joined_at=now - timedelta(hours=5))
    await add_participant(competition_id, "user_b", revenue="300", joined_at=now - timedelta(hours=4))
    await add_participant(competition_id, "user_c", revenue="300", joined_at=now - timedelta(hours=3, minutes=30))
    await add_participant(competition_id, "user_d", revenue="50", joined_at=now - timedelta(hours=3, minutes=10))

    result = await settlement.settle(competition_id)

    assert result.success, result.error
    assert result.data["created"] is True
    assert result.data["paid"] is True
    assert result.data["winner"]["user_id"] == "user_b"
    assert result.data["winner"]["total_revenue"] == Decimal("300")

    release = ledger.releases[0]
    assert release["escrow_id"] == "esc_seed"
    assert release["to_user_id"] == "user_b"
    assert release["description"] == 'Prize of $250.00 for winning "Tie Breaker"'


@pytest.mark.asyncio
async def test_settle_twice_keeps_single_winner(settlement, ledger, completed_competition, add_participant):
    competition_id = await completed_competition()
    await add_participant(competition_id, "user_a", revenue="10")

    first = await settlement.settle(competition_id)
    second = await settlement.settle(competition_id)

    assert first.data["created"] is True
    assert second.success
    assert second.data["created"] is False
    assert second.data["winner"]["user_id"] == "user_a"
    assert len(await _winners(competition_id)) == 1
    assert len(ledger.releases) == 1
    assert len(ledger.sent("competition_win")) == 1


@pytest.mark.asyncio
async def test_settle_without_participants(settlement, ledger, completed_competition):
    competition_id = await completed_competition()

    result = await settlement.settle(competition_id)

    assert not result.success
    assert result.error_code == "NO_PARTICIPANTS"
    assert result.error == "No participants in competition"
    assert await _winners(competition_id) == []
    assert ledger.releases == []


@pytest.mark.asyncio
async def test_settle_rejects_unfinished_competition(settlement, make_competition, add_participant):
    competition_id = await make_competition(status=CompetitionStatus.ACTIVE)
    await add_participant(competition_id, "user_a")

    result = await settlement.settle(competition_id)

    assert result.error_code == "CONFLICT"
    assert await _winners(competition_id) == []


@pytest.mark.asyncio
async def test_settle_unknown_competition(settlement):
    result = await settlement.settle("missing")

    assert result.error_code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_failed_payout_is_retried(settlement, ledger, completed_competition, add_participant):
    """A failed release keeps the winner and is completed by a later pass."""
    competition_id = await completed_competition(title="Retry Me", prize="75")
    await add_participant(competition_id, "user_a", revenue="40")
    await add_participant(competition_id, "user_b", revenue="90")
    ledger.fail_release = True

    first = await settlement.settle(competition_id)

    assert first.success
    assert first.data["paid"] is False
    assert ledger.sent("competition_win") == []
    [winner] = await _winners(competition_id)
    assert winner.user_id == "user_b"
    assert winner.payout_tx_id is None

    ledger.fail_release = False
    stats = await settlement.retry_pending_payouts()

    assert stats.paid == 1
    assert stats.failed == 0
    [winner] = await _winners(competition_id)
    assert winner.user_id == "user_b"
    assert winner.payout_tx_id == ledger.releases[0]["payout_id"]
    async with get_async_session() as db:
        competition = await db.get(Competition, competition_id)
        assert competition.funds_released_at is not None

    won = ledger.sent("competition_win")
    assert [n["user_id"] for n in won] == ["user_b"]
    assert won[0]["data"]["payoutId"] == winner.payout_tx_id
    assert won[0]["body"] == 'You\'ve won $75.00 in the competition "Retry Me". Your payout is being processed.'

    again = await settlement.retry_pending_payouts()
    assert again.paid == 0
    assert len(ledger.releases) == 1


@pytest.mark.asyncio
async def test_end_to_end_competition(database, ledger, revenue_client, cipher, now):
    """Create, join, run, sync and settle a two-store competition."""
    start = now + timedelta(hours=1)
    end = start + timedelta(hours=2)
    notifier = NotificationService(ledger)
    competitions = CompetitionService(ledger, notifier, cipher)
    runner = BackgroundJobRunner(ledger, revenue_client)

    created = await competitions.create_competition(
        creator_id="user_creator",
        title="Launch Week",
        prize="500",
        start_date=start,
        end_date=end,
        now=now
    )
    assert created.success, created.error
    competition_id = created.data["id"]
    escrow_id = created.data["funds_tx_id"]

    assert (await competitions.join_competition(competition_id, "user_a", "store-a.myshopify.com", "shpat_a")).success
    assert (await competitions.join_competition(competition_id, "user_b", "store-b.myshopify.com", "shpat_b")).success

    report = await runner.run_all(start, sync_revenue=False)
    assert report.transitions.started == 1

    revenue_client.totals.update({
        "store-a.myshopify.com": Decimal("1200"),
        "store-b.myshopify.com": Decimal("900"),
    })
    synced = await runner.sync_revenue(now=start + timedelta(minutes=30))
    assert synced.updated == 2

    report = await runner.run_all(end, sync_revenue=False)
    assert report.success
    assert report.transitions.ended == 1

    [winner] = await _winners(competition_id)
    assert winner.user_id == "user_a"
    assert winner.total_revenue == Decimal("1200")
    assert winner.payout_tx_id is not None

    release = ledger.releases[0]
    assert release["escrow_id"] == escrow_id
    assert release["to_user_id"] == "user_a"
    assert release["payout_id"] == winner.payout_tx_id

    leaderboard = await competitions.get_leaderboard(competition_id)
    assert [e["user_id"] for e in leaderboard.data["leaderboard"]] == ["user_a", "user_b"]
    assert leaderboard.data["status"] == CompetitionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_unrecorded_payout_is_not_released_twice(settlement, ledger, completed_competition, add_participant, monkeypatch):
    """A release whose payout id failed to persist is recovered from the ledger."""
    competition_id = await completed_competition(title="Record Me", prize="60")
    await add_participant(competition_id, "user_a", revenue="10")

    record_payout = settlement._record_payout
    attempts = []

    async def record_failing_once(*args):
        attempts.append(args)
        if len(attempts) == 1:
            raise RuntimeError("database is locked")
        await record_payout(*args)

    monkeypatch.setattr(settlement, "_record_payout", record_failing_once)

    first = await settlement.settle(competition_id)

    assert first.success
    assert first.data["paid"] is False
    assert len(ledger.releases) == 1
    assert ledger.sent("competition_win") == []
    [winner] = await _winners(competition_id)
    assert winner.payout_tx_id is None
    assert winner.payout_attempted_at is not None
    assert ledger.releases[0]["idempotency_key"] == f"prize-{winner.id}"

    stats = await settlement.retry_pending_payouts()

    assert stats.paid == 1
    assert len(ledger.releases) == 1
    assert ledger.payout_lookups == ["esc_seed"]
    [winner] = await _winners(competition_id)
    assert winner.payout_tx_id == ledger.releases[0]["payout_id"]
    assert len(ledger.sent("competition_win")) == 1


@pytest.mark.asyncio
async def test_pending_settlement_picks_up_competition_without_winner(settlement, ledger, completed_competition, add_participant):
    """A competition completed without a settle call is settled by the retry pass."""
    stranded_id = await completed_competition(title="Stranded")
    await add_participant(stranded_id, "user_a", revenue="15")
    await add_participant(stranded_id, "user_b", revenue="35")
    empty_id = await completed_competition(title="Empty")

    stats = await settlement.retry_pending_payouts()

    assert stats.paid == 1
    assert stats.failed == 0
    [winner] = await _winners(stranded_id)
    assert winner.user_id == "user_b"
    assert winner.payout_tx_id == ledger.releases[0]["payout_id"]
    assert await _winners(empty_id) == []


@pytest.mark.asyncio
async def test_failed_settlement_is_reported_and_resumed(database, ledger, revenue_client, make_competition, add_participant, now, monkeypatch):
    competition_id = await make_competition(
        start_date=now - timedelta(hours=2),
        end_date=now - timedelta(minutes=1),
        status=CompetitionStatus.ACTIVE
    )
    await add_participant(competition_id, "user_a", revenue="120")
    await add_participant(competition_id, "user_b", revenue="80")

    runner = BackgroundJobRunner(ledger, revenue_client)
    settle = runner.settlement.settle
    calls = []

    async def settle_failing_once(cid):
        calls.append(cid)
        if len(calls) == 1:
            return OperationResult.fail("Failed to determine winner", "DATABASE_ERROR")
        return await settle(cid)

    monkeypatch.setattr(runner.settlement, "settle", settle_failing_once)

    first = await runner.run_all(now, sync_revenue=False)

    assert first.transitions.ended == 1
    assert first.transitions.failed == 1
    assert not first.success
    assert first.payouts.paid == 1

    second = await runner.run_all(now + timedelta(minutes=1), sync_revenue=False)

    assert second.success
    assert len(calls) == 2
    [winner] = await _winners(competition_id)
    assert winner.user_id == "user_a"
    assert [r["to_user_id"] for r in ledger.releases] == ["user_a"]
