"""
Test status transitions, lifecycle notices and manual start.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from cartbrawl.core.database import get_async_session
from cartbrawl.models import Competition, CompetitionStatus, Winner
from cartbrawl.scheduler.lifecycle import LifecycleScheduler, minutes_until


@pytest.fixture
def scheduler(database, ledger):
    return LifecycleScheduler(ledger)


async def _status(competition_id: str) -> str:
    async with get_async_session() as db:
        return (await db.get(Competition, competition_id)).status


async def _winner_count(competition_id: str) -> int:
    async with get_async_session() as db:
        return (await db.execute(
            select(func.count(Winner.id)).where(Winner.competition_id == competition_id)
        )).scalar_one()


def test_minutes_until_rounds_half_up(now):
    assert minutes_until(now + timedelta(minutes=30), now) == 30
    assert minutes_until(now + timedelta(minutes=29, seconds=30), now) == 30
    assert minutes_until(now + timedelta(minutes=29, seconds=29), now) == 29


@pytest.mark.asyncio
async def test_advance_starts_due_competition(scheduler, ledger, make_competition, add_participant, now):
    competition_id = await make_competition(start_date=now - timedelta(minutes=1))
    await add_participant(competition_id, "user_a")
    await add_participant(competition_id, "user_b")
    not_due_id = await make_competition(start_date=now + timedelta(minutes=5))

    stats = await scheduler.advance_statuses(now)

    assert stats.started == 1
    assert stats.ended == 0
    assert stats.success
    assert await _status(competition_id) == CompetitionStatus.ACTIVE.value
    assert await _status(not_due_id) == CompetitionStatus.UPCOMING.value
    started = ledger.sent("competition_started")
    assert sorted(n["user_id"] for n in started) == ["user_a", "user_b"]


@pytest.mark.asyncio
async def test_advance_skips_unfunded_competition(scheduler, make_competition, now):
    competition_id = await make_competition(start_date=now - timedelta(minutes=1), funds_tx_id=None)

    stats = await scheduler.advance_statuses(now)

    assert stats.started == 0
    assert await _status(competition_id) == CompetitionStatus.UPCOMING.value


@pytest.mark.asyncio
async def test_advance_ends_and_settles_once(scheduler, ledger, make_competition, add_participant, now):
    """Repeated passes never end or settle a competition twice."""
    competition_id = await make_competition(
        start_date=now - timedelta(hours=2),
        end_date=now - timedelta(minutes=1),
        status=CompetitionStatus.ACTIVE
    )
    await add_participant(competition_id, "user_a", revenue="120")
    await add_participant(competition_id, "user_b", revenue="80")

    first = await scheduler.advance_statuses(now)
    second = await scheduler.advance_statuses(now + timedelta(minutes=1))

    assert first.ended == 1
    assert second.ended == 0
    assert await _status(competition_id) == CompetitionStatus.COMPLETED.value
    assert await _winner_count(competition_id) == 1
    assert len(ledger.releases) == 1
    assert ledger.releases[0]["to_user_id"] == "user_a"
    assert len(ledger.sent("competition_ended")) == 2
    assert [n["user_id"] for n in ledger.sent("competition_win")] == ["user_a"]


@pytest.mark.asyncio
async def test_advance_walks_overdue_competition_through_active(scheduler, make_competition, add_participant, now):
    competition_id = await make_competition(
        start_date=now - timedelta(hours=3),
        end_date=now - timedelta(hours=1)
    )
    await add_participant(competition_id, "user_a")

    stats = await scheduler.advance_statuses(now)

    assert stats.started == 1
    assert stats.ended == 1
    assert await _status(competition_id) == CompetitionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_advance_ends_competition_without_participants(scheduler, ledger, make_competition, now):
    competition_id = await make_competition(
        start_date=now - timedelta(hours=2),
        end_date=now - timedelta(minutes=1),
        status=CompetitionStatus.ACTIVE
    )

    stats = await scheduler.advance_statuses(now)

    assert stats.ended == 1
    assert stats.success
    assert await _status(competition_id) == CompetitionStatus.COMPLETED.value
    assert await _winner_count(competition_id) == 0
    assert ledger.releases == []


@pytest.mark.asyncio
async def test_notification_failures_do_not_fail_batch(scheduler, ledger, make_competition, add_participant, now):
    competition_id = await make_competition(start_date=now - timedelta(minutes=1))
    await add_participant(competition_id, "user_a")
    await add_participant(competition_id, "user_b")
    ledger.fail_notify_for = {"user_b"}

    stats = await scheduler.advance_statuses(now)

    assert stats.success
    assert stats.started == 1
    assert stats.send_failures == 1
    assert await _status(competition_id) == CompetitionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_notify_upcoming_starts_uses_window(scheduler, ledger, make_competition, add_participant, now):
    too_soon = await make_competition(title="Too Soon", start_date=now + timedelta(minutes=5))
    inside = await make_competition(title="Inside", start_date=now + timedelta(minutes=30))
    too_late = await make_competition(title="Too Late", start_date=now + timedelta(minutes=90))
    await make_competition(title="No Participants", start_date=now + timedelta(minutes=40))
    for competition_id in (too_soon, inside, too_late):
        await add_participant(competition_id, f"user_{competition_id[:8]}")

    stats = await scheduler.notify_upcoming_starts(now)

    assert stats.notified == 1
    assert stats.sent == 1
    notices = ledger.sent("competition_starting")
    assert len(notices) == 1
    assert notices[0]["data"]["minutesUntilStart"] == 30
    assert notices[0]["body"] == '"Inside" starts in 30 minutes. Get ready!'


@pytest.mark.asyncio
async def test_notify_ending_soon(scheduler, ledger, make_competition, add_participant, now):
    competition_id = await make_competition(
        title="Final Stretch",
        start_date=now - timedelta(hours=2),
        end_date=now + timedelta(minutes=45),
        status=CompetitionStatus.ACTIVE
    )
    await add_participant(competition_id, "user_a")
    await add_participant(competition_id, "user_b")
    ledger.fail_notify_for = {"user_a"}

    stats = await scheduler.notify_ending_soon(now)

    assert stats.success
    assert stats.notified == 1
    assert stats.sent == 1
    assert stats.send_failures == 1
    notice = ledger.sent("competition_ending")[0]
    assert notice["user_id"] == "user_b"
    assert notice["data"]["minutesUntilEnd"] == 45


@pytest.mark.asyncio
async def test_start_competition_manual(scheduler, make_competition, now):
    competition_id = await make_competition(creator_id="user_creator", start_date=now + timedelta(hours=2))

    not_creator = await scheduler.start_competition(competition_id, "user_a", now)
    assert not_creator.error_code == "AUTHORIZATION_ERROR"

    too_early = await scheduler.start_competition(competition_id, "user_creator", now)
    assert too_early.error_code == "VALIDATION_ERROR"
    assert "2 hours remaining" in too_early.error

    started = await scheduler.start_competition(competition_id, "user_creator", now + timedelta(hours=2))
    assert started.success, started.error
    assert started.data["status"] == CompetitionStatus.ACTIVE.value

    again = await scheduler.start_competition(competition_id, "user_creator", now + timedelta(hours=2))
    assert again.error_code == "CONFLICT"
    assert again.error == "Competition is already active"


@pytest.mark.asyncio
async def test_get_job_status(scheduler, make_competition, add_participant, now):
    active_id = await make_competition(status=CompetitionStatus.ACTIVE, start_date=now - timedelta(hours=1))
    await add_participant(active_id, "user_a")
    await make_competition(start_date=now + timedelta(minutes=30))
    await make_competition(start_date=now + timedelta(days=2))

    status = await scheduler.get_job_status(now)

    assert status["statistics"] == {"total": 3, "upcoming": 2, "active": 1, "completed": 0}
    assert status["active_competitions"][0]["participant_count"] == 1
    assert len(status["upcoming_competitions"]) == 1
