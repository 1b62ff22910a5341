"""
Competition business logic: creation with prize escrow, joining with a
connected store, leaderboards and competition queries.

Every public method returns an OperationResult; domain errors never
escape to the caller.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, update, func, or_, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.database import get_async_session
from cartbrawl.core.exceptions import (
    CartBrawlException,
    CompetitionNotFoundError,
    ConflictError,
    AuthorizationError,
    ExternalServiceError,
    InsufficientBalanceError,
    ValidationError,
)
from cartbrawl.models import Competition, CompetitionStatus, Participant, Winner, utcnow
from cartbrawl.services.notification_service import NotificationService
from cartbrawl.services.types import OperationResult
from cartbrawl.services.whop_client import WhopClient, get_whop_client
from cartbrawl.utils.encryption import TokenCipher, get_cipher
from cartbrawl.utils.validation import (
    CompetitionValidator,
    validate_competition_input,
    validate_store_domain,
)

logger = structlog.get_logger(__name__)

STATUS_ORDER = case(
    (Competition.status == CompetitionStatus.UPCOMING.value, 0),
    (Competition.status == CompetitionStatus.ACTIVE.value, 1),
    else_=2
)


def serialize_winner(winner: Optional[Winner]) -> Optional[Dict[str, Any]]:
    if winner is None:
        return None
    return {
        "user_id": winner.user_id,
        "total_revenue": winner.total_revenue,
        "payout_tx_id": winner.payout_tx_id,
        "won_at": winner.won_at,
    }


def serialize_participant(participant: Participant) -> Dict[str, Any]:
    """Public participant fields; the access token is never exposed."""
    return {
        "id": participant.id,
        "user_id": participant.user_id,
        "store_domain": participant.store_domain,
        "total_revenue": participant.total_revenue,
        "last_revenue_sync": participant.last_revenue_sync,
        "joined_at": participant.joined_at,
    }


def serialize_competition(competition: Competition, participant_count: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": competition.id,
        "title": competition.title,
        "description": competition.description,
        "prize": competition.prize,
        "start_date": competition.start_date,
        "end_date": competition.end_date,
        "status": competition.status,
        "creator_id": competition.creator_id,
        "funds_tx_id": competition.funds_tx_id,
        "participant_count": participant_count,
        "created_at": competition.created_at,
        "updated_at": competition.updated_at,
    }


def rank_participants(participants: List[Participant]) -> List[Participant]:
    """Highest revenue first; ties go to the earlier joiner, then the lower id."""
    return sorted(
        participants,
        key=lambda p: (-(p.total_revenue or Decimal("0")), p.joined_at, p.id)
    )


class CompetitionService:
    """Creation, joining and read models for competitions."""

    def __init__(
        self,
        ledger: Optional[WhopClient] = None,
        notifier: Optional[NotificationService] = None,
        cipher: Optional[TokenCipher] = None
    ):
        self.ledger = ledger or get_whop_client()
        self.notifier = notifier or NotificationService(self.ledger)
        self._cipher = cipher
        self.logger = logger.bind(service="competition_service")

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_competition(
        self,
        creator_id: str,
        title: str,
        prize: Any,
        start_date: datetime,
        end_date: datetime,
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> OperationResult:
        """
        Create a competition and escrow its prize.

        The row is inserted first so the escrow can reference its id. If
        escrow fails the row is deleted before returning, so no UPCOMING
        competition ever exists without funds.
        """
        now = now or utcnow()

        try:
            validate_competition_input(title, prize, start_date, end_date, now)
            prize_amount = Decimal(str(prize)).quantize(Decimal("0.01"))

            balance = await self.ledger.verify_balance(creator_id, prize_amount)
            if not balance.has_balance:
                raise InsufficientBalanceError(prize_amount, balance.current_balance or Decimal("0"))

            async with get_async_session() as db:
                competition = Competition(
                    title=title.strip(),
                    description=(description or "").strip() or None,
                    prize=prize_amount,
                    start_date=start_date,
                    end_date=end_date,
                    creator_id=creator_id,
                    status=CompetitionStatus.UPCOMING.value,
                )
                db.add(competition)
                await db.flush()
                competition_id = competition.id

        except CartBrawlException as e:
            self.logger.info("Competition creation rejected", creator_id=creator_id, error=e.message)
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to create competition", creator_id=creator_id, error=str(e))
            return OperationResult.fail("Failed to create competition", "DATABASE_ERROR")

        try:
            escrow_id = await self.ledger.escrow(creator_id, prize_amount, competition_id)
        except Exception as e:
            await self._discard_competition(competition_id)
            self.logger.warning(
                "Prize escrow failed, competition discarded",
                competition_id=competition_id,
                creator_id=creator_id,
                error=str(e)
            )
            if isinstance(e, CartBrawlException):
                return OperationResult.from_exception(e)
            return OperationResult.fail("Failed to escrow competition prize", "EXTERNAL_SERVICE_ERROR")

        try:
            async with get_async_session() as db:
                await db.execute(
                    update(Competition)
                    .where(Competition.id == competition_id)
                    .values(funds_tx_id=escrow_id, updated_at=utcnow())
                )
        except Exception as e:
            # Escrow is held but unreferenced: hand it back and drop the row
            self.logger.error(
                "Failed to attach escrow to competition",
                competition_id=competition_id,
                escrow_id=escrow_id,
                error=str(e)
            )
            await self._refund_escrow(escrow_id, creator_id, competition_id)
            await self._discard_competition(competition_id)
            return OperationResult.fail("Failed to create competition", "DATABASE_ERROR")

        competition.funds_tx_id = escrow_id
        self.logger.info(
            "Competition created",
            competition_id=competition_id,
            creator_id=creator_id,
            prize=str(prize_amount),
            escrow_id=escrow_id
        )

        await self.notifier.competition_created(creator_id, competition_id, prize_amount, escrow_id)

        return OperationResult.ok(serialize_competition(competition, participant_count=0))

    async def _discard_competition(self, competition_id: str) -> None:
        try:
            async with get_async_session() as db:
                await db.execute(delete(Competition).where(Competition.id == competition_id))
        except Exception as e:
            self.logger.critical(
                "Compensating delete failed, orphaned competition left behind",
                competition_id=competition_id,
                error=str(e)
            )

    async def _refund_escrow(self, escrow_id: str, creator_id: str, competition_id: str) -> None:
        try:
            await self.ledger.release_escrow(
                escrow_id,
                creator_id,
                competition_id,
                f"Refund of prize escrow for competition {competition_id}"
            )
        except Exception as e:
            self.logger.critical(
                "Escrow refund failed, manual refund required",
                escrow_id=escrow_id,
                creator_id=creator_id,
                error=str(e)
            )

    # ------------------------------------------------------------------
    # Joining
    # ------------------------------------------------------------------

    async def join_competition(
        self,
        competition_id: str,
        user_id: str,
        store_domain: str,
        access_token: str
    ) -> OperationResult:
        """Add a store to a competition that has not finished yet."""
        try:
            domain = validate_store_domain(store_domain)
            if not access_token:
                raise ValidationError("Access token is required")

            async with get_async_session() as db:
                result = await db.execute(
                    select(Competition)
                    .options(selectinload(Competition.participants))
                    .where(Competition.id == competition_id)
                )
                competition = result.scalar_one_or_none()
                if competition is None:
                    raise CompetitionNotFoundError(competition_id)

                if not competition.is_joinable:
                    raise ConflictError("Competition has already ended")

                existing = competition.participants
                if any(p.user_id == user_id for p in existing):
                    raise ConflictError("You are already participating in this competition")
                if any(p.store_domain == domain for p in existing):
                    raise ConflictError("This Shopify store is already participating in this competition")

                active = await db.execute(
                    select(Participant.id)
                    .join(Participant.competition)
                    .where(
                        Participant.user_id == user_id,
                        Competition.status == CompetitionStatus.ACTIVE.value,
                        Competition.id != competition_id
                    )
                    .limit(1)
                )
                if active.scalar_one_or_none() is not None:
                    raise ConflictError("You can only participate in one active competition at a time")

                # Upcoming entries whose window overlaps would both be active at once
                overlapping = await db.execute(
                    select(Participant.id)
                    .join(Participant.competition)
                    .where(
                        Participant.user_id == user_id,
                        Competition.status == CompetitionStatus.UPCOMING.value,
                        Competition.id != competition_id,
                        Competition.start_date < competition.end_date,
                        Competition.end_date > competition.start_date
                    )
                    .limit(1)
                )
                if overlapping.scalar_one_or_none() is not None:
                    raise ConflictError("You are already in a competition that overlaps this one")

                participant = Participant(
                    competition_id=competition_id,
                    user_id=user_id,
                    store_domain=domain,
                    access_token=self.cipher.encrypt(access_token),
                    total_revenue=Decimal("0"),
                    joined_at=utcnow(),
                )
                db.add(participant)
                try:
                    await db.flush()
                except IntegrityError:
                    raise ConflictError("This user or store is already participating in this competition")

                title = competition.title
                existing_user_ids = [p.user_id for p in existing]
                participant_count = len(existing) + 1
                data = serialize_participant(participant)
                data["competition_id"] = competition_id

        except CartBrawlException as e:
            self.logger.info(
                "Join rejected",
                competition_id=competition_id,
                user_id=user_id,
                error=e.message
            )
            return OperationResult.from_exception(e)
        except IntegrityError:
            return OperationResult.fail(
                "This user or store is already participating in this competition",
                "CONFLICT"
            )
        except Exception as e:
            self.logger.error("Failed to join competition", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to join competition", "DATABASE_ERROR")

        self.logger.info(
            "Participant joined",
            competition_id=competition_id,
            user_id=user_id,
            store_domain=domain,
            participant_count=participant_count
        )

        if existing_user_ids:
            await self.notifier.new_participant_joined(existing_user_ids, title, participant_count)

        return OperationResult.ok(data)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_leaderboard(self, competition_id: str) -> OperationResult:
        """Participants ranked by revenue, with aggregate stats."""
        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(Competition)
                    .options(selectinload(Competition.participants))
                    .where(Competition.id == competition_id)
                )
                competition = result.scalar_one_or_none()
                if competition is None:
                    raise CompetitionNotFoundError(competition_id)

                ranked = rank_participants(list(competition.participants))

        except CartBrawlException as e:
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to get leaderboard", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to get leaderboard", "DATABASE_ERROR")

        entries = []
        for rank, participant in enumerate(ranked, start=1):
            entry = serialize_participant(participant)
            entry["rank"] = rank
            entries.append(entry)

        total = sum((p.total_revenue for p in ranked), Decimal("0"))
        stats = {
            "total_participants": len(ranked),
            "total_revenue": total,
            "average_revenue": (total / len(ranked)).quantize(Decimal("0.01")) if ranked else Decimal("0"),
            "highest_revenue": ranked[0].total_revenue if ranked else Decimal("0"),
        }

        return OperationResult.ok({
            "competition_id": competition_id,
            "status": competition.status,
            "leaderboard": entries,
            "stats": stats,
            "last_updated": utcnow(),
        })

    async def get_competition_details(
        self,
        competition_id: str,
        viewer_id: Optional[str] = None
    ) -> OperationResult:
        """
        Competition with its winner. Participants and viewer-relative
        flags are included only for an authenticated viewer.
        """
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

        except CartBrawlException as e:
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to get competition details", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to get competition details", "DATABASE_ERROR")

        participants = list(competition.participants)
        data = serialize_competition(competition, participant_count=len(participants))
        data["winner"] = serialize_winner(competition.winner)
        data["funds_released_at"] = competition.funds_released_at

        if viewer_id:
            data["participants"] = [serialize_participant(p) for p in participants]
            data["is_creator"] = competition.creator_id == viewer_id
            own = next((p for p in participants if p.user_id == viewer_id), None)
            data["is_participant"] = own is not None
            data["user_participation"] = serialize_participant(own) if own else None

        return OperationResult.ok(data)

    async def get_user_competitions(self, user_id: str) -> OperationResult:
        """Competitions the user created and the ones they entered."""
        try:
            async with get_async_session() as db:
                created_result = await db.execute(
                    select(Competition)
                    .options(
                        selectinload(Competition.participants),
                        selectinload(Competition.winner)
                    )
                    .where(Competition.creator_id == user_id)
                    .order_by(Competition.created_at.desc())
                )
                created = list(created_result.scalars().all())

                participated_result = await db.execute(
                    select(Competition)
                    .join(Participant, Participant.competition_id == Competition.id)
                    .options(
                        selectinload(Competition.participants),
                        selectinload(Competition.winner)
                    )
                    .where(Participant.user_id == user_id)
                    .order_by(Participant.joined_at.desc())
                )
                participated = list(participated_result.scalars().unique().all())

        except Exception as e:
            self.logger.error("Failed to get user competitions", user_id=user_id, error=str(e))
            return OperationResult.fail("Failed to get user competitions", "DATABASE_ERROR")

        def describe(competition: Competition, role: str) -> Dict[str, Any]:
            item = serialize_competition(competition, participant_count=len(competition.participants))
            item["winner"] = serialize_winner(competition.winner)
            item["user_role"] = role
            item["is_winner"] = competition.winner is not None and competition.winner.user_id == user_id
            return item

        created_items = [describe(c, "creator") for c in created]
        participated_items = [describe(c, "participant") for c in participated]
        everything = {c.id: c for c in created + participated}.values()

        return OperationResult.ok({
            "created": created_items,
            "participated": participated_items,
            "summary": {
                "total_created": len(created_items),
                "total_participated": len(participated_items),
                "total_won": sum(1 for c in everything if c.winner and c.winner.user_id == user_id),
                "active_competitions": sum(
                    1 for c in everything if c.status == CompetitionStatus.ACTIVE.value
                ),
            },
        })

    async def list_competitions(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> OperationResult:
        """Public paged listing: upcoming first, then active, then completed."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        filters = []
        if status:
            if status not in {s.value for s in CompetitionStatus}:
                return OperationResult.fail(f"Unknown status: {status}", "VALIDATION_ERROR")
            filters.append(Competition.status == status)
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(or_(Competition.title.ilike(pattern), Competition.description.ilike(pattern)))

        try:
            async with get_async_session() as db:
                total = (await db.execute(
                    select(func.count(Competition.id)).where(*filters)
                )).scalar_one()

                result = await db.execute(
                    select(Competition)
                    .options(
                        selectinload(Competition.participants),
                        selectinload(Competition.winner)
                    )
                    .where(*filters)
                    .order_by(STATUS_ORDER, Competition.start_date.asc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
                competitions = list(result.scalars().all())

        except Exception as e:
            self.logger.error("Failed to list competitions", error=str(e))
            return OperationResult.fail("Failed to fetch competitions", "DATABASE_ERROR")

        items = []
        for competition in competitions:
            item = serialize_competition(competition, participant_count=len(competition.participants))
            item["winner"] = serialize_winner(competition.winner)
            items.append(item)

        return OperationResult.ok({
            "competitions": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        })

    async def update_competition(
        self,
        competition_id: str,
        user_id: str,
        changes: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> OperationResult:
        """
        Edit an UPCOMING competition. Only the creator may edit; the prize
        is fixed by the escrow and cannot change.
        """
        now = now or utcnow()

        try:
            async with get_async_session() as db:
                competition = await db.get(Competition, competition_id)
                if competition is None:
                    raise CompetitionNotFoundError(competition_id)
                if competition.creator_id != user_id:
                    raise AuthorizationError("Only the creator can update this competition")
                if competition.status != CompetitionStatus.UPCOMING.value:
                    raise ConflictError("Only upcoming competitions can be updated")

                if "title" in changes:
                    if not CompetitionValidator.validate_title(changes["title"]):
                        raise ValidationError("Title cannot be empty")
                    competition.title = changes["title"].strip()

                if "description" in changes:
                    competition.description = (changes["description"] or "").strip() or None

                start_date = changes.get("start_date") or competition.start_date
                end_date = changes.get("end_date") or competition.end_date

                if changes.get("start_date") and start_date <= now:
                    raise ValidationError("Start date must be in the future")

                errors = CompetitionValidator.validate_window(start_date, end_date)
                if errors:
                    raise ValidationError("; ".join(errors), {"errors": errors})

                competition.start_date = start_date
                competition.end_date = end_date
                competition.updated_at = utcnow()
                await db.flush()

                data = serialize_competition(competition)

        except CartBrawlException as e:
            return OperationResult.from_exception(e)
        except Exception as e:
            self.logger.error("Failed to update competition", competition_id=competition_id, error=str(e))
            return OperationResult.fail("Failed to update competition", "DATABASE_ERROR")

        self.logger.info("Competition updated", competition_id=competition_id, fields=sorted(changes))
        return OperationResult.ok(data)

    async def get_user_balance(self, user_id: str) -> OperationResult:
        try:
            balance = await self.ledger.get_balance(user_id)
        except ExternalServiceError as e:
            return OperationResult.from_exception(e)
        return OperationResult.ok({"balance": balance, "currency": settings.prize_currency})


def get_competition_service() -> CompetitionService:
    return CompetitionService()
