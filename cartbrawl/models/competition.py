"""
Competition model - a time-boxed revenue contest with an escrowed prize.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin, new_id

if TYPE_CHECKING:
    from .participant import Participant
    from .winner import Winner


class CompetitionStatus(str, Enum):
    """Lifecycle states. Transitions only move forward, one step at a time."""
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class Competition(BaseModel, TimestampMixin):
    """Competition between Shopify stores for a single prize."""

    __tablename__ = "competitions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )

    title: Mapped[str] = mapped_column(
        String(200),
        comment="Competition title"
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Optional free-form description"
    )

    prize: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        comment="Prize amount escrowed from the creator"
    )

    start_date: Mapped[datetime] = mapped_column(
        DateTime,
        comment="When revenue starts counting (UTC)"
    )

    end_date: Mapped[datetime] = mapped_column(
        DateTime,
        comment="When revenue stops counting (UTC)"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=CompetitionStatus.UPCOMING.value,
        comment="UPCOMING, ACTIVE or COMPLETED"
    )

    creator_id: Mapped[str] = mapped_column(
        String(64),
        comment="Whop user id of the creator"
    )

    funds_tx_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        comment="Whop escrow id holding the prize"
    )

    funds_released_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the escrow was released to the winner"
    )

    participants: Mapped[List["Participant"]] = relationship(
        "Participant",
        back_populates="competition",
        cascade="all, delete-orphan",
        order_by="Participant.joined_at"
    )

    winner: Mapped[Optional["Winner"]] = relationship(
        "Winner",
        back_populates="competition",
        uselist=False,
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_competition_status_start", "status", "start_date"),
        Index("idx_competition_status_end", "status", "end_date"),
        Index("idx_competition_creator", "creator_id"),
    )

    def __repr__(self) -> str:
        return f"<Competition(id={self.id}, title={self.title!r}, status={self.status})>"

    @property
    def is_joinable(self) -> bool:
        return self.status != CompetitionStatus.COMPLETED.value

