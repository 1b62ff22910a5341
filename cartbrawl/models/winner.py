"""
Winner model - settlement record, one per completed competition.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, new_id, utcnow

if TYPE_CHECKING:
    from .competition import Competition


class Winner(BaseModel):
    """Winning user and payout reference for a competition."""

    __tablename__ = "winners"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )

    competition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("competitions.id", ondelete="CASCADE"),
        unique=True,
        comment="Competition won"
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        comment="Whop user id of the winner"
    )

    total_revenue: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        comment="Winning revenue at settlement time"
    )

    payout_tx_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        comment="Whop payout id; null until the escrow release succeeds"
    )

    payout_attempted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Set before the first escrow release call; later passes reconcile with the ledger"
    )

    won_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        comment="When the winner was determined"
    )

    competition: Mapped["Competition"] = relationship(
        "Competition",
        back_populates="winner"
    )

    def __repr__(self) -> str:
        return f"<Winner(competition={self.competition_id}, user={self.user_id}, payout={self.payout_tx_id})>"

    @property
    def is_paid(self) -> bool:
        return self.payout_tx_id is not None
