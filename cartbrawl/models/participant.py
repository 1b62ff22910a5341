"""
Participant model - one user's entry into one competition with one store.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, new_id, utcnow

if TYPE_CHECKING:
    from .competition import Competition


class Participant(BaseModel):
    """Store connected to a competition."""

    __tablename__ = "participants"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )

    competition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("competitions.id", ondelete="CASCADE"),
        comment="Competition entered"
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        comment="Whop user id"
    )

    store_domain: Mapped[str] = mapped_column(
        String(255),
        comment="Shopify store domain (name.myshopify.com)"
    )

    access_token: Mapped[str] = mapped_column(
        Text,
        comment="Encrypted Shopify Admin API access token"
    )

    total_revenue: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        default=Decimal("0"),
        comment="Paid-order revenue within the competition window"
    )

    last_revenue_sync: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Last successful revenue recomputation; null if never synced"
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        comment="When the store joined; breaks revenue ties"
    )

    competition: Mapped["Competition"] = relationship(
        "Competition",
        back_populates="participants"
    )

    __table_args__ = (
        UniqueConstraint("competition_id", "user_id", name="uq_participant_competition_user"),
        UniqueConstraint("competition_id", "store_domain", name="uq_participant_competition_store"),
        Index("idx_participant_user", "user_id"),
        Index("idx_participant_sync", "last_revenue_sync"),
    )

    def __repr__(self) -> str:
        return f"<Participant(user={self.user_id}, store={self.store_domain}, revenue={self.total_revenue})>"

    def is_sync_due(self, now: datetime, min_interval_seconds: int) -> bool:
        if self.last_revenue_sync is None:
            return True
        return (now - self.last_revenue_sync).total_seconds() >= min_interval_seconds
