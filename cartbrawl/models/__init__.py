"""
Database models for CartBrawl backend.

Competitions, their participants and the settlement record.
"""

from .base import Base, BaseModel, TimestampMixin, utcnow
from .competition import Competition, CompetitionStatus
from .participant import Participant
from .winner import Winner

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "Competition",
    "CompetitionStatus",
    "Participant",
    "Winner",
]
