"""
Competition request schemas.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CompetitionCreateRequest(BaseModel):
    """Create competition request."""
    title: str = Field(..., min_length=1, max_length=200, description="Competition title")
    description: Optional[str] = Field(None, max_length=5000, description="Competition description")
    prize: Decimal = Field(..., gt=0, description="Prize amount escrowed from the creator")
    start_date: datetime = Field(..., description="When revenue starts counting (UTC)")
    end_date: datetime = Field(..., description="When revenue stops counting (UTC)")

    @field_validator("start_date", "end_date")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return _naive_utc(v)


class CompetitionUpdateRequest(BaseModel):
    """Update an upcoming competition. Omitted fields stay unchanged."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)


class JoinCompetitionRequest(BaseModel):
    """Join with an already obtained Shopify offline token."""
    shopify_domain: str = Field(..., description="Store domain, e.g. store-name.myshopify.com")
    access_token: str = Field(..., min_length=1, description="Shopify offline access token")


class JobAction(str, Enum):
    """Admin background job actions."""
    RUN_ALL = "run-all"
    UPDATE_STATUSES = "update-statuses"
    SEND_STARTING_NOTIFICATIONS = "send-starting-notifications"
    SEND_ENDING_NOTIFICATIONS = "send-ending-notifications"
    UPDATE_REVENUE = "update-revenue"
    SETTLE = "settle"


class JobTriggerRequest(BaseModel):
    """Admin background job trigger."""
    action: JobAction
    competition_id: Optional[str] = Field(None, description="Limit revenue update or settle to one competition")
