"""
Input validation for competitions and connected stores.
"""

import re
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import ValidationError


logger = structlog.get_logger(__name__)

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


class StoreValidator:
    """Validator for Shopify store identifiers."""

    @staticmethod
    def normalize_domain(shop: str) -> str:
        """Lowercase and strip scheme and trailing slashes."""
        shop = (shop or "").strip().lower()
        for prefix in ("https://", "http://"):
            if shop.startswith(prefix):
                shop = shop[len(prefix):]
        return shop.rstrip("/")

    @staticmethod
    def is_valid_domain(shop: str) -> bool:
        return bool(shop) and SHOP_DOMAIN_PATTERN.match(shop) is not None


class CompetitionValidator:
    """Validator for competition creation and update input."""

    @staticmethod
    def validate_prize(prize: Any) -> bool:
        try:
            value = Decimal(str(prize))
        except (InvalidOperation, ValueError):
            return False
        return value.is_finite() and value > 0

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return bool(title and title.strip()) and len(title.strip()) <= 200

    @staticmethod
    def validate_window(start_date: datetime, end_date: datetime) -> List[str]:
        """
        Validate the competition time window.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if end_date <= start_date:
            errors.append("End date must be after start date")
            return errors

        duration = end_date - start_date
        min_duration = timedelta(hours=settings.competition_min_duration_hours)
        max_duration = timedelta(days=settings.competition_max_duration_days)

        if duration < min_duration:
            errors.append(
                f"Competition must be at least {settings.competition_min_duration_hours} hour(s) long"
            )
        if duration > max_duration:
            errors.append(
                f"Competition cannot be longer than {settings.competition_max_duration_days} days"
            )

        return errors


def validate_competition_input(
    title: Optional[str],
    prize: Any,
    start_date: datetime,
    end_date: datetime,
    now: datetime,
    require_future_start: bool = True
) -> None:
    """
    Validate competition fields before any store mutation.

    Raises:
        ValidationError: With every problem found, joined into one message
    """
    errors: List[str] = []

    if not CompetitionValidator.validate_title(title):
        errors.append("Title is required and must be at most 200 characters")

    if not CompetitionValidator.validate_prize(prize):
        errors.append("Prize must be a positive amount")

    errors.extend(CompetitionValidator.validate_window(start_date, end_date))

    if require_future_start and start_date <= now:
        errors.append("Start date must be in the future")

    if errors:
        logger.debug("Competition input rejected", errors=errors)
        raise ValidationError("; ".join(errors), {"errors": errors})


def validate_store_domain(shop: str) -> str:
    """
    Normalize and validate a store domain.

    Returns:
        Normalized ``name.myshopify.com`` domain

    Raises:
        ValidationError: If the domain is not a myshopify.com domain
    """
    normalized = StoreValidator.normalize_domain(shop)
    if not StoreValidator.is_valid_domain(normalized):
        raise ValidationError(
            "Invalid store domain. Expected format: your-store.myshopify.com",
            {"store_domain": shop}
        )
    return normalized
