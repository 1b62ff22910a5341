"""
Result and statistics types shared by the competition services and jobs.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from cartbrawl.core.exceptions import CartBrawlException


@dataclass
class OperationResult:
    """Result-or-error value returned across the service boundary."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str = "UNKNOWN_ERROR") -> "OperationResult":
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(cls, exc: CartBrawlException) -> "OperationResult":
        return cls(success=False, error=exc.message, error_code=exc.code)


class SyncOutcome(Enum):
    """Outcome of a single participant revenue sync."""
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TransitionStats:
    """Counts from one lifecycle advancement pass."""
    started: int = 0
    ended: int = 0
    failed: int = 0
    send_failures: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "started": self.started,
            "ended": self.ended,
            "failed": self.failed,
            "send_failures": self.send_failures,
            "errors": self.errors,
        }


@dataclass
class NotificationStats:
    """
    Counts from one "starting soon" / "ending soon" sweep.

    `failed` counts competitions whose processing raised; undelivered
    pushes only show up in `send_failures`.
    """
    notified: int = 0
    sent: int = 0
    send_failures: int = 0
    failed: int = 0

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, **asdict(self)}


@dataclass
class SyncStats:
    """Counts from a revenue sync pass."""
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    competitions: int = 0

    def add(self, other: "SyncStats") -> None:
        self.updated += other.updated
        self.failed += other.failed
        self.skipped += other.skipped
        self.competitions += other.competitions

    def record(self, outcome: SyncOutcome) -> None:
        if outcome is SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome is SyncOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def success_rate(self) -> float:
        attempted = self.updated + self.failed
        if attempted == 0:
            return 1.0
        return self.updated / attempted

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, **asdict(self)}


@dataclass
class PayoutStats:
    """Counts from a pending payout retry pass."""
    paid: int = 0
    failed: int = 0

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, **asdict(self)}


@dataclass
class JobRunReport:
    """Aggregate of one full background job pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    transitions: TransitionStats = field(default_factory=TransitionStats)
    starting_soon: NotificationStats = field(default_factory=NotificationStats)
    ending_soon: NotificationStats = field(default_factory=NotificationStats)
    revenue: SyncStats = field(default_factory=SyncStats)
    payouts: PayoutStats = field(default_factory=PayoutStats)

    @property
    def success(self) -> bool:
        return all([
            self.transitions.success,
            self.starting_soon.success,
            self.ending_soon.success,
            self.revenue.success,
            self.payouts.success,
        ])

    @property
    def failed_units(self) -> int:
        return (
            self.transitions.failed
            + self.starting_soon.failed
            + self.ending_soon.failed
            + self.revenue.failed
            + self.payouts.failed
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": self.transitions.to_dict(),
            "starting_soon": self.starting_soon.to_dict(),
            "ending_soon": self.ending_soon.to_dict(),
            "revenue": self.revenue.to_dict(),
            "payouts": self.payouts.to_dict(),
        }
