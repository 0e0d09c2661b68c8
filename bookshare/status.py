"""Derived, read-time state.

OVERDUE, days overdue and the trusted-borrower badge are never stored; they
are computed here from persisted fields so every caller agrees on them.
"""
import math
from datetime import datetime, timezone
from typing import Optional

from bookshare import config
from bookshare.models import TERMINAL_STATUSES, TransactionStatus, utcnow

HOLDING_STATUSES = (TransactionStatus.BORROWING, TransactionStatus.RETURN_SCHEDULED)

PHASE_LABELS = {
    TransactionStatus.REQUESTED: "Waiting for Approval",
    TransactionStatus.APPROVED: "Pickup Pending",
    TransactionStatus.PICKUP_SCHEDULED: "Pickup Pending",
    TransactionStatus.BORROWING: "Currently Borrowing",
    TransactionStatus.OVERDUE: "Currently Borrowing",
    TransactionStatus.RETURN_SCHEDULED: "Return Pending",
    TransactionStatus.COMPLETED: "Completed",
    TransactionStatus.CANCELLED: "Cancelled",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES


def is_holding(status) -> bool:
    """True while the borrower physically has the book."""
    return status in HOLDING_STATUSES


def is_overdue(status, due_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if status != TransactionStatus.BORROWING or due_date is None:
        return False
    now = now or utcnow()
    return as_utc(due_date) < as_utc(now)


def is_past_due(due_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if due_date is None:
        return False
    now = now or utcnow()
    return as_utc(due_date) < as_utc(now)


def effective_status(status, due_date: Optional[datetime], now: Optional[datetime] = None):
    if is_overdue(status, due_date, now):
        return TransactionStatus.OVERDUE
    return TransactionStatus(status)


def days_overdue(due_date: Optional[datetime], now: Optional[datetime] = None) -> int:
    if not is_past_due(due_date, now):
        return 0
    now = now or utcnow()
    elapsed = as_utc(now) - as_utc(due_date)
    return math.ceil(elapsed.total_seconds() / 86400)


def is_trusted_borrower(reputation: Optional[float]) -> bool:
    return (reputation or 0) >= config.TRUSTED_REPUTATION


def transaction_phase(status) -> str:
    try:
        return PHASE_LABELS[TransactionStatus(status)]
    except ValueError:
        return str(status)
