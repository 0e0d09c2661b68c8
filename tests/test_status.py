from datetime import datetime, timedelta, timezone

from bookshare import status
from bookshare.models import TransactionStatus

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_overdue_only_while_borrowing():
    past = NOW - timedelta(hours=1)
    assert status.is_overdue(TransactionStatus.BORROWING, past, NOW)
    assert not status.is_overdue(TransactionStatus.RETURN_SCHEDULED, past, NOW)
    assert not status.is_overdue(TransactionStatus.COMPLETED, past, NOW)
    assert not status.is_overdue(TransactionStatus.BORROWING, NOW + timedelta(days=1), NOW)
    assert not status.is_overdue(TransactionStatus.BORROWING, None, NOW)


def test_naive_datetimes_are_treated_as_utc():
    naive_past = datetime(2025, 2, 27, 12, 0)
    assert status.is_overdue(TransactionStatus.BORROWING, naive_past, NOW)
    assert status.as_utc(naive_past).tzinfo == timezone.utc


def test_effective_status():
    past = NOW - timedelta(days=2)
    assert status.effective_status("BORROWING", past, NOW) == TransactionStatus.OVERDUE
    assert status.effective_status("BORROWING", None, NOW) == TransactionStatus.BORROWING
    assert status.effective_status("REQUESTED", past, NOW) == TransactionStatus.REQUESTED


def test_days_overdue_rounds_up():
    assert status.days_overdue(NOW - timedelta(hours=1), NOW) == 1
    assert status.days_overdue(NOW - timedelta(days=2, hours=3), NOW) == 3
    assert status.days_overdue(NOW + timedelta(days=1), NOW) == 0
    assert status.days_overdue(None, NOW) == 0


def test_trusted_borrower_threshold():
    assert status.is_trusted_borrower(4.5)
    assert status.is_trusted_borrower(5.0)
    assert not status.is_trusted_borrower(4.4)
    assert not status.is_trusted_borrower(None)


def test_terminal_and_holding():
    assert status.is_terminal(TransactionStatus.COMPLETED)
    assert status.is_terminal(TransactionStatus.CANCELLED)
    assert not status.is_terminal(TransactionStatus.BORROWING)
    assert status.is_holding(TransactionStatus.RETURN_SCHEDULED)
    assert not status.is_holding(TransactionStatus.PICKUP_SCHEDULED)


def test_phase_labels():
    assert status.transaction_phase(TransactionStatus.REQUESTED) == "Waiting for Approval"
    assert status.transaction_phase("PICKUP_SCHEDULED") == "Pickup Pending"
    assert status.transaction_phase(TransactionStatus.OVERDUE) == "Currently Borrowing"
    assert status.transaction_phase("UNKNOWN") == "UNKNOWN"
