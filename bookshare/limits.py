import logging
from sqlalchemy.orm import Session

from bookshare import crud, models
from bookshare.exceptions import BorrowLimitReachedError, NotFoundError
from bookshare.models import LegacyRequestStatus
from bookshare.status import HOLDING_STATUSES

logger = logging.getLogger(__name__)

# Legacy requests that mean the requester currently has the book.
LEGACY_HOLDING_STATUSES = (
    LegacyRequestStatus.APPROVED,
    LegacyRequestStatus.RETURNED_PENDING_CONFIRM,
)


def active_borrow_count(db: Session, user_id: str) -> int:
    transactions = (
        db.query(models.BorrowTransaction)
        .filter(
            models.BorrowTransaction.borrower_id == user_id,
            models.BorrowTransaction.status.in_(HOLDING_STATUSES),
        )
        .count()
    )
    legacy = (
        db.query(models.BorrowRequest)
        .filter(
            models.BorrowRequest.requester_id == user_id,
            models.BorrowRequest.status.in_(LEGACY_HOLDING_STATUSES),
        )
        .count()
    )
    return transactions + legacy


def can_borrow(db: Session, user_id: str) -> bool:
    try:
        user = crud.get_user(db, user_id)
    except NotFoundError:
        return False
    return active_borrow_count(db, user.id) < user.borrow_limit


def ensure_can_borrow(db: Session, user: models.User, third_party: bool = False) -> None:
    """Raise BorrowLimitReachedError when the user is at their limit.

    third_party words the message for someone acting on the user's behalf
    (an owner approving a request) instead of the user themselves.
    """
    active = active_borrow_count(db, user.id)
    if active >= user.borrow_limit:
        logger.info(f"User {user.id} is at borrow limit {active}/{user.borrow_limit}")
        raise BorrowLimitReachedError(
            active, user.borrow_limit, name=(user.name or "User") if third_party else None
        )
