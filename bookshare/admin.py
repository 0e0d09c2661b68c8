import logging
from datetime import datetime
from sqlalchemy.orm import Session
from typing import Optional

from bookshare import crud, models
from bookshare.exceptions import ForbiddenError, ValidationFailedError
from bookshare.limits import LEGACY_HOLDING_STATUSES
from bookshare.models import utcnow
from bookshare.operations import operation
from bookshare.schemas import (
    ActionResult,
    BookSchema,
    OverdueLoan,
    UserSchema,
    UserStatistics,
)
from bookshare.status import HOLDING_STATUSES, days_overdue, is_overdue, is_past_due

logger = logging.getLogger(__name__)


def _require_admin(db: Session, admin_id: str) -> models.User:
    admin = crud.get_user(db, admin_id)
    if not admin.is_admin:
        raise ForbiddenError("Admin access required")
    return admin


@operation("ban_user", entity="User")
def ban_user(db: Session, admin_id: str, user_id: str) -> ActionResult:
    _require_admin(db, admin_id)
    user = crud.get_user(db, user_id)
    if user.is_admin:
        raise ValidationFailedError("Admins cannot be banned")
    user.is_banned = True
    db.commit()
    logger.warning(f"User {user_id} banned by {admin_id}")
    return ActionResult.ok("User banned successfully.", user)


@operation("unban_user", entity="User")
def unban_user(db: Session, admin_id: str, user_id: str) -> ActionResult:
    _require_admin(db, admin_id)
    user = crud.get_user(db, user_id)
    user.is_banned = False
    db.commit()
    logger.info(f"User {user_id} unbanned by {admin_id}")
    return ActionResult.ok("User unbanned successfully.", user)


def user_statistics(db: Session, now: Optional[datetime] = None) -> UserStatistics:
    now = now or utcnow()
    overdue = []

    holding = (
        db.query(models.BorrowTransaction)
        .filter(models.BorrowTransaction.status.in_(HOLDING_STATUSES))
        .all()
    )
    for transaction in holding:
        if is_overdue(transaction.status, transaction.due_date, now):
            overdue.append(
                OverdueLoan(
                    kind="transaction",
                    loan_id=transaction.id,
                    book=BookSchema.model_validate(transaction.book),
                    borrower=UserSchema.model_validate(transaction.borrower),
                    owner=UserSchema.model_validate(transaction.owner),
                    due_date=transaction.due_date,
                    days_overdue=days_overdue(transaction.due_date, now),
                )
            )

    legacy = (
        db.query(models.BorrowRequest)
        .filter(models.BorrowRequest.status.in_(LEGACY_HOLDING_STATUSES))
        .all()
    )
    for request in legacy:
        # legacy requests keep their due date on the book
        if is_past_due(request.book.due_date, now):
            overdue.append(
                OverdueLoan(
                    kind="request",
                    loan_id=request.id,
                    book=BookSchema.model_validate(request.book),
                    borrower=UserSchema.model_validate(request.requester),
                    owner=UserSchema.model_validate(request.owner),
                    due_date=request.book.due_date,
                    days_overdue=days_overdue(request.book.due_date, now),
                )
            )

    return UserStatistics(
        total_users=db.query(models.User).count(),
        total_books=db.query(models.Book).count(),
        active_borrows=len(holding) + len(legacy),
        overdue_count=len(overdue),
        overdue_loans=overdue,
    )
