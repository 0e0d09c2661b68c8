"""Compatibility shim for the direct request/approval flow.

Older clients still create BorrowRequests instead of BorrowTransactions. The
flow has no pickup/return handshake, but it goes through the same borrow-limit
guard, the same book lock and the same mark_book_* helpers as the transaction
engine, so both paths keep the book status coherent.
"""
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session
from typing import Optional

from bookshare import config, crud, models, waitlist
from bookshare.exceptions import (
    BookNotAvailableError,
    DuplicateError,
    ForbiddenError,
    ValidationFailedError,
)
from bookshare.limits import ensure_can_borrow
from bookshare.models import BookStatus, LegacyRequestStatus, utcnow
from bookshare.operations import book_locks, operation, require_status
from bookshare.schemas import ActionResult

logger = logging.getLogger(__name__)


def _ensure_lendable(db: Session, book: models.Book) -> None:
    if book.status != BookStatus.AVAILABLE:
        raise BookNotAvailableError()
    if crud.get_active_transaction_for_book(db, book.id) is not None:
        raise DuplicateError("Book already has an active transaction")


@operation("request_book", entity="Book")
def request_book(db: Session, book_id: str, requester_id: str) -> ActionResult:
    with book_locks.hold(book_id):
        requester = crud.get_user(db, requester_id)
        if requester.is_banned:
            raise ForbiddenError("Your account has been banned")
        book = crud.get_book(db, book_id)
        if book.owner_id == requester.id:
            raise ValidationFailedError("Cannot borrow your own book")
        if book.status != BookStatus.AVAILABLE:
            raise BookNotAvailableError()
        ensure_can_borrow(db, requester)
        pending = (
            db.query(models.BorrowRequest)
            .filter(
                models.BorrowRequest.book_id == book_id,
                models.BorrowRequest.requester_id == requester_id,
                models.BorrowRequest.status == LegacyRequestStatus.PENDING,
            )
            .first()
        )
        if pending is not None:
            raise DuplicateError("Request already pending")

        request = models.BorrowRequest(
            book_id=book.id, requester_id=requester.id, owner_id=book.owner_id
        )
        db.add(request)
        db.commit()
        logger.info(f"Legacy request {request.id} for book {book_id}")
        return ActionResult.ok("Request sent successfully!", request)


@operation("approve_request", entity="Request")
def approve_request(
    db: Session, request_id: str, owner_id: str, now: Optional[datetime] = None
) -> ActionResult:
    request = crud.get_borrow_request(db, request_id)
    with book_locks.hold(request.book_id):
        db.refresh(request)
        if request.owner_id != owner_id:
            raise ForbiddenError("Only the owner can approve")
        require_status(
            request.status, (LegacyRequestStatus.PENDING,), "Request is no longer pending"
        )
        requester = crud.get_user(db, request.requester_id)
        if requester.is_banned:
            raise ForbiddenError("This user has been banned")
        # time has passed since the request; the limit may have been reached
        ensure_can_borrow(db, requester, third_party=True)
        _ensure_lendable(db, request.book)

        request.status = LegacyRequestStatus.PENDING_BORROWER_CONFIRMATION
        request.approved_at = now or utcnow()
        db.commit()
        return ActionResult.ok(
            "Request approved! Waiting for borrower to confirm receipt.", request
        )


@operation("reject_request", entity="Request")
def reject_request(db: Session, request_id: str, owner_id: str) -> ActionResult:
    request = crud.get_borrow_request(db, request_id)
    if request.owner_id != owner_id:
        raise ForbiddenError("Only the owner can reject")
    require_status(
        request.status, (LegacyRequestStatus.PENDING,), "Request is no longer pending"
    )
    request.status = LegacyRequestStatus.REJECTED
    db.commit()
    return ActionResult.ok("Request rejected.", request)


@operation("confirm_borrower_receipt", entity="Request")
def confirm_borrower_receipt(
    db: Session, request_id: str, requester_id: str, now: Optional[datetime] = None
) -> ActionResult:
    request = crud.get_borrow_request(db, request_id)
    with book_locks.hold(request.book_id):
        db.refresh(request)
        if request.requester_id != requester_id:
            raise ForbiddenError("Only the borrower can confirm receipt")
        require_status(
            request.status,
            (LegacyRequestStatus.PENDING_BORROWER_CONFIRMATION,),
            "Could not confirm receipt",
        )
        book = request.book
        _ensure_lendable(db, book)

        now = now or utcnow()
        request.status = LegacyRequestStatus.APPROVED
        request.borrower_confirmed = True
        request.borrower_confirmed_at = now
        crud.mark_book_borrowed(
            book, request.requester_id, now + timedelta(days=config.LOAN_PERIOD_DAYS)
        )
        db.commit()
        return ActionResult.ok("Receipt confirmed! Enjoy your book.", request)


@operation("request_return", entity="Request")
def request_return(
    db: Session, request_id: str, owner_id: str, now: Optional[datetime] = None
) -> ActionResult:
    request = crud.get_borrow_request(db, request_id)
    if request.owner_id != owner_id:
        raise ForbiddenError("Only the owner can request a return")
    require_status(
        request.status, (LegacyRequestStatus.APPROVED,), "Could not request return"
    )
    request.return_requested = True
    request.return_requested_at = now or utcnow()
    db.commit()
    return ActionResult.ok("Return requested. Borrower has been notified.", request)


@operation("return_book", entity="Request")
def return_book(
    db: Session, book_id: str, requester_id: str, now: Optional[datetime] = None
) -> ActionResult:
    with book_locks.hold(book_id):
        request = (
            db.query(models.BorrowRequest)
            .filter(
                models.BorrowRequest.book_id == book_id,
                models.BorrowRequest.requester_id == requester_id,
                models.BorrowRequest.status == LegacyRequestStatus.APPROVED,
            )
            .first()
        )
        if request is None:
            raise ValidationFailedError("Active borrow not found")
        # the book stays Borrowed until the owner confirms
        request.status = LegacyRequestStatus.RETURNED_PENDING_CONFIRM
        request.returned_at = now or utcnow()
        db.commit()
        return ActionResult.ok("Return initiated. Waiting for owner confirmation.", request)


@operation("confirm_legacy_return", entity="Request")
def confirm_return(db: Session, request_id: str, owner_id: str) -> ActionResult:
    request = crud.get_borrow_request(db, request_id)
    with book_locks.hold(request.book_id):
        db.refresh(request)
        if request.owner_id != owner_id:
            raise ForbiddenError("Only the owner can confirm the return")
        require_status(
            request.status,
            (LegacyRequestStatus.RETURNED_PENDING_CONFIRM,),
            "No return is waiting for confirmation",
        )
        request.status = LegacyRequestStatus.RETURNED
        book = request.book
        if book.borrower_id in (None, request.requester_id):
            crud.mark_book_available(book)
        db.commit()
        waitlist.next_in_line(db, request.book_id)
        return ActionResult.ok("Return confirmed! Book is now available.", request)
