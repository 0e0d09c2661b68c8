"""Borrow transaction state machine.

REQUESTED -> PICKUP_SCHEDULED -> BORROWING -> RETURN_SCHEDULED -> COMPLETED,
with CANCELLED reachable from every non-terminal state. OVERDUE is never
stored; see bookshare.status.

Each operation takes the acting user's id, runs as a single critical section
under the book's lock and returns an ActionResult. Pickup is the only step
that marks a book Borrowed; return completion (or cancelling a loan already
handed over) is the only step that frees it.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional

from bookshare import config, crud, models, waitlist
from bookshare.exceptions import (
    BookNotAvailableError,
    DuplicateError,
    ForbiddenError,
    InvalidStateError,
    ValidationFailedError,
)
from bookshare.limits import ensure_can_borrow
from bookshare.models import (
    BookStatus,
    ExchangeRole,
    ExchangeType,
    TransactionStatus,
    utcnow,
)
from bookshare.operations import book_locks, operation, require_status
from bookshare.schemas import (
    ActionResult,
    ExchangeScheduleDetails,
    TransactionRequestDetails,
)
from bookshare.status import is_holding, is_terminal

logger = logging.getLogger(__name__)

NOT_A_PARTY = "You are not part of this transaction"


@contextmanager
def _locked_transaction(db: Session, transaction_id: str):
    book_id = crud.get_transaction(db, transaction_id).book_id
    with book_locks.hold(book_id):
        # re-read under the lock
        db.expire_all()
        yield crud.get_transaction(db, transaction_id)


def _parse_role(role) -> ExchangeRole:
    try:
        return ExchangeRole(role)
    except ValueError:
        raise ValidationFailedError(f"Unknown role: {role}")


def _ensure_party(transaction: models.BorrowTransaction, user_id: str, role: ExchangeRole):
    expected = (
        transaction.borrower_id if role == ExchangeRole.BORROWER else transaction.owner_id
    )
    if user_id != expected:
        raise ForbiddenError(NOT_A_PARTY)


def role_of(transaction: models.BorrowTransaction, user_id: str) -> Optional[ExchangeRole]:
    if transaction.borrower_id == user_id:
        return ExchangeRole.BORROWER
    if transaction.owner_id == user_id:
        return ExchangeRole.OWNER
    return None


def _confirm(exchange: models.ExchangeRecord, role: ExchangeRole) -> None:
    if role == ExchangeRole.BORROWER:
        exchange.borrower_confirmed = True
    else:
        exchange.owner_confirmed = True


def _reset_exchange(exchange: models.ExchangeRecord, **fields) -> None:
    exchange.method = fields.get("method")
    exchange.location_text = ""
    exchange.scheduled_at = None
    exchange.completed_at = None
    exchange.borrower_confirmed = False
    exchange.owner_confirmed = False
    exchange.note = fields.get("note") or ""
    exchange.contact_method = fields.get("contact_method")
    exchange.contact_value = fields.get("contact_value") or ""
    exchange.issue_flag = False
    exchange.issue_note = ""


def _schedule(exchange: models.ExchangeRecord, details: ExchangeScheduleDetails) -> None:
    if details.method:
        exchange.method = details.method
    exchange.location_text = details.location_text
    exchange.scheduled_at = details.scheduled_at
    if details.note:
        exchange.note = details.note


def _release_book(transaction: models.BorrowTransaction) -> None:
    book = transaction.book
    if book.borrower_id in (None, transaction.borrower_id):
        crud.mark_book_available(book)
    else:
        logger.warning(
            f"Book {book.id} is held by {book.borrower_id}, not by transaction {transaction.id}"
        )


@operation("create_transaction", entity="Book")
def create_transaction(
    db: Session,
    book_id: str,
    borrower_id: str,
    details: Optional[TransactionRequestDetails] = None,
    now: Optional[datetime] = None,
) -> ActionResult:
    details = details or TransactionRequestDetails()
    with book_locks.hold(book_id):
        borrower = crud.get_user(db, borrower_id)
        if borrower.is_banned:
            raise ForbiddenError("Your account has been banned")
        book = crud.get_book(db, book_id)
        if book.owner_id == borrower.id:
            raise ValidationFailedError("Cannot borrow your own book")
        if book.status != BookStatus.AVAILABLE:
            raise BookNotAvailableError()
        if crud.get_active_transaction_for_book(db, book.id) is not None:
            raise DuplicateError("Book already has an active transaction")
        ensure_can_borrow(db, borrower)

        transaction = models.BorrowTransaction(
            book_id=book.id,
            borrower_id=borrower.id,
            owner_id=book.owner_id,
            status=TransactionStatus.REQUESTED,
            created_at=now or utcnow(),
            pickup_exchange=models.ExchangeRecord(
                method=details.method,
                note=details.note,
                contact_method=details.contact_method,
                contact_value=details.contact_value,
            ),
            return_exchange=models.ExchangeRecord(),
        )
        db.add(transaction)
        try:
            db.commit()
        except IntegrityError:
            # another process won the race for this book
            db.rollback()
            raise DuplicateError("Book already has an active transaction")
        logger.info(f"Transaction {transaction.id} requested for book {book_id} by {borrower_id}")
        return ActionResult.ok("Borrow request sent!", transaction)


@operation("approve_and_schedule_pickup", entity="Transaction")
def approve_and_schedule_pickup(
    db: Session, transaction_id: str, owner_id: str, details: ExchangeScheduleDetails
) -> ActionResult:
    with _locked_transaction(db, transaction_id) as transaction:
        if transaction.owner_id != owner_id:
            raise ForbiddenError("Only the owner can approve")
        require_status(
            transaction.status,
            (TransactionStatus.REQUESTED,),
            "Only new requests can be approved",
        )
        _schedule(transaction.pickup_exchange, details)
        transaction.status = TransactionStatus.PICKUP_SCHEDULED
        db.commit()
        logger.info(f"Transaction {transaction_id} pickup scheduled")
        return ActionResult.ok("Pickup scheduled!", transaction)


@operation("confirm_pickup", entity="Transaction")
def confirm_pickup(
    db: Session,
    transaction_id: str,
    user_id: str,
    role,
    now: Optional[datetime] = None,
) -> ActionResult:
    role = _parse_role(role)
    with _locked_transaction(db, transaction_id) as transaction:
        _ensure_party(transaction, user_id, role)
        if transaction.status == TransactionStatus.CANCELLED:
            raise InvalidStateError("Transaction has been cancelled")
        pickup = transaction.pickup_exchange
        if pickup.completed_at is not None:
            return ActionResult.ok("Pickup already completed.", transaction)
        require_status(
            transaction.status,
            (TransactionStatus.PICKUP_SCHEDULED,),
            "Pickup has not been scheduled yet",
        )

        _confirm(pickup, role)
        if not pickup.both_confirmed:
            db.commit()
            return ActionResult.ok("Pickup confirmed. Waiting for other party.", transaction)

        book = transaction.book
        if book.status != BookStatus.AVAILABLE:
            raise BookNotAvailableError()
        # other loans may have started since the request was made
        ensure_can_borrow(db, transaction.borrower, third_party=role != ExchangeRole.BORROWER)
        now = now or utcnow()
        pickup.completed_at = now
        transaction.status = TransactionStatus.BORROWING
        transaction.due_date = now + timedelta(days=config.LOAN_PERIOD_DAYS)
        crud.mark_book_borrowed(book, transaction.borrower_id, transaction.due_date)
        db.commit()
        logger.info(f"Transaction {transaction_id} borrowing, due {transaction.due_date}")
        return ActionResult.ok("Pickup complete! Borrowing period started.", transaction)


@operation("initiate_return", entity="Transaction")
def initiate_return(
    db: Session,
    transaction_id: str,
    borrower_id: str,
    details: TransactionRequestDetails,
) -> ActionResult:
    with _locked_transaction(db, transaction_id) as transaction:
        if transaction.borrower_id != borrower_id:
            raise ForbiddenError("Only the borrower can initiate return")
        require_status(
            transaction.status,
            (TransactionStatus.BORROWING,),
            "Only books currently being borrowed can be returned",
        )
        if details.method is None:
            raise ValidationFailedError("Choose how the book will be returned")
        pickup = transaction.pickup_exchange
        _reset_exchange(
            transaction.return_exchange,
            method=details.method,
            note=details.note,
            contact_method=details.contact_method or pickup.contact_method,
            contact_value=details.contact_value or pickup.contact_value,
        )
        db.commit()
        logger.info(f"Transaction {transaction_id} return initiated")
        return ActionResult.ok(
            "Return initiated. Waiting for owner to schedule.", transaction
        )


@operation("schedule_return", entity="Transaction")
def schedule_return(
    db: Session, transaction_id: str, owner_id: str, details: ExchangeScheduleDetails
) -> ActionResult:
    with _locked_transaction(db, transaction_id) as transaction:
        if transaction.owner_id != owner_id:
            raise ForbiddenError("Only the owner can schedule return")
        require_status(
            transaction.status,
            (TransactionStatus.BORROWING,),
            "Only books currently being borrowed can be scheduled for return",
        )
        if transaction.return_exchange.method is None:
            raise InvalidStateError("The borrower has not initiated a return yet")
        _schedule(transaction.return_exchange, details)
        transaction.status = TransactionStatus.RETURN_SCHEDULED
        db.commit()
        logger.info(f"Transaction {transaction_id} return scheduled")
        return ActionResult.ok("Return scheduled!", transaction)


@operation("confirm_return", entity="Transaction")
def confirm_return(
    db: Session,
    transaction_id: str,
    user_id: str,
    role,
    now: Optional[datetime] = None,
) -> ActionResult:
    role = _parse_role(role)
    with _locked_transaction(db, transaction_id) as transaction:
        _ensure_party(transaction, user_id, role)
        if transaction.status == TransactionStatus.CANCELLED:
            raise InvalidStateError("Transaction has been cancelled")
        returned = transaction.return_exchange
        if returned.completed_at is not None:
            return ActionResult.ok("Return already completed.", transaction)
        require_status(
            transaction.status,
            (TransactionStatus.RETURN_SCHEDULED,),
            "Return has not been scheduled yet",
        )

        _confirm(returned, role)
        if not returned.both_confirmed:
            db.commit()
            return ActionResult.ok("Return confirmed. Waiting for other party.", transaction)

        returned.completed_at = now or utcnow()
        transaction.status = TransactionStatus.COMPLETED
        _release_book(transaction)
        db.commit()
        logger.info(f"Transaction {transaction_id} completed")
        waitlist.next_in_line(db, transaction.book_id)
        return ActionResult.ok("Return complete! Transaction finished.", transaction)


@operation("cancel_transaction", entity="Transaction")
def cancel_transaction(db: Session, transaction_id: str, user_id: str) -> ActionResult:
    with _locked_transaction(db, transaction_id) as transaction:
        if role_of(transaction, user_id) is None:
            raise ForbiddenError(NOT_A_PARTY)
        if is_terminal(transaction.status):
            raise InvalidStateError(
                f"Transaction is already {transaction.status.value.lower()}"
            )
        handed_over = is_holding(transaction.status)
        transaction.status = TransactionStatus.CANCELLED
        if handed_over:
            # the book is back with its owner: treat as an early return
            _release_book(transaction)
        db.commit()
        logger.info(f"Transaction {transaction_id} cancelled by {user_id}")
        if handed_over:
            waitlist.next_in_line(db, transaction.book_id)
        return ActionResult.ok("Transaction cancelled.", transaction)


@operation("report_exchange_issue", entity="Transaction")
def report_exchange_issue(
    db: Session, transaction_id: str, user_id: str, exchange_type, issue_note: str
) -> ActionResult:
    try:
        exchange_type = ExchangeType(exchange_type)
    except ValueError:
        raise ValidationFailedError(f"Unknown exchange: {exchange_type}")
    if not issue_note or not issue_note.strip():
        raise ValidationFailedError("Please describe the issue")
    with _locked_transaction(db, transaction_id) as transaction:
        if role_of(transaction, user_id) is None:
            raise ForbiddenError(NOT_A_PARTY)
        exchange = (
            transaction.pickup_exchange
            if exchange_type == ExchangeType.PICKUP
            else transaction.return_exchange
        )
        exchange.issue_flag = True
        exchange.issue_note = issue_note.strip()
        db.commit()
        logger.warning(
            f"Issue reported on {exchange_type.value} of transaction {transaction_id}"
        )
        return ActionResult.ok("Issue reported.", transaction)


def get_transaction(db: Session, transaction_id: str) -> Optional[models.BorrowTransaction]:
    return db.get(models.BorrowTransaction, transaction_id)


def active_transaction_for_book(
    db: Session, book_id: str
) -> Optional[models.BorrowTransaction]:
    return crud.get_active_transaction_for_book(db, book_id)


def transactions_for_user(db: Session, user_id: str) -> List[models.BorrowTransaction]:
    return crud.get_transactions_for_user(db, user_id)
