from datetime import datetime
import logging
from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import List, Optional

from bookshare import models, schemas
from bookshare.exceptions import DatabaseError, NotFoundError
from bookshare.models import BookStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


# Users


def get_user(db: Session, user_id: str) -> models.User:
    user = db.get(models.User, user_id) if user_id else None
    if user is None:
        raise NotFoundError("User")
    return user


def get_users(db: Session, skip: int = 0, limit: int = 100) -> List[models.User]:
    try:
        return db.query(models.User).order_by(models.User.name).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def create_user_record(db: Session, user: schemas.UserCreate) -> models.User:
    try:
        db_user = models.User(**user.model_dump())
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


# Books


def get_book(db: Session, book_id: str) -> models.Book:
    book = db.get(models.Book, book_id) if book_id else None
    if book is None:
        raise NotFoundError("Book")
    return book


def filter_books(
    db: Session,
    status: Optional[BookStatus] = None,
    owner_id: Optional[str] = None,
    text: Optional[str] = None,
) -> List[models.Book]:
    try:
        query = db.query(models.Book)
        if status is not None:
            query = query.filter(models.Book.status == status)
        if owner_id:
            query = query.filter(models.Book.owner_id == owner_id)
        if text:
            like = f"%{text}%"
            query = query.filter(
                or_(models.Book.title.ilike(like), models.Book.author.ilike(like))
            )
        return query.order_by(models.Book.title).all()
    except SQLAlchemyError as e:
        raise DatabaseError("filter", str(e))


def create_book(db: Session, owner_id: str, item: schemas.BookCreate) -> models.Book:
    try:
        db_item = models.Book(owner_id=owner_id, **item.model_dump())
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        return db_item
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def mark_book_borrowed(book: models.Book, borrower_id: str, due_date: datetime) -> None:
    """The only way a book becomes Borrowed."""
    book.status = BookStatus.BORROWED
    book.borrower_id = borrower_id
    book.due_date = due_date


def mark_book_available(book: models.Book) -> None:
    book.status = BookStatus.AVAILABLE
    book.borrower_id = None
    book.due_date = None


# Borrow transactions


def get_transaction(db: Session, transaction_id: str) -> models.BorrowTransaction:
    transaction = (
        db.get(models.BorrowTransaction, transaction_id) if transaction_id else None
    )
    if transaction is None:
        raise NotFoundError("Transaction")
    return transaction


def get_active_transaction_for_book(
    db: Session, book_id: str
) -> Optional[models.BorrowTransaction]:
    return (
        db.query(models.BorrowTransaction)
        .filter(
            models.BorrowTransaction.book_id == book_id,
            models.BorrowTransaction.status.not_in(TERMINAL_STATUSES),
        )
        .first()
    )


def get_transactions_for_user(db: Session, user_id: str) -> List[models.BorrowTransaction]:
    return (
        db.query(models.BorrowTransaction)
        .filter(
            or_(
                models.BorrowTransaction.borrower_id == user_id,
                models.BorrowTransaction.owner_id == user_id,
            )
        )
        .order_by(models.BorrowTransaction.created_at.desc())
        .all()
    )


# Legacy borrow requests


def get_borrow_request(db: Session, request_id: str) -> models.BorrowRequest:
    request = db.get(models.BorrowRequest, request_id) if request_id else None
    if request is None:
        raise NotFoundError("Request")
    return request


def get_requests_for_user(db: Session, user_id: str) -> List[models.BorrowRequest]:
    return (
        db.query(models.BorrowRequest)
        .filter(
            or_(
                models.BorrowRequest.requester_id == user_id,
                models.BorrowRequest.owner_id == user_id,
            )
        )
        .order_by(models.BorrowRequest.created_at.desc())
        .all()
    )


# Messages


def add_message(
    db: Session, user_id: str, content: str, organization_id: Optional[str] = None
) -> models.Message:
    try:
        message = models.Message(
            user_id=user_id, content=content, organization_id=organization_id
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return message
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def get_messages(db: Session, organization_id: Optional[str] = None) -> List[models.Message]:
    query = db.query(models.Message)
    if organization_id is None:
        query = query.filter(models.Message.organization_id.is_(None))
    else:
        query = query.filter(models.Message.organization_id == organization_id)
    return query.order_by(models.Message.created_at).all()
