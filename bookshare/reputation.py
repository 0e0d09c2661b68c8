from decimal import Decimal, ROUND_HALF_UP
import logging
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List, Optional

from bookshare import crud, models
from bookshare.exceptions import DuplicateError, ValidationFailedError
from bookshare.operations import operation
from bookshare.schemas import ActionResult

logger = logging.getLogger(__name__)


def _validate_score(rating: int) -> None:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationFailedError("Rating must be between 1 and 5")


def has_rated(
    db: Session, from_user_id: str, to_user_id: str, request_id: Optional[str]
) -> bool:
    query = db.query(models.Rating).filter(
        models.Rating.from_user_id == from_user_id,
        models.Rating.to_user_id == to_user_id,
    )
    if request_id is None:
        query = query.filter(models.Rating.request_id.is_(None))
    else:
        query = query.filter(models.Rating.request_id == request_id)
    return db.query(query.exists()).scalar()


def _one_decimal(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def recompute_reputation(db: Session, user: models.User) -> float:
    average = (
        db.query(func.avg(models.Rating.rating))
        .filter(models.Rating.to_user_id == user.id)
        .scalar()
    )
    user.reputation = _one_decimal(average) if average is not None else 0.0
    return user.reputation


@operation("add_rating", entity="User")
def add_rating(
    db: Session,
    from_user_id: str,
    to_user_id: str,
    rating: int,
    request_id: Optional[str] = None,
) -> ActionResult:
    if from_user_id == to_user_id:
        raise ValidationFailedError("Cannot rate yourself")
    _validate_score(rating)
    crud.get_user(db, from_user_id)
    to_user = crud.get_user(db, to_user_id)
    if has_rated(db, from_user_id, to_user_id, request_id):
        raise DuplicateError("You have already rated this user for this transaction")

    entry = models.Rating(
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        rating=rating,
        request_id=request_id,
    )
    db.add(entry)
    db.flush()
    reputation = recompute_reputation(db, to_user)
    db.commit()
    logger.info(f"User {to_user_id} rated {rating} by {from_user_id}; reputation {reputation}")
    return ActionResult.ok("Rating submitted! Thank you for your feedback.", entry)


def has_rated_book(db: Session, user_id: str, book_id: str) -> bool:
    query = db.query(models.BookRating).filter(
        models.BookRating.user_id == user_id,
        models.BookRating.book_id == book_id,
    )
    return db.query(query.exists()).scalar()


@operation("add_book_rating", entity="Book")
def add_book_rating(
    db: Session, user_id: str, book_id: str, rating: int, review: Optional[str] = None
) -> ActionResult:
    _validate_score(rating)
    crud.get_user(db, user_id)
    crud.get_book(db, book_id)
    if has_rated_book(db, user_id, book_id):
        raise DuplicateError("You have already rated this book")

    entry = models.BookRating(book_id=book_id, user_id=user_id, rating=rating, review=review)
    db.add(entry)
    db.commit()
    return ActionResult.ok("Book rating submitted!", entry)


def average_book_rating(db: Session, book_id: str) -> Optional[float]:
    average = (
        db.query(func.avg(models.BookRating.rating))
        .filter(models.BookRating.book_id == book_id)
        .scalar()
    )
    return _one_decimal(average) if average is not None else None


def ratings_for_book(db: Session, book_id: str) -> List[models.BookRating]:
    return (
        db.query(models.BookRating)
        .filter(models.BookRating.book_id == book_id)
        .order_by(models.BookRating.created_at.desc())
        .all()
    )
