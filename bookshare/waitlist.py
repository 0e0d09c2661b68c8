"""Per-book waitlist with dense 1-based positions."""
import logging
from sqlalchemy.orm import Session
from typing import List, Optional

from bookshare import models
from bookshare.operations import book_locks

logger = logging.getLogger(__name__)


def queue_for(db: Session, book_id: str) -> List[models.WaitlistEntry]:
    return (
        db.query(models.WaitlistEntry)
        .filter(models.WaitlistEntry.book_id == book_id)
        .order_by(models.WaitlistEntry.position)
        .all()
    )


def count(db: Session, book_id: str) -> int:
    return (
        db.query(models.WaitlistEntry)
        .filter(models.WaitlistEntry.book_id == book_id)
        .count()
    )


def _find(db: Session, book_id: str, user_id: str) -> Optional[models.WaitlistEntry]:
    return (
        db.query(models.WaitlistEntry)
        .filter(
            models.WaitlistEntry.book_id == book_id,
            models.WaitlistEntry.user_id == user_id,
        )
        .first()
    )


def position_of(db: Session, book_id: str, user_id: str) -> Optional[int]:
    entry = _find(db, book_id, user_id)
    return entry.position if entry else None


def join(db: Session, book_id: str, user_id: str) -> Optional[models.WaitlistEntry]:
    """Append the user to the book's queue; None if they are already in it."""
    with book_locks.hold(book_id):
        if _find(db, book_id, user_id) is not None:
            return None
        entry = models.WaitlistEntry(
            book_id=book_id, user_id=user_id, position=count(db, book_id) + 1
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        logger.info(f"User {user_id} joined waitlist for book {book_id} at #{entry.position}")
        return entry


def leave(db: Session, book_id: str, user_id: str) -> bool:
    with book_locks.hold(book_id):
        entry = _find(db, book_id, user_id)
        if entry is None:
            return False
        db.delete(entry)
        db.flush()
        for position, remaining in enumerate(queue_for(db, book_id), start=1):
            remaining.position = position
        db.commit()
        logger.info(f"User {user_id} left waitlist for book {book_id}")
        return True


def next_in_line(db: Session, book_id: str) -> Optional[models.WaitlistEntry]:
    """Report who is first in the queue once the book frees up.

    Nothing is reserved or promoted; the user at position 1 may now request
    the book like anyone else.
    """
    queue = queue_for(db, book_id)
    if not queue:
        return None
    logger.info(f"User {queue[0].user_id} is next in line for book {book_id}")
    return queue[0]
