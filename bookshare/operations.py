"""Scaffolding shared by the lending engines.

Every public engine operation is a check-then-act critical section over the
session. Domain failures are raised as LendingError inside the operation and
turned into a failed ActionResult here, after the session is rolled back so
nothing is left half-written.
"""
import functools
import logging
import threading
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from bookshare.exceptions import (
    ConcurrentModificationError,
    DatabaseError,
    InvalidStateError,
    LendingError,
)
from bookshare.schemas import ActionResult

logger = logging.getLogger(__name__)


class KeyedLocks:
    """A fixed pool of locks, picked by hashing the key."""

    def __init__(self, stripes: int = 64):
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _lock_for(self, key) -> threading.RLock:
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key):
        lock = self._lock_for(key)
        with lock:
            yield


book_locks = KeyedLocks()
organization_book_locks = KeyedLocks()


def operation(name: str, entity: str = "Record"):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(db, *args, **kwargs):
            try:
                return func(db, *args, **kwargs)
            except LendingError as e:
                db.rollback()
                logger.info(f"{name} refused: {e.message}")
                return ActionResult.fail(e.message)
            except StaleDataError as e:
                db.rollback()
                logger.warning(f"{name} lost an optimistic concurrency race: {e}")
                return ActionResult.fail(ConcurrentModificationError(entity).message)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"{name} failed in storage: {e}")
                raise DatabaseError(name, str(e))

        return wrapper

    return decorator


def require_status(current, allowed, message: str):
    if current not in allowed:
        raise InvalidStateError(message)
