"""Application facade consumed by UI event handlers.

Every call opens its own session, runs one engine operation, and returns an
ActionResult whose data is a frozen snapshot (never a live ORM object).
Successful mutations notify subscribers with the names of the views that
should be re-fetched.
"""
import logging
from pydantic import BaseModel, ValidationError
from typing import Any, Callable, List, Optional, Type

from bookshare import (
    admin,
    crud,
    legacy,
    limits,
    models,
    organizations,
    reputation,
    transactions,
    waitlist,
)
from bookshare.exceptions import ForbiddenError, LendingError, ValidationFailedError
from bookshare.models import BookStatus, MembershipRole
from bookshare.schemas import (
    ActionResult,
    BookCreate,
    BookRatingSchema,
    BookSchema,
    BorrowRequestSchema,
    PickupDetails,
    MembershipSchema,
    OrganizationBookCreate,
    OrganizationBookSchema,
    OrganizationBookUpdate,
    OrganizationCreate,
    OrganizationRequestSchema,
    OrganizationSchema,
    OrganizationUpdate,
    RatingSchema,
    ReturnRequestDetails,
    ReturnScheduleDetails,
    TransactionRequestDetails,
    TransactionSchema,
    UserCreate,
    UserSchema,
    WaitlistEntrySchema,
)
from bookshare.storage import DatabaseSession, SessionLocal

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong. Please try again."
FIELDS_REQUIRED = "All fields are required"

# View names handed to subscribers.
BOOKS = "books"
TRANSACTIONS = "transactions"
WAITLIST = "waitlist"
REQUESTS = "requests"
ORGANIZATIONS = "organizations"
USERS = "users"


def _parse(schema: Type[BaseModel], value, message: str = FIELDS_REQUIRED):
    if value is None:
        value = {}
    if isinstance(value, schema):
        return value
    try:
        return schema.model_validate(value)
    except ValidationError as e:
        logger.info(f"Rejected {schema.__name__}: {e.errors()}")
        raise ValidationFailedError(message)


def _snapshot(schema: Optional[Type[BaseModel]], data: Any):
    if schema is None or data is None:
        return data
    if isinstance(data, list):
        return [schema.model_validate(item) for item in data]
    return schema.model_validate(data)


class BookShareService:
    def __init__(self, session_factory=SessionLocal):
        self.sessions = DatabaseSession(session_factory)
        self._listeners: List[Callable[[str], None]] = []

    # plumbing

    def subscribe(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, views) -> None:
        for view in views:
            for listener in self._listeners:
                try:
                    listener(view)
                except Exception:
                    logger.exception(f"Listener failed while refreshing {view}")

    def _run(self, action, schema=None, views=()) -> ActionResult:
        with self.sessions.get_session() as db:
            try:
                result = action(db)
                result = ActionResult(
                    success=result.success,
                    message=result.message,
                    data=_snapshot(schema, result.data),
                )
            except LendingError as e:
                db.rollback()
                return ActionResult.fail(e.message)
            except Exception:
                db.rollback()
                logger.exception("Unexpected failure in BookShare operation")
                return ActionResult.fail(GENERIC_FAILURE)
        if result.success:
            self._notify(views)
        return result

    def _read(self, query, schema=None):
        with self.sessions.get_session() as db:
            return _snapshot(schema, query(db))

    # users and books

    def register_user(self, data) -> ActionResult:
        def action(db):
            user = crud.create_user_record(db, _parse(UserCreate, data))
            return ActionResult.ok("Welcome to BookShare!", user)

        return self._run(action, UserSchema, (USERS,))

    def get_user(self, user_id: str) -> Optional[UserSchema]:
        return self._read(lambda db: db.get(models.User, user_id), UserSchema)

    def list_users(self) -> List[UserSchema]:
        return self._read(crud.get_users, UserSchema)

    def add_book(self, user_id: str, data) -> ActionResult:
        def action(db):
            crud.get_user(db, user_id)
            book = crud.create_book(db, user_id, _parse(BookCreate, data))
            return ActionResult.ok("Book added successfully!", book)

        return self._run(action, BookSchema, (BOOKS,))

    def list_books(
        self, status: Optional[BookStatus] = None, owner_id: str = None, text: str = None
    ) -> List[BookSchema]:
        return self._read(
            lambda db: crud.filter_books(db, status=status, owner_id=owner_id, text=text),
            BookSchema,
        )

    def get_book(self, book_id: str) -> Optional[BookSchema]:
        return self._read(lambda db: db.get(models.Book, book_id), BookSchema)

    # borrow transactions

    def create_borrow_transaction(self, user_id: str, book_id: str, details=None) -> ActionResult:
        return self._run(
            lambda db: transactions.create_transaction(
                db, book_id, user_id, _parse(TransactionRequestDetails, details, "Invalid request details")
            ),
            TransactionSchema,
            (BOOKS, TRANSACTIONS),
        )

    def approve_and_schedule_pickup(self, user_id: str, transaction_id: str, details) -> ActionResult:
        return self._run(
            lambda db: transactions.approve_and_schedule_pickup(
                db, transaction_id, user_id, _parse(PickupDetails, details, "Invalid pickup details")
            ),
            TransactionSchema,
            (TRANSACTIONS,),
        )

    def _as_party(self, db, transaction_id: str, user_id: str):
        role = transactions.role_of(crud.get_transaction(db, transaction_id), user_id)
        if role is None:
            raise ForbiddenError(transactions.NOT_A_PARTY)
        return role

    def confirm_pickup(self, user_id: str, transaction_id: str) -> ActionResult:
        return self._run(
            lambda db: transactions.confirm_pickup(
                db, transaction_id, user_id, self._as_party(db, transaction_id, user_id)
            ),
            TransactionSchema,
            (BOOKS, TRANSACTIONS),
        )

    def initiate_return(self, user_id: str, transaction_id: str, details=None) -> ActionResult:
        return self._run(
            lambda db: transactions.initiate_return(
                db, transaction_id, user_id, _parse(ReturnRequestDetails, details, "Invalid return details")
            ),
            TransactionSchema,
            (TRANSACTIONS,),
        )

    def schedule_return(self, user_id: str, transaction_id: str, details) -> ActionResult:
        return self._run(
            lambda db: transactions.schedule_return(
                db, transaction_id, user_id, _parse(ReturnScheduleDetails, details, "Invalid return details")
            ),
            TransactionSchema,
            (TRANSACTIONS,),
        )

    def confirm_transaction_return(self, user_id: str, transaction_id: str) -> ActionResult:
        return self._run(
            lambda db: transactions.confirm_return(
                db, transaction_id, user_id, self._as_party(db, transaction_id, user_id)
            ),
            TransactionSchema,
            (BOOKS, TRANSACTIONS, WAITLIST),
        )

    def cancel_transaction(self, user_id: str, transaction_id: str) -> ActionResult:
        return self._run(
            lambda db: transactions.cancel_transaction(db, transaction_id, user_id),
            TransactionSchema,
            (BOOKS, TRANSACTIONS, WAITLIST),
        )

    def report_exchange_issue(
        self, user_id: str, transaction_id: str, exchange_type: str, issue_note: str
    ) -> ActionResult:
        return self._run(
            lambda db: transactions.report_exchange_issue(
                db, transaction_id, user_id, exchange_type, issue_note
            ),
            TransactionSchema,
            (TRANSACTIONS,),
        )

    def get_transaction(self, transaction_id: str) -> Optional[TransactionSchema]:
        return self._read(
            lambda db: transactions.get_transaction(db, transaction_id), TransactionSchema
        )

    def get_active_transaction_for_book(self, book_id: str) -> Optional[TransactionSchema]:
        return self._read(
            lambda db: transactions.active_transaction_for_book(db, book_id),
            TransactionSchema,
        )

    def transactions_for_user(self, user_id: str) -> List[TransactionSchema]:
        return self._read(
            lambda db: transactions.transactions_for_user(db, user_id), TransactionSchema
        )

    # borrow limits

    def active_borrow_count(self, user_id: str) -> int:
        return self._read(lambda db: limits.active_borrow_count(db, user_id))

    def can_borrow(self, user_id: str) -> bool:
        return self._read(lambda db: limits.can_borrow(db, user_id))

    # waitlist

    def join_waitlist(self, user_id: str, book_id: str) -> ActionResult:
        def action(db):
            book = crud.get_book(db, book_id)
            crud.get_user(db, user_id)
            if book.owner_id == user_id:
                raise ValidationFailedError("Cannot join waitlist for your own book")
            entry = waitlist.join(db, book_id, user_id)
            if entry is None:
                return ActionResult.fail("You are already in the waitlist")
            return ActionResult.ok(f"Joined waitlist at position #{entry.position}", entry)

        return self._run(action, WaitlistEntrySchema, (WAITLIST,))

    def leave_waitlist(self, user_id: str, book_id: str) -> ActionResult:
        def action(db):
            if not waitlist.leave(db, book_id, user_id):
                return ActionResult.fail("You are not in the waitlist")
            return ActionResult.ok("Left waitlist successfully")

        return self._run(action, views=(WAITLIST,))

    def get_waitlist_position(self, user_id: str, book_id: str) -> Optional[int]:
        return self._read(lambda db: waitlist.position_of(db, book_id, user_id))

    def get_waitlist_count(self, book_id: str) -> int:
        return self._read(lambda db: waitlist.count(db, book_id))

    def waitlist_for_book(self, book_id: str) -> List[WaitlistEntrySchema]:
        return self._read(lambda db: waitlist.queue_for(db, book_id), WaitlistEntrySchema)

    # ratings

    def rate_user(
        self, user_id: str, to_user_id: str, rating: int, request_id: Optional[str] = None
    ) -> ActionResult:
        return self._run(
            lambda db: reputation.add_rating(db, user_id, to_user_id, rating, request_id),
            RatingSchema,
            (USERS,),
        )

    def add_book_rating(
        self, user_id: str, book_id: str, rating: int, review: Optional[str] = None
    ) -> ActionResult:
        return self._run(
            lambda db: reputation.add_book_rating(db, user_id, book_id, rating, review),
            BookRatingSchema,
            (BOOKS,),
        )

    def average_book_rating(self, book_id: str) -> Optional[float]:
        return self._read(lambda db: reputation.average_book_rating(db, book_id))

    def book_ratings(self, book_id: str) -> List[BookRatingSchema]:
        return self._read(lambda db: reputation.ratings_for_book(db, book_id), BookRatingSchema)

    # legacy requests

    def request_book(self, user_id: str, book_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.request_book(db, book_id, user_id),
            BorrowRequestSchema,
            (REQUESTS,),
        )

    def approve_request(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.approve_request(db, request_id, user_id),
            BorrowRequestSchema,
            (REQUESTS,),
        )

    def reject_request(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.reject_request(db, request_id, user_id),
            BorrowRequestSchema,
            (REQUESTS,),
        )

    def confirm_borrower_receipt(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.confirm_borrower_receipt(db, request_id, user_id),
            BorrowRequestSchema,
            (BOOKS, REQUESTS),
        )

    def request_return(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.request_return(db, request_id, user_id),
            BorrowRequestSchema,
            (REQUESTS,),
        )

    def return_book(self, user_id: str, book_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.return_book(db, book_id, user_id),
            BorrowRequestSchema,
            (REQUESTS,),
        )

    def confirm_return(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: legacy.confirm_return(db, request_id, user_id),
            BorrowRequestSchema,
            (BOOKS, REQUESTS, WAITLIST),
        )

    def requests_for_user(self, user_id: str) -> List[BorrowRequestSchema]:
        return self._read(lambda db: crud.get_requests_for_user(db, user_id), BorrowRequestSchema)

    # organizations

    def create_organization(self, user_id: str, data) -> ActionResult:
        return self._run(
            lambda db: organizations.create_organization(
                db, user_id, _parse(OrganizationCreate, data)
            ),
            OrganizationSchema,
            (ORGANIZATIONS,),
        )

    def update_organization(self, user_id: str, organization_id: str, data) -> ActionResult:
        return self._run(
            lambda db: organizations.update_organization(
                db, organization_id, user_id,
                _parse(OrganizationUpdate, data, "Invalid organization details"),
            ),
            OrganizationSchema,
            (ORGANIZATIONS,),
        )

    def join_organization(
        self, user_id: str, organization_id: str, role=MembershipRole.ONLINE_MEMBER
    ) -> ActionResult:
        def action(db):
            try:
                parsed = MembershipRole(role)
            except ValueError:
                raise ValidationFailedError(f"Unknown role: {role}")
            return organizations.join_organization(db, organization_id, user_id, parsed)

        return self._run(action, MembershipSchema, (ORGANIZATIONS,))

    def update_member_role(self, user_id: str, membership_id: str, role) -> ActionResult:
        def action(db):
            try:
                parsed = MembershipRole(role)
            except ValueError:
                raise ValidationFailedError(f"Unknown role: {role}")
            return organizations.update_member_role(db, membership_id, user_id, parsed)

        return self._run(action, MembershipSchema, (ORGANIZATIONS,))

    def remove_member(self, user_id: str, membership_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.remove_member(db, membership_id, user_id),
            views=(ORGANIZATIONS,),
        )

    def add_organization_book(self, user_id: str, organization_id: str, data) -> ActionResult:
        return self._run(
            lambda db: organizations.add_organization_book(
                db, organization_id, user_id, _parse(OrganizationBookCreate, data)
            ),
            OrganizationBookSchema,
            (ORGANIZATIONS,),
        )

    def update_organization_book(self, user_id: str, book_id: str, data) -> ActionResult:
        return self._run(
            lambda db: organizations.update_organization_book(
                db, book_id, user_id, _parse(OrganizationBookUpdate, data, "Invalid book details")
            ),
            OrganizationBookSchema,
            (ORGANIZATIONS,),
        )

    def delete_organization_book(self, user_id: str, book_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.delete_organization_book(db, book_id, user_id),
            views=(ORGANIZATIONS,),
        )

    def request_organization_book(self, user_id: str, book_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.request_organization_book(db, book_id, user_id),
            OrganizationRequestSchema,
            (ORGANIZATIONS,),
        )

    def approve_organization_request(self, user_id: str, request_id: str, due_date=None) -> ActionResult:
        return self._run(
            lambda db: organizations.approve_organization_request(
                db, request_id, user_id, due_date
            ),
            OrganizationRequestSchema,
            (ORGANIZATIONS,),
        )

    def reject_organization_request(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.reject_organization_request(db, request_id, user_id),
            OrganizationRequestSchema,
            (ORGANIZATIONS,),
        )

    def mark_organization_book_picked_up(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.mark_picked_up(db, request_id, user_id),
            OrganizationRequestSchema,
            (ORGANIZATIONS,),
        )

    def mark_organization_book_returned(self, user_id: str, request_id: str) -> ActionResult:
        return self._run(
            lambda db: organizations.mark_returned(db, request_id, user_id),
            OrganizationRequestSchema,
            (ORGANIZATIONS,),
        )

    def list_organizations(self, city: Optional[str] = None) -> List[OrganizationSchema]:
        return self._read(
            lambda db: organizations.list_organizations(db, city), OrganizationSchema
        )

    def organization_catalog(self, organization_id: str) -> List[OrganizationBookSchema]:
        return self._read(
            lambda db: organizations.catalog(db, organization_id), OrganizationBookSchema
        )

    def organization_requests(self, organization_id: str) -> List[OrganizationRequestSchema]:
        return self._read(
            lambda db: organizations.requests_for_organization(db, organization_id),
            OrganizationRequestSchema,
        )

    def organization_members(self, organization_id: str) -> List[MembershipSchema]:
        return self._read(
            lambda db: organizations.members_of(db, organization_id), MembershipSchema
        )

    def user_organizations(self, user_id: str) -> List[OrganizationSchema]:
        return self._read(
            lambda db: [
                m.organization for m in organizations.organizations_for_user(db, user_id)
            ],
            OrganizationSchema,
        )

    def is_organization_admin(self, user_id: str, organization_id: str) -> bool:
        return self._read(lambda db: organizations.is_admin(db, organization_id, user_id))

    def is_organization_member(self, user_id: str, organization_id: str) -> bool:
        return self._read(lambda db: organizations.is_member(db, organization_id, user_id))

    # admin

    def ban_user(self, user_id: str, target_id: str) -> ActionResult:
        return self._run(
            lambda db: admin.ban_user(db, user_id, target_id), UserSchema, (USERS,)
        )

    def unban_user(self, user_id: str, target_id: str) -> ActionResult:
        return self._run(
            lambda db: admin.unban_user(db, user_id, target_id), UserSchema, (USERS,)
        )

    def user_statistics(self, user_id: str) -> ActionResult:
        def action(db):
            if not crud.get_user(db, user_id).is_admin:
                raise ForbiddenError("Admin access required")
            return ActionResult.ok("Statistics loaded", admin.user_statistics(db))

        return self._run(action)
