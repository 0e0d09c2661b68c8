"""Book clubs: membership, a shared stocked catalog and its request flow.

Requests move Pending -> Approved -> PickedUp -> Returned, or Pending ->
Rejected, each on a single admin action. Stock only changes through
conditional UPDATEs so it never goes negative.
"""
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session
from typing import List, Optional

from bookshare import config, crud, models
from bookshare.exceptions import (
    BookNotAvailableError,
    DuplicateError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from bookshare.models import MembershipRole, OrganizationRequestStatus, utcnow
from bookshare.operations import operation, organization_book_locks, require_status
from bookshare.schemas import (
    ActionResult,
    OrganizationBookCreate,
    OrganizationBookUpdate,
    OrganizationCreate,
    OrganizationUpdate,
)

logger = logging.getLogger(__name__)


# Lookups


def get_organization(db: Session, organization_id: str) -> models.Organization:
    organization = db.get(models.Organization, organization_id) if organization_id else None
    if organization is None:
        raise NotFoundError("Organization")
    return organization


def get_organization_book(db: Session, book_id: str) -> models.OrganizationBook:
    book = db.get(models.OrganizationBook, book_id) if book_id else None
    if book is None:
        raise NotFoundError("Book")
    return book


def get_organization_request(db: Session, request_id: str) -> models.OrganizationBorrowRequest:
    request = db.get(models.OrganizationBorrowRequest, request_id) if request_id else None
    if request is None:
        raise NotFoundError("Request")
    return request


def list_organizations(db: Session, city: Optional[str] = None) -> List[models.Organization]:
    query = db.query(models.Organization)
    if city:
        query = query.filter(models.Organization.city == city)
    return query.order_by(models.Organization.name).all()


def _membership(
    db: Session, organization_id: str, user_id: str
) -> Optional[models.OrganizationMembership]:
    return (
        db.query(models.OrganizationMembership)
        .filter(
            models.OrganizationMembership.organization_id == organization_id,
            models.OrganizationMembership.user_id == user_id,
        )
        .first()
    )


def is_member(db: Session, organization_id: str, user_id: str) -> bool:
    return _membership(db, organization_id, user_id) is not None


def is_admin(db: Session, organization_id: str, user_id: str) -> bool:
    membership = _membership(db, organization_id, user_id)
    return membership is not None and membership.role == MembershipRole.ADMIN


def _require_admin(db: Session, organization_id: str, user_id: str) -> None:
    if not is_admin(db, organization_id, user_id):
        raise ForbiddenError("Admin access required")


def members_of(db: Session, organization_id: str) -> List[models.OrganizationMembership]:
    return (
        db.query(models.OrganizationMembership)
        .filter(models.OrganizationMembership.organization_id == organization_id)
        .all()
    )


def organizations_for_user(db: Session, user_id: str) -> List[models.OrganizationMembership]:
    """Memberships of the user; each carries its organization."""
    return (
        db.query(models.OrganizationMembership)
        .filter(models.OrganizationMembership.user_id == user_id)
        .all()
    )


def catalog(db: Session, organization_id: str) -> List[models.OrganizationBook]:
    return (
        db.query(models.OrganizationBook)
        .filter(models.OrganizationBook.organization_id == organization_id)
        .order_by(models.OrganizationBook.title)
        .all()
    )


def requests_for_organization(
    db: Session, organization_id: str
) -> List[models.OrganizationBorrowRequest]:
    return (
        db.query(models.OrganizationBorrowRequest)
        .filter(models.OrganizationBorrowRequest.organization_id == organization_id)
        .order_by(models.OrganizationBorrowRequest.created_at)
        .all()
    )


def requests_for_user(db: Session, user_id: str) -> List[models.OrganizationBorrowRequest]:
    return (
        db.query(models.OrganizationBorrowRequest)
        .filter(models.OrganizationBorrowRequest.user_id == user_id)
        .order_by(models.OrganizationBorrowRequest.created_at)
        .all()
    )


# Organizations and membership


@operation("create_organization", entity="Organization")
def create_organization(db: Session, user_id: str, data: OrganizationCreate) -> ActionResult:
    crud.get_user(db, user_id)
    organization = models.Organization(created_by_user_id=user_id, **data.model_dump())
    db.add(organization)
    db.add(
        models.OrganizationMembership(
            organization=organization, user_id=user_id, role=MembershipRole.ADMIN
        )
    )
    db.commit()
    logger.info(f"Organization {organization.id} created by {user_id}")
    return ActionResult.ok("Organization created successfully!", organization)


@operation("update_organization", entity="Organization")
def update_organization(
    db: Session, organization_id: str, admin_id: str, data: OrganizationUpdate
) -> ActionResult:
    organization = get_organization(db, organization_id)
    _require_admin(db, organization_id, admin_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is None and field != "logo_url":
            raise ValidationFailedError(f"{field} cannot be empty")
        setattr(organization, field, value)
    db.commit()
    return ActionResult.ok("Organization updated.", organization)


@operation("join_organization", entity="Organization")
def join_organization(
    db: Session,
    organization_id: str,
    user_id: str,
    role: MembershipRole = MembershipRole.ONLINE_MEMBER,
) -> ActionResult:
    get_organization(db, organization_id)
    crud.get_user(db, user_id)
    if is_member(db, organization_id, user_id):
        raise DuplicateError("Already a member of this organization")
    membership = models.OrganizationMembership(
        organization_id=organization_id, user_id=user_id, role=MembershipRole(role)
    )
    db.add(membership)
    db.commit()
    return ActionResult.ok("Joined organization successfully!", membership)


@operation("update_member_role", entity="Membership")
def update_member_role(
    db: Session, membership_id: str, admin_id: str, role: MembershipRole
) -> ActionResult:
    membership = db.get(models.OrganizationMembership, membership_id)
    if membership is None:
        raise NotFoundError("Membership")
    _require_admin(db, membership.organization_id, admin_id)
    membership.role = MembershipRole(role)
    db.commit()
    return ActionResult.ok("Member role updated.", membership)


@operation("remove_member", entity="Membership")
def remove_member(db: Session, membership_id: str, admin_id: str) -> ActionResult:
    membership = db.get(models.OrganizationMembership, membership_id)
    if membership is None:
        raise NotFoundError("Membership")
    _require_admin(db, membership.organization_id, admin_id)
    db.delete(membership)
    db.commit()
    return ActionResult.ok("Member removed.")


# Catalog


@operation("add_organization_book", entity="Book")
def add_organization_book(
    db: Session, organization_id: str, admin_id: str, data: OrganizationBookCreate
) -> ActionResult:
    get_organization(db, organization_id)
    _require_admin(db, organization_id, admin_id)
    book = models.OrganizationBook(organization_id=organization_id, **data.model_dump())
    db.add(book)
    db.commit()
    return ActionResult.ok("Book added to catalog!", book)


@operation("update_organization_book", entity="Book")
def update_organization_book(
    db: Session, book_id: str, admin_id: str, data: OrganizationBookUpdate
) -> ActionResult:
    book = get_organization_book(db, book_id)
    _require_admin(db, book.organization_id, admin_id)
    with organization_book_locks.hold(book_id):
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None:
                raise ValidationFailedError(f"{field} cannot be empty")
            setattr(book, field, value)
        db.commit()
    return ActionResult.ok("Book updated.", book)


@operation("delete_organization_book", entity="Book")
def delete_organization_book(db: Session, book_id: str, admin_id: str) -> ActionResult:
    book = get_organization_book(db, book_id)
    _require_admin(db, book.organization_id, admin_id)
    with organization_book_locks.hold(book_id):
        db.refresh(book)
        statuses = {request.status for request in book.requests}
        if statuses & {OrganizationRequestStatus.APPROVED, OrganizationRequestStatus.PICKED_UP}:
            raise InvalidStateError("Cannot remove a book that is currently on loan")
        for request in book.requests:
            if request.status == OrganizationRequestStatus.PENDING:
                request.status = OrganizationRequestStatus.REJECTED
        # request history stays; only its book reference is cleared
        db.delete(book)
        db.commit()
    logger.info(f"Organization book {book_id} deleted by {admin_id}")
    return ActionResult.ok("Book removed from catalog.")


# Stock


def _take_copy(db: Session, book_id: str) -> None:
    taken = (
        db.query(models.OrganizationBook)
        .filter(models.OrganizationBook.id == book_id, models.OrganizationBook.stock > 0)
        .update(
            {
                models.OrganizationBook.stock: models.OrganizationBook.stock - 1,
                models.OrganizationBook.version: models.OrganizationBook.version + 1,
            },
            synchronize_session="fetch",
        )
    )
    if taken != 1:
        raise BookNotAvailableError("Book not available or out of stock")


def _put_back_copy(db: Session, book_id: str) -> None:
    (
        db.query(models.OrganizationBook)
        .filter(models.OrganizationBook.id == book_id)
        .update(
            {
                models.OrganizationBook.stock: models.OrganizationBook.stock + 1,
                models.OrganizationBook.version: models.OrganizationBook.version + 1,
            },
            synchronize_session="fetch",
        )
    )


# Requests


@operation("request_organization_book", entity="Book")
def request_organization_book(db: Session, book_id: str, user_id: str) -> ActionResult:
    user = crud.get_user(db, user_id)
    if user.is_banned:
        raise ForbiddenError("Your account has been banned")
    book = get_organization_book(db, book_id)
    if book.stock <= 0:
        raise BookNotAvailableError("Book not available or out of stock")
    request = models.OrganizationBorrowRequest(
        organization_id=book.organization_id, organization_book_id=book.id, user_id=user.id
    )
    db.add(request)
    db.commit()
    return ActionResult.ok("Request sent to organization!", request)


def _request_for_admin(db: Session, request_id: str, admin_id: str):
    request = get_organization_request(db, request_id)
    _require_admin(db, request.organization_id, admin_id)
    return request


@operation("approve_organization_request", entity="Book")
def approve_organization_request(
    db: Session,
    request_id: str,
    admin_id: str,
    due_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ActionResult:
    request = _request_for_admin(db, request_id, admin_id)
    with organization_book_locks.hold(request.organization_book_id):
        db.refresh(request)
        require_status(
            request.status,
            (OrganizationRequestStatus.PENDING,),
            "Only pending requests can be approved",
        )
        _take_copy(db, request.organization_book_id)
        request.status = OrganizationRequestStatus.APPROVED
        request.due_date = due_date or (now or utcnow()) + timedelta(
            days=config.LOAN_PERIOD_DAYS
        )
        db.commit()
        logger.info(f"Organization request {request_id} approved")
        return ActionResult.ok("Request approved!", request)


@operation("reject_organization_request", entity="Request")
def reject_organization_request(db: Session, request_id: str, admin_id: str) -> ActionResult:
    request = _request_for_admin(db, request_id, admin_id)
    with organization_book_locks.hold(request.organization_book_id):
        db.refresh(request)
        require_status(
            request.status,
            (OrganizationRequestStatus.PENDING,),
            "Only pending requests can be rejected",
        )
        request.status = OrganizationRequestStatus.REJECTED
        db.commit()
        return ActionResult.ok("Request rejected", request)


@operation("mark_picked_up", entity="Request")
def mark_picked_up(
    db: Session, request_id: str, admin_id: str, now: Optional[datetime] = None
) -> ActionResult:
    request = _request_for_admin(db, request_id, admin_id)
    with organization_book_locks.hold(request.organization_book_id):
        db.refresh(request)
        require_status(
            request.status,
            (OrganizationRequestStatus.APPROVED,),
            "Only approved requests can be picked up",
        )
        request.status = OrganizationRequestStatus.PICKED_UP
        request.picked_up_at = now or utcnow()
        db.commit()
        return ActionResult.ok("Marked as picked up", request)


@operation("mark_returned", entity="Book")
def mark_returned(
    db: Session, request_id: str, admin_id: str, now: Optional[datetime] = None
) -> ActionResult:
    request = _request_for_admin(db, request_id, admin_id)
    with organization_book_locks.hold(request.organization_book_id):
        db.refresh(request)
        require_status(
            request.status,
            (OrganizationRequestStatus.APPROVED, OrganizationRequestStatus.PICKED_UP),
            "Only borrowed books can be returned",
        )
        _put_back_copy(db, request.organization_book_id)
        request.status = OrganizationRequestStatus.RETURNED
        request.returned_at = now or utcnow()
        db.commit()
        return ActionResult.ok("Book returned successfully!", request)
