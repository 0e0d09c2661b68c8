from contextlib import asynccontextmanager
import logging
from fastapi import Depends, FastAPI, Header, HTTPException, status
from sqlalchemy.orm import Session

from bookshare import config
from bookshare.exceptions import add_exception_handlers
from bookshare.facade import BookShareService
from bookshare.models import BookStatus, MembershipRole
from bookshare.schemas import (
    ActionResult,
    BookCreate,
    BookRatingCreate,
    BookRatingSchema,
    BookSchema,
    BorrowRequestSchema,
    ExchangeScheduleDetails,
    IssueReport,
    MembershipSchema,
    OrganizationBookCreate,
    OrganizationBookSchema,
    OrganizationBookUpdate,
    OrganizationCreate,
    OrganizationRequestSchema,
    OrganizationSchema,
    OrganizationUpdate,
    RatingCreate,
    TransactionRequestDetails,
    TransactionSchema,
    UserCreate,
    UserSchema,
    WaitlistEntrySchema,
)
from bookshare.storage import SessionLocal, init_db

from typing import List, Optional

# Set up logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        init_db()
    yield


app = FastAPI(
    title="BookShare API",
    lifespan=lifespan,
    description="Peer-to-peer book lending and book club catalogs",
    version="1.0.0",
)

add_exception_handlers(app)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_service(db: Session = Depends(get_db)) -> BookShareService:
    return BookShareService(session_factory=lambda: db)


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Must be logged in"
        )
    return x_user_id


def _found(item, entity: str):
    if item is None:
        raise HTTPException(status_code=404, detail=f"{entity} not found")
    return item


# Users


@app.post("/users/", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
def register_user(user: UserCreate, service: BookShareService = Depends(get_service)):
    return service.register_user(user)


@app.get("/users/", response_model=List[UserSchema])
def list_users(service: BookShareService = Depends(get_service)):
    return service.list_users()


@app.get("/users/{user_id}", response_model=UserSchema)
def fetch_user(user_id: str, service: BookShareService = Depends(get_service)):
    return _found(service.get_user(user_id), "User")


@app.get("/users/{user_id}/borrow-status")
def borrow_status(user_id: str, service: BookShareService = Depends(get_service)):
    user = _found(service.get_user(user_id), "User")
    return {
        "active": service.active_borrow_count(user_id),
        "limit": user.borrow_limit,
        "can_borrow": service.can_borrow(user_id),
    }


@app.post("/users/{user_id}/ratings", response_model=ActionResult)
def rate_user(
    user_id: str,
    body: RatingCreate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.rate_user(actor, user_id, body.rating, body.request_id)


# Books


@app.post("/books/", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
def add_book(
    book: BookCreate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.add_book(actor, book)


@app.get("/books/", response_model=List[BookSchema])
def list_books(
    status: Optional[BookStatus] = None,
    owner_id: Optional[str] = None,
    text: Optional[str] = None,
    service: BookShareService = Depends(get_service),
):
    return service.list_books(status=status, owner_id=owner_id, text=text)


@app.get("/books/{book_id}", response_model=BookSchema)
def fetch_single_book(book_id: str, service: BookShareService = Depends(get_service)):
    return _found(service.get_book(book_id), "Book")


@app.get("/books/{book_id}/transaction", response_model=Optional[TransactionSchema])
def active_transaction(book_id: str, service: BookShareService = Depends(get_service)):
    return service.get_active_transaction_for_book(book_id)


@app.post("/books/{book_id}/ratings", response_model=ActionResult)
def rate_book(
    book_id: str,
    body: BookRatingCreate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.add_book_rating(actor, book_id, body.rating, body.review)


@app.get("/books/{book_id}/rating")
def book_rating(book_id: str, service: BookShareService = Depends(get_service)):
    return {"average": service.average_book_rating(book_id)}


@app.get("/books/{book_id}/ratings", response_model=List[BookRatingSchema])
def book_ratings(book_id: str, service: BookShareService = Depends(get_service)):
    return service.book_ratings(book_id)


# Borrow transactions


@app.post("/books/{book_id}/transactions", response_model=ActionResult)
def create_transaction(
    book_id: str,
    details: Optional[TransactionRequestDetails] = None,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.create_borrow_transaction(actor, book_id, details)


@app.get("/transactions/", response_model=List[TransactionSchema])
def my_transactions(
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.transactions_for_user(actor)


@app.get("/transactions/{transaction_id}", response_model=TransactionSchema)
def fetch_transaction(transaction_id: str, service: BookShareService = Depends(get_service)):
    return _found(service.get_transaction(transaction_id), "Transaction")


@app.post("/transactions/{transaction_id}/approve", response_model=ActionResult)
def approve_transaction(
    transaction_id: str,
    details: ExchangeScheduleDetails,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.approve_and_schedule_pickup(actor, transaction_id, details)


@app.post("/transactions/{transaction_id}/pickup/confirm", response_model=ActionResult)
def confirm_pickup(
    transaction_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.confirm_pickup(actor, transaction_id)


@app.post("/transactions/{transaction_id}/return", response_model=ActionResult)
def initiate_return(
    transaction_id: str,
    details: TransactionRequestDetails,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.initiate_return(actor, transaction_id, details)


@app.post("/transactions/{transaction_id}/return/schedule", response_model=ActionResult)
def schedule_return(
    transaction_id: str,
    details: ExchangeScheduleDetails,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.schedule_return(actor, transaction_id, details)


@app.post("/transactions/{transaction_id}/return/confirm", response_model=ActionResult)
def confirm_return(
    transaction_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.confirm_transaction_return(actor, transaction_id)


@app.post("/transactions/{transaction_id}/cancel", response_model=ActionResult)
def cancel_transaction(
    transaction_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.cancel_transaction(actor, transaction_id)


@app.post("/transactions/{transaction_id}/issues", response_model=ActionResult)
def report_issue(
    transaction_id: str,
    report: IssueReport,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.report_exchange_issue(
        actor, transaction_id, report.exchange_type, report.issue_note
    )


# Waitlist


@app.post("/books/{book_id}/waitlist", response_model=ActionResult)
def join_waitlist(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.join_waitlist(actor, book_id)


@app.delete("/books/{book_id}/waitlist", response_model=ActionResult)
def leave_waitlist(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.leave_waitlist(actor, book_id)


@app.get("/books/{book_id}/waitlist", response_model=List[WaitlistEntrySchema])
def waitlist_for_book(book_id: str, service: BookShareService = Depends(get_service)):
    return service.waitlist_for_book(book_id)


@app.get("/books/{book_id}/waitlist/position")
def waitlist_position(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return {
        "position": service.get_waitlist_position(actor, book_id),
        "count": service.get_waitlist_count(book_id),
    }


# Direct borrow requests


@app.post("/books/{book_id}/requests", response_model=ActionResult)
def request_book(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.request_book(actor, book_id)


@app.post("/books/{book_id}/return", response_model=ActionResult)
def return_book(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.return_book(actor, book_id)


@app.get("/requests/", response_model=List[BorrowRequestSchema])
def my_requests(
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.requests_for_user(actor)


@app.post("/requests/{request_id}/approve", response_model=ActionResult)
def approve_request(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.approve_request(actor, request_id)


@app.post("/requests/{request_id}/reject", response_model=ActionResult)
def reject_request(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.reject_request(actor, request_id)


@app.post("/requests/{request_id}/confirm-receipt", response_model=ActionResult)
def confirm_receipt(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.confirm_borrower_receipt(actor, request_id)


@app.post("/requests/{request_id}/request-return", response_model=ActionResult)
def request_return(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.request_return(actor, request_id)


@app.post("/requests/{request_id}/confirm-return", response_model=ActionResult)
def confirm_request_return(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.confirm_return(actor, request_id)


# Organizations


@app.post("/organizations/", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
def create_organization(
    data: OrganizationCreate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.create_organization(actor, data)


@app.get("/organizations/", response_model=List[OrganizationSchema])
def list_organizations(
    city: Optional[str] = None, service: BookShareService = Depends(get_service)
):
    return service.list_organizations(city)


@app.post("/organizations/{organization_id}/join", response_model=ActionResult)
def join_organization(
    organization_id: str,
    role: MembershipRole = MembershipRole.ONLINE_MEMBER,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.join_organization(actor, organization_id, role)


@app.patch("/organizations/{organization_id}", response_model=ActionResult)
def update_organization(
    organization_id: str,
    data: OrganizationUpdate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.update_organization(actor, organization_id, data)


@app.get("/organizations/{organization_id}/members", response_model=List[MembershipSchema])
def organization_members(
    organization_id: str, service: BookShareService = Depends(get_service)
):
    return service.organization_members(organization_id)


@app.patch("/memberships/{membership_id}", response_model=ActionResult)
def update_member_role(
    membership_id: str,
    role: MembershipRole,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.update_member_role(actor, membership_id, role)


@app.delete("/memberships/{membership_id}", response_model=ActionResult)
def remove_member(
    membership_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.remove_member(actor, membership_id)


@app.get("/organizations/{organization_id}/books", response_model=List[OrganizationBookSchema])
def organization_catalog(
    organization_id: str, service: BookShareService = Depends(get_service)
):
    return service.organization_catalog(organization_id)


@app.post("/organizations/{organization_id}/books", response_model=ActionResult)
def add_organization_book(
    organization_id: str,
    data: OrganizationBookCreate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.add_organization_book(actor, organization_id, data)


@app.patch("/organization-books/{book_id}", response_model=ActionResult)
def update_organization_book(
    book_id: str,
    data: OrganizationBookUpdate,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.update_organization_book(actor, book_id, data)


@app.delete("/organization-books/{book_id}", response_model=ActionResult)
def delete_organization_book(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.delete_organization_book(actor, book_id)


@app.post("/organization-books/{book_id}/requests", response_model=ActionResult)
def request_organization_book(
    book_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.request_organization_book(actor, book_id)


@app.get(
    "/organizations/{organization_id}/requests",
    response_model=List[OrganizationRequestSchema],
)
def organization_requests(
    organization_id: str, service: BookShareService = Depends(get_service)
):
    return service.organization_requests(organization_id)


@app.post("/organization-requests/{request_id}/approve", response_model=ActionResult)
def approve_organization_request(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.approve_organization_request(actor, request_id)


@app.post("/organization-requests/{request_id}/reject", response_model=ActionResult)
def reject_organization_request(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.reject_organization_request(actor, request_id)


@app.post("/organization-requests/{request_id}/picked-up", response_model=ActionResult)
def mark_picked_up(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.mark_organization_book_picked_up(actor, request_id)


@app.post("/organization-requests/{request_id}/returned", response_model=ActionResult)
def mark_returned(
    request_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.mark_organization_book_returned(actor, request_id)


# Admin


@app.post("/admin/users/{user_id}/ban", response_model=ActionResult)
def ban_user(
    user_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.ban_user(actor, user_id)


@app.post("/admin/users/{user_id}/unban", response_model=ActionResult)
def unban_user(
    user_id: str,
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.unban_user(actor, user_id)


@app.get("/admin/statistics", response_model=ActionResult)
def statistics(
    actor: str = Depends(current_user_id),
    service: BookShareService = Depends(get_service),
):
    return service.user_statistics(actor)


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting BookShare server on port {config.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
