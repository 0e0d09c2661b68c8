from datetime import datetime
from pydantic import BaseModel, Field, computed_field
from typing import Any, List, Optional

from bookshare.config import DEFAULT_BORROW_LIMIT
from bookshare.models import (
    BookCondition,
    BookStatus,
    ContactMethod,
    ExchangeMethod,
    ExchangeType,
    LegacyRequestStatus,
    MembershipRole,
    OrganizationRequestStatus,
    TransactionStatus,
)
from bookshare.status import effective_status, is_trusted_borrower, transaction_phase


class ActionResult(BaseModel):
    """Uniform result envelope surfaced to the UI as a toast."""

    success: bool
    message: str
    data: Any = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> "ActionResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str) -> "ActionResult":
        return cls(success=False, message=message)


# Inputs


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    city: Optional[str] = None
    profile_photo: Optional[str] = None
    borrow_limit: int = Field(default=DEFAULT_BORROW_LIMIT, ge=0)
    is_admin: bool = False


class BookCreate(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: str = Field(min_length=1)
    condition: BookCondition
    cover_url: Optional[str] = None
    notes: Optional[str] = None


class TransactionRequestDetails(BaseModel):
    method: Optional[ExchangeMethod] = None
    note: str = ""
    contact_method: Optional[ContactMethod] = None
    contact_value: str = ""


class ExchangeScheduleDetails(BaseModel):
    method: Optional[ExchangeMethod] = None
    location_text: str = ""
    scheduled_at: Optional[datetime] = None
    note: Optional[str] = None


# Borrower-side return request carries the same fields as the borrow request.
ReturnRequestDetails = TransactionRequestDetails
PickupDetails = ExchangeScheduleDetails
ReturnScheduleDetails = ExchangeScheduleDetails


class IssueReport(BaseModel):
    exchange_type: ExchangeType
    issue_note: str = Field(min_length=1)


class RatingCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    request_id: Optional[str] = None


class BookRatingCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1)
    city: str = Field(min_length=1)
    location: str = Field(min_length=1)
    description: str = Field(min_length=1)
    logo_url: Optional[str] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    city: Optional[str] = Field(default=None, min_length=1)
    location: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    logo_url: Optional[str] = None


class OrganizationBookCreate(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: str = Field(min_length=1)
    condition: BookCondition
    stock: int = Field(default=1, ge=0)
    cover_url: Optional[str] = None


class OrganizationBookUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = Field(default=None, min_length=1)
    genre: Optional[str] = Field(default=None, min_length=1)
    condition: Optional[BookCondition] = None
    stock: Optional[int] = Field(default=None, ge=0)
    cover_url: Optional[str] = None


# Read snapshots


class UserSchema(BaseModel):
    id: str
    name: str
    city: Optional[str] = None
    reputation: float
    borrow_limit: int
    is_admin: bool
    is_banned: bool

    @computed_field
    @property
    def is_trusted_borrower(self) -> bool:
        return is_trusted_borrower(self.reputation)

    class Config:
        from_attributes = True
        frozen = True


class BookSchema(BaseModel):
    id: str
    owner_id: str
    title: str
    author: str
    genre: str
    condition: BookCondition
    cover_url: Optional[str] = None
    notes: Optional[str] = None
    status: BookStatus
    due_date: Optional[datetime] = None
    borrower_id: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class ExchangeRecordSchema(BaseModel):
    method: Optional[ExchangeMethod] = None
    location_text: str = ""
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    borrower_confirmed: bool = False
    owner_confirmed: bool = False
    note: str = ""
    contact_method: Optional[ContactMethod] = None
    contact_value: str = ""
    issue_flag: bool = False
    issue_note: str = ""

    class Config:
        from_attributes = True
        frozen = True


class TransactionSchema(BaseModel):
    id: str
    book_id: str
    borrower_id: str
    owner_id: str
    status: TransactionStatus
    created_at: datetime
    due_date: Optional[datetime] = None
    pickup_exchange: ExchangeRecordSchema
    return_exchange: ExchangeRecordSchema

    @computed_field
    @property
    def display_status(self) -> TransactionStatus:
        return effective_status(self.status, self.due_date)

    @computed_field
    @property
    def phase(self) -> str:
        return transaction_phase(self.display_status)

    class Config:
        from_attributes = True
        frozen = True


class BorrowRequestSchema(BaseModel):
    id: str
    book_id: str
    requester_id: str
    owner_id: str
    status: LegacyRequestStatus
    created_at: datetime
    approved_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    return_requested: bool = False
    borrower_confirmed: bool = False

    class Config:
        from_attributes = True
        frozen = True


class WaitlistEntrySchema(BaseModel):
    id: str
    book_id: str
    user_id: str
    position: int
    created_at: datetime

    class Config:
        from_attributes = True
        frozen = True


class RatingSchema(BaseModel):
    id: str
    from_user_id: str
    to_user_id: str
    rating: int
    request_id: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class BookRatingSchema(BaseModel):
    id: str
    book_id: str
    user_id: str
    rating: int
    review: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class OrganizationSchema(BaseModel):
    id: str
    name: str
    city: str
    location: str
    description: str
    logo_url: Optional[str] = None
    created_by_user_id: str

    class Config:
        from_attributes = True
        frozen = True


class MembershipSchema(BaseModel):
    id: str
    organization_id: str
    user_id: str
    role: MembershipRole

    class Config:
        from_attributes = True
        frozen = True


class OrganizationBookSchema(BaseModel):
    id: str
    organization_id: str
    title: str
    author: str
    genre: str
    condition: BookCondition
    stock: int
    cover_url: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class OrganizationRequestSchema(BaseModel):
    id: str
    organization_id: str
    organization_book_id: Optional[str] = None
    user_id: str
    status: OrganizationRequestStatus
    created_at: datetime
    due_date: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True


class OverdueLoan(BaseModel):
    kind: str
    loan_id: str
    book: BookSchema
    borrower: Optional[UserSchema] = None
    owner: Optional[UserSchema] = None
    due_date: Optional[datetime] = None
    days_overdue: int


class UserStatistics(BaseModel):
    total_users: int
    total_books: int
    active_borrows: int
    overdue_count: int
    overdue_loans: List[OverdueLoan] = []
