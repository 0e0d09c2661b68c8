import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class BookCondition(str, Enum):
    NEW = "New"
    GOOD = "Good"
    WORN = "Worn"


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"


class TransactionStatus(str, Enum):
    REQUESTED = "REQUESTED"
    # Reserved: requests move straight from REQUESTED to PICKUP_SCHEDULED.
    APPROVED = "APPROVED"
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED"
    BORROWING = "BORROWING"
    RETURN_SCHEDULED = "RETURN_SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    # Display-only, derived from BORROWING + past due date. Never stored.
    OVERDUE = "OVERDUE"


class ExchangeMethod(str, Enum):
    COURIER = "COURIER"
    IN_PERSON = "IN_PERSON"
    BOOKCLUB_MEETUP = "BOOKCLUB_MEETUP"
    OTHER = "OTHER"


class ContactMethod(str, Enum):
    WHATSAPP = "WHATSAPP"
    PHONE_CALL = "PHONE_CALL"
    SMS = "SMS"
    OTHER = "OTHER"


class ExchangeRole(str, Enum):
    BORROWER = "borrower"
    OWNER = "owner"


class ExchangeType(str, Enum):
    PICKUP = "pickup"
    RETURN = "return"


class LegacyRequestStatus(str, Enum):
    PENDING = "Pending"
    PENDING_BORROWER_CONFIRMATION = "PendingBorrowerConfirmation"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    RETURNED_PENDING_CONFIRM = "ReturnedAndPendingConfirm"
    RETURNED = "Returned"


class MembershipRole(str, Enum):
    ADMIN = "admin"
    PHYSICAL_MEMBER = "physicalMember"
    ONLINE_MEMBER = "onlineMember"


class OrganizationRequestStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PICKED_UP = "PickedUp"
    RETURNED = "Returned"


TERMINAL_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    city = Column(String, nullable=True)
    profile_photo = Column(String, nullable=True)
    reputation = Column(Float, nullable=False, default=0.0)
    borrow_limit = Column(Integer, nullable=False, default=3)
    is_admin = Column(Boolean, nullable=False, default=False)
    is_banned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Book(Base):
    __tablename__ = "books"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False)
    genre = Column(String, nullable=False)
    condition = Column(_enum(BookCondition), nullable=False)
    cover_url = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(_enum(BookStatus), nullable=False, default=BookStatus.AVAILABLE)
    due_date = Column(DateTime(timezone=True), nullable=True)
    borrower_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    version = Column(Integer, nullable=False)

    owner = relationship("User", foreign_keys=[owner_id])
    borrower = relationship("User", foreign_keys=[borrower_id])

    __mapper_args__ = {"version_id_col": version}


class ExchangeRecord(Base):
    __tablename__ = "exchange_records"

    id = Column(String(36), primary_key=True, default=new_id)
    method = Column(_enum(ExchangeMethod), nullable=True)
    location_text = Column(String, nullable=False, default="")
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    borrower_confirmed = Column(Boolean, nullable=False, default=False)
    owner_confirmed = Column(Boolean, nullable=False, default=False)
    note = Column(Text, nullable=False, default="")
    contact_method = Column(_enum(ContactMethod), nullable=True)
    contact_value = Column(String, nullable=False, default="")
    issue_flag = Column(Boolean, nullable=False, default=False)
    issue_note = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def both_confirmed(self) -> bool:
        return bool(self.borrower_confirmed and self.owner_confirmed)


class BorrowTransaction(Base):
    __tablename__ = "borrow_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False, index=True)
    borrower_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        _enum(TransactionStatus), nullable=False, default=TransactionStatus.REQUESTED
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=True)
    pickup_exchange_id = Column(String(36), ForeignKey("exchange_records.id"), nullable=False)
    return_exchange_id = Column(String(36), ForeignKey("exchange_records.id"), nullable=False)
    version = Column(Integer, nullable=False)

    book = relationship("Book")
    borrower = relationship("User", foreign_keys=[borrower_id])
    owner = relationship("User", foreign_keys=[owner_id])
    pickup_exchange = relationship(
        "ExchangeRecord", foreign_keys=[pickup_exchange_id], lazy="joined"
    )
    return_exchange = relationship(
        "ExchangeRecord", foreign_keys=[return_exchange_id], lazy="joined"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        # One non-terminal transaction per book, enforced across processes.
        Index(
            "uq_borrow_transactions_active_book",
            "book_id",
            unique=True,
            sqlite_where=text("status NOT IN ('COMPLETED', 'CANCELLED')"),
            postgresql_where=text("status NOT IN ('COMPLETED', 'CANCELLED')"),
        ),
    )


class BorrowRequest(Base):
    __tablename__ = "borrow_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False, index=True)
    requester_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    status = Column(
        _enum(LegacyRequestStatus), nullable=False, default=LegacyRequestStatus.PENDING
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)
    return_requested = Column(Boolean, nullable=False, default=False)
    return_requested_at = Column(DateTime(timezone=True), nullable=True)
    borrower_confirmed = Column(Boolean, nullable=False, default=False)
    borrower_confirmed_at = Column(DateTime(timezone=True), nullable=True)

    book = relationship("Book")
    requester = relationship("User", foreign_keys=[requester_id])
    owner = relationship("User", foreign_keys=[owner_id])


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(String(36), primary_key=True, default=new_id)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    position = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("book_id", "user_id"),)


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(String(36), primary_key=True, default=new_id)
    from_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    to_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    request_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_ratings_range"),
    )


class BookRating(Base):
    __tablename__ = "book_ratings"

    id = Column(String(36), primary_key=True, default=new_id)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    review = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "book_id"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_book_ratings_range"),
    )


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    city = Column(String, nullable=False, index=True)
    location = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    logo_url = Column(String, nullable=True)
    created_by_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    memberships = relationship("OrganizationMembership", back_populates="organization")
    books = relationship("OrganizationBook", back_populates="organization")


class OrganizationMembership(Base):
    __tablename__ = "organization_memberships"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(_enum(MembershipRole), nullable=False, default=MembershipRole.ONLINE_MEMBER)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    organization = relationship("Organization", back_populates="memberships")

    __table_args__ = (UniqueConstraint("organization_id", "user_id"),)


class OrganizationBook(Base):
    __tablename__ = "organization_books"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    genre = Column(String, nullable=False)
    condition = Column(_enum(BookCondition), nullable=False)
    stock = Column(Integer, nullable=False, default=1)
    cover_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    organization = relationship("Organization", back_populates="books")
    # Requests outlive the book: deleting it only clears their book reference.
    requests = relationship("OrganizationBorrowRequest", back_populates="organization_book")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_organization_books_stock"),)


class OrganizationBorrowRequest(Base):
    __tablename__ = "organization_borrow_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    organization_book_id = Column(
        String(36),
        ForeignKey("organization_books.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        _enum(OrganizationRequestStatus),
        nullable=False,
        default=OrganizationRequestStatus.PENDING,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)

    organization_book = relationship("OrganizationBook", back_populates="requests")


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
