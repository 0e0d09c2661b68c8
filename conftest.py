import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from bookshare.main import app, get_db
from bookshare.models import Base, BookCondition
from bookshare.crud import create_user_record, create_book
from bookshare.facade import BookShareService
from bookshare.schemas import UserCreate, BookCreate, ExchangeScheduleDetails
from bookshare.storage import build_engine, init_db
from bookshare import transactions

# Use an in-memory SQLite database for testing; StaticPool keeps every
# session on the same connection so they all see one database.
SQLALCHEMY_DATABASE_URL = "sqlite://"


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """A file-backed database for tests that run several threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'bookshare.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def service(session_factory):
    return BookShareService(session_factory=session_factory)


@pytest.fixture(scope="function")
def client(session_factory):
    app.state.testing = True

    def override_get_db():
        try:
            db = session_factory()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def make_user(db_session):
    def _make_user(name="Reader", **kwargs):
        return create_user_record(db_session, UserCreate(name=name, **kwargs))

    return _make_user


@pytest.fixture(scope="function")
def make_book(db_session):
    def _make_book(owner, title="Test Book", **kwargs):
        fields = {
            "title": title,
            "author": "Test Author",
            "genre": "Fiction",
            "condition": BookCondition.GOOD,
        }
        fields.update(kwargs)
        return create_book(db_session, owner.id, BookCreate(**fields))

    return _make_book


@pytest.fixture(scope="function")
def owner(make_user):
    return make_user("Owner", city="Lagos")


@pytest.fixture(scope="function")
def borrower(make_user):
    return make_user("Borrower", city="Lagos")


@pytest.fixture(scope="function")
def test_book(make_book, owner):
    return make_book(owner)


@pytest.fixture(scope="function")
def lend(db_session):
    """Take a book through request, approval and both pickup confirmations."""

    def _lend(book, borrower, now=None):
        created = transactions.create_transaction(
            db_session, book.id, borrower.id, now=now
        )
        assert created.success, created.message
        tx_id = created.data.id
        transactions.approve_and_schedule_pickup(
            db_session,
            tx_id,
            book.owner_id,
            ExchangeScheduleDetails(location_text="Cafe"),
        )
        transactions.confirm_pickup(db_session, tx_id, borrower.id, "borrower", now=now)
        result = transactions.confirm_pickup(
            db_session, tx_id, book.owner_id, "owner", now=now
        )
        assert result.success, result.message
        return tx_id

    return _lend
