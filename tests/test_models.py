import pytest
from sqlalchemy.exc import IntegrityError

from bookshare import crud
from bookshare.exceptions import NotFoundError
from bookshare.models import BookStatus, BorrowTransaction, ExchangeRecord, TransactionStatus


def test_create_user(make_user):
    user = make_user("Ada", city="Ibadan")
    assert user.id is not None
    assert user.reputation == 0.0
    assert user.borrow_limit == 3
    assert not user.is_banned


def test_create_book(test_book, owner):
    assert test_book.id is not None
    assert test_book.owner_id == owner.id
    assert test_book.status == BookStatus.AVAILABLE
    assert test_book.borrower_id is None


def test_get_missing_records(db_session):
    with pytest.raises(NotFoundError) as excinfo:
        crud.get_book(db_session, "missing")
    assert excinfo.value.message == "Book not found"
    with pytest.raises(NotFoundError):
        crud.get_user(db_session, None)


def test_filter_books(db_session, make_book, owner, make_user):
    make_book(owner, title="Purple Hibiscus", author="Chimamanda Adichie")
    make_book(make_user("Other"), title="Half of a Yellow Sun", author="Chimamanda Adichie")
    make_book(owner, title="Arrow of God", author="Chinua Achebe")

    assert len(crud.filter_books(db_session, text="adichie")) == 2
    assert [b.title for b in crud.filter_books(db_session, owner_id=owner.id)] == [
        "Arrow of God",
        "Purple Hibiscus",
    ]
    assert len(crud.filter_books(db_session, status=BookStatus.BORROWED)) == 0


def test_book_state_helpers(db_session, test_book, borrower):
    crud.mark_book_borrowed(test_book, borrower.id, None)
    db_session.commit()
    assert crud.get_book(db_session, test_book.id).borrower_id == borrower.id
    crud.mark_book_available(test_book)
    db_session.commit()
    book = crud.get_book(db_session, test_book.id)
    assert book.status == BookStatus.AVAILABLE
    assert book.borrower_id is None


def _raw_transaction(book, borrower, status):
    return BorrowTransaction(
        book_id=book.id,
        borrower_id=borrower.id,
        owner_id=book.owner_id,
        status=status,
        pickup_exchange=ExchangeRecord(),
        return_exchange=ExchangeRecord(),
    )


def test_one_active_transaction_per_book_in_storage(db_session, test_book, borrower):
    db_session.add(_raw_transaction(test_book, borrower, TransactionStatus.REQUESTED))
    db_session.commit()
    db_session.add(_raw_transaction(test_book, borrower, TransactionStatus.PICKUP_SCHEDULED))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_finished_transactions_do_not_block_storage(db_session, test_book, borrower):
    for status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED):
        db_session.add(_raw_transaction(test_book, borrower, status))
    db_session.add(_raw_transaction(test_book, borrower, TransactionStatus.REQUESTED))
    db_session.commit()
    assert crud.get_active_transaction_for_book(db_session, test_book.id) is not None


def test_messages(db_session, owner):
    crud.add_message(db_session, owner.id, "Hello everyone")
    assert [m.content for m in crud.get_messages(db_session)] == ["Hello everyone"]
    assert crud.get_messages(db_session, organization_id="club") == []
