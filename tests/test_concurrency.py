import threading

from sqlalchemy.orm import sessionmaker

from bookshare import crud, organizations, transactions
from bookshare.models import BookCondition, BookStatus
from bookshare.schemas import BookCreate, OrganizationBookCreate, OrganizationCreate, UserCreate

THREADS = 8


def run_together(target, count):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def test_single_active_transaction_under_concurrent_requests(file_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    with Session() as db:
        owner = crud.create_user_record(db, UserCreate(name="Owner"))
        book = crud.create_book(
            db,
            owner.id,
            BookCreate(title="Popular", author="Someone", genre="Drama", condition=BookCondition.NEW),
        )
        readers = [crud.create_user_record(db, UserCreate(name=f"Reader {i}")).id for i in range(THREADS)]
        book_id, owner_id = book.id, owner.id

    def request(index):
        with Session() as db:
            result = transactions.create_transaction(db, book_id, readers[index])
            return result.success, result.message

    results = run_together(request, THREADS)

    assert sum(1 for success, _ in results if success) == 1
    assert {message for success, message in results if not success} == {
        "Book already has an active transaction"
    }
    with Session() as db:
        assert crud.get_book(db, book_id).status == BookStatus.AVAILABLE
        active = crud.get_active_transaction_for_book(db, book_id)
        assert active is not None
        assert len(crud.get_transactions_for_user(db, owner_id)) == 1


def test_stock_never_negative_under_concurrent_approvals(file_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    with Session() as db:
        admin = crud.create_user_record(db, UserCreate(name="Admin"))
        club = organizations.create_organization(
            db,
            admin.id,
            OrganizationCreate(name="Club", city="Lagos", location="Ikeja", description="Books"),
        ).data
        book = organizations.add_organization_book(
            db,
            club.id,
            admin.id,
            OrganizationBookCreate(
                title="Rare", author="Someone", genre="Poetry", condition=BookCondition.WORN, stock=2
            ),
        ).data
        book_id, admin_id = book.id, admin.id
        request_ids = []
        for i in range(THREADS):
            reader = crud.create_user_record(db, UserCreate(name=f"Member {i}"))
            request_ids.append(
                organizations.request_organization_book(db, book_id, reader.id).data.id
            )

    def approve(index):
        with Session() as db:
            return organizations.approve_organization_request(
                db, request_ids[index], admin_id
            ).success

    results = run_together(approve, THREADS)

    assert results.count(True) == 2
    with Session() as db:
        assert organizations.get_organization_book(db, book_id).stock == 0
