from bookshare import crud, reputation


def test_reputation_is_mean_rounded_to_one_decimal(db_session, make_user):
    target = make_user("Target")
    raters = [make_user(f"Rater {i}") for i in range(3)]
    for rater, score in zip(raters, (5, 4, 4)):
        result = reputation.add_rating(db_session, rater.id, target.id, score)
        assert result.success
    # 13 / 3 = 4.333...
    assert crud.get_user(db_session, target.id).reputation == 4.3


def test_half_rounds_up(db_session, make_user):
    target = make_user("Target")
    for i, score in enumerate((4, 4, 4, 5)):
        reputation.add_rating(db_session, make_user(f"Rater {i}").id, target.id, score)
    # 17 / 4 = 4.25
    assert crud.get_user(db_session, target.id).reputation == 4.3


def test_cannot_rate_yourself(db_session, borrower):
    result = reputation.add_rating(db_session, borrower.id, borrower.id, 5)
    assert not result.success
    assert result.message == "Cannot rate yourself"


def test_rating_out_of_range(db_session, owner, borrower):
    for score in (0, 6):
        result = reputation.add_rating(db_session, owner.id, borrower.id, score)
        assert result.message == "Rating must be between 1 and 5"
    assert crud.get_user(db_session, borrower.id).reputation == 0.0


def test_one_rating_per_transaction(db_session, owner, borrower):
    first = reputation.add_rating(db_session, owner.id, borrower.id, 5, request_id="tx-1")
    assert first.message == "Rating submitted! Thank you for your feedback."
    again = reputation.add_rating(db_session, owner.id, borrower.id, 1, request_id="tx-1")
    assert not again.success
    assert again.message == "You have already rated this user for this transaction"

    other = reputation.add_rating(db_session, owner.id, borrower.id, 3, request_id="tx-2")
    assert other.success
    assert crud.get_user(db_session, borrower.id).reputation == 4.0
    assert reputation.has_rated(db_session, owner.id, borrower.id, "tx-1")
    assert not reputation.has_rated(db_session, owner.id, borrower.id, None)


def test_book_rating(db_session, test_book, borrower, make_user):
    result = reputation.add_book_rating(db_session, borrower.id, test_book.id, 4, "Loved it")
    assert result.success
    assert result.message == "Book rating submitted!"
    assert reputation.has_rated_book(db_session, borrower.id, test_book.id)

    again = reputation.add_book_rating(db_session, borrower.id, test_book.id, 2)
    assert again.message == "You have already rated this book"

    reputation.add_book_rating(db_session, make_user("Other").id, test_book.id, 5)
    assert reputation.average_book_rating(db_session, test_book.id) == 4.5


def test_average_of_unrated_book(db_session, test_book):
    assert reputation.average_book_rating(db_session, test_book.id) is None


def test_ratings_for_book(db_session, test_book, make_user, make_book, owner):
    first, second = make_user("First"), make_user("Second")
    reputation.add_book_rating(db_session, first.id, test_book.id, 5, "A classic")
    reputation.add_book_rating(db_session, second.id, test_book.id, 3)
    reputation.add_book_rating(db_session, first.id, make_book(owner, title="Other").id, 1)

    ratings = reputation.ratings_for_book(db_session, test_book.id)
    assert sorted((r.user_id, r.rating, r.review) for r in ratings) == sorted(
        [(first.id, 5, "A classic"), (second.id, 3, None)]
    )
    assert reputation.ratings_for_book(db_session, "missing") == []
