from datetime import datetime, timedelta, timezone

from bookshare import admin, crud, legacy
from bookshare.status import as_utc

NOW = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)


def test_ban_and_unban(db_session, make_user, borrower):
    moderator = make_user("Moderator", is_admin=True)
    banned = admin.ban_user(db_session, moderator.id, borrower.id)
    assert banned.message == "User banned successfully."
    assert crud.get_user(db_session, borrower.id).is_banned

    restored = admin.unban_user(db_session, moderator.id, borrower.id)
    assert restored.success
    assert not crud.get_user(db_session, borrower.id).is_banned


def test_only_admins_ban(db_session, owner, borrower):
    result = admin.ban_user(db_session, owner.id, borrower.id)
    assert not result.success
    assert result.message == "Admin access required"


def test_admins_cannot_be_banned(db_session, make_user):
    first = make_user("First", is_admin=True)
    second = make_user("Second", is_admin=True)
    result = admin.ban_user(db_session, first.id, second.id)
    assert result.message == "Admins cannot be banned"


def test_statistics_report_overdue_loans(
    db_session, make_book, owner, borrower, make_user, lend
):
    lend(make_book(owner, title="Late"), borrower, now=NOW)
    lend(make_book(owner, title="On time"), make_user("Prompt"))

    direct = make_book(owner, title="Direct")
    request_id = legacy.request_book(db_session, direct.id, borrower.id).data.id
    legacy.approve_request(db_session, request_id, owner.id)
    legacy.confirm_borrower_receipt(db_session, request_id, borrower.id, now=NOW)

    later = NOW + timedelta(days=10)
    stats = admin.user_statistics(db_session, now=later)
    assert stats.total_users == 3
    assert stats.total_books == 3
    assert stats.active_borrows == 3
    assert stats.overdue_count == 2
    kinds = sorted(loan.kind for loan in stats.overdue_loans)
    assert kinds == ["request", "transaction"]
    for loan in stats.overdue_loans:
        assert loan.borrower.id == borrower.id
        assert loan.days_overdue == 3
        assert as_utc(loan.due_date) == NOW + timedelta(days=7)
