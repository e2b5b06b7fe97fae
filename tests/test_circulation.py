from datetime import datetime, timedelta, timezone

import pytest

import circulation
from book import Book
from circulation import PermissionDenied
from database import seed_admins

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def book(lib):
    return lib.add_book(Book(title="The Pragmatic Programmer", author="Hunt", count=1))


def test_issue_and_return(lib, book):
    assert circulation.is_book_available(book.id)
    assert circulation.issue_book("u1", book.id, now=NOW)
    assert not circulation.is_book_available(book.id)

    loan = circulation.get_active_loan("u1", book.id)
    assert loan["status"] == "issued"
    assert loan["due_date"].startswith("2024-05-15")
    assert loan["renewals_left"] == 2

    assert circulation.return_book("u1", book.id, now=NOW + timedelta(days=3))
    assert circulation.is_book_available(book.id)
    assert circulation.get_active_loan("u1", book.id) is None


def test_issue_fails_when_no_copy_is_free(lib, book):
    assert circulation.issue_book("u1", book.id, now=NOW)
    assert not circulation.issue_book("u2", book.id, now=NOW)


def test_user_cannot_hold_two_copies(lib):
    book = lib.add_book(Book(title="Clean Code", count=3))
    assert circulation.issue_book("u1", book.id, now=NOW)
    assert not circulation.issue_book("u1", book.id, now=NOW)
    assert circulation.issue_book("u2", book.id, now=NOW)
    assert circulation.is_book_available(book.id)
    assert circulation.count_active_loans() == 2


def test_return_without_issue_fails(lib, book):
    assert not circulation.return_book("u1", book.id, now=NOW)


def test_unknown_book_is_unavailable(lib):
    assert not circulation.is_book_available("missing")
    assert not circulation.issue_book("u1", "missing", now=NOW)


def test_renew_extends_from_current_due_date(lib, book):
    circulation.issue_book("u1", book.id, now=NOW)
    assert circulation.renew_book("u1", book.id, now=NOW + timedelta(days=1))
    loan = circulation.get_active_loan("u1", book.id)
    assert loan["due_date"].startswith("2024-05-29")
    assert loan["renewal_count"] == 1


def test_renew_limit_resets_on_new_issue(lib, book):
    circulation.issue_book("u1", book.id, now=NOW)
    assert circulation.renew_book("u1", book.id, now=NOW + timedelta(days=1))
    assert circulation.renew_book("u1", book.id, now=NOW + timedelta(days=2))
    assert not circulation.renew_book("u1", book.id, now=NOW + timedelta(days=3))

    circulation.return_book("u1", book.id, now=NOW + timedelta(days=4))
    circulation.issue_book("u1", book.id, now=NOW + timedelta(days=5))
    assert circulation.renew_book("u1", book.id, now=NOW + timedelta(days=6))


def test_renew_without_issue_fails(lib, book):
    assert not circulation.renew_book("u1", book.id, now=NOW)


def test_roles_default_to_student(lib):
    assert circulation.get_user_role("nobody") == "student"
    assert circulation.get_user_role(None) == "student"


def test_only_admin_can_change_roles(lib):
    lib.ensure_profile("admin-1")
    lib.ensure_profile("u1")
    with pytest.raises(PermissionDenied):
        circulation.update_user_role("u1", "u1", "admin")

    _make_admin("admin-1")
    profile = circulation.update_user_role("admin-1", "u1", "Librarian")
    assert profile["role"] == "librarian"
    assert circulation.get_user_role("u1") == "librarian"

    with pytest.raises(ValueError):
        circulation.update_user_role("admin-1", "u1", "superuser")


def test_all_transactions_requires_staff(lib, book):
    circulation.issue_book("u1", book.id, now=NOW)
    with pytest.raises(PermissionDenied):
        circulation.get_all_transactions("u1")

    _make_admin("admin-1")
    circulation.update_user_role("admin-1", "lib-1", "librarian")
    history = circulation.get_all_transactions("lib-1")
    assert [t.action for t in history] == ["issue"]


def _make_admin(user_id):
    seed_admins([user_id])
