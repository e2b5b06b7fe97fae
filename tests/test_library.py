import os
from datetime import datetime, timezone

import pytest

from book import Book
from circulation import PermissionDenied
import database
from database import seed_admins
from library import Library
from resources import Resource


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book(Book("Ulysses", "James Joyce", "978-0-19-953567-5"))

    assert lib.find_book(book.id).title == "Ulysses"
    assert lib.find_book_by_isbn("9780199535675").id == book.id
    assert lib.find_book_by_title("ulyss").id == book.id
    assert len(lib.list_books()) == 1


def test_add_requires_title_and_positive_count(lib):
    with pytest.raises(ValueError, match="Title is required"):
        lib.add_book(Book("   "))
    with pytest.raises(ValueError, match="Count must be at least 1"):
        lib.add_book(Book("Zero", count=0))


def test_add_duplicate_isbn(lib):
    lib.add_book(Book("Test Book", "Test Author", "1234567890"))
    with pytest.raises(ValueError, match="Book with ISBN 1234567890 already exists."):
        lib.add_book(Book("Other Book", "Other Author", "123-456-7890"))
    assert len(lib.list_books()) == 1


def test_persistence(lib):
    book = lib.add_book(Book("Sapiens", "Yuval Noah Harari", "9780099590088"))
    lib2 = Library(db_file=database.DATABASE_FILE, storage_dir=lib.storage_dir)
    assert lib2.find_book(book.id).title == "Sapiens"


def test_remove(lib):
    book = lib.add_book(Book("Test", "Author"))
    assert lib.remove_book(book.id) is True
    assert lib.remove_book(book.id) is False


def test_update_book(lib):
    book = lib.add_book(Book("Old Title", "Old Author", "1112223334"))
    updated = lib.update_book(book.id, title="New Title", count=3)
    assert updated.title == "New Title"
    assert updated.author == "Old Author"
    assert updated.count == 3

    assert lib.update_book("missing", title="X") is None
    with pytest.raises(ValueError):
        lib.update_book(book.id)
    with pytest.raises(ValueError):
        lib.update_book(book.id, count=0)


def test_update_rejects_isbn_of_other_book(lib):
    lib.add_book(Book("First", isbn="1111111111"))
    second = lib.add_book(Book("Second", isbn="2222222222"))
    with pytest.raises(ValueError, match="already exists"):
        lib.update_book(second.id, isbn="1111111111")


def test_search_books_matches_title_author_and_description(lib):
    lib.add_book(Book("Dune", "Frank Herbert", description="Desert planet epic"))
    lib.add_book(Book("Emma", "Jane Austen"))
    lib.add_book(Book("Persuasion", "Jane Austen"))

    assert [b.title for b in lib.search_books("austen")] == ["Emma", "Persuasion"]
    assert [b.title for b in lib.search_books("desert")] == ["Dune"]
    assert len(lib.search_books("austen", limit=1)) == 1
    assert lib.search_books("nothing here") == []


def test_list_books_with_status(lib):
    dune = lib.add_book(Book("Dune", count=1))
    emma = lib.add_book(Book("Emma", count=2))
    lib.issue_book("u1", dune.id)
    lib.issue_book("u1", emma.id)
    lib.rate_book("u1", emma.id, 4)
    lib.rate_book("u2", emma.id, 5)

    status = {b["title"]: b for b in lib.list_books_with_status()}
    assert status["Dune"]["available"] is False
    assert status["Emma"]["available"] is True
    assert status["Emma"]["averageRating"] == 4.5
    assert status["Emma"]["ratingCount"] == 2
    assert status["Dune"]["averageRating"] is None


def test_top_books_orders_by_issue_count(lib):
    dune = lib.add_book(Book("Dune", count=3))
    emma = lib.add_book(Book("Emma", count=3))
    lib.issue_book("u1", dune.id)
    lib.issue_book("u2", dune.id)
    lib.issue_book("u1", emma.id)
    assert [b.title for b in lib.get_top_books(limit=2)] == ["Dune", "Emma"]


def test_circulation_through_library(lib):
    book = lib.add_book(Book("Dune"))
    assert lib.issue_book("u1", book.id)
    status = lib.get_book_status("u1", book.id)
    assert status["status"] == "issued"
    assert status["available"] is False

    assert lib.renew_book("u1", book.id)
    assert lib.get_book_status("u1", book.id)["renewals_left"] == 1
    assert lib.return_book("u1", book.id)

    status = lib.get_book_status("u1", book.id)
    assert status["status"] == "available"
    assert status["available"] is True
    assert [t.action for t in lib.get_user_transactions("u1")] == ["return", "renew", "issue"]


def test_circulation_on_unknown_book_raises(lib):
    with pytest.raises(LookupError):
        lib.issue_book("u1", "missing")
    with pytest.raises(LookupError):
        lib.get_book_status("u1", "missing")


def test_recent_issued_books_are_distinct(lib):
    dune = lib.add_book(Book("Dune"))
    emma = lib.add_book(Book("Emma"))
    t = datetime(2024, 1, 1, tzinfo=timezone.utc)
    lib.issue_book("u1", dune.id, now=t)
    lib.return_book("u1", dune.id, now=t.replace(day=2))
    lib.issue_book("u1", emma.id, now=t.replace(day=3))
    lib.issue_book("u1", dune.id, now=t.replace(day=4))
    assert [b.title for b in lib.get_recent_issued_books("u1")] == ["Dune", "Emma"]


def test_dashboard_requires_staff_and_refreshes_after_issue(lib):
    book = lib.add_book(Book("Dune", count=2))
    lib.ensure_profile("reader", email="reader@example.com")
    with pytest.raises(PermissionDenied):
        lib.get_dashboard("reader")

    _make_admin("admin")
    assert lib.get_dashboard("admin")["topBooks"] == []
    lib.issue_book("reader", book.id)
    dashboard = lib.get_dashboard("admin")
    assert dashboard["topBooks"] == [{"title": "Dune", "borrows": 1}]
    assert dashboard["mostActiveUsers"][0]["username"] == "reader@example...."


# ------------------------- Ratings ------------------------- #
def test_rate_book_validates_input(lib):
    book = lib.add_book(Book("Dune"))
    for bad in (0, 6, 3.5, "4", True):
        with pytest.raises(ValueError):
            lib.rate_book("u1", book.id, bad)
    with pytest.raises(LookupError):
        lib.rate_book("u1", "missing", 3)


def test_ratings_and_summary(lib):
    book = lib.add_book(Book("Dune"))
    assert lib.get_rating_summary(book.id) == {"averageRating": None, "ratingCount": 0}

    entry = lib.rate_book("u1", book.id, 5, comment="  Loved it  ")
    assert entry["comment"] == "Loved it"
    lib.rate_book("u1", book.id, 2)

    assert len(lib.get_book_ratings(book.id)) == 2
    assert lib.get_rating_summary(book.id) == {"averageRating": 3.5, "ratingCount": 2}


# ------------------------- Bookmarks ------------------------- #
def test_bookmarks(lib):
    dune = lib.add_book(Book("Dune"))
    emma = lib.add_book(Book("Emma"))

    first = lib.add_bookmark("u1", dune.id)
    again = lib.add_bookmark("u1", dune.id)
    assert first["id"] == again["id"]
    lib.add_bookmark("u1", emma.id)

    assert lib.is_bookmarked("u1", dune.id)
    assert not lib.is_bookmarked("u2", dune.id)
    assert set(lib.get_bookmark_status_map("u1", [dune.id, emma.id, "other"])) == {dune.id, emma.id}
    assert lib.get_bookmark_status_map("u1", []) == {}

    bookmarks = lib.get_user_bookmarks("u1")
    assert [b["book"]["title"] for b in bookmarks] == ["Emma", "Dune"]
    assert bookmarks[0]["ratingCount"] == 0

    assert lib.remove_bookmark("u1", dune.id)
    assert not lib.remove_bookmark("u1", dune.id)


def test_bookmark_unknown_book_raises(lib):
    with pytest.raises(LookupError):
        lib.add_bookmark("u1", "missing")


# ------------------------- Resources ------------------------- #
def test_resource_crud_and_file_storage(lib):
    stored, relative = lib.store_resource_file("My Notes (v2).pdf", b"%PDF-1.4 data")
    assert stored.endswith("_My_Notes__v2_.pdf")
    assert relative == f"resources/{stored}"

    resource = lib.add_resource(Resource("Networking Notes", author="Tanenbaum", filename="My Notes (v2).pdf",
                                         filepath=relative, size=13, uploaded_by="lib-1"))
    path = lib.resource_file_path(resource)
    assert os.path.exists(path)

    assert lib.find_resource(resource.id).name == "Networking Notes"
    assert lib.find_resource_by_name("network").id == resource.id
    assert [r.id for r in lib.search_resources("tanenbaum")] == [resource.id]

    updated = lib.update_resource(resource.id, description="Chapter summaries")
    assert updated.description == "Chapter summaries"
    assert lib.update_resource("missing", name="x") is None

    assert lib.remove_resource(resource.id)
    assert not os.path.exists(path)
    assert lib.find_resource(resource.id) is None
    assert not lib.remove_resource(resource.id)


@pytest.mark.parametrize("filename, content, message", [
    ("notes.txt", b"data", "Only"),
    ("notes.pdf", b"", "empty"),
])
def test_store_resource_file_rejects_bad_uploads(lib, filename, content, message):
    with pytest.raises(ValueError, match=message):
        lib.store_resource_file(filename, content)


def test_store_resource_file_rejects_large_uploads(lib, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "max_upload_size", 4)
    with pytest.raises(ValueError, match="maximum size"):
        lib.store_resource_file("big.pdf", b"12345")


# ------------------------- Profiles and statistics ------------------------- #
def test_ensure_profile_fills_missing_fields(lib):
    profile = lib.ensure_profile("u1")
    assert profile["role"] == "student"
    assert profile["email"] is None

    profile = lib.ensure_profile("u1", email="a@b.c", username="ann")
    assert profile["email"] == "a@b.c"
    profile = lib.ensure_profile("u1", email="other@b.c")
    assert profile["email"] == "a@b.c"
    assert [p["id"] for p in lib.list_profiles()] == ["u1"]


def test_statistics(lib):
    dune = lib.add_book(Book("Dune", "Frank Herbert", count=2))
    lib.add_book(Book("Emma", "Jane Austen"))
    lib.add_book(Book("Persuasion", "Jane Austen"))
    lib.add_resource(Resource("Notes"))
    lib.issue_book("u1", dune.id)

    assert lib.get_statistics() == {
        "total_books": 3,
        "total_copies": 4,
        "unique_authors": 2,
        "total_resources": 1,
        "active_loans": 1,
    }


def _make_admin(user_id):
    seed_admins([user_id])


def test_configured_admins_are_seeded(tmp_path, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "admin_user_ids", ["root-admin"])
    lib = Library(db_file=str(tmp_path / "seeded.db"), storage_dir=str(tmp_path / "storage"))
    try:
        assert lib.get_user_role("root-admin") == "admin"
        profile = lib.update_user_role("root-admin", "alice", "librarian")
        assert profile["role"] == "librarian"
    finally:
        lib.close()
