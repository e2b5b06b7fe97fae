import json

import pytest
from typer.testing import CliRunner
from unittest.mock import patch, MagicMock

from main import app
from library import Library, Book
from llm_service import LLMService
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


def test_list_no_books(lib):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_shows_availability(lib):
    dune = lib.add_book(Book("Dune", "Frank Herbert"))
    lib.issue_book("u1", dune.id)
    result = runner.invoke(app, ["list"])
    assert f"{dune.id} - Dune by Frank Herbert [borrowed]" in result.stdout


def test_list_json_output(lib):
    lib.add_book(Book("Dune", "Frank Herbert", count=2))
    result = runner.invoke(app, ["-o", "json", "list"])
    assert result.exit_code == 0
    data = json.loads(result.stdout.strip().splitlines()[-1])
    assert data[0]["title"] == "Dune"
    assert data[0]["available"] is True


def test_add_book_success(lib):
    result = runner.invoke(app, ["add", "Dune", "--author", "Frank Herbert", "--isbn", "0306406152", "-c", "2"])
    assert result.exit_code == 0
    assert "Successfully added: Dune by Frank Herbert" in result.stdout
    book = lib.find_book_by_isbn("0306406152")
    assert book.count == 2


def test_add_book_invalid_isbn(lib):
    result = runner.invoke(app, ["add", "Dune", "--isbn", "0306406153"])
    assert "Error: Invalid ISBN 0306406153" in result.stdout
    assert lib.list_books() == []


def test_add_book_duplicate(lib):
    lib.add_book(Book("Dune", isbn="0306406152"))
    result = runner.invoke(app, ["add", "Dune again", "--isbn", "0306406152"])
    assert "Error: Book with ISBN 0306406152 already exists." in result.stdout


def test_remove_book_success(lib, monkeypatch):
    rm_mock = MagicMock(return_value=True)
    monkeypatch.setattr(Library, "remove_book", rm_mock)

    result = runner.invoke(app, ["remove", "abc"])
    assert result.exit_code == 0
    assert "Book abc has been removed." in result.stdout
    rm_mock.assert_called_once_with("abc")


def test_remove_book_not_found(lib):
    result = runner.invoke(app, ["remove", "nonexistent"])
    assert result.exit_code == 0
    assert "Book nonexistent not found." in result.stdout


def test_find_book_success(lib):
    book = lib.add_book(Book("Found Book", "Finder", "0306406152"))
    lib.rate_book("u1", book.id, 4)

    result = runner.invoke(app, ["find", book.id])
    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Title: Found Book" in result.stdout
    assert "Author: Finder" in result.stdout
    assert "ISBN: 0306406152" in result.stdout
    assert "Available: yes" in result.stdout
    assert "Rating: 4.0 (1 ratings)" in result.stdout


def test_find_book_not_found(lib):
    result = runner.invoke(app, ["find", "nonexistent"])
    assert "Book nonexistent not found." in result.stdout


def test_search(lib):
    lib.add_book(Book("Emma", "Jane Austen"))
    lib.add_book(Book("Dune", "Frank Herbert"))
    result = runner.invoke(app, ["search", "austen"])
    assert "Found 1 book(s):" in result.stdout
    assert "Emma by Jane Austen" in result.stdout

    result = runner.invoke(app, ["search", "tolkien"])
    assert "No books matched the search." in result.stdout


def test_stats(lib):
    lib.add_book(Book("Dune", "Frank Herbert", count=3))
    result = runner.invoke(app, ["stats"])
    assert "Total Books: 1" in result.stdout
    assert "Total Copies: 3" in result.stdout
    assert "Active Loans: 0" in result.stdout


def test_issue_renew_return(lib):
    book = lib.add_book(Book("Dune"))

    result = runner.invoke(app, ["issue", book.id, "--user", "u1"])
    assert f"Book {book.id} issued. Due: " in result.stdout

    result = runner.invoke(app, ["issue", book.id, "--user", "u2"])
    assert f"Could not issue book {book.id}." in result.stdout

    result = runner.invoke(app, ["renew", book.id, "-u", "u1"])
    assert f"Book {book.id} renewed. Due: " in result.stdout

    result = runner.invoke(app, ["return", book.id, "-u", "u1"])
    assert f"Book {book.id} returned." in result.stdout

    result = runner.invoke(app, ["issue", "missing", "-u", "u1"])
    assert "Error: Book missing not found." in result.stdout


def test_transactions_and_fines(lib):
    book = lib.add_book(Book("Dune"))
    lib.issue_book("u1", book.id)

    result = runner.invoke(app, ["transactions", "--user", "u1"])
    assert "issue" in result.stdout
    assert "Dune" in result.stdout

    result = runner.invoke(app, ["transactions", "--user", "u1", "--action", "return"])
    assert "No transactions found." in result.stdout

    result = runner.invoke(app, ["transactions", "--all", "--as", "u1"])
    assert "Error:" in result.stdout

    result = runner.invoke(app, ["fines", "--user", "u1"])
    assert "Currently borrowed: 1" in result.stdout
    assert "Overdue books: 0" in result.stdout
    assert "Total fines:" in result.stdout


def test_bookmarks_and_roles(lib):
    book = lib.add_book(Book("Dune"))
    result = runner.invoke(app, ["bookmarks", "--user", "u1"])
    assert "No bookmarks." in result.stdout

    lib.add_bookmark("u1", book.id)
    result = runner.invoke(app, ["bookmarks", "--user", "u1"])
    assert f"{book.id} - Dune by Unknown" in result.stdout

    result = runner.invoke(app, ["role", "u1"])
    assert "u1: student" in result.stdout

    result = runner.invoke(app, ["role", "u1", "--set", "librarian", "--as", "u1"])
    assert "Error:" in result.stdout


def test_chat(lib, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "enable_ai_features", True)
    monkeypatch.setattr(settings, "enable_chatbot", True)

    async def fake_chat(self, history, message, system_prompt=None, **options):
        return f"You asked: {message}"

    monkeypatch.setattr(LLMService, "chat", fake_chat)
    result = runner.invoke(app, ["chat", "Where are the atlases?"])
    assert "You asked: Where are the atlases?" in result.stdout


def test_export(lib, tmp_path):
    lib.add_book(Book("Dune", "Frank Herbert", "0306406152"))
    target = str(tmp_path / "catalogue")

    result = runner.invoke(app, ["export", "--format", "json", "--output", target])
    assert "Exported 1 books to" in result.stdout
    with open(f"{target}.json", encoding="utf-8") as fh:
        assert json.load(fh)[0]["title"] == "Dune"

    result = runner.invoke(app, ["export", "--format", "xml", "--output", target])
    assert "Unsupported format: xml" in result.stdout


@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, lib):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_webbrowser_open.assert_called_once()
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "--host" in args
    assert "--port" in args


def test_role_set_by_configured_admin(lib, monkeypatch):
    from config import settings
    from database import initialize_database

    monkeypatch.setattr(settings, "admin_user_ids", ["root"])
    initialize_database()

    result = runner.invoke(app, ["role", "alice", "--set", "admin", "--as", "root"])
    assert "Role of alice set to admin." in result.stdout
    result = runner.invoke(app, ["role", "alice"])
    assert "alice: admin" in result.stdout


def test_chat_closes_http_client(lib, monkeypatch):
    import main
    from config import settings

    monkeypatch.setattr(settings, "enable_ai_features", True)
    monkeypatch.setattr(settings, "enable_chatbot", True)
    closed = []

    async def fake_chat(self, history, message, system_prompt=None, **options):
        return "Hello"

    async def fake_cleanup():
        closed.append(True)

    monkeypatch.setattr(LLMService, "chat", fake_chat)
    monkeypatch.setattr(main, "cleanup_http_client", fake_cleanup)
    result = runner.invoke(app, ["chat", "Hi"])
    assert "Hello" in result.stdout
    assert closed == [True]
