from datetime import datetime, timedelta, timezone

from pdf_export import book_pdf, pdf_filename, transactions_pdf
from transactions import Transaction

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
BOOKS = {"b1": {"title": "Dune & <Sons>", "author": "Frank Herbert"}}
USERS = {"u1": {"id": "u1", "email": "reader@example.com"}}


def make_tx(tx_id, action, days_ago, due_in=None):
    when = NOW - timedelta(days=days_ago)
    due = when + timedelta(days=due_in) if due_in is not None else None
    return Transaction(id=tx_id, user_id="u1", book_id="b1", action=action, transaction_date=when, due_date=due)


def test_transactions_pdf_renders_rows():
    history = [make_tx("t2", "return", 1), make_tx("t1", "issue", 20, due_in=14)]
    content = transactions_pdf(history, BOOKS, USERS, "My Transaction History", generated_for="u1", now=NOW)
    assert content.startswith(b"%PDF")
    assert content.rstrip().endswith(b"%%EOF")


def test_transactions_pdf_filtered_and_empty():
    history = [make_tx("t2", "return", 1), make_tx("t1", "issue", 20, due_in=14)]
    filtered = transactions_pdf(history, BOOKS, USERS, "All Library Transactions", shown=history[1:], now=NOW)
    empty = transactions_pdf([], {}, {}, "All Library Transactions", now=NOW)
    assert filtered.startswith(b"%PDF")
    assert empty.startswith(b"%PDF")


def test_book_pdf_and_filename():
    content = book_pdf("Tides of Time", "First paragraph.\n\nSecond paragraph.")
    assert content.startswith(b"%PDF")
    assert pdf_filename("Tides of Time: Vol. 2") == "tides_of_time__vol__2.pdf"
