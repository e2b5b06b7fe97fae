import asyncio
import csv
import json
import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

import database
import transactions as tx
from book import Book
from chatbot import LibraryChatbot
from circulation import PermissionDenied
from config import settings
from http_client import cleanup_http_client
from library import Library
from utils.ui_helpers import set_output_mode, print_list_result, print_stats_result, print_transactions_result
from utils.validators import ISBNValidator

APP_NAME = f"{settings.app_name} CLI"

console = Console()


def _is_test_env() -> bool:
    return ("PYTEST_CURRENT_TEST" in os.environ) or (os.environ.get("LIBRALINK_CLI_TEST_MODE") == "1")


class LibraryManager:
    """Process-wide Library, rebuilt when the database file changes."""
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = os.environ.get("LIBRARY_DB_FILE") or getattr(database, "DATABASE_FILE", None)
        if cls._instance is None or (current_db and current_db != cls._db_file_snapshot):
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
            if not _is_test_env():
                console.print("[dim]📚 Library initialised[/]")
        return cls._instance


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


# --- Catalogue ---
@app.command("list")
def cli_list():
    """List all books with availability."""
    lib = LibraryManager.get_instance()
    print_list_result(lib.list_books_with_status())


@app.command("add")
def cli_add(
    title: str = typer.Argument(..., help="Book title"),
    author: Optional[str] = typer.Option(None, "--author", "-a"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    count: int = typer.Option(1, "--count", "-c", help="Number of copies"),
):
    """Add a book to the catalogue."""
    lib = LibraryManager.get_instance()
    if isbn and not ISBNValidator.is_valid_isbn(isbn):
        print(f"Error: Invalid ISBN {isbn}")
        return
    try:
        book = lib.add_book(Book(title=title, author=author, isbn=isbn, genre=genre, count=count))
        print(f"Successfully added: {book.title} by {book.author or 'Unknown'} ({book.id})")
    except ValueError as e:
        print(f"Error: {e}")


@app.command("remove")
def cli_remove(book_id: str):
    """Remove a book by id."""
    lib = LibraryManager.get_instance()
    if lib.remove_book(book_id):
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")


@app.command("find")
def cli_find(book_id: str):
    """Show a book's details."""
    lib = LibraryManager.get_instance()
    book = lib.find_book(book_id)
    if not book:
        print(f"Book {book_id} not found.")
        return
    summary = lib.get_rating_summary(book.id)
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {book.author or 'Unknown'}")
    print(f"ISBN: {book.isbn or '-'}")
    print(f"Copies: {book.count}")
    print(f"Available: {'yes' if lib.is_book_available(book.id) else 'no'}")
    if summary["ratingCount"]:
        print(f"Rating: {summary['averageRating']} ({summary['ratingCount']} ratings)")


@app.command("search")
def cli_search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum results"),
):
    """Search title, author and description."""
    lib = LibraryManager.get_instance()
    books = lib.search_books(query, limit=limit)
    if not books:
        print("No books matched the search.")
        return
    print(f"Found {len(books)} book(s):")
    print_list_result(lib.list_books_with_status(books))


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


# --- Circulation ---
def _circulate(action: str, book_id: str, user: str) -> None:
    lib = LibraryManager.get_instance()
    operations = {"issue": lib.issue_book, "return": lib.return_book, "renew": lib.renew_book}
    try:
        ok = operations[action](user, book_id)
    except LookupError as e:
        print(f"Error: {e}")
        return
    if not ok:
        print(f"Could not {action} book {book_id}.")
        return
    status = lib.get_book_status(user, book_id)
    past = {"issue": "issued", "return": "returned", "renew": "renewed"}[action]
    message = f"Book {book_id} {past}."
    if status.get("due_date"):
        message += f" Due: {status['due_date'][:10]}"
    print(message)


@app.command("issue")
def cli_issue(book_id: str, user: str = typer.Option(..., "--user", "-u", help="Borrower id")):
    """Issue a book to a user."""
    _circulate("issue", book_id, user)


@app.command("return")
def cli_return(book_id: str, user: str = typer.Option(..., "--user", "-u", help="Borrower id")):
    """Return a book."""
    _circulate("return", book_id, user)


@app.command("renew")
def cli_renew(book_id: str, user: str = typer.Option(..., "--user", "-u", help="Borrower id")):
    """Renew a book's loan."""
    _circulate("renew", book_id, user)


# --- History ---
@app.command("transactions")
def cli_transactions(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Show one user's history"),
    all_users: bool = typer.Option(False, "--all", help="Show every user's history (staff only)"),
    acting: Optional[str] = typer.Option(None, "--as", help="Acting staff user for --all"),
    action: str = typer.Option("all", "--action", help="all | issue | return | renew"),
    search: str = typer.Option("", "--search", "-s", help="Filter by book title, author or user"),
):
    """Show transaction history with late fees."""
    lib = LibraryManager.get_instance()
    if all_users:
        if not acting:
            print("Error: --all requires --as <staff user id>")
            return
        try:
            history = lib.get_all_transactions(acting)
        except PermissionDenied as e:
            print(f"Error: {e}")
            return
    elif user:
        history = lib.get_user_transactions(user)
    else:
        print("Error: provide --user or --all")
        return

    books = lib.books_index()
    users = lib.profiles_index()
    filtered = {t.id for t in tx.filter_transactions(history, books, users, search, action)}
    rows = [r for r in tx.transaction_rows(history, books, users) if r["id"] in filtered]
    print_transactions_result(rows)


@app.command("fines")
def cli_fines(user: str = typer.Option(..., "--user", "-u")):
    """Show a user's borrowing statistics and outstanding late fees."""
    history = LibraryManager.get_instance().get_user_transactions(user)
    stats = tx.personal_stats(history)
    print(f"Currently borrowed: {stats['currentlyBorrowed']}")
    print(f"Overdue books: {stats['overdueBooks']}")
    print(f"Total fines: {settings.currency_symbol}{stats['totalFines']}")


@app.command("bookmarks")
def cli_bookmarks(user: str = typer.Option(..., "--user", "-u")):
    """List a user's bookmarked books."""
    bookmarks = LibraryManager.get_instance().get_user_bookmarks(user)
    if not bookmarks:
        print("No bookmarks.")
        return
    for entry in bookmarks:
        book = entry["book"]
        print(f"{book['id']} - {book['title']} by {book.get('author') or 'Unknown'}")


@app.command("role")
def cli_role(
    user: str = typer.Argument(..., help="User whose role to show or change"),
    new_role: Optional[str] = typer.Option(None, "--set", help="admin | librarian | student"),
    acting: Optional[str] = typer.Option(None, "--as", help="Acting admin user id"),
):
    """Show or change a user's role."""
    lib = LibraryManager.get_instance()
    if not new_role:
        print(f"{user}: {lib.get_user_role(user)}")
        return
    if not acting:
        print("Error: --set requires --as <admin user id>")
        return
    try:
        profile = lib.update_user_role(acting, user, new_role)
        print(f"Role of {user} set to {profile['role']}.")
    except (PermissionDenied, ValueError) as e:
        print(f"Error: {e}")


@app.command("chat")
def cli_chat(
    message: str = typer.Argument(..., help="Message for the library assistant"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
):
    """Ask the AI library assistant one question."""
    if not settings.enable_ai_features or not settings.enable_chatbot:
        print("The chat assistant is disabled.")
        return
    bot = LibraryChatbot(LibraryManager.get_instance())

    async def ask():
        # The pooled client is bound to this event loop; close it before the loop ends
        try:
            return await bot.respond(message, [], user)
        finally:
            await cleanup_http_client()

    try:
        reply = asyncio.run(ask())
    except ValueError as e:
        print(f"Error: {e}")
        return
    print(reply.text)


@app.command("export")
def cli_export(format: str = "csv", output: str = "library_export"):
    """Export the catalogue to a file (csv, json, txt)."""
    books = LibraryManager.get_instance().list_books()
    if not books:
        print("No books to export.")
        return

    fmt = format.lower()
    if fmt == "csv":
        filename = f"{output}.csv"
        with open(filename, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.writer(csvfile)
            writer.writerow(['ID', 'ISBN', 'Title', 'Author', 'Copies'])
            for book in books:
                writer.writerow([book.id, book.isbn or "", book.title, book.author or "", book.count])
    elif fmt == "json":
        filename = f"{output}.json"
        with open(filename, 'w', encoding='utf-8') as jsonfile:
            json.dump([book.to_dict() for book in books], jsonfile, indent=2, ensure_ascii=False)
    elif fmt == "txt":
        filename = f"{output}.txt"
        with open(filename, 'w', encoding='utf-8') as txtfile:
            for book in books:
                txtfile.write(f"{book.id} - {book.title} by {book.author or 'Unknown'}\n")
    else:
        print(f"Unsupported format: {format}. Use csv, json or txt.")
        return
    print(f"Exported {len(books)} books to {filename}")


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        pass
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, start_new_session=(os.name != "nt"))
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
    else:
        args.append("--reload")
        subprocess.run(args)


if __name__ == "__main__":
    app()
