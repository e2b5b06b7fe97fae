import os
import json
from typing import List, Any, Dict

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from config import settings

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRALINK_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Dict[str, Any]]) -> None:
    """Print books (dicts from ``list_books_with_status``) in the current output mode.
    - plain: 'ID - Title by Author [available]' lines, or 'No books in library.'
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        payload = [
            {
                "id": b.get("id"),
                "title": b.get("title"),
                "author": b.get("author"),
                "isbn": b.get("isbn"),
                "count": b.get("count"),
                "available": b.get("available"),
            }
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Copies", justify="right")
        table.add_column("Status")
        for b in books:
            status = "[green]Available[/]" if b.get("available") else "[red]Borrowed[/]"
            table.add_row(b.get("id", "")[:8], b.get("title", ""), b.get("author") or "Unknown",
                          str(b.get("count", 1)), status)
        _console.print(table)
    else:
        for b in books:
            status = "available" if b.get("available") else "borrowed"
            print(f"{b.get('id')} - {b.get('title')} by {b.get('author') or 'Unknown'} [{status}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print library statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("total_books", "Total Books"),
        ("total_copies", "Total Copies"),
        ("unique_authors", "Unique Authors"),
        ("total_resources", "Total Resources"),
        ("active_loans", "Active Loans"),
    ]

    if mode == "json":
        print(json.dumps({key: stats.get(key, 0) for key, _ in labels}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels:
            print(f"{label}: {stats.get(key, 0)}")


def print_transactions_result(rows: List[Dict[str, Any]]) -> None:
    """Print transaction rows from ``transactions.transaction_rows``."""
    mode = get_output_mode()

    if not rows:
        print("No transactions found.")
        return

    currency = settings.currency_symbol
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🧾 Transactions", header_style="bold cyan")
        table.add_column("Date", no_wrap=True)
        table.add_column("User")
        table.add_column("Book")
        table.add_column("Action")
        table.add_column("Due Date", no_wrap=True)
        table.add_column("Late Fee", justify="right")
        for r in rows:
            fee = f"[red]{currency}{r['late_fee']}[/]" if r["late_fee"] else "-"
            table.add_row(r["transaction_date"][:10], r["user"], r["book_title"], r["action"],
                          (r["due_date"] or "")[:10], fee)
        _console.print(table)
    else:
        for r in rows:
            line = f"{r['transaction_date'][:10]} {r['action']:<6} {r['book_title']} ({r['user']})"
            if r["due_date"]:
                line += f" due {r['due_date'][:10]}"
            if r["late_fee"]:
                line += f" late fee {currency}{r['late_fee']}"
            print(line)
