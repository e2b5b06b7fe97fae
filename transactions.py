"""Transaction history: late fees, loan status and borrowing statistics.

All helpers take the transaction list newest first (the order the database
returns it in) and never touch the database themselves.
"""

import csv
import io
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from config import settings
from database import parse_timestamp, to_iso, to_utc


@dataclass
class Transaction:
    id: str
    user_id: str
    book_id: str
    action: str
    transaction_date: datetime
    due_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "action": self.action,
            "transaction_date": to_iso(self.transaction_date),
            "due_date": to_iso(self.due_date) if self.due_date else None,
        }

    @staticmethod
    def from_row(row) -> "Transaction":
        data = dict(row)
        return Transaction(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            action=data["action"],
            transaction_date=parse_timestamp(data["transaction_date"]),
            due_date=parse_timestamp(data.get("due_date")),
        )


def _now(now: Optional[datetime]) -> datetime:
    return to_utc(now) if now else datetime.now(timezone.utc)


def _loan_history(transaction: Transaction, transactions: List[Transaction]) -> List[Transaction]:
    """Transactions of the same user and book, newest first."""
    related = [
        t for t in transactions
        if t.book_id == transaction.book_id and t.user_id == transaction.user_id
    ]
    # sorted() is stable, so ties keep their listed order
    return sorted(related, key=lambda t: t.transaction_date, reverse=True)


def _newer_than(transaction: Transaction, history: List[Transaction]) -> List[Transaction]:
    for index, t in enumerate(history):
        if t is transaction or t.id == transaction.id:
            return history[:index]
    return []


def is_returned(transaction: Transaction, transactions: List[Transaction]) -> bool:
    """True if a return for the same user and book was recorded after this transaction."""
    newer = _newer_than(transaction, _loan_history(transaction, transactions))
    return any(t.action == "return" for t in newer)


def effective_due_date(issue: Transaction, transactions: List[Transaction]) -> Optional[datetime]:
    """Due date of an issue after any renewals made before it was returned."""
    newer = _newer_than(issue, _loan_history(issue, transactions))
    due = issue.due_date
    # Walk forward in time from the issue until the matching return
    for t in reversed(newer):
        if t.action == "return":
            break
        if t.action == "renew" and t.due_date:
            due = t.due_date
    return due


def renewal_count(issue: Transaction, transactions: List[Transaction]) -> int:
    newer = _newer_than(issue, _loan_history(issue, transactions))
    count = 0
    for t in reversed(newer):
        if t.action == "return":
            break
        if t.action == "renew":
            count += 1
    return count


def calculate_late_fee(transaction: Transaction, transactions: List[Transaction],
                       now: Optional[datetime] = None) -> int:
    """Late fee owed on an issue; zero for anything returned, not yet due, or not an issue."""
    if transaction.action != "issue" or not transaction.due_date:
        return 0
    if is_returned(transaction, transactions):
        return 0

    due = effective_due_date(transaction, transactions)
    current = _now(now)
    if due > current:
        return 0

    days_overdue = math.ceil((current - due).total_seconds() / 86400)
    return days_overdue * settings.late_fee_per_day


def is_overdue(transaction: Transaction, transactions: List[Transaction],
               now: Optional[datetime] = None) -> bool:
    if transaction.action != "issue" or not transaction.due_date:
        return False
    if is_returned(transaction, transactions):
        return False
    return effective_due_date(transaction, transactions) < _now(now)


def active_issues(transactions: List[Transaction]) -> List[Transaction]:
    return [t for t in transactions if t.action == "issue" and not is_returned(t, transactions)]


def action_counts(transactions: List[Transaction]) -> Dict[str, int]:
    return {
        "issues": sum(1 for t in transactions if t.action == "issue"),
        "returns": sum(1 for t in transactions if t.action == "return"),
        "renewals": sum(1 for t in transactions if t.action == "renew"),
    }


def total_fines(transactions: List[Transaction], now: Optional[datetime] = None) -> int:
    return sum(calculate_late_fee(t, transactions, now) for t in transactions)


def personal_stats(transactions: List[Transaction], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Statistics for one user's history."""
    return {
        "totalBooksBorrowed": len({t.book_id for t in transactions if t.action == "issue"}),
        "currentlyBorrowed": len(active_issues(transactions)),
        "overdueBooks": sum(1 for t in transactions if is_overdue(t, transactions, now)),
        "totalFines": total_fines(transactions, now),
        "actions": action_counts(transactions),
    }


def admin_stats(transactions: List[Transaction], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Library-wide statistics over every user's transactions."""
    stats: Dict[str, Any] = {"total": len(transactions)}
    stats.update(action_counts(transactions))
    stats["uniqueUsers"] = len({t.user_id for t in transactions})
    stats["uniqueBooks"] = len({t.book_id for t in transactions})
    stats["overdue"] = sum(1 for t in transactions if is_overdue(t, transactions, now))
    stats["fines"] = total_fines(transactions, now)
    return stats


_ACTION_BUCKETS = {"issue": "issues", "return": "returns", "renew": "renewals"}


def monthly_activity(transactions: List[Transaction], months: int = 6) -> List[Dict[str, Any]]:
    """Per-month counts for the most recent active months, oldest first."""
    buckets: Dict[str, Dict[str, Any]] = {}
    for t in transactions:
        key = t.transaction_date.strftime("%Y-%m")
        if key not in buckets:
            buckets[key] = {"month": key, "issues": 0, "returns": 0, "renewals": 0, "total": 0}
        buckets[key][_ACTION_BUCKETS[t.action]] += 1
        buckets[key]["total"] += 1
    ordered = [buckets[key] for key in sorted(buckets)]
    return ordered[-months:] if months > 0 else ordered


def user_label(user_id: str, users: Dict[str, Dict[str, Any]]) -> str:
    profile = users.get(user_id) or {}
    return profile.get("email") or profile.get("username") or f"User {user_id[:8]}"


def filter_transactions(transactions: List[Transaction], books: Dict[str, Dict[str, Any]],
                        users: Dict[str, Dict[str, Any]], search: str = "",
                        action: str = "all") -> List[Transaction]:
    """Filter by a search term (book title/author or user label) and an action."""
    term = (search or "").strip().lower()
    action = (action or "all").lower()

    def matches(t: Transaction) -> bool:
        if action != "all" and t.action != action:
            return False
        if not term:
            return True
        book = books.get(t.book_id) or {}
        haystack = [
            book.get("title") or "",
            book.get("author") or "",
            user_label(t.user_id, users),
        ]
        return any(term in value.lower() for value in haystack)

    return [t for t in transactions if matches(t)]


def transaction_rows(transactions: List[Transaction], books: Dict[str, Dict[str, Any]],
                     users: Dict[str, Dict[str, Any]],
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Flatten transactions for display and export."""
    rows = []
    for t in transactions:
        book = books.get(t.book_id) or {}
        row = t.to_dict()
        row.update({
            "user": user_label(t.user_id, users),
            "book_title": book.get("title") or "Unknown Book",
            "book_author": book.get("author") or "Unknown",
            "late_fee": calculate_late_fee(t, transactions, now),
            "is_overdue": is_overdue(t, transactions, now),
        })
        rows.append(row)
    return rows


def export_transactions_csv(transactions: List[Transaction], books: Dict[str, Dict[str, Any]],
                            users: Dict[str, Dict[str, Any]], now: Optional[datetime] = None) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "User", "Book", "Author", "Action", "Due Date", "Late Fee"])
    for row in transaction_rows(transactions, books, users, now):
        writer.writerow([
            row["transaction_date"],
            row["user"],
            row["book_title"],
            row["book_author"],
            row["action"],
            row["due_date"] or "",
            row["late_fee"],
        ])
    return output.getvalue()
