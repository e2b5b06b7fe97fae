"""Issue, return and renew books, plus role checks.

Every write runs inside a single ``BEGIN IMMEDIATE`` transaction so the
availability check and the insert that depends on it cannot interleave with
another writer.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from config import settings
from database import get_db_connection, new_id, now_iso, to_iso, to_utc, ROLES
from transactions import (
    Transaction,
    active_issues,
    effective_due_date,
    renewal_count,
)

logger = logging.getLogger(__name__)

STAFF_ROLES = ("admin", "librarian")


class PermissionDenied(Exception):
    """The acting user's role does not allow the operation."""
    pass


def _load(conn: sqlite3.Connection, where: str, params: tuple) -> List[Transaction]:
    rows = conn.execute(
        f"SELECT id, user_id, book_id, action, transaction_date, due_date FROM book_transactions "
        f"WHERE {where} ORDER BY transaction_date DESC, rowid DESC",
        params,
    ).fetchall()
    return [Transaction.from_row(r) for r in rows]


def _active_issue(conn: sqlite3.Connection, user_id: str, book_id: str):
    history = _load(conn, "user_id = ? AND book_id = ?", (user_id, book_id))
    active = active_issues(history)
    return (active[0] if active else None), history


def _available(conn: sqlite3.Connection, book_id: str) -> bool:
    row = conn.execute("SELECT count FROM books WHERE id = ?", (book_id,)).fetchone()
    if not row:
        return False
    history = _load(conn, "book_id = ?", (book_id,))
    return len(active_issues(history)) < (row["count"] or 1)


def is_book_available(book_id: str) -> bool:
    """True when at least one copy of the book is not out on loan."""
    conn = get_db_connection()
    try:
        return _available(conn, book_id)
    finally:
        conn.close()


def _insert(conn: sqlite3.Connection, user_id: str, book_id: str, action: str,
            when: datetime, due: Optional[datetime]) -> None:
    conn.execute(
        "INSERT INTO book_transactions (id, user_id, book_id, action, transaction_date, due_date) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (new_id(), user_id, book_id, action, to_iso(when), to_iso(due) if due else None),
    )


def issue_book(user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
    """Lend a copy to the user. False if none is free or the user already holds one."""
    when = to_utc(now) if now else datetime.now(timezone.utc)
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        current, _ = _active_issue(conn, user_id, book_id)
        if current is not None or not _available(conn, book_id):
            conn.rollback()
            return False
        _insert(conn, user_id, book_id, "issue", when, when + timedelta(days=settings.loan_period_days))
        conn.commit()
        logger.info(f"Book {book_id} issued to {user_id}")
        return True
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def return_book(user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
    """Record a return. False if the user has no copy of the book."""
    when = to_utc(now) if now else datetime.now(timezone.utc)
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        current, _ = _active_issue(conn, user_id, book_id)
        if current is None:
            conn.rollback()
            return False
        _insert(conn, user_id, book_id, "return", when, None)
        conn.commit()
        logger.info(f"Book {book_id} returned by {user_id}")
        return True
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def renew_book(user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
    """Extend the due date by one loan period, at most ``max_renewals`` times per issue."""
    when = to_utc(now) if now else datetime.now(timezone.utc)
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        current, history = _active_issue(conn, user_id, book_id)
        if current is None or renewal_count(current, history) >= settings.max_renewals:
            conn.rollback()
            return False
        due = effective_due_date(current, history) or when
        _insert(conn, user_id, book_id, "renew", when, due + timedelta(days=settings.loan_period_days))
        conn.commit()
        logger.info(f"Book {book_id} renewed by {user_id}")
        return True
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_active_loan(user_id: str, book_id: str) -> Optional[Dict[str, Any]]:
    """Loan status of a book for one user, or None if it is not issued to them."""
    conn = get_db_connection()
    try:
        current, history = _active_issue(conn, user_id, book_id)
    finally:
        conn.close()
    if current is None:
        return None
    due = effective_due_date(current, history)
    renewals = renewal_count(current, history)
    return {
        "status": "issued",
        "issued_at": to_iso(current.transaction_date),
        "due_date": to_iso(due) if due else None,
        "renewal_count": renewals,
        "renewals_left": max(0, settings.max_renewals - renewals),
    }


def count_active_loans() -> int:
    conn = get_db_connection()
    try:
        return len(active_issues(_load(conn, "1 = 1", ())))
    finally:
        conn.close()


# ------------------------- Roles ------------------------- #
def get_user_role(user_id: Optional[str]) -> str:
    """Role from the profile; users without a profile are students."""
    if not user_id:
        return "student"
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT role FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return row["role"] if row and row["role"] else "student"
    finally:
        conn.close()


def require_role(user_id: Optional[str], allowed: tuple) -> str:
    role = get_user_role(user_id)
    if role not in allowed:
        raise PermissionDenied(f"Role '{role}' is not allowed to perform this action.")
    return role


def update_user_role(acting_user_id: str, target_user_id: str, new_role: str) -> Dict[str, Any]:
    """Change a user's role. Only admins may do this."""
    require_role(acting_user_id, ("admin",))
    new_role = (new_role or "").strip().lower()
    if new_role not in ROLES:
        raise ValueError(f"Invalid role '{new_role}'. Allowed: {', '.join(ROLES)}")

    conn = get_db_connection()
    try:
        conn.execute(
            "INSERT INTO profiles (id, role, created_at) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET role = excluded.role",
            (target_user_id, new_role, now_iso()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (target_user_id,)).fetchone()
        logger.info(f"Role of {target_user_id} set to {new_role} by {acting_user_id}")
        return dict(row)
    finally:
        conn.close()


def get_all_transactions(acting_user_id: str) -> List[Transaction]:
    """Every transaction in the library, newest first. Staff only."""
    require_role(acting_user_id, STAFF_ROLES)
    conn = get_db_connection()
    try:
        return _load(conn, "1 = 1", ())
    finally:
        conn.close()
