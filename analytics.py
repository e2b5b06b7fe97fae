"""Admin dashboard aggregates: borrow trend, popular books and active readers."""

from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from database import to_utc
from transactions import Transaction, user_label

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def monthly_borrow_trend(transactions: List[Transaction], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Issues per month over the last 365 days, oldest month first."""
    current = to_utc(now) if now else datetime.now(timezone.utc)
    since = current - timedelta(days=365)
    months: Dict[str, Dict[str, Any]] = {}
    for t in transactions:
        if t.action != "issue" or t.transaction_date < since:
            continue
        date = t.transaction_date
        key = f"{date.year}-{date.month:02d}"
        if key not in months:
            months[key] = {"month": f"{MONTH_NAMES[date.month - 1]} {date.year}", "borrows": 0}
        months[key]["borrows"] += 1
    return [months[key] for key in sorted(months)]


def top_books(transactions: List[Transaction], books: Dict[str, Dict[str, Any]],
              limit: int = 10) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = {}
    for t in transactions:
        if t.action != "issue":
            continue
        title = (books.get(t.book_id) or {}).get("title") or "Unknown Book"
        counts[title] = counts.get(title, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [{"title": _truncate(title, 30), "borrows": borrows} for title, borrows in ranked]


def most_active_users(transactions: List[Transaction], users: Dict[str, Dict[str, Any]],
                      limit: int = 10) -> List[Dict[str, Any]]:
    counts: Dict[str, Dict[str, Any]] = {}
    for t in transactions:
        if t.action != "issue":
            continue
        label = user_label(t.user_id, users)
        entry = counts.setdefault(label, {"borrows": 0, "userId": t.user_id})
        entry["borrows"] += 1
    ranked = sorted(counts.items(), key=lambda item: item[1]["borrows"], reverse=True)[:limit]
    return [
        {
            "username": _truncate(label, 15),
            "borrows": data["borrows"],
            "userId": data["userId"][:8],
        }
        for label, data in ranked
    ]


def dashboard(transactions: List[Transaction], books: Dict[str, Dict[str, Any]],
              users: Dict[str, Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "monthlyBorrowTrend": monthly_borrow_trend(transactions, now),
        "topBooks": top_books(transactions, books),
        "mostActiveUsers": most_active_users(transactions, users),
    }
