import os
import sys
import sqlite3
import tempfile
import uuid
from datetime import datetime, timezone
from typing import Optional

from config import settings  # loads .env before DATABASE_FILE is resolved

# Resolution order:
# 1) LIBRARY_DB_FILE (explicit override, used by tests)
# 2) LIBRARY_DATA_FILE (.env)
# 3) per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.environ.get("LIBRARY_DATA_FILE")
    or os.path.join(tempfile.gettempdir(), f"libralink_{os.getpid()}.db")
)

ROLES = ("admin", "librarian", "student")
ACTIONS = ("issue", "return", "renew")


def _running_under_pytest() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST")) or "pytest" in sys.modules


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database with Row access and foreign keys on."""
    conn = sqlite3.connect(DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    if not _running_under_pytest():
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


def new_id() -> str:
    return str(uuid.uuid4())


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def now_iso(now: Optional[datetime] = None) -> str:
    return to_iso(now or datetime.now(timezone.utc))


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # SQLite CURRENT_TIMESTAMP uses a space separator
    text = text.replace(" ", "T", 1)
    return to_utc(datetime.fromisoformat(text))


def create_tables() -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT,
            isbn TEXT,
            genre TEXT,
            description TEXT,
            count INTEGER NOT NULL DEFAULT 1 CHECK(count >= 1),
            cover_image_url TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # PDF resources
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            author TEXT,
            description TEXT,
            filename TEXT,
            filepath TEXT,
            size INTEGER,
            flipbook_url TEXT,
            cover_image_url TEXT,
            uploaded_by TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            email TEXT,
            username TEXT,
            role TEXT NOT NULL DEFAULT 'student' CHECK(role IN ('admin', 'librarian', 'student')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            action TEXT NOT NULL CHECK(action IN ('issue', 'return', 'renew')),
            transaction_date TEXT NOT NULL,
            due_date TEXT,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_ratings (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            rating INTEGER NOT NULL CHECK(rating >= 1 AND rating <= 5),
            comment TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS bookmarks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, book_id),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    # LLM usage tracking
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS api_usage_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            api_name TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            success BOOLEAN NOT NULL,
            response_time_ms INTEGER,
            characters_used INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Migrations for databases created before these columns existed
    cursor.execute("PRAGMA table_info(books)")
    book_columns = [column[1] for column in cursor.fetchall()]
    if "genre" not in book_columns:
        cursor.execute("ALTER TABLE books ADD COLUMN genre TEXT")
    if "cover_image_url" not in book_columns:
        cursor.execute("ALTER TABLE books ADD COLUMN cover_image_url TEXT")

    cursor.execute("PRAGMA table_info(documents)")
    document_columns = [column[1] for column in cursor.fetchall()]
    if "flipbook_url" not in document_columns:
        cursor.execute("ALTER TABLE documents ADD COLUMN flipbook_url TEXT")
    if "cover_image_url" not in document_columns:
        cursor.execute("ALTER TABLE documents ADD COLUMN cover_image_url TEXT")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_name ON documents(name)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON book_transactions(user_id, transaction_date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book ON book_transactions(book_id, transaction_date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_ratings_book ON book_ratings(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_bookmarks_user ON bookmarks(user_id, created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_logs_api_name ON api_usage_logs(api_name)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_logs_created_at ON api_usage_logs(created_at)")

    conn.commit()
    conn.close()


def seed_admins(user_ids) -> int:
    """Give the admin role to each listed user, creating profiles as needed."""
    if not user_ids:
        return 0
    conn = get_db_connection()
    try:
        for user_id in user_ids:
            conn.execute(
                "INSERT INTO profiles (id, role, created_at) VALUES (?, 'admin', ?) "
                "ON CONFLICT(id) DO UPDATE SET role = 'admin'",
                (user_id, now_iso()),
            )
        conn.commit()
    finally:
        conn.close()
    return len(user_ids)


def initialize_database() -> None:
    """Create tables if needed and seed the configured admins."""
    create_tables()
    seed_admins(settings.admin_user_ids)
