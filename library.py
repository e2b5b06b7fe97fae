import logging
import os
import re
import sqlite3
import time
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

import analytics
import circulation
import database
from book import Book
from cache_manager import cache_manager
from config import settings
from database import get_db_connection, initialize_database, new_id, now_iso
from resources import Resource
from transactions import Transaction, active_issues

logger = logging.getLogger(__name__)

BOOK_COLUMNS = "id, title, author, isbn, genre, description, count, cover_image_url, created_at"
RESOURCE_COLUMNS = ("id, name, author, description, filename, filepath, size, flipbook_url, "
                    "cover_image_url, uploaded_by, created_at")
BOOK_FIELDS = ("title", "author", "isbn", "genre", "description", "count", "cover_image_url")
RESOURCE_FIELDS = ("name", "author", "description", "flipbook_url", "cover_image_url")

ANALYTICS_CACHE_PREFIX = "analytics:"


class Library:
    """Catalogue, circulation, ratings, bookmarks and profiles over one SQLite file."""

    def __init__(self, db_file: Optional[str] = None, storage_dir: Optional[str] = None) -> None:
        # database.py helpers read database.DATABASE_FILE, so point it at the requested file
        if db_file:
            database.DATABASE_FILE = db_file
        elif os.environ.get("LIBRARY_DB_FILE"):
            database.DATABASE_FILE = os.environ["LIBRARY_DB_FILE"]
        self.storage_dir = storage_dir or os.environ.get("LIBRARY_STORAGE_DIR") or settings.storage_dir
        initialize_database()

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Insert a book. Titles are required and ISBNs must be unique."""
        if not book.title:
            raise ValueError("Title is required.")
        if book.count is None or book.count < 1:
            raise ValueError("Count must be at least 1.")
        book.isbn = self._normalize_isbn(book.isbn) or None
        if book.isbn and self.find_book_by_isbn(book.isbn):
            raise ValueError(f"Book with ISBN {book.isbn} already exists.")

        book.created_at = book.created_at or now_iso()
        conn = get_db_connection()
        try:
            conn.execute(
                f"INSERT INTO books ({BOOK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.id, book.title, book.author, book.isbn, book.genre, book.description,
                 book.count, book.cover_image_url, book.created_at),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book {book.id} could not be added: {e}") from e
        finally:
            conn.close()
        logger.info(f"Added book {book.id} ({book.title})")
        return book

    def find_book(self, book_id: str) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = self._normalize_isbn(isbn)
        if not norm:
            return None
        conn = get_db_connection()
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_book_by_title(self, fragment: str) -> Optional[Book]:
        """First book whose title contains the fragment, case-insensitively."""
        if not fragment or not fragment.strip():
            return None
        conn = get_db_connection()
        try:
            row = conn.execute(
                f"SELECT {BOOK_COLUMNS} FROM books WHERE title LIKE ? ORDER BY title LIMIT 1",
                (f"%{fragment.strip()}%",),
            ).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_books(self) -> List[Book]:
        conn = get_db_connection()
        try:
            rows = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def search_books(self, query: str, limit: Optional[int] = None) -> List[Book]:
        """Search title, author and description."""
        pattern = f"%{(query or '').strip()}%"
        sql = (f"SELECT {BOOK_COLUMNS} FROM books "
               "WHERE title LIKE ? OR author LIKE ? OR description LIKE ? ORDER BY title")
        params: Tuple = (pattern, pattern, pattern)
        if limit:
            sql += " LIMIT ?"
            params += (limit,)
        conn = get_db_connection()
        try:
            return [Book.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def update_book(self, book_id: str, **fields) -> Optional[Book]:
        """Update the given fields of a book. Returns the updated book or None if not found."""
        changes = {k: v for k, v in fields.items() if k in BOOK_FIELDS and v is not None}
        if not changes:
            raise ValueError(f"Nothing to update. Provide one of: {', '.join(BOOK_FIELDS)}")
        book = self.find_book(book_id)
        if not book:
            return None

        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValueError("Title cannot be empty.")
        if "count" in changes:
            changes["count"] = int(changes["count"])
            if changes["count"] < 1:
                raise ValueError("Count must be at least 1.")
        if "isbn" in changes:
            changes["isbn"] = self._normalize_isbn(changes["isbn"]) or None
            existing = self.find_book_by_isbn(changes["isbn"]) if changes["isbn"] else None
            if existing and existing.id != book_id:
                raise ValueError(f"Book with ISBN {changes['isbn']} already exists.")

        assignments = ", ".join(f"{column} = ?" for column in changes)
        conn = get_db_connection()
        try:
            conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*changes.values(), book_id))
            conn.commit()
        finally:
            conn.close()
        self._invalidate_analytics()
        return self.find_book(book_id)

    def remove_book(self, book_id: str) -> bool:
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            self._invalidate_analytics()
            logger.info(f"Removed book {book_id}")
        return removed

    def list_books_with_status(self, books: Optional[List[Book]] = None) -> List[Dict[str, Any]]:
        """Books as dicts with availability and rating summary attached."""
        books = self.list_books() if books is None else books
        conn = get_db_connection()
        try:
            loans = self._load_transactions(conn)
            ratings = {
                row["book_id"]: (row["avg_rating"], row["rating_count"])
                for row in conn.execute(
                    "SELECT book_id, AVG(rating) AS avg_rating, COUNT(*) AS rating_count "
                    "FROM book_ratings GROUP BY book_id"
                ).fetchall()
            }
        finally:
            conn.close()

        out_on_loan: Dict[str, int] = {}
        for t in active_issues(loans):
            out_on_loan[t.book_id] = out_on_loan.get(t.book_id, 0) + 1

        result = []
        for book in books:
            data = book.to_dict()
            avg_rating, rating_count = ratings.get(book.id, (None, 0))
            data["available"] = out_on_loan.get(book.id, 0) < (book.count or 1)
            data["averageRating"] = round(avg_rating, 1) if avg_rating is not None else None
            data["ratingCount"] = rating_count
            result.append(data)
        return result

    def get_top_books(self, limit: int = 20) -> List[Book]:
        """Books ordered by how often they were issued, most popular first."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT b.id, b.title, b.author, b.isbn, b.genre, b.description, b.count,
                       b.cover_image_url, b.created_at,
                       COUNT(t.id) AS borrows
                FROM books b
                LEFT JOIN book_transactions t ON t.book_id = b.id AND t.action = 'issue'
                GROUP BY b.id
                ORDER BY borrows DESC, b.title
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [Book.from_dict(dict(row)) for row in rows]

    # ------------------------- Resources ------------------------- #
    def add_resource(self, resource: Resource) -> Resource:
        if not resource.name:
            raise ValueError("Resource name is required.")
        resource.created_at = resource.created_at or now_iso()
        conn = get_db_connection()
        try:
            conn.execute(
                f"INSERT INTO documents ({RESOURCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (resource.id, resource.name, resource.author, resource.description, resource.filename,
                 resource.filepath, resource.size, resource.flipbook_url, resource.cover_image_url,
                 resource.uploaded_by, resource.created_at),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Added resource {resource.id} ({resource.name})")
        return resource

    def find_resource(self, resource_id: str) -> Optional[Resource]:
        conn = get_db_connection()
        try:
            row = conn.execute(f"SELECT {RESOURCE_COLUMNS} FROM documents WHERE id = ?", (resource_id,)).fetchone()
            return Resource.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_resource_by_name(self, fragment: str) -> Optional[Resource]:
        if not fragment or not fragment.strip():
            return None
        conn = get_db_connection()
        try:
            row = conn.execute(
                f"SELECT {RESOURCE_COLUMNS} FROM documents WHERE name LIKE ? ORDER BY name LIMIT 1",
                (f"%{fragment.strip()}%",),
            ).fetchone()
            return Resource.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_resources(self) -> List[Resource]:
        conn = get_db_connection()
        try:
            rows = conn.execute(f"SELECT {RESOURCE_COLUMNS} FROM documents ORDER BY created_at DESC").fetchall()
            return [Resource.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def search_resources(self, query: str, limit: Optional[int] = 10) -> List[Resource]:
        """Search name, description, author and filename."""
        pattern = f"%{(query or '').strip()}%"
        sql = (f"SELECT {RESOURCE_COLUMNS} FROM documents "
               "WHERE name LIKE ? OR description LIKE ? OR author LIKE ? OR filename LIKE ? "
               "ORDER BY name")
        params: Tuple = (pattern, pattern, pattern, pattern)
        if limit:
            sql += " LIMIT ?"
            params += (limit,)
        conn = get_db_connection()
        try:
            return [Resource.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def update_resource(self, resource_id: str, **fields) -> Optional[Resource]:
        changes = {k: v for k, v in fields.items() if k in RESOURCE_FIELDS and v is not None}
        if not changes:
            raise ValueError(f"Nothing to update. Provide one of: {', '.join(RESOURCE_FIELDS)}")
        if "name" in changes and not changes["name"].strip():
            raise ValueError("Resource name cannot be empty.")
        if not self.find_resource(resource_id):
            return None

        assignments = ", ".join(f"{column} = ?" for column in changes)
        conn = get_db_connection()
        try:
            conn.execute(f"UPDATE documents SET {assignments} WHERE id = ?", (*changes.values(), resource_id))
            conn.commit()
        finally:
            conn.close()
        return self.find_resource(resource_id)

    def remove_resource(self, resource_id: str) -> bool:
        """Delete a resource and its stored file."""
        resource = self.find_resource(resource_id)
        if not resource:
            return False
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM documents WHERE id = ?", (resource_id,))
            conn.commit()
        finally:
            conn.close()

        self.discard_resource_file(resource.filepath)
        logger.info(f"Removed resource {resource_id}")
        return True

    def store_resource_file(self, filename: str, content: bytes) -> Tuple[str, str]:
        """Write an uploaded PDF under the storage directory.

        Returns the stored file name and its path relative to the storage directory.
        """
        original = os.path.basename(filename or "")
        extension = os.path.splitext(original)[1].lower()
        if extension not in settings.allowed_resource_extensions:
            raise ValueError(f"Only {', '.join(settings.allowed_resource_extensions)} files are allowed.")
        if not content:
            raise ValueError("Uploaded file is empty.")
        if len(content) > settings.max_upload_size:
            raise ValueError(f"File exceeds the maximum size of {settings.max_upload_size} bytes.")

        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", original)
        stored_name = f"{int(time.time() * 1000)}_{safe_name}"
        relative_path = f"resources/{stored_name}"
        target = os.path.join(self.storage_dir, "resources")
        os.makedirs(target, exist_ok=True)
        with open(os.path.join(target, stored_name), "wb") as fh:
            fh.write(content)
        return stored_name, relative_path

    def resource_file_path(self, resource: Resource) -> Optional[str]:
        if not resource.filepath:
            return None
        return os.path.join(self.storage_dir, resource.filepath)

    def discard_resource_file(self, relative_path: Optional[str]) -> None:
        """Delete a stored file; a missing file is ignored."""
        if not relative_path:
            return
        path = os.path.join(self.storage_dir, relative_path)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not delete stored file {relative_path}: {e}")

    # ------------------------- Circulation ------------------------- #
    def is_book_available(self, book_id: str) -> bool:
        return circulation.is_book_available(book_id)

    def issue_book(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
        self._require_book(book_id)
        ok = circulation.issue_book(user_id, book_id, now)
        if ok:
            self._invalidate_analytics()
        return ok

    def return_book(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
        self._require_book(book_id)
        ok = circulation.return_book(user_id, book_id, now)
        if ok:
            self._invalidate_analytics()
        return ok

    def renew_book(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> bool:
        self._require_book(book_id)
        ok = circulation.renew_book(user_id, book_id, now)
        if ok:
            self._invalidate_analytics()
        return ok

    def get_book_status(self, user_id: str, book_id: str) -> Dict[str, Any]:
        """Loan status of a book for one user plus overall availability."""
        self._require_book(book_id)
        loan = circulation.get_active_loan(user_id, book_id) or {
            "status": "available",
            "issued_at": None,
            "due_date": None,
            "renewal_count": 0,
            "renewals_left": 0,
        }
        loan["available"] = circulation.is_book_available(book_id)
        return loan

    # ------------------------- Transactions ------------------------- #
    def get_user_transactions(self, user_id: str) -> List[Transaction]:
        conn = get_db_connection()
        try:
            return self._load_transactions(conn, "user_id = ?", (user_id,))
        finally:
            conn.close()

    def get_all_transactions(self, acting_user_id: str) -> List[Transaction]:
        return circulation.get_all_transactions(acting_user_id)

    def get_recent_issued_books(self, user_id: str, limit: int = 5) -> List[Book]:
        """Most recently issued distinct books of a user."""
        seen = []
        for t in self.get_user_transactions(user_id):
            if t.action == "issue" and t.book_id not in seen:
                seen.append(t.book_id)
            if len(seen) >= limit:
                break
        books = [self.find_book(book_id) for book_id in seen]
        return [b for b in books if b]

    def get_dashboard(self, acting_user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Admin analytics, cached until the next circulation write."""
        transactions = self.get_all_transactions(acting_user_id)
        cache_key = f"{ANALYTICS_CACHE_PREFIX}{database.DATABASE_FILE}"
        if now is None:
            cached = cache_manager.get(cache_key)
            if cached is not None:
                return cached
        result = analytics.dashboard(transactions, self.books_index(), self.profiles_index(), now)
        if now is None:
            cache_manager.set(cache_key, result)
        return result

    def books_index(self) -> Dict[str, Dict[str, Any]]:
        return {b.id: b.to_dict() for b in self.list_books()}

    def profiles_index(self) -> Dict[str, Dict[str, Any]]:
        return {p["id"]: p for p in self.list_profiles()}

    # ------------------------- Ratings ------------------------- #
    def rate_book(self, user_id: str, book_id: str, rating: int, comment: Optional[str] = None) -> Dict[str, Any]:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("Rating must be an integer between 1 and 5.")
        self._require_book(book_id)
        entry = {
            "id": new_id(),
            "book_id": book_id,
            "user_id": user_id,
            "rating": rating,
            "comment": comment.strip() if comment and comment.strip() else None,
            "created_at": now_iso(),
        }
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT INTO book_ratings (id, book_id, user_id, rating, comment, created_at) "
                "VALUES (:id, :book_id, :user_id, :rating, :comment, :created_at)",
                entry,
            )
            conn.commit()
        finally:
            conn.close()
        return entry

    def get_book_ratings(self, book_id: str) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT id, book_id, user_id, rating, comment, created_at FROM book_ratings "
                "WHERE book_id = ? ORDER BY created_at DESC",
                (book_id,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_rating_summary(self, book_id: str) -> Dict[str, Any]:
        ratings = [r["rating"] for r in self.get_book_ratings(book_id)]
        if not ratings:
            return {"averageRating": None, "ratingCount": 0}
        return {"averageRating": round(sum(ratings) / len(ratings), 1), "ratingCount": len(ratings)}

    # ------------------------- Bookmarks ------------------------- #
    def add_bookmark(self, user_id: str, book_id: str) -> Dict[str, Any]:
        """Bookmark a book. Bookmarking twice returns the existing bookmark."""
        self._require_book(book_id)
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO bookmarks (id, user_id, book_id, created_at) VALUES (?, ?, ?, ?)",
                (new_id(), user_id, book_id, now_iso()),
            )
            conn.commit()
            row = conn.execute(
                "SELECT id, user_id, book_id, created_at FROM bookmarks WHERE user_id = ? AND book_id = ?",
                (user_id, book_id),
            ).fetchone()
            return dict(row)
        finally:
            conn.close()

    def remove_bookmark(self, user_id: str, book_id: str) -> bool:
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM bookmarks WHERE user_id = ? AND book_id = ?", (user_id, book_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def is_bookmarked(self, user_id: str, book_id: str) -> bool:
        return book_id in self.get_bookmark_status_map(user_id, [book_id])

    def get_user_bookmarks(self, user_id: str) -> List[Dict[str, Any]]:
        """Bookmarks newest first, each with its book and rating summary."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT id, user_id, book_id, created_at FROM bookmarks WHERE user_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()

        bookmarks = []
        for row in rows:
            book = self.find_book(row["book_id"])
            if not book:
                continue
            entry = dict(row)
            entry["book"] = book.to_dict()
            entry.update(self.get_rating_summary(book.id))
            bookmarks.append(entry)
        return bookmarks

    def get_bookmark_status_map(self, user_id: str, book_ids: List[str]) -> Dict[str, str]:
        """Map each bookmarked id in ``book_ids`` to its bookmark id."""
        if not book_ids:
            return {}
        placeholders = ", ".join("?" for _ in book_ids)
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT id, book_id FROM bookmarks WHERE user_id = ? AND book_id IN ({placeholders})",
                (user_id, *book_ids),
            ).fetchall()
            return {r["book_id"]: r["id"] for r in rows}
        finally:
            conn.close()

    # ------------------------- Profiles ------------------------- #
    def ensure_profile(self, user_id: str, email: Optional[str] = None,
                       username: Optional[str] = None) -> Dict[str, Any]:
        """Create a student profile on first sight; fill in missing email or username."""
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO profiles (id, email, username, role, created_at) VALUES (?, ?, ?, 'student', ?)",
                (user_id, email, username, now_iso()),
            )
            conn.execute(
                "UPDATE profiles SET email = COALESCE(email, ?), username = COALESCE(username, ?) WHERE id = ?",
                (email, username, user_id),
            )
            conn.commit()
            return dict(conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone())
        finally:
            conn.close()

    def list_profiles(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT id, email, username, role, created_at FROM profiles ORDER BY created_at"
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_user_role(self, user_id: Optional[str]) -> str:
        return circulation.get_user_role(user_id)

    def update_user_role(self, acting_user_id: str, target_user_id: str, new_role: str) -> Dict[str, Any]:
        profile = circulation.update_user_role(acting_user_id, target_user_id, new_role)
        self._invalidate_analytics()
        return profile

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(count), 0) FROM books")
            total_books, total_copies = cursor.fetchone()

            cursor.execute("SELECT COUNT(DISTINCT author) FROM books WHERE author IS NOT NULL")
            unique_authors = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM documents")
            total_resources = cursor.fetchone()[0]
        finally:
            conn.close()

        return {
            "total_books": total_books,
            "total_copies": total_copies,
            "unique_authors": unique_authors,
            "total_resources": total_resources,
            "active_loans": circulation.count_active_loans(),
        }

    # ------------------------- Utilities ------------------------- #
    def _require_book(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise LookupError(f"Book {book_id} not found.")
        return book

    @staticmethod
    def _load_transactions(conn: sqlite3.Connection, where: str = "1 = 1", params: Tuple = ()) -> List[Transaction]:
        rows = conn.execute(
            "SELECT id, user_id, book_id, action, transaction_date, due_date FROM book_transactions "
            f"WHERE {where} ORDER BY transaction_date DESC, rowid DESC",
            params,
        ).fetchall()
        return [Transaction.from_row(r) for r in rows]

    @staticmethod
    def _invalidate_analytics() -> None:
        cache_manager.invalidate_pattern(f"{ANALYTICS_CACHE_PREFIX}*")

    @staticmethod
    def _normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
