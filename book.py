from __future__ import annotations

from database import new_id


class Book:
    """A title in the catalogue. ``count`` is the number of physical copies."""

    def __init__(self, title: str, author: str | None = None, isbn: str | None = None,
                 id: str | None = None, genre: str | None = None, description: str | None = None,
                 count: int = 1, cover_image_url: str | None = None, created_at: str | None = None) -> None:
        self.id = id or new_id()
        self.title = (title or "").strip()
        self.author = author.strip() if author else None
        self.isbn = isbn.strip() if isbn else None
        self.genre = genre.strip() if genre else None
        self.description = description.strip() if description else None
        self.count = int(count) if count is not None else 1
        self.cover_image_url = cover_image_url
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author or 'Unknown'}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "count": self.count,
            "cover_image_url": self.cover_image_url,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data.get("title", ""),
            author=data.get("author"),
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            description=data.get("description"),
            count=data.get("count") or 1,
            cover_image_url=data.get("cover_image_url"),
            created_at=data.get("created_at"),
        )
