from __future__ import annotations

from database import new_id


class Resource:
    """A digital resource (PDF) that can be read without borrowing."""

    def __init__(self, name: str, author: str | None = None, description: str | None = None,
                 id: str | None = None, filename: str | None = None, filepath: str | None = None,
                 size: int | None = None, flipbook_url: str | None = None,
                 cover_image_url: str | None = None, uploaded_by: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id or new_id()
        self.name = (name or "").strip()
        self.author = author.strip() if author else None
        self.description = description.strip() if description else None
        self.filename = filename
        self.filepath = filepath
        self.size = size
        self.flipbook_url = flipbook_url.strip() if flipbook_url else None
        self.cover_image_url = cover_image_url
        self.uploaded_by = uploaded_by
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} by {self.author or 'Unknown'}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "description": self.description,
            "filename": self.filename,
            "filepath": self.filepath,
            "size": self.size,
            "flipbook_url": self.flipbook_url,
            "cover_image_url": self.cover_image_url,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Resource":
        return Resource(**{k: data.get(k) for k in (
            "id", "name", "author", "description", "filename", "filepath", "size",
            "flipbook_url", "cover_image_url", "uploaded_by", "created_at",
        )})
