from __future__ import annotations

from enum import Enum


class CopyStatus(str, Enum):
    AVAILABLE = "Available"
    ISSUED = "Issued"
    LOST = "Lost"
    DAMAGED = "Damaged"


class Book:
    """Represents a catalog title and its copy counters."""

    def __init__(self, title: str, author: str, isbn: str, department: str,
                 total_copies: int = 0, available_copies: int = 0, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.department = department.strip().upper()
        self.total_copies = total_copies
        self.available_copies = available_copies
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "department": self.department,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            department=data["department"],
            total_copies=data.get("total_copies") or 0,
            available_copies=data.get("available_copies") or 0,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class BookCopy:
    """A physical copy of a Book, identified by its copy number (ISBN-n)."""

    def __init__(self, book_id: int, copy_number: str, status: str = CopyStatus.AVAILABLE.value,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.copy_number = copy_number
        self.status = CopyStatus(status).value
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.copy_number} [{self.status}]"

    @property
    def is_available(self) -> bool:
        return self.status == CopyStatus.AVAILABLE.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "copy_number": self.copy_number,
            "status": self.status,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "BookCopy":
        return BookCopy(
            id=data.get("id"),
            book_id=data["book_id"],
            copy_number=data["copy_number"],
            status=data.get("status") or CopyStatus.AVAILABLE.value,
            created_at=data.get("created_at"),
        )
