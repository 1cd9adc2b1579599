from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, TypeVar


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as UTC ISO-8601 text; the stored form sorts chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Book:
    """A title in the shared inventory together with the number of copies owned."""
    title: str
    author: str
    isbn: str
    quantity: int
    category: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "quantity": self.quantity,
            "category": self.category,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            quantity=int(data["quantity"]),
            category=data["category"],
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class User:
    """A registered borrower. ``password_hash`` is never part of ``to_dict``."""
    email: str
    password_hash: str = field(repr=False)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class LoanRecord:
    """One borrowing of one book by one user.

    A record is active until ``returned_at`` is set. ``book`` and ``user`` are
    optional joined views used for display only.
    """
    book_id: int
    user_id: int
    borrowed_at: datetime
    returned_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    book: Optional[Book] = None
    user: Optional[User] = None

    @property
    def is_active(self) -> bool:
        return self.returned_at is None

    @property
    def status(self) -> str:
        return "BORROWED" if self.is_active else "RETURNED"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "borrow_date": format_timestamp(self.borrowed_at),
            "return_date": format_timestamp(self.returned_at),
            "status": self.status,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "book": self.book.to_dict() if self.book else None,
            "user": self.user.to_dict() if self.user else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "LoanRecord":
        return LoanRecord(
            id=data.get("id"),
            book_id=int(data["book_id"]),
            user_id=int(data["user_id"]),
            borrowed_at=parse_timestamp(data["borrowed_at"]),
            returned_at=parse_timestamp(data.get("returned_at")),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """A slice of a larger ordered result set."""
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size > 0 else 0
