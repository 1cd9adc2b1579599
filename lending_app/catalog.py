import logging
from typing import Any, List, Optional, Tuple

from .config import Settings, settings
from .database import Database
from .errors import (
    BookHasLoans,
    BookNotFound,
    DuplicateISBN,
    InvalidBookData,
    InvalidPagination,
    QuantityBelowActiveLoans,
)
from .models import Book, Page
from .repositories import StoreSession
from .utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "author", "isbn", "quantity", "category")


class Catalog:
    """Manages the book inventory: what titles exist and how many copies are owned."""

    def __init__(self, database: Database, config: Optional[Settings] = None) -> None:
        self.database = database
        self.config = config or settings

    # ------------------------- Validation ------------------------- #
    @staticmethod
    def _clean_isbn(isbn: Optional[str]) -> str:
        normalized = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(normalized):
            raise InvalidBookData(f"Invalid ISBN: {isbn!r}")
        return normalized

    @staticmethod
    def _clean_text(field: str, value: Optional[str]) -> str:
        # validate what will be stored, not the raw input
        cleaned = TextValidator.sanitize_text(value)
        if field == "title":
            valid = TextValidator.validate_title(cleaned)
        elif field == "author":
            valid = TextValidator.validate_author(cleaned)
        else:
            valid = TextValidator.is_non_empty(cleaned)
        if not valid:
            raise InvalidBookData(f"Invalid {field}: {value!r}")
        return cleaned

    @staticmethod
    def _clean_quantity(quantity: Any, minimum: int) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < minimum:
            raise InvalidBookData(f"quantity must be an integer >= {minimum}")
        return quantity

    # ------------------------- Core operations ------------------------- #
    def create_book(self, title: str, author: str, isbn: str, quantity: int, category: str) -> Book:
        book = Book(
            title=self._clean_text("title", title),
            author=self._clean_text("author", author),
            isbn=self._clean_isbn(isbn),
            quantity=self._clean_quantity(quantity, 1),
            category=self._clean_text("category", category),
        )
        with self.database.transaction() as conn:
            store = StoreSession(conn)
            if store.books.get_by_isbn(book.isbn) is not None:
                raise DuplicateISBN()
            store.books.create(book)
        logger.info(f"Book added: id={book.id} isbn={book.isbn} quantity={book.quantity}")
        return book

    def get_book(self, book_id: int) -> Book:
        with self.database.connect() as conn:
            book = StoreSession(conn).books.get(book_id)
        if book is None:
            raise BookNotFound(f"Book {book_id} not found")
        return book

    def get_book_by_isbn(self, isbn: str) -> Book:
        normalized = ISBNValidator.normalize_isbn(isbn)
        with self.database.connect() as conn:
            book = StoreSession(conn).books.get_by_isbn(normalized)
        if book is None:
            raise BookNotFound(f"Book with ISBN {isbn} not found")
        return book

    def get_book_with_availability(self, book_id: int) -> Tuple[Book, int]:
        with self.database.transaction(immediate=False) as conn:
            store = StoreSession(conn)
            book = store.books.get(book_id)
            if book is None:
                raise BookNotFound(f"Book {book_id} not found")
            return book, book.quantity - store.books.count_active_loans(book_id)

    def update_book(self, book_id: int, **changes: Any) -> Book:
        """Apply a partial update. Fields left out (or None) keep their value."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidBookData(f"Unknown fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None}

        with self.database.transaction() as conn:
            store = StoreSession(conn)
            book = store.books.get(book_id)
            if book is None:
                raise BookNotFound(f"Book {book_id} not found")

            if "isbn" in changes:
                isbn = self._clean_isbn(changes["isbn"])
                if isbn != book.isbn:
                    if store.books.get_by_isbn(isbn) is not None:
                        raise DuplicateISBN()
                    book.isbn = isbn
            for field in ("title", "author", "category"):
                if field in changes:
                    setattr(book, field, self._clean_text(field, changes[field]))
            if "quantity" in changes:
                quantity = self._clean_quantity(changes["quantity"], 0)
                # availability must stay within [0, quantity]
                if quantity < store.books.count_active_loans(book_id):
                    raise QuantityBelowActiveLoans()
                book.quantity = quantity

            store.books.update(book)
        logger.info(f"Book updated: id={book_id} fields={sorted(changes)}")
        return book

    def delete_book(self, book_id: int) -> None:
        with self.database.transaction() as conn:
            store = StoreSession(conn)
            if store.books.get(book_id) is None:
                raise BookNotFound(f"Book {book_id} not found")
            # lending records are never deleted, so neither is a book they point to
            if store.books.count_loans(book_id) > 0:
                raise BookHasLoans()
            store.books.delete(book_id)
        logger.info(f"Book deleted: id={book_id}")

    def list_books(self, page: int = 1, page_size: Optional[int] = None) -> Page[Tuple[Book, int]]:
        """Books ordered by id, each paired with its current availability."""
        if page_size is None:
            page_size = self.config.default_page_size
        if page < 1 or page_size < 1:
            raise InvalidPagination()
        page_size = min(page_size, self.config.max_page_size)

        with self.database.transaction(immediate=False) as conn:
            rows, total = StoreSession(conn).books.list((page - 1) * page_size, page_size)
        items: List[Tuple[Book, int]] = [(book, book.quantity - active) for book, active in rows]
        return Page(items=items, total=total, page=page, page_size=page_size)
