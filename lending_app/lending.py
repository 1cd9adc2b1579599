"""Borrowing and returning books.

``LendingEngine`` owns the rules that decide whether a borrow may succeed
and drives a loan from creation to return. A borrow is a read-check-write
over shared state, so the whole sequence runs under per-user and per-book
locks and inside one ``BEGIN IMMEDIATE`` transaction: the checks and the
insert commit together or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import Settings, settings
from .database import Database
from .errors import (
    AlreadyReturned,
    BookNotFound,
    BookUnavailable,
    DuplicateActiveLoan,
    InvalidPagination,
    LendingError,
    LoanNotFound,
    NotOwner,
    WeeklyLimitExceeded,
)
from .locks import KeyedLock
from .models import LoanRecord, Page, utcnow
from .repositories import StoreSession

logger = logging.getLogger(__name__)


class AvailabilityCalculator:
    """Borrowable copies of a book: quantity owned minus active loans."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def available(self, book_id: int) -> int:
        with self.database.connect() as conn:
            return self.compute(StoreSession(conn), book_id)

    @staticmethod
    def compute(store: StoreSession, book_id: int) -> int:
        """Compute availability through an already open unit of work."""
        available = store.books.available(book_id)
        if available is None:
            raise BookNotFound(f"Book {book_id} not found")
        return available


class LendingEngine:
    def __init__(
        self,
        database: Database,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.database = database
        self.config = config or settings
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.availability = AvailabilityCalculator(database)

    # ------------------------- Core operations ------------------------- #
    def borrow_book(self, user_id: int, book_id: int) -> LoanRecord:
        """Create an active loan of ``book_id`` for ``user_id``.

        Checks run in this order and the first failure wins: the book
        exists, the user holds no active loan of it, the user borrowed fewer
        than the weekly limit in the trailing window, and a copy is free.
        """
        try:
            with self.locks.hold(("user", user_id), ("book", book_id)):
                with self.database.transaction() as conn:
                    record = self._borrow(StoreSession(conn), user_id, book_id)
        except LendingError as e:
            logger.info(f"Borrow rejected: user={user_id} book={book_id} reason={e.code}")
            raise
        logger.info(f"Book borrowed: record={record.id} user={user_id} book={book_id}")
        return record

    def _borrow(self, store: StoreSession, user_id: int, book_id: int) -> LoanRecord:
        now = self.clock()
        if store.books.get(book_id) is None:
            raise BookNotFound(f"Book {book_id} not found")

        if store.loans.find_active(user_id, book_id) is not None:
            raise DuplicateActiveLoan()

        limit = self.config.weekly_borrow_limit
        window = self.config.borrow_window_days
        since = now - timedelta(days=window)
        if store.loans.count_since(user_id, since) >= limit:
            period = "week" if window == 7 else f"{window} days"
            raise WeeklyLimitExceeded(f"Borrowing limit exceeded: maximum {limit} books per {period}")

        if AvailabilityCalculator.compute(store, book_id) <= 0:
            raise BookUnavailable()

        record = store.loans.create(LoanRecord(book_id=book_id, user_id=user_id, borrowed_at=now))
        return store.loans.get(record.id)

    def return_book(self, user_id: int, record_id: int) -> LoanRecord:
        """Close the loan ``record_id``; only its borrower may do so, and only once."""
        try:
            with self.locks.hold(("loan", record_id)):
                with self.database.transaction() as conn:
                    record = self._return(StoreSession(conn), user_id, record_id)
        except LendingError as e:
            logger.info(f"Return rejected: user={user_id} record={record_id} reason={e.code}")
            raise
        logger.info(f"Book returned: record={record_id} user={user_id} book={record.book_id}")
        return record

    def _return(self, store: StoreSession, user_id: int, record_id: int) -> LoanRecord:
        record = store.loans.get(record_id)
        if record is None:
            raise LoanNotFound()
        if record.user_id != user_id:
            raise NotOwner()
        if record.returned_at is not None:
            raise AlreadyReturned()

        record.returned_at = self.clock()
        if not store.loans.update(record):
            raise AlreadyReturned()
        return record

    # ------------------------- Queries ------------------------- #
    def get_user_borrowing_history(self, user_id: int, page: int = 1, page_size: Optional[int] = None) -> Page[LoanRecord]:
        """All of the user's loans, newest borrow first, one page at a time."""
        if page_size is None:
            page_size = self.config.default_page_size
        if page < 1 or page_size < 1:
            raise InvalidPagination()
        page_size = min(page_size, self.config.max_page_size)

        offset = (page - 1) * page_size
        with self.database.transaction(immediate=False) as conn:
            records, total = StoreSession(conn).loans.list_history(user_id, offset, page_size)
        return Page(items=records, total=total, page=page, page_size=page_size)

    def get_active_borrowings(self, user_id: int) -> List[LoanRecord]:
        with self.database.connect() as conn:
            return StoreSession(conn).loans.list_active(user_id)

    def available(self, book_id: int) -> int:
        return self.availability.available(book_id)
