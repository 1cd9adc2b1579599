"""Key-addressable stores for books, lending records, users and auth tokens.

Each repository wraps one open SQLite connection. Callers decide the
transaction boundary (see ``Database.transaction``) and build a
``StoreSession`` over it, so several repositories can take part in the
same atomic unit of work.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional, Tuple

from .models import Book, LoanRecord, User, format_timestamp, parse_timestamp, utcnow

_BOOK_COLUMNS = "id, title, author, isbn, quantity, category, created_at, updated_at"
_LOAN_COLUMNS = "id, book_id, user_id, borrowed_at, returned_at, created_at, updated_at"


def _prefixed(row: sqlite3.Row, prefix: str) -> dict:
    return {key[len(prefix):]: row[key] for key in row.keys() if key.startswith(prefix)}


class BookRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, book_id: int) -> Optional[Book]:
        row = self.conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_by_isbn(self, isbn: str) -> Optional[Book]:
        row = self.conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (isbn,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def count_active_loans(self, book_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM lending_records WHERE book_id = ? AND returned_at IS NULL",
            (book_id,),
        ).fetchone()
        return int(row[0])

    def available(self, book_id: int) -> Optional[int]:
        """Quantity minus active loans, read in a single statement; None if the book is missing."""
        row = self.conn.execute(
            """
            SELECT b.quantity - (SELECT COUNT(*) FROM lending_records l
                                 WHERE l.book_id = b.id AND l.returned_at IS NULL)
            FROM books b WHERE b.id = ?
            """,
            (book_id,),
        ).fetchone()
        return int(row[0]) if row else None

    def count_loans(self, book_id: int) -> int:
        """Count every lending record for the book, returned or not."""
        row = self.conn.execute("SELECT COUNT(*) FROM lending_records WHERE book_id = ?", (book_id,)).fetchone()
        return int(row[0])

    def create(self, book: Book) -> Book:
        now = utcnow()
        cursor = self.conn.execute(
            """
            INSERT INTO books (title, author, isbn, quantity, category, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (book.title, book.author, book.isbn, book.quantity, book.category,
             format_timestamp(now), format_timestamp(now)),
        )
        book.id = cursor.lastrowid
        book.created_at = now
        book.updated_at = now
        return book

    def update(self, book: Book) -> None:
        book.updated_at = utcnow()
        self.conn.execute(
            """
            UPDATE books SET title = ?, author = ?, isbn = ?, quantity = ?, category = ?, updated_at = ?
            WHERE id = ?
            """,
            (book.title, book.author, book.isbn, book.quantity, book.category,
             format_timestamp(book.updated_at), book.id),
        )

    def delete(self, book_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        return cursor.rowcount > 0

    def list(self, offset: int, limit: int) -> Tuple[List[Tuple[Book, int]], int]:
        """A page of books ordered by id, each paired with its active loan count."""
        total = int(self.conn.execute("SELECT COUNT(*) FROM books").fetchone()[0])
        rows = self.conn.execute(
            f"""
            SELECT {_BOOK_COLUMNS},
                   (SELECT COUNT(*) FROM lending_records l
                    WHERE l.book_id = books.id AND l.returned_at IS NULL) AS active_loans
            FROM books ORDER BY id LIMIT ? OFFSET ?
            """,
            (limit, offset),
        ).fetchall()
        return [(Book.from_dict(dict(row)), int(row["active_loans"])) for row in rows], total


class LoanRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, record: LoanRecord) -> LoanRecord:
        now = utcnow()
        cursor = self.conn.execute(
            """
            INSERT INTO lending_records (book_id, user_id, borrowed_at, returned_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (record.book_id, record.user_id, format_timestamp(record.borrowed_at),
             format_timestamp(record.returned_at), format_timestamp(now), format_timestamp(now)),
        )
        record.id = cursor.lastrowid
        record.created_at = now
        record.updated_at = now
        return record

    def get(self, record_id: int) -> Optional[LoanRecord]:
        """Fetch a record joined with its book and borrower."""
        row = self.conn.execute(
            """
            SELECT l.id, l.book_id, l.user_id, l.borrowed_at, l.returned_at, l.created_at, l.updated_at,
                   b.id AS b_id, b.title AS b_title, b.author AS b_author, b.isbn AS b_isbn,
                   b.quantity AS b_quantity, b.category AS b_category,
                   b.created_at AS b_created_at, b.updated_at AS b_updated_at,
                   u.id AS u_id, u.email AS u_email,
                   u.created_at AS u_created_at, u.updated_at AS u_updated_at
            FROM lending_records l
            LEFT JOIN books b ON b.id = l.book_id
            LEFT JOIN users u ON u.id = l.user_id
            WHERE l.id = ?
            """,
            (record_id,),
        ).fetchone()
        if not row:
            return None
        record = LoanRecord.from_dict(dict(row))
        if row["b_id"] is not None:
            record.book = Book.from_dict(_prefixed(row, "b_"))
        if row["u_id"] is not None:
            record.user = User.from_dict(_prefixed(row, "u_"))
        return record

    def update(self, record: LoanRecord) -> bool:
        """Persist the record's return timestamp if the stored record is still active.

        A loan is mutated exactly once, so the write is conditional: it
        returns False when another writer returned the loan first.
        """
        updated_at = utcnow()
        cursor = self.conn.execute(
            """
            UPDATE lending_records SET returned_at = ?, updated_at = ?
            WHERE id = ? AND returned_at IS NULL
            """,
            (format_timestamp(record.returned_at), format_timestamp(updated_at), record.id),
        )
        if cursor.rowcount != 1:
            return False
        record.updated_at = updated_at
        return True

    def find_active(self, user_id: int, book_id: int) -> Optional[LoanRecord]:
        row = self.conn.execute(
            f"""
            SELECT {_LOAN_COLUMNS} FROM lending_records
            WHERE user_id = ? AND book_id = ? AND returned_at IS NULL
            """,
            (user_id, book_id),
        ).fetchone()
        return LoanRecord.from_dict(dict(row)) if row else None

    def count_since(self, user_id: int, since: datetime) -> int:
        """Count the user's loans borrowed at or after ``since``, returned or not."""
        row = self.conn.execute(
            "SELECT COUNT(*) FROM lending_records WHERE user_id = ? AND borrowed_at >= ?",
            (user_id, format_timestamp(since)),
        ).fetchone()
        return int(row[0])

    def list_active(self, user_id: int) -> List[LoanRecord]:
        return self._list_with_books(
            "WHERE l.user_id = ? AND l.returned_at IS NULL ORDER BY l.borrowed_at DESC, l.id DESC",
            (user_id,),
        )

    def list_history(self, user_id: int, offset: int, limit: int) -> Tuple[List[LoanRecord], int]:
        total = int(self.conn.execute(
            "SELECT COUNT(*) FROM lending_records WHERE user_id = ?", (user_id,)
        ).fetchone()[0])
        records = self._list_with_books(
            "WHERE l.user_id = ? ORDER BY l.borrowed_at DESC, l.id DESC LIMIT ? OFFSET ?",
            (user_id, limit, offset),
        )
        return records, total

    def _list_with_books(self, clause: str, params: tuple) -> List[LoanRecord]:
        rows = self.conn.execute(
            f"""
            SELECT l.id, l.book_id, l.user_id, l.borrowed_at, l.returned_at, l.created_at, l.updated_at,
                   b.id AS b_id, b.title AS b_title, b.author AS b_author, b.isbn AS b_isbn,
                   b.quantity AS b_quantity, b.category AS b_category,
                   b.created_at AS b_created_at, b.updated_at AS b_updated_at
            FROM lending_records l
            LEFT JOIN books b ON b.id = l.book_id
            {clause}
            """,
            params,
        ).fetchall()
        records = []
        for row in rows:
            record = LoanRecord.from_dict(dict(row))
            if row["b_id"] is not None:
                record.book = Book.from_dict(_prefixed(row, "b_"))
            records.append(record)
        return records


class UserRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, user: User) -> User:
        now = utcnow()
        cursor = self.conn.execute(
            "INSERT INTO users (email, password_hash, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user.email, user.password_hash, format_timestamp(now), format_timestamp(now)),
        )
        user.id = cursor.lastrowid
        user.created_at = now
        user.updated_at = now
        return user

    def get(self, user_id: int) -> Optional[User]:
        row = self.conn.execute(
            "SELECT id, email, password_hash, created_at, updated_at FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def get_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT id, email, password_hash, created_at, updated_at FROM users WHERE email = ? COLLATE NOCASE",
            (email,),
        ).fetchone()
        return User.from_dict(dict(row)) if row else None


class TokenRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, token: str, user_id: int, expires_at: datetime) -> None:
        self.conn.execute(
            "INSERT INTO auth_tokens (token, user_id, expires_at, created_at) VALUES (?, ?, ?, ?)",
            (token, user_id, format_timestamp(expires_at), format_timestamp(utcnow())),
        )

    def get_user_id(self, token: str, now: datetime) -> Optional[int]:
        """Return the owner of an unexpired token, or None."""
        row = self.conn.execute(
            "SELECT user_id, expires_at FROM auth_tokens WHERE token = ?", (token,)
        ).fetchone()
        if not row or parse_timestamp(row["expires_at"]) <= now:
            return None
        return int(row["user_id"])

    def exists(self, token: str) -> bool:
        return self.conn.execute("SELECT 1 FROM auth_tokens WHERE token = ?", (token,)).fetchone() is not None

    def delete(self, token: str) -> bool:
        cursor = self.conn.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))
        return cursor.rowcount > 0

    def purge_expired(self, now: datetime) -> int:
        cursor = self.conn.execute("DELETE FROM auth_tokens WHERE expires_at <= ?", (format_timestamp(now),))
        return cursor.rowcount


class StoreSession:
    """All repositories bound to one connection, i.e. one unit of work."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.books = BookRepository(conn)
        self.loans = LoanRepository(conn)
        self.users = UserRepository(conn)
        self.tokens = TokenRepository(conn)
