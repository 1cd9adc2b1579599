import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import settings
from .errors import StoreFailure

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT NOT NULL UNIQUE,
        quantity INTEGER NOT NULL DEFAULT 1 CHECK(quantity >= 0),
        category TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lending_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        borrowed_at TEXT NOT NULL,
        returned_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (book_id) REFERENCES books(id),
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_tokens (
        token TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    # At most one active loan per (user, book), enforced by the store as well.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_lending_active_user_book
        ON lending_records(user_id, book_id) WHERE returned_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_lending_book_active ON lending_records(book_id, returned_at)",
    "CREATE INDEX IF NOT EXISTS idx_lending_user_borrowed ON lending_records(user_id, borrowed_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id)",
)


def get_db_connection(db_file: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(
        db_file or settings.db_file,
        timeout=settings.db_timeout if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


class Database:
    """Entry point to the SQLite file holding users, books and lending records."""

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file or settings.db_file
        self.timeout = settings.db_timeout if timeout is None else timeout

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        with self.connect() as conn:
            if self.db_file != ":memory:":
                # WAL lets readers proceed while a borrow transaction holds the write lock
                conn.execute("PRAGMA journal_mode=WAL;")
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"Database initialized at {self.db_file}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for reads or single statements."""
        try:
            conn = get_db_connection(self.db_file, self.timeout)
        except sqlite3.Error as e:
            logger.error(f"Could not open database {self.db_file}: {e}")
            raise StoreFailure(f"Could not open database: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise StoreFailure(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction.

        With ``immediate`` the write lock is taken before the first read, so
        every check made inside the block stays valid until commit. Without
        it the block is a consistent read snapshot. Any exception rolls the
        whole block back.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                # SQLite may already have rolled back on its own (disk full, I/O error)
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")


def initialize_database(db_file: Optional[str] = None) -> Database:
    """Create (if needed) and return the database at ``db_file``."""
    database = Database(db_file)
    database.initialize()
    return database
