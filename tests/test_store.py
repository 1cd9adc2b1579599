import sqlite3
import threading
import time

import pytest

from lending_app.errors import StoreFailure
from lending_app.locks import KeyedLock
from lending_app.models import LoanRecord, Page, utcnow
from lending_app.repositories import StoreSession


def test_schema_allows_one_active_loan_per_user_and_book(database, make_user, make_book):
    user = make_user()
    book = make_book(quantity=2)
    with database.transaction() as conn:
        StoreSession(conn).loans.create(LoanRecord(book_id=book.id, user_id=user.id, borrowed_at=utcnow()))

    with pytest.raises(StoreFailure):
        with database.transaction() as conn:
            StoreSession(conn).loans.create(LoanRecord(book_id=book.id, user_id=user.id, borrowed_at=utcnow()))


def test_conditional_update_only_once(database, make_user, make_book):
    user = make_user()
    book = make_book()
    with database.transaction() as conn:
        record = StoreSession(conn).loans.create(LoanRecord(book_id=book.id, user_id=user.id, borrowed_at=utcnow()))

    record.returned_at = utcnow()
    with database.transaction() as conn:
        assert StoreSession(conn).loans.update(record) is True
    with database.transaction() as conn:
        assert StoreSession(conn).loans.update(record) is False


def test_transaction_rolls_back_on_error(database, make_book):
    book = make_book(quantity=1)
    with pytest.raises(RuntimeError):
        with database.transaction() as conn:
            store = StoreSession(conn)
            book.quantity = 9
            store.books.update(book)
            raise RuntimeError("boom")

    with database.connect() as conn:
        assert StoreSession(conn).books.get(book.id).quantity == 1


def test_error_survives_rollback_done_by_sqlite(database):
    with pytest.raises(StoreFailure, match="disk I/O error"):
        with database.transaction() as conn:
            # SQLite aborts the transaction itself on some errors
            conn.execute("ROLLBACK")
            raise sqlite3.OperationalError("disk I/O error")


def test_sqlite_errors_become_store_failures(database):
    with pytest.raises(StoreFailure):
        with database.connect() as conn:
            conn.execute("SELECT * FROM no_such_table")


def test_availability_query(database, make_user, make_book):
    book = make_book(quantity=3)
    borrowers = [make_user(), make_user()]
    with database.transaction() as conn:
        store = StoreSession(conn)
        for user in borrowers:
            store.loans.create(LoanRecord(book_id=book.id, user_id=user.id, borrowed_at=utcnow()))
        assert store.books.available(book.id) == 1
        assert store.books.count_active_loans(book.id) == 2
        assert store.books.available(999) is None


def test_loan_record_to_dict():
    record = LoanRecord(book_id=1, user_id=2, borrowed_at=utcnow(), id=3)
    data = record.to_dict()
    assert data["status"] == "BORROWED"
    assert data["return_date"] is None
    assert data["borrow_date"].endswith("+00:00")


def test_page_math():
    page = Page(items=[], total=21, page=3, page_size=10)
    assert page.total_pages == 3
    assert Page(items=[], total=0, page=1, page_size=10).total_pages == 0


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    inside = []
    overlaps = []

    def work():
        with locks.hold(("book", 1)):
            if inside:
                overlaps.append(True)
            inside.append(1)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=work) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(locks) == 0


def test_keyed_lock_overlapping_sets_do_not_deadlock():
    locks = KeyedLock()
    done = []

    def forward():
        for _ in range(50):
            with locks.hold(("user", 1), ("book", 1)):
                pass
        done.append("forward")

    def backward():
        for _ in range(50):
            with locks.hold(("book", 1), ("user", 1)):
                pass
        done.append("backward")

    threads = [threading.Thread(target=forward), threading.Thread(target=backward)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert sorted(done) == ["backward", "forward"]
    assert len(locks) == 0
