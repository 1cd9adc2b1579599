import dataclasses
import sqlite3
import threading
from datetime import timedelta

import pytest

from lending_app.errors import (
    AlreadyReturned,
    BookNotFound,
    BookUnavailable,
    DuplicateActiveLoan,
    InvalidPagination,
    LoanNotFound,
    NotOwner,
    StoreFailure,
    WeeklyLimitExceeded,
)
from lending_app.lending import LendingEngine
from lending_app.repositories import LoanRepository


def test_borrow_creates_active_loan(engine, make_user, make_book, clock):
    user = make_user()
    book = make_book(quantity=2, title="Neuromancer")

    record = engine.borrow_book(user.id, book.id)

    assert record.id is not None
    assert record.user_id == user.id
    assert record.book_id == book.id
    assert record.borrowed_at == clock.now
    assert record.returned_at is None
    assert record.status == "BORROWED"
    assert record.book.title == "Neuromancer"
    assert engine.available(book.id) == 1


def test_dune_scenario(engine, catalog, make_user):
    dune = catalog.create_book("Dune", "Frank Herbert", "9780441172719", 1, "Science Fiction")
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")

    record = engine.borrow_book(alice.id, dune.id)
    assert record.is_active
    assert engine.available(dune.id) == 0

    with pytest.raises(BookUnavailable):
        engine.borrow_book(bob.id, dune.id)

    returned = engine.return_book(alice.id, record.id)
    assert returned.status == "RETURNED"
    assert engine.available(dune.id) == 1

    bobs = engine.borrow_book(bob.id, dune.id)
    assert bobs.user_id == bob.id
    assert engine.available(dune.id) == 0


def test_borrow_unknown_book(engine, make_user):
    user = make_user()
    with pytest.raises(BookNotFound):
        engine.borrow_book(user.id, 999)


def test_available_unknown_book(engine):
    with pytest.raises(BookNotFound):
        engine.available(12345)


def test_duplicate_active_loan(engine, make_user, make_book):
    user = make_user()
    book = make_book(quantity=3)

    first = engine.borrow_book(user.id, book.id)
    with pytest.raises(DuplicateActiveLoan):
        engine.borrow_book(user.id, book.id)
    assert engine.available(book.id) == 2

    # allowed again once the first loan is returned
    engine.return_book(user.id, first.id)
    second = engine.borrow_book(user.id, book.id)
    assert second.id != first.id


def test_weekly_limit(engine, make_user, make_book, clock):
    user = make_user()
    books = [make_book() for _ in range(6)]
    start = clock.now

    records = []
    for book in books[:5]:
        records.append(engine.borrow_book(user.id, book.id))
        clock.advance(hours=1)

    with pytest.raises(WeeklyLimitExceeded) as exc_info:
        engine.borrow_book(user.id, books[5].id)
    assert "maximum 5 books per week" in str(exc_info.value)

    # returned loans still count against the limit
    engine.return_book(user.id, records[0].id)
    with pytest.raises(WeeklyLimitExceeded):
        engine.borrow_book(user.id, books[5].id)

    # the first borrow leaves the trailing window
    clock.now = start + timedelta(days=7, minutes=30)
    record = engine.borrow_book(user.id, books[5].id)
    assert record.is_active


def test_weekly_limit_window_is_inclusive(engine, make_user, make_book, clock):
    user = make_user()
    books = [make_book() for _ in range(6)]
    start = clock.now
    for book in books[:5]:
        engine.borrow_book(user.id, book.id)

    clock.now = start + timedelta(days=7)
    with pytest.raises(WeeklyLimitExceeded):
        engine.borrow_book(user.id, books[5].id)

    clock.advance(microseconds=1)
    assert engine.borrow_book(user.id, books[5].id).is_active


def test_weekly_limit_is_per_user(engine, make_user, make_book):
    heavy, light = make_user(), make_user()
    books = [make_book(quantity=2) for _ in range(6)]
    for book in books[:5]:
        engine.borrow_book(heavy.id, book.id)

    with pytest.raises(WeeklyLimitExceeded):
        engine.borrow_book(heavy.id, books[5].id)
    assert engine.borrow_book(light.id, books[5].id).is_active


def test_check_order_duplicate_before_limit(engine, make_user, make_book):
    user = make_user()
    books = [make_book(quantity=2) for _ in range(5)]
    for book in books:
        engine.borrow_book(user.id, book.id)

    with pytest.raises(DuplicateActiveLoan):
        engine.borrow_book(user.id, books[0].id)


def test_check_order_limit_before_availability(engine, make_user, make_book):
    user, other = make_user(), make_user()
    books = [make_book() for _ in range(5)]
    for book in books:
        engine.borrow_book(user.id, book.id)
    taken = make_book()
    engine.borrow_book(other.id, taken.id)

    with pytest.raises(WeeklyLimitExceeded):
        engine.borrow_book(user.id, taken.id)


def test_rejected_borrow_writes_nothing(engine, make_user, make_book):
    user, other = make_user(), make_user()
    book = make_book(quantity=1)
    engine.borrow_book(other.id, book.id)

    with pytest.raises(BookUnavailable):
        engine.borrow_book(user.id, book.id)

    history = engine.get_user_borrowing_history(user.id)
    assert history.total == 0


def test_return_book(engine, make_user, make_book, clock):
    user = make_user()
    book = make_book()
    record = engine.borrow_book(user.id, book.id)
    clock.advance(days=2)

    returned = engine.return_book(user.id, record.id)

    assert returned.id == record.id
    assert returned.returned_at == clock.now
    assert returned.status == "RETURNED"
    assert engine.get_active_borrowings(user.id) == []


def test_return_twice_fails(engine, make_user, make_book):
    user = make_user()
    book = make_book()
    record = engine.borrow_book(user.id, book.id)

    engine.return_book(user.id, record.id)
    with pytest.raises(AlreadyReturned):
        engine.return_book(user.id, record.id)
    assert engine.available(book.id) == 1


def test_return_unknown_record(engine, make_user):
    user = make_user()
    with pytest.raises(LoanNotFound):
        engine.return_book(user.id, 42)


def test_return_by_other_user_is_forbidden(engine, make_user, make_book):
    owner, stranger = make_user(), make_user()
    book = make_book()
    record = engine.borrow_book(owner.id, book.id)

    with pytest.raises(NotOwner):
        engine.return_book(stranger.id, record.id)

    # ownership is checked before return status
    engine.return_book(owner.id, record.id)
    with pytest.raises(NotOwner):
        engine.return_book(stranger.id, record.id)


def test_active_borrowings_newest_first(engine, make_user, make_book, clock):
    user = make_user()
    first, second, third = make_book(), make_book(), make_book()
    r1 = engine.borrow_book(user.id, first.id)
    clock.advance(minutes=5)
    r2 = engine.borrow_book(user.id, second.id)
    clock.advance(minutes=5)
    r3 = engine.borrow_book(user.id, third.id)
    engine.return_book(user.id, r2.id)

    active = engine.get_active_borrowings(user.id)

    assert [r.id for r in active] == [r3.id, r1.id]
    assert all(r.book is not None for r in active)


@pytest.fixture
def roomy_engine(database, settings, clock):
    config = dataclasses.replace(settings, weekly_borrow_limit=100)
    return LendingEngine(database, config, clock=clock)


def test_history_pagination(roomy_engine, make_user, make_book, clock):
    user = make_user()
    ids = []
    for _ in range(12):
        ids.append(roomy_engine.borrow_book(user.id, make_book().id).id)
        clock.advance(minutes=1)
    roomy_engine.return_book(user.id, ids[3])

    pages = [roomy_engine.get_user_borrowing_history(user.id, page, 5) for page in (1, 2, 3)]

    assert [len(p.items) for p in pages] == [5, 5, 2]
    assert all(p.total == 12 and p.total_pages == 3 for p in pages)
    seen = [r.id for p in pages for r in p.items]
    assert len(seen) == len(set(seen))
    assert seen == list(reversed(ids))

    assert roomy_engine.get_user_borrowing_history(user.id, 4, 5).items == []


def test_history_only_lists_own_loans(engine, make_user, make_book):
    user, other = make_user(), make_user()
    book = make_book(quantity=2)
    engine.borrow_book(user.id, book.id)
    engine.borrow_book(other.id, book.id)

    history = engine.get_user_borrowing_history(user.id)
    assert history.total == 1
    assert history.items[0].user_id == user.id


def test_history_rejects_bad_paging(engine, make_user):
    user = make_user()
    with pytest.raises(InvalidPagination):
        engine.get_user_borrowing_history(user.id, 0, 10)
    with pytest.raises(InvalidPagination):
        engine.get_user_borrowing_history(user.id, 1, 0)


def test_history_page_size_is_capped(engine, make_user):
    user = make_user()
    page = engine.get_user_borrowing_history(user.id, 1, 10_000)
    assert page.page_size == 100


def test_concurrent_borrows_never_overcommit(engine, make_user, make_book):
    quantity, callers = 3, 10
    book = make_book(quantity=quantity)
    users = [make_user() for _ in range(callers)]
    successes, failures = [], []
    barrier = threading.Barrier(callers)

    def borrow(user_id):
        barrier.wait()
        try:
            successes.append(engine.borrow_book(user_id, book.id))
        except BookUnavailable as e:
            failures.append(e)

    threads = [threading.Thread(target=borrow, args=(u.id,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(successes) == min(callers, quantity)
    assert len(failures) == callers - quantity
    assert engine.available(book.id) == 0


def test_concurrent_borrows_same_user(engine, make_user, make_book):
    user = make_user()
    book = make_book(quantity=5)
    outcomes = []
    barrier = threading.Barrier(4)

    def borrow():
        barrier.wait()
        try:
            engine.borrow_book(user.id, book.id)
            outcomes.append("ok")
        except DuplicateActiveLoan:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=borrow) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["duplicate", "duplicate", "duplicate", "ok"]
    assert engine.available(book.id) == 4


def test_concurrent_returns(engine, make_user, make_book):
    user = make_user()
    book = make_book()
    record = engine.borrow_book(user.id, book.id)
    outcomes = []
    barrier = threading.Barrier(3)

    def give_back():
        barrier.wait()
        try:
            engine.return_book(user.id, record.id)
            outcomes.append("ok")
        except AlreadyReturned:
            outcomes.append("already")

    threads = [threading.Thread(target=give_back) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["already", "already", "ok"]
    assert engine.available(book.id) == 1


def test_locks_are_released(engine, make_user, make_book):
    user = make_user()
    book = make_book()
    record = engine.borrow_book(user.id, book.id)
    engine.return_book(user.id, record.id)
    with pytest.raises(BookNotFound):
        engine.borrow_book(user.id, 404)
    assert len(engine.locks) == 0


def test_store_failure_propagates(engine, make_user, make_book, monkeypatch):
    user = make_user()
    book = make_book()

    def broken_create(self, record):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(LoanRepository, "create", broken_create)

    with pytest.raises(StoreFailure):
        engine.borrow_book(user.id, book.id)
    monkeypatch.undo()

    assert engine.available(book.id) == 1
    assert engine.get_active_borrowings(user.id) == []
