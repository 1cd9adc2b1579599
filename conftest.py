from datetime import datetime, timedelta, timezone

import pytest

from lending_app.auth import AuthService
from lending_app.catalog import Catalog
from lending_app.config import Settings
from lending_app.database import Database
from lending_app.lending import LendingEngine


def make_isbn(n: int) -> str:
    """Build a valid ISBN-13 from a small integer."""
    body = f"978{n:09d}"
    total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(body))
    return body + str((10 - total % 10) % 10)


class FakeClock:
    """Settable UTC clock for lending and token expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings(tmp_path, request):
    # one database file per test
    db_file = str(tmp_path / f"test_{request.node.name[:60]}.db")
    return Settings(
        db_file=db_file,
        password_hash_iterations=1000,
        rate_limit_enabled=False,
    )


@pytest.fixture
def database(settings):
    db = Database(settings.db_file, timeout=settings.db_timeout)
    db.initialize()
    return db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(database, settings, clock):
    return LendingEngine(database, settings, clock=clock)


@pytest.fixture
def catalog(database, settings):
    return Catalog(database, settings)


@pytest.fixture
def auth(database, settings, clock):
    return AuthService(database, settings, clock=clock)


@pytest.fixture
def make_user(auth):
    counter = {"n": 0}

    def _make(email=None, password="password123"):
        counter["n"] += 1
        user, _ = auth.register(email or f"user{counter['n']}@example.com", password)
        return user

    return _make


@pytest.fixture
def make_book(catalog):
    counter = {"n": 0}

    def _make(quantity=1, title=None, author="Test Author", category="Fiction", isbn=None):
        counter["n"] += 1
        n = counter["n"]
        return catalog.create_book(title or f"Book {n}", author, isbn or make_isbn(n), quantity, category)

    return _make
