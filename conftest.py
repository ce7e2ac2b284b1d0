import os
from datetime import datetime, timedelta, timezone

import pytest

from circulation_desk.ledger import LendingLedger
from circulation_desk.models import Book, Role, User
from circulation_desk.repository import LibraryStore


class FakeClock:
    """Settable clock for driving the ledger through time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file for each test
    path = str(tmp_path / f"test_{request.node.name}.db")
    yield path
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def store(db_file):
    store = LibraryStore(db_file=db_file)
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2023, 12, 18, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(store, clock):
    return LendingLedger(store, clock=clock)


@pytest.fixture
def book(store):
    return store.add_book(Book("Ulysses", "James Joyce", "9780199535675", total_copies=1))


@pytest.fixture
def borrower(store):
    return store.add_user(User("Ada Reader", "ada@example.com"))


@pytest.fixture
def librarian(store):
    return store.add_user(User("Lib Rarian", "librarian@example.com", role=Role.LIBRARIAN))
