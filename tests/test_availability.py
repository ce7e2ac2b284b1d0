import pytest

from circulation_desk.availability import AvailabilityCounter
from circulation_desk.database import transaction
from circulation_desk.errors import InvariantViolation, NotFound
from circulation_desk.models import Book


@pytest.fixture
def counter():
    return AvailabilityCounter()


def test_decrement_and_increment(store, counter):
    book = store.add_book(Book("Dune", "Frank Herbert", "9780441013593", total_copies=2))

    with transaction(store.db_file) as conn:
        assert counter.decrement(conn, book.id) == 1
    with transaction(store.db_file) as conn:
        assert counter.decrement(conn, book.id) == 0
    with transaction(store.db_file) as conn:
        assert counter.increment(conn, book.id) == 1

    assert store.find_book(book.id).available_copies == 1


def test_decrement_below_zero_fails_loudly(store, counter, caplog):
    book = store.add_book(Book("Dune", "Frank Herbert", "9780441013593", total_copies=1, available_copies=0))

    with pytest.raises(InvariantViolation):
        with transaction(store.db_file) as conn:
            counter.decrement(conn, book.id)

    assert store.find_book(book.id).available_copies == 0
    assert any(r.levelname == "ERROR" for r in caplog.records)


def test_increment_saturates_at_total_copies(store, counter):
    book = store.add_book(Book("Dune", "Frank Herbert", "9780441013593", total_copies=2))

    with transaction(store.db_file) as conn:
        assert counter.increment(conn, book.id) == 2

    found = store.find_book(book.id)
    assert found.available_copies == found.total_copies == 2


def test_unknown_book(store, counter):
    with pytest.raises(NotFound):
        with transaction(store.db_file) as conn:
            counter.decrement(conn, 999)
    with pytest.raises(NotFound):
        with transaction(store.db_file) as conn:
            counter.increment(conn, 999)


def test_counter_only_touches_available_copies(store, counter):
    book = store.add_book(Book("Dune", "Frank Herbert", "9780441013593", total_copies=3))

    with transaction(store.db_file) as conn:
        counter.decrement(conn, book.id)

    found = store.find_book(book.id)
    assert (found.title, found.author, found.isbn, found.total_copies) == (
        "Dune", "Frank Herbert", "9780441013593", 3
    )
