import logging
import sqlite3

from circulation_desk.errors import InvariantViolation, NotFound

logger = logging.getLogger(__name__)


class AvailabilityCounter:
    """Keeps ``books.available_copies`` in step with the loans on each title.

    Both operations are a single guarded UPDATE run on the caller's
    connection, so they join whatever transaction the ledger has open.
    Only the ``available_copies`` column is ever written.
    """

    def decrement(self, conn: sqlite3.Connection, book_id: int) -> int:
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies - 1
            WHERE id = ? AND available_copies > 0
            """,
            (book_id,),
        )
        if cursor.rowcount == 0:
            self._require_book(conn, book_id)
            # Reached only when a caller skipped the availability check
            logger.error(f"available_copies for book {book_id} would drop below zero")
            raise InvariantViolation(f"Book {book_id} has no copies left to lend.")
        return self._current(conn, book_id)

    def increment(self, conn: sqlite3.Connection, book_id: int) -> int:
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies + 1
            WHERE id = ? AND available_copies < total_copies
            """,
            (book_id,),
        )
        if cursor.rowcount == 0:
            self._require_book(conn, book_id)
            # Saturate at the ceiling instead of failing
            logger.warning(f"available_copies for book {book_id} already at total_copies, not incremented")
        return self._current(conn, book_id)

    @staticmethod
    def _current(conn: sqlite3.Connection, book_id: int) -> int:
        row = conn.execute("SELECT available_copies FROM books WHERE id = ?", (book_id,)).fetchone()
        return row[0]

    @staticmethod
    def _require_book(conn: sqlite3.Connection, book_id: int) -> None:
        row = conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound(f"Book not found with id of {book_id}")
