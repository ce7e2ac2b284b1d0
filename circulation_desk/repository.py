import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from circulation_desk.database import get_db_connection, initialize_database
from circulation_desk.models import Book, CirculationRecord, LoanStatus, User, to_db_timestamp

_RECORD_COLUMNS = """
    id, book_id, borrower_id, issue_date, due_date, return_date, status, fine,
    renewal_count, issued_by, returned_to, notes, version
"""


class LibraryStore:
    """Persists books, users and circulation records.

    Read methods open their own connection unless one is passed in. Write
    methods for circulation records always take the caller's connection so
    they run inside the ledger's transaction.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        # Make sure the schema is current on every start
        initialize_database(db_file)

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_db_connection(self.db_file)
        try:
            yield own
        finally:
            own.close()

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a pre-constructed Book. Prevent duplicates by ISBN."""
        book.isbn = self._normalize_isbn(book.isbn)
        if not book.isbn:
            raise ValueError("ISBN cannot be empty.")
        if not book.title or not book.author:
            raise ValueError("Title and author are required.")
        if book.total_copies < 1:
            raise ValueError("A book needs at least one copy.")
        if not 0 <= book.available_copies <= book.total_copies:
            raise ValueError("Available copies must be between 0 and total copies.")
        if self.find_book_by_isbn(book.isbn):
            raise ValueError(f"Book with ISBN {book.isbn} already exists.")

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO books (isbn, title, author, total_copies, available_copies)
                VALUES (?, ?, ?, ?, ?)
                """,
                (book.isbn, book.title, book.author, book.total_copies, book.available_copies),
            )
            conn.commit()
            book.id = cursor.lastrowid
            cursor.execute("SELECT created_at FROM books WHERE id = ?", (book.id,))
            row = cursor.fetchone()
            if row:
                book.created_at = row[0]
            return book
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        finally:
            conn.close()

    def find_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self._connection(conn) as c:
            row = c.execute(
                """
                SELECT id, isbn, title, author, total_copies, available_copies, created_at
                FROM books WHERE id = ?
                """,
                (book_id,),
            ).fetchone()
            return Book.from_dict(dict(row)) if row else None

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = self._normalize_isbn(isbn)
        with self._connection() as c:
            row = c.execute(
                """
                SELECT id, isbn, title, author, total_copies, available_copies, created_at
                FROM books WHERE isbn = ?
                """,
                (norm,),
            ).fetchone()
            return Book.from_dict(dict(row)) if row else None

    def list_books(self) -> List[Book]:
        with self._connection() as c:
            rows = c.execute(
                """
                SELECT id, isbn, title, author, total_copies, available_copies, created_at
                FROM books ORDER BY title
                """
            ).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]

    # ------------------------- Users ------------------------- #
    def add_user(self, user: User) -> User:
        if not user.name or not user.email:
            raise ValueError("Name and email are required.")
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
                (user.name, user.email, user.role.value),
            )
            conn.commit()
            user.id = cursor.lastrowid
            return user
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with email {user.email} already exists.") from e
        finally:
            conn.close()

    def find_user(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT id, name, email, role, created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            return User.from_dict(dict(row)) if row else None

    # ------------------------- Circulation records ------------------------- #
    def create_record(self, conn: sqlite3.Connection, record: CirculationRecord) -> CirculationRecord:
        cursor = conn.execute(
            """
            INSERT INTO circulations (
                book_id, borrower_id, issue_date, due_date, return_date, status, fine,
                renewal_count, issued_by, returned_to, notes, version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.book_id, record.borrower_id,
                to_db_timestamp(record.issue_date), to_db_timestamp(record.due_date),
                to_db_timestamp(record.return_date), record.status.value, str(record.fine),
                record.renewal_count, record.issued_by, record.returned_to, record.notes,
                record.version,
            ),
        )
        record.id = cursor.lastrowid
        return record

    def get_record(self, record_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[CirculationRecord]:
        with self._connection(conn) as c:
            row = c.execute(
                f"SELECT {_RECORD_COLUMNS} FROM circulations WHERE id = ?",
                (record_id,),
            ).fetchone()
            return CirculationRecord.from_row(dict(row)) if row else None

    def update_record(self, conn: sqlite3.Connection, record: CirculationRecord,
                      allowed_from: Optional[Iterable[LoanStatus]] = None) -> bool:
        """Write ``record`` back if nobody else has written it since it was read.

        The row must still carry ``record.version`` (and, when given, one of
        the ``allowed_from`` statuses). On success the version is bumped on
        both the row and the object; on a mismatch nothing is written and
        False is returned.
        """
        sql = """
            UPDATE circulations
            SET due_date = ?, return_date = ?, status = ?, fine = ?, renewal_count = ?,
                returned_to = ?, notes = ?, version = version + 1
            WHERE id = ? AND version = ?
        """
        params: List[Any] = [
            to_db_timestamp(record.due_date), to_db_timestamp(record.return_date),
            record.status.value, str(record.fine), record.renewal_count,
            record.returned_to, record.notes, record.id, record.version,
        ]
        if allowed_from is not None:
            statuses = [s.value for s in allowed_from]
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        cursor = conn.execute(sql, params)
        if cursor.rowcount == 0:
            return False
        record.version += 1
        return True

    def find_records(self, conn: Optional[sqlite3.Connection] = None, *,
                     statuses: Optional[Iterable[LoanStatus]] = None,
                     borrower_id: Optional[int] = None,
                     book_id: Optional[int] = None,
                     due_before: Optional[Any] = None,
                     limit: Optional[int] = None,
                     offset: int = 0) -> List[CirculationRecord]:
        """Fetch records by filter, newest issue first."""
        where, params = self._record_filters(statuses, borrower_id, book_id, due_before)
        sql = f"SELECT {_RECORD_COLUMNS} FROM circulations {where} ORDER BY issue_date DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with self._connection(conn) as c:
            rows = c.execute(sql, params).fetchall()
            return [CirculationRecord.from_row(dict(row)) for row in rows]

    def count_records(self, *, statuses: Optional[Iterable[LoanStatus]] = None,
                      borrower_id: Optional[int] = None,
                      book_id: Optional[int] = None,
                      due_before: Optional[Any] = None) -> int:
        where, params = self._record_filters(statuses, borrower_id, book_id, due_before)
        with self._connection() as c:
            return c.execute(f"SELECT COUNT(*) FROM circulations {where}", params).fetchone()[0]

    @staticmethod
    def _record_filters(statuses, borrower_id, book_id, due_before) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if statuses is not None:
            values = [LoanStatus(s).value for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if due_before is not None:
            clauses.append("due_date < ?")
            params.append(to_db_timestamp(due_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Dashboard figures for the circulation desk."""
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books")
            total_books, total_copies, available_copies = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) FROM users")
            total_users = cursor.fetchone()[0]

            cursor.execute("SELECT status, COUNT(*) FROM circulations GROUP BY status")
            by_status = {row[0]: row[1] for row in cursor.fetchall()}

            # Fines are stored as text to keep them exact
            cursor.execute("SELECT fine FROM circulations WHERE fine != '0'")
            total_fines = sum((Decimal(row[0]) for row in cursor.fetchall()), Decimal("0"))

            cursor.execute("""
                SELECT b.title, b.author, COUNT(c.id) AS borrow_count
                FROM circulations c JOIN books b ON b.id = c.book_id
                GROUP BY c.book_id
                ORDER BY borrow_count DESC, b.title
                LIMIT 5
            """)
            popular_books = [dict(row) for row in cursor.fetchall()]

            return {
                "total_books": total_books,
                "total_copies": total_copies,
                "available_copies": available_copies,
                "total_users": total_users,
                "borrowed": by_status.get(LoanStatus.BORROWED.value, 0) + by_status.get(LoanStatus.RENEWED.value, 0),
                "overdue": by_status.get(LoanStatus.OVERDUE.value, 0),
                "returned": by_status.get(LoanStatus.RETURNED.value, 0),
                "lost": by_status.get(LoanStatus.LOST.value, 0),
                "total_fines": str(total_fines.quantize(Decimal("0.01"))),
                "popular_books": popular_books,
            }
        finally:
            conn.close()

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()

    def close(self) -> None:
        """Connections are opened per call, so there is nothing to release."""
        return None
