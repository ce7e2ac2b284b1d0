import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from circulation_desk.config import settings

# Make sure .env is loaded before the environment is read below.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE
# 2) per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.path.join(tempfile.gettempdir(), f"circulation_{os.getpid()}.db")
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with Row access by column name."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one write transaction.

    ``BEGIN IMMEDIATE`` takes the writer lock up front, so concurrent
    issue/return/renew calls are serialized and a check made inside the block
    still holds when the block writes. Any exception rolls everything back.
    """
    conn = get_db_connection(db_file)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables if they don't exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                isbn TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
                available_copies INTEGER NOT NULL
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'user'
                    CHECK(role IN ('user', 'librarian', 'admin')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Loans are never deleted, the table doubles as the audit trail
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS circulations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_id INTEGER NOT NULL,
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed'
                    CHECK(status IN ('borrowed', 'renewed', 'overdue', 'returned', 'lost')),
                fine TEXT NOT NULL DEFAULT '0' CHECK(CAST(fine AS REAL) >= 0),
                renewal_count INTEGER NOT NULL DEFAULT 0
                    CHECK(renewal_count >= 0),
                issued_by INTEGER,
                returned_to INTEGER,
                notes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (borrower_id) REFERENCES users(id),
                FOREIGN KEY (issued_by) REFERENCES users(id),
                FOREIGN KEY (returned_to) REFERENCES users(id)
            )
        """)

        # Check whether newer columns exist and add them if not (migration)
        cursor.execute("PRAGMA table_info(circulations)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'version' not in columns:
            cursor.execute("ALTER TABLE circulations ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
        if 'notes' not in columns:
            cursor.execute("ALTER TABLE circulations ADD COLUMN notes TEXT")

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_circulations_book_borrower ON circulations(book_id, borrower_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_circulations_status_due ON circulations(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_circulations_borrower ON circulations(borrower_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_circulations_issue_date ON circulations(issue_date)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables as needed."""
    create_tables(db_file)
    logger.debug(f"Database initialized at {db_file or DATABASE_FILE}")
