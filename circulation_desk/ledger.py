"""Lending ledger: the loan lifecycle of physical book copies.

Every mutating operation runs in one ``BEGIN IMMEDIATE`` transaction, so the
circulation record and the book's ``available_copies`` commit or roll back
together. The allowed status changes live in ``TRANSITIONS``, and each
operation checks it before it writes anything.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from circulation_desk.availability import AvailabilityCounter
from circulation_desk.config import settings
from circulation_desk.database import transaction
from circulation_desk.errors import (
    AlreadyReturned,
    CirculationError,
    ConcurrentUpdate,
    DuplicateLoan,
    InvariantViolation,
    NotFound,
    RenewalLimitReached,
    Unauthorized,
    Unavailable,
)
from circulation_desk.fines import compute_fine
from circulation_desk.models import (
    ACTIVE_STATUSES,
    CirculationRecord,
    LoanStatus,
    Role,
    as_utc,
    utcnow,
)
from circulation_desk.repository import LibraryStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# action -> statuses it may be applied to, and the status it produces
TRANSITIONS: Dict[str, Tuple[FrozenSet[LoanStatus], LoanStatus]] = {
    "renew": (frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED, LoanStatus.OVERDUE}), LoanStatus.RENEWED),
    "sweep": (frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED}), LoanStatus.OVERDUE),
    "return": (frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED, LoanStatus.OVERDUE}), LoanStatus.RETURNED),
    "mark_lost": (frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED, LoanStatus.OVERDUE}), LoanStatus.LOST),
}


def transition(record: CirculationRecord, action: str) -> LoanStatus:
    """Return the status ``action`` leads to, or raise if it is not allowed."""
    allowed_from, target = TRANSITIONS[action]
    if record.status not in allowed_from:
        if record.status.is_terminal:
            raise AlreadyReturned(f"Circulation record {record.id} is already {record.status.value}.")
        raise InvariantViolation(
            f"Cannot {action} circulation record {record.id} while it is {record.status.value}."
        )
    return target


class LendingLedger:
    """Issues, returns, renews and sweeps loans."""

    def __init__(self, store: Optional[LibraryStore] = None, *, clock: Optional[Clock] = None,
                 counter: Optional[AvailabilityCounter] = None) -> None:
        self.store = store or LibraryStore()
        self.clock: Clock = clock or utcnow
        self.counter = counter or AvailabilityCounter()

    def now(self) -> datetime:
        return as_utc(self.clock())

    # ------------------------- Lifecycle operations ------------------------- #
    def issue(self, book_id: int, borrower_id: int, due_date: Optional[datetime] = None,
              staff_id: Optional[int] = None, notes: Optional[str] = None) -> CirculationRecord:
        now = self.now()
        if due_date is None:
            due_date = now + timedelta(days=settings.default_loan_days)
        due_date = as_utc(due_date)

        with _logged_failures(), transaction(self.store.db_file) as conn:
            book = self.store.find_book(book_id, conn)
            if book is None:
                raise NotFound(f"Book not found with id of {book_id}")
            if self.store.find_user(borrower_id, conn) is None:
                raise NotFound(f"User not found with id of {borrower_id}")
            if book.available_copies <= 0:
                raise Unavailable(f"Book {book_id} is not available for borrowing.")
            active = self.store.find_records(
                conn, statuses=ACTIVE_STATUSES, borrower_id=borrower_id, book_id=book_id, limit=1
            )
            if active:
                raise DuplicateLoan(f"User {borrower_id} already has book {book_id} borrowed.")

            record = CirculationRecord(
                book_id=book_id,
                borrower_id=borrower_id,
                issue_date=now,
                due_date=due_date,
                status=LoanStatus.BORROWED,
                issued_by=staff_id,
                notes=notes,
            )
            self.store.create_record(conn, record)
            remaining = self.counter.decrement(conn, book_id)

        logger.info(f"Issued book {book_id} to user {borrower_id} (record {record.id}, {remaining} left)")
        return record

    def return_loan(self, record_id: int, staff_id: Optional[int] = None) -> CirculationRecord:
        now = self.now()
        with _logged_failures(), transaction(self.store.db_file) as conn:
            record = self._load(conn, record_id)
            target = transition(record, "return")

            record.return_date = now
            record.returned_to = staff_id
            if record.due_date < record.return_date:
                record.fine = compute_fine(record.due_date, record.return_date)
            else:
                record.fine = Decimal("0.00")
            record.status = target

            self._save(conn, record)
            self.counter.increment(conn, record.book_id)

        logger.info(f"Returned record {record.id} (book {record.book_id}), fine {record.fine}")
        return record

    def renew(self, record_id: int, requester_id: int, requester_role: Role | str) -> CirculationRecord:
        with _logged_failures():
            try:
                role = Role(requester_role)
            except ValueError as e:
                raise Unauthorized(f"Unknown role {requester_role!r} for user {requester_id}.") from e

        with _logged_failures(), transaction(self.store.db_file) as conn:
            record = self._load(conn, record_id)
            if record.renewal_count >= settings.max_renewals:
                raise RenewalLimitReached(f"Circulation record {record.id} reached the maximum renewal limit.")
            target = transition(record, "renew")
            if record.borrower_id != requester_id and not role.is_staff:
                raise Unauthorized(f"User {requester_id} is not authorized to renew record {record.id}.")

            # Extend from the current due date, not from today
            record.due_date = record.due_date + timedelta(days=settings.renewal_days)
            record.status = target
            record.renewal_count += 1

            self._save(conn, record)

        logger.info(f"Renewed record {record.id} until {record.due_date.isoformat()} ({record.renewal_count}x)")
        return record

    def mark_lost(self, record_id: int, staff_id: Optional[int] = None) -> CirculationRecord:
        """Close an active loan whose copy will not come back.

        The book's available count is left alone: the copy is not on the shelf.
        """
        with _logged_failures(), transaction(self.store.db_file) as conn:
            record = self._load(conn, record_id)
            record.status = transition(record, "mark_lost")
            record.returned_to = staff_id
            self._save(conn, record)

        logger.info(f"Marked record {record.id} (book {record.book_id}) as lost")
        return record

    def sweep_overdue(self, now: Optional[datetime] = None) -> List[CirculationRecord]:
        """Flip every borrowed/renewed loan past its due date to overdue.

        Each record is written with a version and status check; one that was
        returned or renewed after it was read is skipped, never overwritten.
        Records already overdue are not touched, so repeated calls with the
        same ``now`` change nothing further.
        """
        now = as_utc(now) if now is not None else self.now()
        allowed_from, target = TRANSITIONS["sweep"]
        candidates = self.store.find_records(statuses=allowed_from, due_before=now)

        updated: List[CirculationRecord] = []
        for record in candidates:
            previous = record.status
            record.status = target
            with transaction(self.store.db_file) as conn:
                written = self.store.update_record(conn, record, allowed_from=allowed_from)
            if written:
                updated.append(record)
            else:
                record.status = previous
                logger.info(f"Sweep skipped record {record.id}: changed since it was read")

        if updated:
            logger.info(f"Overdue sweep at {now.isoformat()} marked {len(updated)} record(s) overdue")
        return updated

    # ------------------------- Queries ------------------------- #
    def get_record(self, record_id: int) -> CirculationRecord:
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFound(f"Circulation record not found with id of {record_id}")
        return record

    def list_records(self, *, status: Optional[LoanStatus | str] = None, borrower_id: Optional[int] = None,
                     book_id: Optional[int] = None, page: int = 1,
                     page_size: Optional[int] = None) -> Tuple[List[CirculationRecord], int]:
        """Return one page of records (newest first) and the total match count."""
        page = max(page, 1)
        page_size = page_size or settings.default_page_size
        page_size = max(1, min(page_size, settings.max_page_size))
        statuses = [LoanStatus(status)] if status is not None else None
        records = self.store.find_records(
            statuses=statuses, borrower_id=borrower_id, book_id=book_id,
            limit=page_size, offset=(page - 1) * page_size,
        )
        total = self.store.count_records(statuses=statuses, borrower_id=borrower_id, book_id=book_id)
        return records, total

    def active_loans(self, borrower_id: int) -> List[CirculationRecord]:
        return self.store.find_records(statuses=ACTIVE_STATUSES, borrower_id=borrower_id)

    def history(self, borrower_id: int) -> List[CirculationRecord]:
        return self.store.find_records(borrower_id=borrower_id)

    def overdue_loans(self, now: Optional[datetime] = None) -> List[CirculationRecord]:
        """Active loans past their due date. Read-only: statuses are not changed."""
        now = as_utc(now) if now is not None else self.now()
        return self.store.find_records(statuses=ACTIVE_STATUSES, due_before=now)

    # ------------------------- Helpers ------------------------- #
    def _load(self, conn, record_id: int) -> CirculationRecord:
        record = self.store.get_record(record_id, conn)
        if record is None:
            raise NotFound(f"Circulation record not found with id of {record_id}")
        return record

    def _save(self, conn, record: CirculationRecord) -> None:
        if not self.store.update_record(conn, record):
            raise ConcurrentUpdate(f"Circulation record {record.id} was modified concurrently.")


@contextmanager
def _logged_failures() -> Iterator[None]:
    """Log a circulation failure at the severity it deserves, then re-raise.

    Business-rule rejections are routine (INFO), a stale write is a WARNING
    and a broken invariant is an ERROR.
    """
    try:
        yield
    except InvariantViolation as exc:
        logger.error(f"Invariant violated: {exc.message}")
        raise
    except ConcurrentUpdate as exc:
        logger.warning(f"Concurrent update: {exc.message}")
        raise
    except CirculationError as exc:
        logger.info(f"Rejected ({exc.code}): {exc.message}")
        raise
