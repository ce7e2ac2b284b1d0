from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class LoanStatus(str, Enum):
    """Status of a circulation record. Exactly one holds at any time."""

    BORROWED = "borrowed"
    RENEWED = "renewed"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED, LoanStatus.OVERDUE})
TERMINAL_STATUSES = frozenset({LoanStatus.RETURNED, LoanStatus.LOST})


class Role(str, Enum):
    USER = "user"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in (Role.LIBRARIAN, Role.ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO text so that SQL string comparison orders correctly
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


class Book:
    """A catalog title with its physical copy counts."""

    def __init__(self, title: str, author: str, isbn: str, total_copies: int = 1,
                 available_copies: int | None = None, id: int | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Book":
        return cls(
            id=data.get("id"),
            title=data.get("title", ""),
            author=data.get("author", ""),
            isbn=data.get("isbn", ""),
            total_copies=int(data.get("total_copies", 1)),
            available_copies=data.get("available_copies"),
            created_at=data.get("created_at"),
        )


class User:
    """A library patron or a staff member."""

    def __init__(self, name: str, email: str, role: Role | str = Role.USER,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role)
        self.created_at = created_at

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            email=data.get("email", ""),
            role=data.get("role", Role.USER.value),
            created_at=data.get("created_at"),
        )


class CirculationRecord:
    """One loan of one physical copy to one borrower."""

    def __init__(self, book_id: int, borrower_id: int, issue_date: datetime, due_date: datetime,
                 status: LoanStatus | str = LoanStatus.BORROWED, return_date: datetime | None = None,
                 fine: Decimal | str | int = Decimal("0"), renewal_count: int = 0,
                 issued_by: int | None = None, returned_to: int | None = None,
                 notes: str | None = None, id: int | None = None, version: int = 1) -> None:
        self.id = id
        self.book_id = book_id
        self.borrower_id = borrower_id
        self.issue_date = as_utc(issue_date)
        self.due_date = as_utc(due_date)
        self.return_date = as_utc(return_date) if return_date else None
        self.status = LoanStatus(status)
        self.fine = Decimal(str(fine))
        self.renewal_count = renewal_count
        self.issued_by = issued_by
        self.returned_to = returned_to
        self.notes = notes
        self.version = version

    def __repr__(self) -> str:  # pragma: no cover
        return f"<CirculationRecord id={self.id} book={self.book_id} borrower={self.borrower_id} status={self.status.value}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "status": self.status.value,
            "fine": str(self.fine),
            "renewal_count": self.renewal_count,
            "issued_by": self.issued_by,
            "returned_to": self.returned_to,
            "notes": self.notes,
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CirculationRecord":
        return cls(
            id=row["id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            issue_date=from_db_timestamp(row["issue_date"]),
            due_date=from_db_timestamp(row["due_date"]),
            return_date=from_db_timestamp(row.get("return_date")),
            status=row["status"],
            fine=row.get("fine") or "0",
            renewal_count=row.get("renewal_count", 0),
            issued_by=row.get("issued_by"),
            returned_to=row.get("returned_to"),
            notes=row.get("notes"),
            version=row.get("version", 1),
        )
