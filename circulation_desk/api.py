import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation_desk.config import settings
from circulation_desk.database import get_db_connection
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
from circulation_desk.ledger import LendingLedger
from circulation_desk.models import Book, CirculationRecord, LoanStatus, Role, User, utcnow
from circulation_desk.repository import LibraryStore

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ledger: Optional[LendingLedger] = None


def get_ledger() -> LendingLedger:
    """Process-wide ledger, built on first use so the database path is read late."""
    global _ledger
    if _ledger is None:
        _ledger = LendingLedger(LibraryStore(settings.db_file))
    return _ledger


# --- Error mapping ---
_STATUS_CODES = {
    NotFound: 404,
    Unavailable: 400,
    DuplicateLoan: 400,
    AlreadyReturned: 400,
    RenewalLimitReached: 400,
    Unauthorized: 403,
    ConcurrentUpdate: 409,
    InvariantViolation: 500,
}


@app.exception_handler(CirculationError)
async def circulation_error_handler(request, exc: CirculationError):
    status_code = next((code for kind, code in _STATUS_CODES.items() if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_current_user(
    x_user_id: Optional[int] = Header(default=None, alias="X-User-Id"),
    ledger: LendingLedger = Depends(get_ledger),
) -> User:
    """The acting user, identified by the X-User-Id header."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = ledger.store.find_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def get_optional_user(
    x_user_id: Optional[int] = Header(default=None, alias="X-User-Id"),
    ledger: LendingLedger = Depends(get_ledger),
) -> Optional[User]:
    if x_user_id is None:
        return None
    return ledger.store.find_user(x_user_id)


def require_staff(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="Librarian or admin role required")
    return user


def _ensure_owner_or_staff(user: User, owner_id: int) -> None:
    if user.id != owner_id and not user.is_staff:
        raise HTTPException(status_code=403, detail="Not authorized to view these records")


# --- Models ---
class BookCreateModel(BaseModel):
    isbn: str
    title: str
    author: str
    total_copies: int = Field(default=1, ge=1)


class BookModel(BaseModel):
    id: int
    isbn: str
    title: str
    author: str
    total_copies: int
    available_copies: int
    created_at: str | None = None


class UserCreateModel(BaseModel):
    name: str
    email: str
    role: Role = Role.USER


class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    created_at: str | None = None


class IssueRequest(BaseModel):
    book_id: int
    user_id: int = Field(description="Borrower receiving the copy")
    due_date: datetime | None = Field(default=None, description="Defaults to the standard loan period")
    notes: str | None = None


class CirculationModel(BaseModel):
    id: int
    book_id: int
    borrower_id: int
    issue_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    status: LoanStatus
    fine: Decimal
    renewal_count: int
    issued_by: int | None = None
    returned_to: int | None = None
    notes: str | None = None
    version: int


class CirculationListModel(BaseModel):
    count: int
    data: List[CirculationModel]


class PaginatedCirculationModel(CirculationListModel):
    total: int
    page: int
    page_size: int


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    total_users: int
    borrowed: int
    overdue: int
    returned: int
    lost: int
    total_fines: Decimal
    popular_books: List[Dict[str, Any]]


def _to_model(record: CirculationRecord) -> CirculationModel:
    return CirculationModel(**record.to_dict())


def _to_list(records: List[CirculationRecord]) -> CirculationListModel:
    return CirculationListModel(count=len(records), data=[_to_model(r) for r in records])


# --- Health ---
@app.get("/health")
async def health():
    """Lightweight health check with a quick database probe."""
    db_ok = True
    try:
        conn = get_db_connection(settings.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Catalog lookups ---
@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, ledger: LendingLedger = Depends(get_ledger),
             staff: User = Depends(require_staff)):
    try:
        book = ledger.store.add_book(
            Book(title=payload.title, author=payload.author, isbn=payload.isbn, total_copies=payload.total_copies)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.get("/books", response_model=List[BookModel])
def list_books(ledger: LendingLedger = Depends(get_ledger)):
    return [BookModel(**book.to_dict()) for book in ledger.store.list_books()]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, ledger: LendingLedger = Depends(get_ledger)):
    book = ledger.store.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel, ledger: LendingLedger = Depends(get_ledger),
             current: Optional[User] = Depends(get_optional_user)):
    # Only staff may create other staff accounts
    if payload.role.is_staff and (current is None or not current.is_staff):
        raise HTTPException(status_code=403, detail="Librarian or admin role required to create staff accounts")
    try:
        user = ledger.store.add_user(User(name=payload.name, email=payload.email, role=payload.role))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserModel(**user.to_dict())


@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: int, ledger: LendingLedger = Depends(get_ledger),
             current: User = Depends(get_current_user)):
    _ensure_owner_or_staff(current, user_id)
    user = ledger.store.find_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserModel(**user.to_dict())


# --- Circulation ---
@app.post("/circulation/issue", response_model=CirculationModel, status_code=201,
          dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequest, ledger: LendingLedger = Depends(get_ledger),
               staff: User = Depends(require_staff)):
    record = ledger.issue(payload.book_id, payload.user_id, payload.due_date, staff.id, notes=payload.notes)
    return _to_model(record)


@app.put("/circulation/{record_id}/return", response_model=CirculationModel,
         dependencies=[Depends(get_api_key)])
def return_book(record_id: int, ledger: LendingLedger = Depends(get_ledger),
                staff: User = Depends(require_staff)):
    return _to_model(ledger.return_loan(record_id, staff.id))


@app.put("/circulation/{record_id}/renew", response_model=CirculationModel,
         dependencies=[Depends(get_api_key)])
def renew_book(record_id: int, ledger: LendingLedger = Depends(get_ledger),
               current: User = Depends(get_current_user)):
    return _to_model(ledger.renew(record_id, current.id, current.role))


@app.put("/circulation/{record_id}/lost", response_model=CirculationModel,
         dependencies=[Depends(get_api_key)])
def mark_lost(record_id: int, ledger: LendingLedger = Depends(get_ledger),
              staff: User = Depends(require_staff)):
    return _to_model(ledger.mark_lost(record_id, staff.id))


@app.post("/circulation/sweep", response_model=CirculationListModel, dependencies=[Depends(get_api_key)])
def sweep_overdue(ledger: LendingLedger = Depends(get_ledger), staff: User = Depends(require_staff)):
    return _to_list(ledger.sweep_overdue())


@app.get("/circulation", response_model=PaginatedCirculationModel)
def list_circulations(
    status: Optional[LoanStatus] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    book_id: Optional[int] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
    ledger: LendingLedger = Depends(get_ledger),
    staff: User = Depends(require_staff),
):
    records, total = ledger.list_records(
        status=status, borrower_id=user_id, book_id=book_id, page=page, page_size=page_size
    )
    return PaginatedCirculationModel(
        count=len(records), total=total, page=page, page_size=page_size,
        data=[_to_model(r) for r in records],
    )


@app.get("/circulation/overdue", response_model=CirculationListModel)
def list_overdue(ledger: LendingLedger = Depends(get_ledger), staff: User = Depends(require_staff)):
    return _to_list(ledger.overdue_loans())


@app.get("/circulation/user/{user_id}", response_model=CirculationListModel)
def user_active_loans(user_id: int, ledger: LendingLedger = Depends(get_ledger),
                      current: User = Depends(get_current_user)):
    _ensure_owner_or_staff(current, user_id)
    return _to_list(ledger.active_loans(user_id))


@app.get("/circulation/history/{user_id}", response_model=CirculationListModel)
def user_history(user_id: int, ledger: LendingLedger = Depends(get_ledger),
                 current: User = Depends(get_current_user)):
    _ensure_owner_or_staff(current, user_id)
    return _to_list(ledger.history(user_id))


@app.get("/circulation/{record_id}", response_model=CirculationModel)
def get_circulation(record_id: int, ledger: LendingLedger = Depends(get_ledger),
                    current: User = Depends(get_current_user)):
    record = ledger.get_record(record_id)
    _ensure_owner_or_staff(current, record.borrower_id)
    return _to_model(record)


# --- Statistics ---
@app.get("/stats", response_model=StatsModel)
def stats(ledger: LendingLedger = Depends(get_ledger), staff: User = Depends(require_staff)):
    return StatsModel(**ledger.store.get_statistics())
