import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime
from typing import Optional

import typer

from circulation_desk import database
from circulation_desk.config import settings
from circulation_desk.errors import CirculationError
from circulation_desk.ledger import LendingLedger
from circulation_desk.models import Book, Role, User
from circulation_desk.repository import LibraryStore
from circulation_desk.ui_helpers import (
    print_loans_result,
    print_record,
    print_stats_result,
    set_output_mode,
)

logger = logging.getLogger(__name__)

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


def get_ledger() -> LendingLedger:
    """Build a ledger against the configured database file."""
    db_file = os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE
    return LendingLedger(LibraryStore(db_file))


def _fail(error: Exception) -> None:
    code = getattr(error, "code", "error")
    print(f"Error ({code}): {error}")
    raise typer.Exit(code=1)


def _require_staff(ledger: LendingLedger, staff_id: Optional[int]) -> Optional[int]:
    if staff_id is None:
        return None
    staff = ledger.store.find_user(staff_id)
    if staff is None or not staff.is_staff:
        print(f"User {staff_id} is not a librarian or admin.")
        raise typer.Exit(code=1)
    return staff_id


# --- Typer CLI application ---
app = typer.Typer(help="Circulation desk CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log messages"),
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    if output:
        set_output_mode(output)


@app.command("add-book")
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", min=1, help="Number of physical copies"),
):
    """Register a title with its number of copies."""
    ledger = get_ledger()
    try:
        book = ledger.store.add_book(Book(title=title, author=author, isbn=isbn, total_copies=copies))
    except ValueError as e:
        _fail(e)
    print(f"Added book #{book.id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("add-user")
def cli_add_user(
    name: str,
    email: str,
    role: Role = typer.Option(Role.USER, "--role", "-r", help="user | librarian | admin"),
):
    """Register a borrower or a staff member."""
    ledger = get_ledger()
    try:
        user = ledger.store.add_user(User(name=name, email=email, role=role))
    except ValueError as e:
        _fail(e)
    print(f"Added user #{user.id}: {user.name} ({user.role.value})")


@app.command("issue")
def cli_issue(
    book_id: int,
    user_id: int,
    due: Optional[datetime] = typer.Option(None, "--due", formats=DATE_FORMATS, help="Due date (UTC)"),
    staff: Optional[int] = typer.Option(None, "--staff", help="Issuing librarian's user id"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Lend a copy of a book to a user."""
    ledger = get_ledger()
    staff_id = _require_staff(ledger, staff)
    try:
        record = ledger.issue(book_id, user_id, due, staff_id, notes=notes)
    except CirculationError as e:
        _fail(e)
    print(f"Issued loan #{record.id}, due {record.due_date.date().isoformat()}")


@app.command("return")
def cli_return(
    record_id: int,
    staff: Optional[int] = typer.Option(None, "--staff", help="Receiving librarian's user id"),
):
    """Take a loaned copy back and settle the fine."""
    ledger = get_ledger()
    staff_id = _require_staff(ledger, staff)
    try:
        record = ledger.return_loan(record_id, staff_id)
    except CirculationError as e:
        _fail(e)
    print(f"Returned loan #{record.id}. Fine: {record.fine}")


@app.command("renew")
def cli_renew(
    record_id: int,
    as_user: int = typer.Option(..., "--as-user", "-u", help="Id of the user asking for the renewal"),
):
    """Extend a loan by the renewal period."""
    ledger = get_ledger()
    requester = ledger.store.find_user(as_user)
    if requester is None:
        print(f"User {as_user} not found.")
        raise typer.Exit(code=1)
    try:
        record = ledger.renew(record_id, requester.id, requester.role)
    except CirculationError as e:
        _fail(e)
    print(f"Renewed loan #{record.id}, now due {record.due_date.date().isoformat()} "
          f"(renewal {record.renewal_count})")


@app.command("lost")
def cli_lost(
    record_id: int,
    staff: Optional[int] = typer.Option(None, "--staff", help="Librarian's user id"),
):
    """Close a loan whose copy is not coming back."""
    ledger = get_ledger()
    staff_id = _require_staff(ledger, staff)
    try:
        record = ledger.mark_lost(record_id, staff_id)
    except CirculationError as e:
        _fail(e)
    print(f"Loan #{record.id} marked as lost.")


@app.command("sweep")
def cli_sweep(
    at: Optional[datetime] = typer.Option(None, "--at", formats=DATE_FORMATS, help="Sweep as of this time (UTC)"),
):
    """Mark every loan past its due date as overdue."""
    updated = get_ledger().sweep_overdue(at)
    print(f"Marked {len(updated)} loan(s) overdue.")
    if updated:
        print_loans_result(updated)


@app.command("show")
def cli_show(record_id: int):
    """Show a single loan."""
    try:
        record = get_ledger().get_record(record_id)
    except CirculationError as e:
        _fail(e)
    print_record(record)


@app.command("loans")
def cli_loans(
    user_id: int,
    history: bool = typer.Option(False, "--history", help="Include returned and lost loans"),
):
    """List a user's current loans, or their full history."""
    ledger = get_ledger()
    records = ledger.history(user_id) if history else ledger.active_loans(user_id)
    print_loans_result(records)


@app.command("overdue")
def cli_overdue():
    """List loans past their due date without changing them."""
    print_loans_result(get_ledger().overdue_loans(), empty_message="No overdue loans.")


@app.command("stats")
def cli_stats():
    """Show circulation statistics."""
    print_stats_result(get_ledger().store.get_statistics())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    open_browser: bool = typer.Option(True, "--open/--no-open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if open_browser:
        webbrowser.open(url)
    logger.info(f"Launching uvicorn on {host}:{port}")
    subprocess.run([
        sys.executable, "-m", "uvicorn", "circulation_desk.api:app",
        "--host", host, "--port", str(port),
    ])


if __name__ == "__main__":
    app()
