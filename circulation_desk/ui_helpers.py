import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from circulation_desk.models import CirculationRecord

# Environment variable that controls the CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _plain_line(r: CirculationRecord) -> str:
    line = (
        f"#{r.id} book={r.book_id} borrower={r.borrower_id} status={r.status.value} "
        f"due={r.due_date.date().isoformat()} renewals={r.renewal_count}"
    )
    if r.fine:
        line += f" fine={r.fine}"
    return line


def print_record(record: CirculationRecord) -> None:
    """Print a single loan in the current output mode."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Book:[/] {record.book_id}\n"
            f"[bold]Borrower:[/] {record.borrower_id}\n"
            f"[bold]Status:[/] {record.status.value}\n"
            f"[bold]Issued:[/] {record.issue_date.isoformat()}\n"
            f"[bold]Due:[/] {record.due_date.isoformat()}\n"
            f"[bold]Returned:[/] {record.return_date.isoformat() if record.return_date else '-'}\n"
            f"[bold]Renewals:[/] {record.renewal_count}\n"
            f"[bold]Fine:[/] {record.fine}"
        )
        _console.print(Panel.fit(content, title=f"Loan #{record.id}", border_style="blue"))
    else:
        print(_plain_line(record))


def print_loans_result(records: List[CirculationRecord], empty_message: str = "No loans found.") -> None:
    """Print a list of loans.
    - plain: one line per loan, or the empty message
    - json: JSON array of records
    - rich: Rich table
    """
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Status")
        table.add_column("Due")
        table.add_column("Renewals")
        table.add_column("Fine")
        for r in records:
            table.add_row(
                str(r.id), str(r.book_id), str(r.borrower_id), r.status.value,
                r.due_date.date().isoformat(), str(r.renewal_count), str(r.fine),
            )
        _console.print(table)
    else:
        for r in records:
            print(_plain_line(r))


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print circulation statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False, default=str))
        return

    lines = [
        ("Total Books", stats.get("total_books", 0)),
        ("Available Copies", f"{stats.get('available_copies', 0)}/{stats.get('total_copies', 0)}"),
        ("Borrowed", stats.get("borrowed", 0)),
        ("Overdue", stats.get("overdue", 0)),
        ("Returned", stats.get("returned", 0)),
        ("Lost", stats.get("lost", 0)),
        ("Total Fines", stats.get("total_fines", "0.00")),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
