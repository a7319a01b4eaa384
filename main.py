import json
import logging
import os
import subprocess
import sys
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import LendingValidationError
from library import Library
from loan import to_iso, utcnow
from ui_helpers import get_output_mode, print_loans_result, print_stats_result, set_output_mode

APP_NAME = "Library Lending CLI"
DEFAULT_LOAN_DAYS = 14

console = Console()
logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")


class LibraryManager:
    """Process-wide Library instance, rebuilt when the database file changes (e.g. per test)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.default_database_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


def _print_result(result) -> None:
    if get_output_mode() == "json":
        print(json.dumps(result.to_dict(), ensure_ascii=False))
    elif result.success:
        print(result.message)
    else:
        print(f"Error: {result.message}")
    if not result.success:
        raise typer.Exit(code=1)


@app.command("add-book")
def cli_add_book(title: str, author: str,
                 stock: int = typer.Option(1, "--stock", "-s", help="Number of lendable copies"),
                 isbn: Optional[str] = typer.Option(None, "--isbn")):
    """Provision a book with a number of lendable copies."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_book(title, author, stock, isbn=isbn)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Added: {book.title} by {book.author} [{book.id}] ({book.total_stock} copies)")


@app.command("borrow")
def cli_borrow(book_id: str,
               name: str = typer.Option(..., "--name", "-n", help="Borrower name"),
               email: str = typer.Option(..., "--email", "-e", help="Borrower email"),
               due: Optional[str] = typer.Option(None, "--due", help="Due date (ISO format)"),
               days: int = typer.Option(DEFAULT_LOAN_DAYS, "--days", "-d", help="Loan length in days when --due is not given"),
               phone: Optional[str] = typer.Option(None, "--phone"),
               notes: Optional[str] = typer.Option(None, "--notes")):
    """Lend one copy of a book."""
    lib = LibraryManager.get_instance()
    due_date = due or to_iso(utcnow() + timedelta(days=days))
    result = lib.borrow_book(name, email, book_id, due_date, borrower_phone=phone, notes=notes)
    if result.success and get_output_mode() != "json":
        print(f"Loan ID: {result.loan_id}")
    _print_result(result)


@app.command("return")
def cli_return(loan_id: str,
               fine: Optional[float] = typer.Option(None, "--fine", help="Override the accrued fine"),
               notes: Optional[str] = typer.Option(None, "--notes")):
    """Return a borrowed book."""
    lib = LibraryManager.get_instance()
    _print_result(lib.return_book(loan_id, fine=fine, notes=notes))


@app.command("loans")
def cli_loans(search: Optional[str] = typer.Option(None, "--search", "-q"),
              limit: int = typer.Option(settings.default_page_size, "--limit", "-l")):
    """List loans, most recent first."""
    lib = LibraryManager.get_instance()
    print_loans_result(lib.list_loans(search=search, limit=limit))


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date, most overdue first."""
    lib = LibraryManager.get_instance()
    print_loans_result(lib.overdue_loans(), empty_message="No overdue loans.")


@app.command("sweep")
def cli_sweep(fine_per_day: Optional[float] = typer.Option(None, "--fine-per-day", "-f",
                                                          help="Fine per overdue day (default: FINE_PER_DAY)")):
    """Recalculate overdue status and fines for all open loans."""
    lib = LibraryManager.get_instance()
    try:
        report = lib.recalculate_overdue(fine_per_day, trigger="cli")
    except LendingValidationError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    if get_output_mode() == "json":
        print(json.dumps(report.to_dict(), ensure_ascii=False))
    else:
        print(f"Updated {report.updated_count} overdue loans at {report.fine_per_day} per day.")
        if report.skipped_count:
            print(f"Skipped {report.skipped_count} malformed loans.")


@app.command("stats")
def cli_stats():
    """Show lending statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("reconcile")
def cli_reconcile(repair: bool = typer.Option(False, "--repair", help="Rewrite drifted stock counters")):
    """Check that stock counters match open loans."""
    report = LibraryManager.get_instance().reconcile(repair=repair)
    if get_output_mode() == "json":
        print(json.dumps(report.to_dict(), ensure_ascii=False))
        return
    if report.consistent:
        print(f"Ledger consistent ({report.books_checked} books checked).")
        return
    for d in report.discrepancies:
        state = "repaired" if d.repaired else "not repaired"
        print(f"{d.book_id} ({d.title}): available {d.available_stock}, expected {d.expected_stock} [{state}]")
    for loan_id in report.orphaned_loans:
        print(f"Loan {loan_id} references a missing book")


@app.command("serve")
def serve(host: Optional[str] = typer.Option(None, "--host"), port: Optional[int] = typer.Option(None, "--port")):
    """Start the Uvicorn server for the HTTP API."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"[green]Starting API at http://{host}:{port}/[/]")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    try:
        subprocess.run(args, check=False, env=os.environ.copy())
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
