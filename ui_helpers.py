import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable that controls CLI output mode.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

_STAT_LABELS = [
    ("total_books", "Total Books"),
    ("available_books", "Available Copies"),
    ("total_borrowed", "Total Loans"),
    ("currently_borrowed", "Currently Borrowed"),
    ("overdue_books", "Overdue"),
    ("total_fines", "Total Fines"),
]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _format_date(value: Any) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def print_loans_result(loans: List[Any], empty_message: str = "No loans found.") -> None:
    """Print loans in the current output mode.
    - plain: 'id - title | borrower | status | due | fine' lines
    - json: JSON array of loan dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Status")
        table.add_column("Due", no_wrap=True)
        table.add_column("Fine", justify="right")
        status_styles = {"borrowed": "green", "overdue": "bold red", "returned": "dim"}
        for loan in loans:
            status = loan.status.value
            table.add_row(
                loan.id,
                loan.book_title or loan.book_id,
                f"{loan.borrower_name} <{loan.borrower_email}>",
                f"[{status_styles.get(status, 'white')}]{status}[/]",
                _format_date(loan.due_date),
                f"{loan.fine:.2f}",
            )
        _console.print(table)
    else:
        for loan in loans:
            print(
                f"{loan.id} - {loan.book_title} | {loan.borrower_name} | {loan.status.value} | "
                f"due {_format_date(loan.due_date)} | fine {loan.fine:.2f}"
            )


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in _STAT_LABELS)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in _STAT_LABELS:
            print(f"{label}: {stats.get(key, 0)}")
