from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum

ONE_DAY = timedelta(days=1)


class LoanStatus(str, Enum):
    BORROWED = "borrowed"
    OVERDUE = "overdue"
    RETURNED = "returned"

    @classmethod
    def open_statuses(cls) -> tuple:
        return (cls.BORROWED.value, cls.OVERDUE.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    # Fixed microsecond precision keeps stored timestamps lexicographically ordered.
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def compute_days_overdue(due_date: datetime, as_of: datetime) -> int:
    """Whole days past due, rounding any started day up. Zero if not yet due."""
    elapsed = as_utc(as_of) - as_utc(due_date)
    if elapsed <= timedelta(0):
        return 0
    return math.ceil(elapsed / ONE_DAY)


class Loan:
    """One copy of a book lent to one borrower.

    Title and author are a snapshot taken at borrow time, so later catalog
    edits or deletes do not change how historical loans read.
    """

    def __init__(self, id: str, book_id: str, borrower_name: str, borrower_email: str,
                 borrow_date: datetime, due_date: datetime,
                 borrower_phone: str | None = None, notes: str | None = None,
                 book_title: str | None = None, book_author: str | None = None,
                 return_date: datetime | None = None,
                 status: LoanStatus | str = LoanStatus.BORROWED,
                 fine: float = 0.0, days_overdue: int = 0,
                 last_recalculated_at: datetime | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.borrower_name = borrower_name
        self.borrower_email = borrower_email
        self.borrower_phone = borrower_phone
        self.notes = notes
        self.book_title = book_title
        self.book_author = book_author
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = LoanStatus(status)
        self.fine = float(fine or 0)
        self.days_overdue = int(days_overdue or 0)
        self.last_recalculated_at = last_recalculated_at
        self.created_at = created_at
        self.updated_at = updated_at

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Loan {self.id} book={self.book_id} status={self.status.value} fine={self.fine}>"

    @property
    def is_open(self) -> bool:
        return self.status != LoanStatus.RETURNED

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_open and as_utc(now) > as_utc(self.due_date)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_name": self.borrower_name,
            "borrower_email": self.borrower_email,
            "borrower_phone": self.borrower_phone,
            "notes": self.notes,
            "book_title": self.book_title,
            "book_author": self.book_author,
            "borrow_date": to_iso(self.borrow_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "status": self.status.value,
            "fine": self.fine,
            "days_overdue": self.days_overdue,
            "last_recalculated_at": to_iso(self.last_recalculated_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row) -> "Loan":
        """Build a Loan from a ``loans`` row. Raises ValueError on malformed dates or status."""
        data = dict(row)
        borrow_date = parse_iso(data["borrow_date"])
        due_date = parse_iso(data["due_date"])
        if borrow_date is None or due_date is None:
            raise ValueError(f"Loan {data.get('id')} is missing its borrow or due date")
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            borrower_name=data["borrower_name"],
            borrower_email=data["borrower_email"],
            borrower_phone=data.get("borrower_phone"),
            notes=data.get("notes"),
            book_title=data.get("book_title"),
            book_author=data.get("book_author"),
            borrow_date=borrow_date,
            due_date=due_date,
            return_date=parse_iso(data.get("return_date")),
            status=data.get("status") or LoanStatus.BORROWED,
            fine=data.get("fine") or 0.0,
            days_overdue=data.get("days_overdue") or 0,
            last_recalculated_at=parse_iso(data.get("last_recalculated_at")),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
        )
