import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from database import Database
from loan import Loan, LoanStatus, to_iso, utcnow

logger = logging.getLogger(__name__)

_LOAN_COLUMNS = (
    "id", "book_id", "borrower_name", "borrower_email", "borrower_phone", "notes",
    "book_title", "book_author", "borrow_date", "due_date", "return_date", "status",
    "fine", "days_overdue", "last_recalculated_at", "created_at", "updated_at",
)

# Columns a caller may change after insertion; id, book_id, borrower and dates of creation are immutable.
_UPDATABLE_COLUMNS = {"status", "return_date", "fine", "days_overdue", "last_recalculated_at", "notes"}


@dataclass
class LoanFilter:
    search: Optional[str] = None
    status: Optional[LoanStatus] = None
    book_id: Optional[str] = None


def _to_db_value(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, LoanStatus):
        return value.value
    return value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class LoanLedger:
    """Loan records. Loans are inserted and updated, never deleted."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def insert_loan(self, loan: Loan, conn: Optional[sqlite3.Connection] = None) -> str:
        now = utcnow()
        loan.created_at = loan.created_at or now
        loan.updated_at = now
        record = loan.to_dict()
        placeholders = ", ".join("?" for _ in _LOAN_COLUMNS)
        with self.db.session(conn) as c:
            c.execute(
                f"INSERT INTO loans ({', '.join(_LOAN_COLUMNS)}) VALUES ({placeholders})",
                tuple(record[col] for col in _LOAN_COLUMNS),
            )
        return loan.id

    def get_loan(self, loan_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        with self.db.session(conn, write=False) as c:
            row = c.execute(f"SELECT {', '.join(_LOAN_COLUMNS)} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    def update_loan(self, loan_id: str, fields: Dict[str, object],
                    expected_statuses: Optional[Iterable[str]] = None,
                    conn: Optional[sqlite3.Connection] = None) -> bool:
        """Apply a partial update and report whether a row matched.

        With ``expected_statuses`` the write only happens while the loan's
        current status is one of them, so the check and the write are a
        single atomic statement.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update loan fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValueError("Nothing to update.")

        assignments = [f"{name} = ?" for name in fields] + ["updated_at = ?"]
        params: List[object] = [_to_db_value(value) for value in fields.values()] + [to_iso(utcnow())]
        where = "id = ?"
        params.append(loan_id)
        if expected_statuses is not None:
            statuses = [_to_db_value(s) for s in expected_statuses]
            where += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        with self.db.session(conn) as c:
            cursor = c.execute(f"UPDATE loans SET {', '.join(assignments)} WHERE {where}", params)
            return cursor.rowcount == 1

    def scan_active_loans(self, as_of: datetime,
                          conn: Optional[sqlite3.Connection] = None) -> Tuple[List[Loan], List[str]]:
        """Open loans due strictly before ``as_of``, oldest due date first.

        Returns the parsed loans and the ids of rows that could not be parsed.
        """
        with self.db.session(conn, write=False) as c:
            rows = c.execute(
                f"""
                SELECT {', '.join(_LOAN_COLUMNS)} FROM loans
                WHERE due_date < ? AND status IN (?, ?)
                ORDER BY due_date ASC
                """,
                (to_iso(as_of), *LoanStatus.open_statuses()),
            ).fetchall()
        return self._rows_to_loans(rows)

    def query_active_loans(self, as_of: datetime, conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        loans, _ = self.scan_active_loans(as_of, conn=conn)
        return loans

    def query_all(self, loan_filter: Optional[LoanFilter] = None, limit: int = 100,
                  conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        """Loans matching the filter, most recent borrow first."""
        loan_filter = loan_filter or LoanFilter()
        clauses: List[str] = []
        params: List[object] = []
        if loan_filter.search and loan_filter.search.strip():
            pattern = f"%{_escape_like(loan_filter.search.strip())}%"
            clauses.append(
                "(borrower_name LIKE ? ESCAPE '\\' OR borrower_email LIKE ? ESCAPE '\\' "
                "OR book_title LIKE ? ESCAPE '\\' OR book_author LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 4)
        if loan_filter.status is not None:
            clauses.append("status = ?")
            params.append(_to_db_value(loan_filter.status))
        if loan_filter.book_id:
            clauses.append("book_id = ?")
            params.append(loan_filter.book_id)

        sql = f"SELECT {', '.join(_LOAN_COLUMNS)} FROM loans"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY borrow_date DESC LIMIT ?"
        params.append(max(int(limit), 0))

        with self.db.session(conn, write=False) as c:
            rows = c.execute(sql, params).fetchall()
        loans, _ = self._rows_to_loans(rows)
        return loans

    def count_open_loans_by_book(self, conn: Optional[sqlite3.Connection] = None) -> Dict[str, int]:
        with self.db.session(conn, write=False) as c:
            rows = c.execute(
                "SELECT book_id, COUNT(*) AS open_loans FROM loans WHERE status IN (?, ?) GROUP BY book_id",
                LoanStatus.open_statuses(),
            ).fetchall()
        return {row["book_id"]: row["open_loans"] for row in rows}

    def orphaned_loan_ids(self, conn: Optional[sqlite3.Connection] = None) -> List[str]:
        """Open loans whose book no longer exists in the inventory."""
        with self.db.session(conn, write=False) as c:
            rows = c.execute(
                """
                SELECT l.id FROM loans l
                LEFT JOIN books b ON b.id = l.book_id
                WHERE b.id IS NULL AND l.status IN (?, ?)
                ORDER BY l.due_date ASC
                """,
                LoanStatus.open_statuses(),
            ).fetchall()
        return [row["id"] for row in rows]

    def get_statistics(self, conn: Optional[sqlite3.Connection] = None) -> dict:
        with self.db.session(conn, write=False) as c:
            row = c.execute(
                """
                SELECT
                    COUNT(*) AS total_borrowed,
                    COALESCE(SUM(CASE WHEN status IN ('borrowed', 'overdue') THEN 1 ELSE 0 END), 0) AS currently_borrowed,
                    COALESCE(SUM(CASE WHEN status = 'overdue' THEN 1 ELSE 0 END), 0) AS overdue_books,
                    COALESCE(SUM(fine), 0) AS total_fines
                FROM loans
                """
            ).fetchone()
        return dict(row)

    @staticmethod
    def _rows_to_loans(rows) -> Tuple[List[Loan], List[str]]:
        loans: List[Loan] = []
        malformed: List[str] = []
        for row in rows:
            try:
                loans.append(Loan.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                loan_id = row["id"] if "id" in row.keys() else "?"
                logger.warning(f"Skipping malformed loan record {loan_id}: {e}")
                malformed.append(loan_id)
        return loans, malformed
