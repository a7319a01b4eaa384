from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from book import Book
from config import settings
from database import Database
from inventory import InventoryStore
from ledger import LoanFilter, LoanLedger
from lending import LendingManager, LendingResult
from loan import Loan, LoanStatus, utcnow
from reconcile import AuditReport, LedgerAuditor
from sweeper import OverdueSweeper, SweepReport


class Library:
    """Wires the storage handle, stores and lending services together."""

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = Database(db_file)
        self.db.initialize()

        self.inventory = InventoryStore(self.db)
        self.ledger = LoanLedger(self.db)
        self.lending = LendingManager(self.db, self.inventory, self.ledger, clock=clock)
        self.sweeper = OverdueSweeper(self.db, self.ledger, clock=clock)
        self.auditor = LedgerAuditor(self.db, self.inventory, self.ledger)
        self.clock = clock

    # ------------------------- Inventory ------------------------- #
    def add_book(self, title: str, author: str, stock: int = 1, **kwargs) -> Book:
        return self.inventory.add_book(title, author, stock, **kwargs)

    def get_book(self, book_id: str) -> Optional[Book]:
        return self.inventory.get_book(book_id)

    def list_books(self) -> List[Book]:
        return self.inventory.list_books()

    # ------------------------- Lending ------------------------- #
    def borrow_book(self, borrower_name: Optional[str], borrower_email: Optional[str],
                    book_id: Optional[str], due_date: Union[str, datetime, None],
                    borrower_phone: Optional[str] = None, notes: Optional[str] = None) -> LendingResult:
        return self.lending.borrow_book(borrower_name, borrower_email, book_id, due_date,
                                        borrower_phone=borrower_phone, notes=notes)

    def return_book(self, loan_id: Optional[str], fine=None, notes: Optional[str] = None) -> LendingResult:
        return self.lending.return_book(loan_id, fine=fine, notes=notes)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.ledger.get_loan(loan_id)

    def list_loans(self, search: Optional[str] = None, status: Optional[LoanStatus] = None,
                   book_id: Optional[str] = None, limit: Optional[int] = None) -> List[Loan]:
        limit = settings.default_page_size if limit is None else min(limit, settings.max_page_size)
        return self.ledger.query_all(LoanFilter(search=search, status=status, book_id=book_id), limit=limit)

    def overdue_loans(self, as_of: Optional[datetime] = None) -> List[Loan]:
        """Open loans past due as of now, most overdue first, whether or not a sweep has labelled them yet."""
        return self.ledger.query_active_loans(as_of or self.clock())

    # ------------------------- Fines ------------------------- #
    def recalculate_overdue(self, fine_per_day: Optional[float] = None, trigger: str = "manual",
                            as_of: Optional[datetime] = None) -> SweepReport:
        rate = settings.fine_per_day if fine_per_day is None else fine_per_day
        return self.sweeper.sweep(rate, as_of=as_of, trigger=trigger)

    def fine_update_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.db.recent_fine_updates(limit)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        stats = self.inventory.get_statistics()
        stats.update(self.ledger.get_statistics())
        return {
            "total_books": stats["total_books"],
            "total_borrowed": stats["total_borrowed"],
            "currently_borrowed": stats["currently_borrowed"],
            "overdue_books": stats["overdue_books"],
            "total_fines": float(stats["total_fines"]),
            "available_books": stats["available_books"],
        }

    def reconcile(self, repair: bool = False) -> AuditReport:
        return self.auditor.audit(repair=repair)

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
