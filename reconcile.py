"""Stock reconciliation for the lending ledger.

Borrow and return commit both of their writes in one SQLite transaction, so
the ledger cannot drift through them. Stock can still drift through direct
edits to the database or a catalog tool that changes counters by hand. This
pass finds books where ``available_stock != total_stock - open loans`` and
open loans whose book has vanished, and can rewrite the counters.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from database import Database
from inventory import InventoryStore
from ledger import LoanLedger

logger = logging.getLogger(__name__)


@dataclass
class StockDiscrepancy:
    book_id: str
    title: str
    total_stock: int
    available_stock: int
    open_loans: int
    expected_stock: int
    repaired: bool = False

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class AuditReport:
    books_checked: int = 0
    discrepancies: List[StockDiscrepancy] = field(default_factory=list)
    orphaned_loans: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.discrepancies and not self.orphaned_loans

    def to_dict(self) -> dict:
        return {
            "books_checked": self.books_checked,
            "consistent": self.consistent,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "orphaned_loans": list(self.orphaned_loans),
        }


class LedgerAuditor:
    def __init__(self, db: Database, inventory: InventoryStore, ledger: LoanLedger) -> None:
        self.db = db
        self.inventory = inventory
        self.ledger = ledger

    def audit(self, repair: bool = False) -> AuditReport:
        report = AuditReport()
        # One write transaction so no borrow or return interleaves with the counts.
        with self.db.transaction() as conn:
            open_loans = self.ledger.count_open_loans_by_book(conn=conn)
            books = self.inventory.list_books(conn=conn)
            report.books_checked = len(books)
            for book in books:
                loans = open_loans.get(book.id, 0)
                expected = book.total_stock - loans
                if expected == book.available_stock:
                    continue
                discrepancy = StockDiscrepancy(
                    book_id=book.id,
                    title=book.title,
                    total_stock=book.total_stock,
                    available_stock=book.available_stock,
                    open_loans=loans,
                    expected_stock=expected,
                )
                if repair and expected >= 0:
                    discrepancy.repaired = self.inventory.set_stock(book.id, expected, conn=conn)
                logger.warning(
                    f"Stock mismatch for book {book.id}: available={book.available_stock}, "
                    f"expected={expected} (repaired={discrepancy.repaired})"
                )
                report.discrepancies.append(discrepancy)
            report.orphaned_loans = self.ledger.orphaned_loan_ids(conn=conn)

        if report.orphaned_loans:
            logger.warning(f"{len(report.orphaned_loans)} open loans reference missing books")
        return report
