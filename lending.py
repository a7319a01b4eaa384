import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from database import Database
from errors import LendingConflictError, LendingConsistencyError, LendingError, LendingValidationError
from inventory import InventoryStore
from ledger import LoanLedger
from loan import Loan, LoanStatus, utcnow
from validators import DateValidator, EmailValidator, TextValidator, validate_fine

logger = logging.getLogger(__name__)

MISSING_BORROW_FIELDS = "Missing required fields: borrowerName, borrowerEmail, bookId, dueDate"
BOOK_NOT_FOUND = "Book not found or not available for borrowing"
BOOK_NOT_AVAILABLE = "Book is not available for borrowing"
LOAN_ID_REQUIRED = "Valid loan ID is required"
LOAN_NOT_FOUND = "Loan not found"
ALREADY_RETURNED = "Book has already been returned"


@dataclass
class LendingResult:
    """Outcome of a borrow or return: business failures are values, not exceptions."""

    success: bool
    message: str
    loan_id: Optional[str] = None
    error: Optional[str] = None
    status_code: int = 200

    @classmethod
    def failure(cls, exc: LendingError) -> "LendingResult":
        return cls(success=False, message=exc.message, error=exc.kind, status_code=exc.status_code)

    def to_dict(self) -> dict:
        payload = {"success": self.success, "message": self.message}
        if self.loan_id is not None:
            payload["loan_id"] = self.loan_id
        return payload


class LendingManager:
    """Runs borrow and return as single transactions over the inventory and the ledger.

    The invariant kept here: for every book, ``available_stock`` plus the
    number of its open loans equals ``total_stock``.
    """

    def __init__(self, db: Database, inventory: InventoryStore, ledger: LoanLedger,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.inventory = inventory
        self.ledger = ledger
        self.clock = clock

    # ------------------------- Borrow ------------------------- #
    def borrow_book(self, borrower_name: Optional[str], borrower_email: Optional[str],
                    book_id: Optional[str], due_date: Union[str, datetime, None],
                    borrower_phone: Optional[str] = None, notes: Optional[str] = None) -> LendingResult:
        try:
            loan = self._borrow(borrower_name, borrower_email, book_id, due_date, borrower_phone, notes)
        except LendingConsistencyError as e:
            logger.error(f"Borrow of book {book_id} rolled back: {e.message}")
            return LendingResult.failure(e)
        except LendingError as e:
            logger.warning(f"Borrow rejected for book {book_id}: {e.message}")
            return LendingResult.failure(e)

        logger.info(f"Loan {loan.id} created: '{loan.book_title}' to {loan.borrower_email}, due {loan.due_date.isoformat()}")
        return LendingResult(success=True, message="Book borrowed successfully", loan_id=loan.id)

    def _borrow(self, borrower_name, borrower_email, book_id, due_date, borrower_phone, notes) -> Loan:
        if not all(TextValidator.is_present(v) for v in (borrower_name, borrower_email, book_id, due_date)):
            raise LendingValidationError(MISSING_BORROW_FIELDS)
        if not EmailValidator.is_valid_email(borrower_email):
            raise LendingValidationError("Invalid email format")

        now = self.clock()
        due = DateValidator.parse_due_date(due_date)
        DateValidator.require_future(due, now)

        book_id = str(book_id).strip()
        with self.db.transaction() as conn:
            book = self.inventory.get_book(book_id, conn=conn)
            if book is None:
                raise LendingConflictError(BOOK_NOT_FOUND)
            if book.available_stock <= 0:
                raise LendingConflictError(BOOK_NOT_AVAILABLE)
            # Conditional decrement: matches only while a copy is still on the shelf.
            if not self.inventory.increment_stock(book.id, -1, conn=conn):
                raise LendingConflictError(BOOK_NOT_AVAILABLE)

            loan = Loan(
                id=uuid.uuid4().hex,
                book_id=book.id,
                borrower_name=borrower_name.strip(),
                borrower_email=borrower_email.strip(),
                borrower_phone=TextValidator.clean_optional(borrower_phone),
                notes=TextValidator.clean_optional(notes),
                book_title=book.title,
                book_author=book.author,
                borrow_date=now,
                due_date=due,
                status=LoanStatus.BORROWED,
                fine=0.0,
            )
            try:
                self.ledger.insert_loan(loan, conn=conn)
            except sqlite3.IntegrityError as e:
                raise LendingConsistencyError("Could not record the loan; the borrow was rolled back") from e
        return loan

    # ------------------------- Return ------------------------- #
    def return_book(self, loan_id: Optional[str], fine=None, notes: Optional[str] = None) -> LendingResult:
        try:
            loan = self._return(loan_id, fine, notes)
        except LendingConsistencyError as e:
            logger.error(f"Return of loan {loan_id} rolled back: {e.message}")
            return LendingResult.failure(e)
        except LendingError as e:
            logger.warning(f"Return rejected for loan {loan_id}: {e.message}")
            return LendingResult.failure(e)

        logger.info(f"Loan {loan.id} returned with fine {loan.fine}")
        return LendingResult(success=True, message="Book returned successfully", loan_id=loan.id)

    def _return(self, loan_id, fine, notes) -> Loan:
        if not TextValidator.is_present(loan_id):
            raise LendingValidationError(LOAN_ID_REQUIRED)
        fine_override = validate_fine(fine)
        loan_id = str(loan_id).strip()

        now = self.clock()
        with self.db.transaction() as conn:
            try:
                loan = self.ledger.get_loan(loan_id, conn=conn)
            except ValueError as e:
                raise LendingConsistencyError(f"Loan {loan_id} has a malformed record: {e}") from e
            if loan is None:
                raise LendingConflictError(LOAN_NOT_FOUND)
            if loan.status == LoanStatus.RETURNED:
                raise LendingConflictError(ALREADY_RETURNED)

            # Accrued fine is kept unless explicitly overridden.
            final_fine = fine_override if fine_override is not None else loan.fine
            fields = {"status": LoanStatus.RETURNED, "return_date": now, "fine": final_fine}
            cleaned_notes = TextValidator.clean_optional(notes)
            if cleaned_notes:
                fields["notes"] = cleaned_notes

            if not self.ledger.update_loan(loan.id, fields, expected_statuses=LoanStatus.open_statuses(), conn=conn):
                raise LendingConflictError(ALREADY_RETURNED)
            if not self.inventory.increment_stock(loan.book_id, 1, conn=conn):
                raise LendingConsistencyError(
                    f"Could not restore stock for book {loan.book_id}; the return was rolled back"
                )

        loan.status = LoanStatus.RETURNED
        loan.return_date = now
        loan.fine = final_fine
        if cleaned_notes:
            loan.notes = cleaned_notes
        return loan
