import sqlite3
from datetime import timedelta

import pytest

from lending import (
    ALREADY_RETURNED,
    BOOK_NOT_AVAILABLE,
    BOOK_NOT_FOUND,
    LOAN_ID_REQUIRED,
    LOAN_NOT_FOUND,
    MISSING_BORROW_FIELDS,
)
from loan import LoanStatus


def _borrow(lib, clock, book_id, *, days=7, **overrides):
    kwargs = dict(
        borrower_name="Ada Lovelace",
        borrower_email="ada@example.com",
        book_id=book_id,
        due_date=clock() + timedelta(days=days),
    )
    kwargs.update(overrides)
    return lib.borrow_book(**kwargs)


def test_borrow_then_return_same_day(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert", stock=3)

    result = _borrow(lib, clock, book.id, days=7)
    assert result.success is True
    assert result.loan_id
    assert lib.get_book(book.id).available_stock == 2

    loan = lib.get_loan(result.loan_id)
    assert loan.status == LoanStatus.BORROWED
    assert loan.fine == 0
    assert loan.borrow_date == clock()
    assert loan.book_title == "Dune"
    assert loan.book_author == "Frank Herbert"

    returned = lib.return_book(result.loan_id)
    assert returned.success is True
    loan = lib.get_loan(result.loan_id)
    assert loan.status == LoanStatus.RETURNED
    assert loan.fine == 0
    assert loan.return_date == clock()
    assert lib.get_book(book.id).available_stock == 3


def test_borrow_rejected_when_no_stock(lib, clock):
    book = lib.add_book("Rare Manuscript", "Anonymous", stock=0)

    result = _borrow(lib, clock, book.id)

    assert result.success is False
    assert "not available" in result.message
    assert result.message == BOOK_NOT_AVAILABLE
    assert result.status_code == 400
    assert lib.list_loans() == []
    assert lib.get_book(book.id).available_stock == 0


def test_borrow_unknown_book(lib, clock):
    result = _borrow(lib, clock, "missing-book")
    assert result.success is False
    assert result.message == BOOK_NOT_FOUND
    assert result.error == "conflict"
    assert result.status_code == 400


@pytest.mark.parametrize("field", ["borrower_name", "borrower_email", "book_id", "due_date"])
def test_borrow_requires_fields(lib, clock, field):
    book = lib.add_book("Emma", "Jane Austen")
    blank = "  " if field != "due_date" else None
    result = _borrow(lib, clock, **{"book_id": book.id, field: blank})
    assert result.success is False
    assert result.message == MISSING_BORROW_FIELDS
    assert result.error == "validation"
    assert lib.get_book(book.id).available_stock == 1


def test_borrow_checks_run_in_order(lib, clock):
    # Missing fields win over a bad email, a bad email wins over a past due date,
    # and a past due date wins over an unknown book.
    result = _borrow(lib, clock, "nope", borrower_name="", borrower_email="not-an-email")
    assert result.message == MISSING_BORROW_FIELDS

    result = _borrow(lib, clock, "nope", borrower_email="not-an-email", days=-1)
    assert result.message == "Invalid email format"

    result = _borrow(lib, clock, "nope", days=-1)
    assert result.message == "Due date must be in the future"


def test_borrow_due_date_must_be_strictly_future(lib, clock):
    book = lib.add_book("Emma", "Jane Austen")
    result = lib.borrow_book("Ada", "ada@example.com", book.id, clock())
    assert result.success is False
    assert result.message == "Due date must be in the future"


def test_borrow_accepts_iso_due_date_string(lib, clock):
    book = lib.add_book("Emma", "Jane Austen")
    due = (clock() + timedelta(days=14)).strftime("%Y-%m-%dT%H:%M:%SZ")
    result = lib.borrow_book("Ada", "ada@example.com", book.id, due, borrower_phone=" 555-0100 ", notes="  ")
    assert result.success is True
    loan = lib.get_loan(result.loan_id)
    assert loan.due_date == clock() + timedelta(days=14)
    assert loan.borrower_phone == "555-0100"
    assert loan.notes is None


def test_borrow_rejects_unparseable_due_date(lib, clock):
    book = lib.add_book("Emma", "Jane Austen")
    result = lib.borrow_book("Ada", "ada@example.com", book.id, "next tuesday")
    assert result.success is False
    assert result.message == "Invalid due date format"


def test_return_twice_is_rejected(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert", stock=2)
    loan_id = _borrow(lib, clock, book.id).loan_id

    assert lib.return_book(loan_id).success is True
    second = lib.return_book(loan_id)

    assert second.success is False
    assert second.message == ALREADY_RETURNED
    assert lib.get_book(book.id).available_stock == 2


def test_return_unknown_or_blank_loan(lib):
    assert lib.return_book("does-not-exist").message == LOAN_NOT_FOUND
    assert lib.return_book("").message == LOAN_ID_REQUIRED
    assert lib.return_book(None).message == LOAN_ID_REQUIRED


def test_return_rejects_negative_fine(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert")
    loan_id = _borrow(lib, clock, book.id).loan_id

    result = lib.return_book(loan_id, fine=-5)

    assert result.success is False
    assert result.error == "validation"
    assert lib.get_loan(loan_id).status == LoanStatus.BORROWED
    assert lib.get_book(book.id).available_stock == 0


def test_return_keeps_accrued_fine(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert")
    loan_id = _borrow(lib, clock, book.id, days=1).loan_id
    clock.advance(days=3)
    lib.recalculate_overdue(10)

    assert lib.return_book(loan_id, notes="Cover slightly worn").success is True

    loan = lib.get_loan(loan_id)
    assert loan.status == LoanStatus.RETURNED
    assert loan.fine == 20
    assert loan.notes == "Cover slightly worn"


def test_return_with_fine_override(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert")
    loan_id = _borrow(lib, clock, book.id, days=1).loan_id
    clock.advance(days=5)
    lib.recalculate_overdue(10)

    assert lib.return_book(loan_id, fine=0).success is True
    assert lib.get_loan(loan_id).fine == 0


def test_borrow_rolls_back_when_loan_insert_fails(lib, clock, monkeypatch):
    book = lib.add_book("Dune", "Frank Herbert", stock=2)

    def broken_insert(loan, conn=None):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: loans.id")

    monkeypatch.setattr(lib.ledger, "insert_loan", broken_insert)
    result = _borrow(lib, clock, book.id)

    assert result.success is False
    assert result.error == "consistency"
    assert result.status_code == 500
    assert lib.get_book(book.id).available_stock == 2
    assert lib.list_loans() == []


def test_return_rolls_back_when_stock_write_fails(lib, clock, monkeypatch):
    book = lib.add_book("Dune", "Frank Herbert", stock=1)
    loan_id = _borrow(lib, clock, book.id).loan_id

    monkeypatch.setattr(lib.inventory, "increment_stock", lambda book_id, delta, conn=None: False)
    result = lib.return_book(loan_id)

    assert result.success is False
    assert result.error == "consistency"
    loan = lib.get_loan(loan_id)
    assert loan.status == LoanStatus.BORROWED
    assert loan.return_date is None
    assert lib.get_book(book.id).available_stock == 0


def test_return_of_loan_for_deleted_book_is_rolled_back(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert", stock=1)
    loan_id = _borrow(lib, clock, book.id).loan_id
    with lib.db.transaction() as conn:
        conn.execute("DELETE FROM books WHERE id = ?", (book.id,))

    result = lib.return_book(loan_id)

    assert result.success is False
    assert result.error == "consistency"
    assert lib.get_loan(loan_id).status == LoanStatus.BORROWED


def test_storage_faults_propagate(lib, clock, monkeypatch):
    book = lib.add_book("Dune", "Frank Herbert", stock=1)

    def locked(loan, conn=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(lib.ledger, "insert_loan", locked)
    with pytest.raises(sqlite3.OperationalError):
        _borrow(lib, clock, book.id)
    assert lib.get_book(book.id).available_stock == 1


def test_stock_conservation_over_sequence(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert", stock=3)
    loan_ids = []
    for _ in range(3):
        result = _borrow(lib, clock, book.id)
        assert result.success
        loan_ids.append(result.loan_id)
    assert _borrow(lib, clock, book.id).success is False

    for i, loan_id in enumerate(loan_ids, 1):
        assert lib.return_book(loan_id).success
        open_loans = sum(1 for loan in lib.list_loans() if loan.is_open)
        stock = lib.get_book(book.id).available_stock
        assert stock == i
        assert stock + open_loans == 3


def test_return_of_malformed_loan_is_a_consistency_failure(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert", stock=1)
    loan_id = _borrow(lib, clock, book.id).loan_id
    with lib.db.transaction() as conn:
        conn.execute("UPDATE loans SET due_date = 'not-a-date' WHERE id = ?", (loan_id,))

    result = lib.return_book(loan_id)

    assert result.success is False
    assert result.error == "consistency"
    assert result.status_code == 500
    assert lib.get_book(book.id).available_stock == 0


def test_return_rejects_infinite_fine(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert")
    loan_id = _borrow(lib, clock, book.id).loan_id

    result = lib.return_book(loan_id, fine=float("inf"))

    assert result.success is False
    assert result.error == "validation"
    assert lib.get_book(book.id).available_stock == 0
