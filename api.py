import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import settings
from errors import LendingValidationError
from library import Library
from loan import Loan, to_iso, utcnow
from scheduler import FineScheduler
from sweeper import SweepReport

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

library = Library()
scheduler = FineScheduler(library.sweeper)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.enable_fine_scheduler:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BorrowRequest(CamelModel):
    # All optional here: missing fields are reported by the lending core with a 400.
    borrower_name: Optional[str] = None
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    book_id: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None


class ReturnRequest(CamelModel):
    fine: Optional[float] = None
    notes: Optional[str] = None


class LendingResponse(CamelModel):
    success: bool
    message: str
    loan_id: Optional[str] = None


class LoanModel(CamelModel):
    id: str
    book_id: str
    borrower_name: str
    borrower_email: str
    borrower_phone: Optional[str] = None
    notes: Optional[str] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    status: str
    fine: float = 0.0
    days_overdue: int = 0
    last_recalculated_at: Optional[str] = None


class RecalculateRequest(CamelModel):
    fine_per_day: Optional[float] = None


class RecalculateResponse(CamelModel):
    success: bool = True
    message: str
    updated_count: int
    skipped_count: int = 0
    fine_per_day: float
    timestamp: str


class StatsModel(CamelModel):
    total_books: int
    total_borrowed: int
    currently_borrowed: int
    overdue_books: int
    total_fines: float
    available_books: int


class BookCreateModel(CamelModel):
    title: str
    author: str
    stock: int = Field(default=1, ge=0)
    isbn: Optional[str] = None
    genre: Optional[str] = None


class BookModel(CamelModel):
    id: str
    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None
    available_stock: int
    total_stock: int


def _loan_models(loans: List[Loan]) -> List[LoanModel]:
    return [LoanModel(**loan.to_dict()) for loan in loans]


def _sweep_response(report: SweepReport, message: str) -> RecalculateResponse:
    return RecalculateResponse(
        message=message,
        updated_count=report.updated_count,
        skipped_count=report.skipped_count,
        fine_per_day=report.fine_per_day,
        timestamp=to_iso(report.timestamp),
    )


def _internal_error(context: str) -> JSONResponse:
    logger.exception(f"Error in {context}")
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# --- Health check ---
@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": to_iso(utcnow()),
        "db": library.db.ping(),
        "scheduler": scheduler.running,
    }


# --- Inventory (provisioning only) ---
@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel):
    try:
        book = library.add_book(payload.title, payload.author, payload.stock, isbn=payload.isbn, genre=payload.genre)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    book = library.get_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


# --- Lending ---
@app.post("/borrowed-books/borrow", response_model=LendingResponse)
def borrow_book(payload: BorrowRequest):
    try:
        result = library.borrow_book(
            payload.borrower_name,
            payload.borrower_email,
            payload.book_id,
            payload.due_date,
            borrower_phone=payload.borrower_phone,
            notes=payload.notes,
        )
    except Exception:
        return _internal_error("borrow book API")
    body = LendingResponse(success=result.success, message=result.message, loan_id=result.loan_id)
    return JSONResponse(status_code=result.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@app.post("/borrowed-books/return", response_model=LendingResponse)
def return_book(loan_id: Optional[str] = Query(None, alias="loanId"),
                payload: Optional[ReturnRequest] = Body(None)):
    payload = payload or ReturnRequest()
    try:
        result = library.return_book(loan_id, fine=payload.fine, notes=payload.notes)
    except Exception:
        return _internal_error("return book API")
    body = LendingResponse(success=result.success, message=result.message)
    return JSONResponse(status_code=result.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@app.get("/borrowed-books", response_model=List[LoanModel])
def list_borrowed_books(search: Optional[str] = None,
                        limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size)):
    return _loan_models(library.list_loans(search=search, limit=limit))


@app.get("/borrowed-books/overdue", response_model=List[LoanModel])
def list_overdue_books():
    return _loan_models(library.overdue_loans())


@app.post("/borrowed-books/overdue", response_model=RecalculateResponse)
def recalculate_overdue(payload: Optional[RecalculateRequest] = Body(None)):
    fine_per_day = payload.fine_per_day if payload else None
    try:
        report = library.recalculate_overdue(fine_per_day, trigger="api")
    except LendingValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": e.message})
    except Exception:
        return _internal_error("overdue recalculation API")
    return _sweep_response(
        report, f"Updated {report.updated_count} overdue books with fine of {report.fine_per_day} per day"
    )


# --- Fine update triggers ---
@app.post("/admin/trigger-fine-update", response_model=RecalculateResponse)
def trigger_fine_update():
    try:
        report = library.recalculate_overdue(trigger="manual")
    except Exception:
        return _internal_error("manual fine update")
    return _sweep_response(report, f"Manual fine update completed. Updated {report.updated_count} books.")


@app.get("/cron/update-fines", response_model=RecalculateResponse)
def cron_update_fines(x_cron_secret: Optional[str] = Header(None)):
    if settings.cron_secret and x_cron_secret != settings.cron_secret:
        return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})
    try:
        report = library.recalculate_overdue(trigger="cron")
    except Exception:
        return _internal_error("cron fine update")
    return _sweep_response(report, f"Daily fine update completed. Updated {report.updated_count} books.")


@app.get("/admin/fine-updates")
def fine_update_history(limit: int = Query(20, ge=1, le=200)):
    return library.fine_update_history(limit)


@app.post("/admin/reconcile")
def reconcile(repair: bool = False):
    return library.reconcile(repair=repair).to_dict()


# --- Statistics ---
@app.get("/stats", response_model=StatsModel)
def stats():
    return StatsModel(**library.get_statistics())
