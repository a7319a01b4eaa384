import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)


def default_database_file() -> str:
    """Resolve the database file, letting LIBRARY_DB_FILE override the loaded settings."""
    return os.environ.get("LIBRARY_DB_FILE") or settings.db_file


class Database:
    """Long-lived handle to the SQLite lending database.

    One instance is created per process (or per test) and injected into the
    stores, the transaction manager and the sweeper. Every operation opens a
    short-lived connection; writes run inside ``BEGIN IMMEDIATE`` transactions
    so concurrent borrow/return/sweep calls are serialized by SQLite itself.
    """

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file or default_database_file()
        self.timeout = settings.db_timeout if timeout is None else timeout
        self._initialized = False

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly in transaction()
        conn = sqlite3.connect(
            self.db_file,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)};")
        return conn

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block in a single transaction; commit on success, roll back on any error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def session(self, conn: Optional[sqlite3.Connection] = None, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Join the caller's open connection, or open a transaction of our own."""
        if conn is not None:
            yield conn
            return
        with self.transaction(immediate=write) as own:
            yield own

    def ping(self) -> bool:
        try:
            conn = self.connect()
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
            return True
        except sqlite3.Error:
            return False

    def initialize(self) -> None:
        """Create the tables if needed. Safe to call repeatedly."""
        if self._initialized:
            return
        conn = self.connect()
        try:
            # WAL lets readers proceed while a borrow or return holds the write lock
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    isbn TEXT,
                    genre TEXT,
                    total_stock INTEGER NOT NULL DEFAULT 1 CHECK(total_stock >= 0),
                    available_stock INTEGER NOT NULL DEFAULT 1 CHECK(available_stock >= 0),
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            # No foreign key on book_id: catalog deletes leave historical loans intact.
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS loans (
                    id TEXT PRIMARY KEY,
                    book_id TEXT NOT NULL,
                    borrower_name TEXT NOT NULL,
                    borrower_email TEXT NOT NULL,
                    borrower_phone TEXT,
                    notes TEXT,
                    book_title TEXT,
                    book_author TEXT,
                    borrow_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL DEFAULT 'borrowed'
                        CHECK(status IN ('borrowed', 'overdue', 'returned')),
                    fine REAL NOT NULL DEFAULT 0,
                    days_overdue INTEGER NOT NULL DEFAULT 0,
                    last_recalculated_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS fine_update_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_at TEXT NOT NULL,
                    updated_count INTEGER NOT NULL,
                    skipped_count INTEGER NOT NULL DEFAULT 0,
                    fine_per_day REAL NOT NULL,
                    trigger_source TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrow_date ON loans(borrow_date DESC)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_fine_update_logs_run_at ON fine_update_logs(run_at DESC)")
        finally:
            conn.close()
        self._initialized = True
        logger.debug(f"Database initialized at {self.db_file}")

    def record_fine_update(self, run_at: str, updated_count: int, skipped_count: int,
                           fine_per_day: float, trigger: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO fine_update_logs (run_at, updated_count, skipped_count, fine_per_day, trigger_source) "
                "VALUES (?, ?, ?, ?, ?)",
                (run_at, updated_count, skipped_count, fine_per_day, trigger),
            )

    def recent_fine_updates(self, limit: int = 20) -> list:
        with self.transaction(immediate=False) as conn:
            rows = conn.execute(
                "SELECT run_at, updated_count, skipped_count, fine_per_day, trigger_source "
                "FROM fine_update_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]
