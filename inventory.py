import logging
import sqlite3
import uuid
from typing import List, Optional

from book import Book
from database import Database
from loan import to_iso, utcnow

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "id, title, author, isbn, genre, available_stock, total_stock, created_at, updated_at"


class InventoryStore:
    """Book records and their stock counters.

    Every method takes an optional ``conn`` so it can take part in a
    transaction already opened by the caller; without one it runs in its own.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def add_book(self, title: str, author: str, stock: int = 1, *, isbn: Optional[str] = None,
                 genre: Optional[str] = None, book_id: Optional[str] = None,
                 conn: Optional[sqlite3.Connection] = None) -> Book:
        """Provision a book with ``stock`` lendable copies."""
        if not title or not title.strip() or not author or not author.strip():
            raise ValueError("Title and author are required")
        if stock < 0:
            raise ValueError("Stock cannot be negative")
        now = to_iso(utcnow())
        book = Book(
            id=book_id or uuid.uuid4().hex,
            title=title,
            author=author,
            available_stock=stock,
            total_stock=stock,
            isbn=isbn,
            genre=genre,
            created_at=now,
            updated_at=now,
        )
        with self.db.session(conn) as c:
            try:
                c.execute(
                    f"INSERT INTO books ({_BOOK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (book.id, book.title, book.author, book.isbn, book.genre,
                     book.available_stock, book.total_stock, book.created_at, book.updated_at),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Book with id {book.id} already exists.") from e
        logger.info(f"Book added: {book.title} ({book.id}) with {stock} copies")
        return book

    def get_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.session(conn, write=False) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list_books(self, conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        with self.db.session(conn, write=False) as c:
            rows = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def increment_stock(self, book_id: str, delta: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Apply ``available_stock += delta`` atomically.

        The update is conditional: it matches only if the book exists and the
        new value stays within ``[0, total_stock]``. Returns whether it matched.
        """
        with self.db.session(conn) as c:
            cursor = c.execute(
                """
                UPDATE books
                SET available_stock = available_stock + ?, updated_at = ?
                WHERE id = ?
                  AND available_stock + ? >= 0
                  AND available_stock + ? <= total_stock
                """,
                (delta, to_iso(utcnow()), book_id, delta, delta),
            )
            matched = cursor.rowcount == 1
        if not matched:
            logger.warning(f"Stock change of {delta:+d} rejected for book {book_id}")
        return matched

    def set_stock(self, book_id: str, available_stock: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Overwrite the counter. Used only by the reconciliation pass."""
        with self.db.session(conn) as c:
            cursor = c.execute(
                "UPDATE books SET available_stock = ?, updated_at = ? "
                "WHERE id = ? AND ? >= 0 AND ? <= total_stock",
                (available_stock, to_iso(utcnow()), book_id, available_stock, available_stock),
            )
            return cursor.rowcount == 1

    def get_statistics(self, conn: Optional[sqlite3.Connection] = None) -> dict:
        with self.db.session(conn, write=False) as c:
            row = c.execute(
                "SELECT COUNT(*) AS total_books, COALESCE(SUM(available_stock), 0) AS available_books FROM books"
            ).fetchone()
        return {"total_books": row["total_books"], "available_books": row["available_books"]}
