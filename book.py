from __future__ import annotations


class Book:
    """A lendable title in the inventory, with its stock counters."""

    def __init__(self, id: str, title: str, author: str, available_stock: int = 1, total_stock: int | None = None,
                 isbn: str | None = None, genre: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.available_stock = int(available_stock)
        self.total_stock = int(total_stock) if total_stock is not None else self.available_stock
        self.isbn = isbn
        self.genre = genre
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_stock}/{self.total_stock} available)"

    @property
    def is_available(self) -> bool:
        return self.available_stock > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "available_stock": self.available_stock,
            "total_stock": self.total_stock,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            available_stock=data.get("available_stock", 1),
            total_stock=data.get("total_stock"),
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
