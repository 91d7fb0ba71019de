import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from book import Book
from config import settings
from database import get_db_connection, initialize_database

logger = logging.getLogger(__name__)

# sqlite3 raises OverflowError for ints outside the 64-bit range instead of a sqlite3.Error
DRIVER_ERRORS = (sqlite3.Error, OverflowError)

INSERT_BOOK_SQL = "INSERT INTO books (title, author, year, genre) VALUES (?, ?, ?, ?)"
REQUIRED_FIELDS = ("title", "author", "year", "genre")


@dataclass
class Page:
    """One slice of the catalog plus the numbers needed to page through it."""

    books: List[Book] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total_books: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_books / self.limit)

    def to_dict(self) -> dict:
        return {
            "books": [b.to_dict() for b in self.books],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "totalBooks": self.total_books,
                "totalPages": self.total_pages,
            },
        }


class Library:
    """Manages the collection of books stored in SQLite."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.database_file
        initialize_database(self.db_file)  # Ensure DB and tables exist

    # ------------------------- Core operations ------------------------- #
    def list_books(self, page: int = 1, limit: Optional[int] = None) -> Page:
        """Return one page of books in storage order."""
        limit = settings.default_page_size if limit is None else limit
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive integers")

        offset = (page - 1) * limit
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            rows = conn.execute(
                "SELECT id, title, author, year, genre FROM books ORDER BY id LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return Page(books=[Book.from_dict(dict(r)) for r in rows], page=page, limit=limit, total_books=total)

    def get_book(self, book_id: int) -> Book:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, author, year, genre FROM books WHERE id = ?", (book_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("Book not found")
        return Book.from_dict(dict(row))

    def add_book(self, title: Any, author: Any, year: Any, genre: Any) -> Book:
        """Insert a fully specified book and return it with its new id."""
        book = Book(title=title, author=author, year=year, genre=genre)
        self._validate(book)
        with self._connect() as conn:
            cursor = conn.execute(INSERT_BOOK_SQL, (book.title, book.author, book.year, book.genre))
            conn.commit()
            book.id = cursor.lastrowid
        logger.info("Added book %s: %s", book.id, book.title)
        return book

    def update_book(self, book_id: int, title: Any, author: Any, year: Any, genre: Any) -> Book:
        """Replace all four fields of a book. No partial updates."""
        book = Book(id=book_id, title=title, author=author, year=year, genre=genre)
        self._validate(book)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE books SET title = ?, author = ?, year = ?, genre = ? WHERE id = ?",
                (book.title, book.author, book.year, book.genre, book_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info("Updated book %s", book_id)
        return book

    def remove_book(self, book_id: int) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info("Deleted book %s", book_id)

    def books_by_genre(self, genre: Optional[str]) -> List[Book]:
        """Exact-match genre filter. An empty result is not an error."""
        if genre is None or not genre.strip():
            raise ValidationError("Genre is required")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, title, author, year, genre FROM books WHERE genre = ? ORDER BY id", (genre,)
            ).fetchall()
        return [Book.from_dict(dict(r)) for r in rows]

    def count_books(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    def import_books(self, items: Iterable[Any]) -> List[Book]:
        """Insert every item inside a single transaction.

        Items are not validated: missing fields (or items that are not
        objects at all) are stored as NULL. The first failing insert stops
        the loop and rolls the whole batch back, so either every item is
        committed or none is.
        """
        imported: List[Book] = []
        conn = get_db_connection(self.db_file)
        try:
            try:
                for item in items:
                    data = item if isinstance(item, dict) else {}
                    book = Book.from_dict(data)
                    cursor = conn.execute(INSERT_BOOK_SQL, (book.title, book.author, book.year, book.genre))
                    book.id = cursor.lastrowid
                    imported.append(book)
            except DRIVER_ERRORS as e:
                conn.rollback()
                logger.warning("Import rolled back after %d inserts: %s", len(imported), e)
                raise StorageError(str(e)) from e

            try:
                conn.commit()
            except DRIVER_ERRORS as e:
                conn.rollback()
                logger.error("Import commit failed: %s", e)
                raise StorageError(str(e)) from e
        finally:
            conn.close()

        logger.info("Imported %d books", len(imported))
        return imported

    # ------------------------- Utilities ------------------------- #
    def _connect(self) -> "_Connection":
        return _Connection(self.db_file)

    @staticmethod
    def _validate(book: Book) -> None:
        missing = []
        for name in REQUIRED_FIELDS:
            value = getattr(book, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        if missing:
            raise ValidationError(
                "All fields (title, author, year, genre) are required; missing: " + ", ".join(missing)
            )


class _Connection:
    """Open a connection for one operation and turn driver errors into StorageError."""

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file
        self.conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> sqlite3.Connection:
        try:
            self.conn = get_db_connection(self.db_file)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        return self.conn

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.conn.close()
        if exc_type is not None and issubclass(exc_type, DRIVER_ERRORS):
            logger.error("Database error: %s", exc)
            raise StorageError(str(exc)) from exc
        return False


class CatalogError(Exception):
    """Base class for errors reported to API clients."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CatalogError):
    status_code = 400


class NotFoundError(CatalogError):
    status_code = 404


class StorageError(CatalogError):
    status_code = 500


class ImportReadError(CatalogError):
    status_code = 500
