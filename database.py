import logging
import sqlite3
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file. Library instances may point at a different file.
DATABASE_FILE = settings.database_file

SAMPLE_BOOKS = [
    ("Pride and Prejudice", "Jane Austen", 1813, "Classic"),
    ("Moby-Dick", "Herman Melville", 1851, "Classic"),
    ("Dune", "Frank Herbert", 1965, "Sci-Fi"),
    ("Neuromancer", "William Gibson", 1984, "Sci-Fi"),
    ("The Hobbit", "J. R. R. Tolkien", 1937, "Fantasy"),
]


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with dict-like rows."""
    conn = sqlite3.connect(db_file or DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the books table if it does not exist yet.

    Columns are nullable on purpose: batch import writes whatever fields the
    uploaded items carry.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT,
                author TEXT,
                year INTEGER,
                genre TEXT
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
        conn.commit()
    finally:
        conn.close()


def seed_sample_books(db_file: Optional[str] = None) -> int:
    """Insert the sample books into an empty table. Returns the number inserted."""
    conn = get_db_connection(db_file)
    try:
        book_count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        if book_count > 0:
            return 0  # Already has data, nothing to seed
        conn.executemany(
            "INSERT INTO books (title, author, year, genre) VALUES (?, ?, ?, ?)",
            SAMPLE_BOOKS,
        )
        conn.commit()
        logger.info("Seeded %d sample books", len(SAMPLE_BOOKS))
        return len(SAMPLE_BOOKS)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None, seed: Optional[bool] = None) -> None:
    """Create tables and optionally seed sample data."""
    create_tables(db_file)
    if settings.seed_sample_data if seed is None else seed:
        seed_sample_books(db_file)
