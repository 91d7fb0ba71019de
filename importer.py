"""
Batch import of books from an uploaded JSON file.

The whole upload is inserted in one transaction. Only after the commit
succeeds is the response cache cleared and a ``booksImported`` event
published.
"""

import json
import logging
from typing import Any, List, Optional

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from book import Book
from cache_manager import ResponseCache
from config import settings
from library import ImportReadError, Library, ValidationError
from notifier import BOOKS_IMPORTED, ChangeEvent, ChangeNotifier

logger = logging.getLogger(__name__)


def parse_books_document(raw: bytes) -> List[Any]:
    """Decode an upload as UTF-8 JSON and make sure it is an array."""
    try:
        books = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("Invalid JSON format") from e

    if not isinstance(books, list):
        raise ValidationError("Invalid JSON format: Expected an array of books")
    return books


async def read_upload(file: Optional[UploadFile], max_size: Optional[int] = None) -> bytes:
    if file is None:
        raise ValidationError("No file uploaded")

    max_size = settings.max_upload_size if max_size is None else max_size
    try:
        # Read one byte past the limit so oversized uploads can be told apart
        raw = await file.read(max_size + 1)
    except OSError as e:
        logger.error("Could not read upload %s: %s", file.filename, e)
        raise ImportReadError("Failed to read the file") from e

    if len(raw) > max_size:
        raise ValidationError(f"File too large (limit is {max_size} bytes)")
    return raw


async def import_upload(
    file: Optional[UploadFile],
    library: Library,
    cache: ResponseCache,
    notifier: ChangeNotifier,
    max_size: Optional[int] = None,
) -> List[Book]:
    """Run the import pipeline for one upload and return the stored books."""
    raw = await read_upload(file, max_size)
    items = parse_books_document(raw)

    imported = await run_in_threadpool(library.import_books, items)

    cache.clear()
    notifier.publish(ChangeEvent(BOOKS_IMPORTED, {"books": [b.to_dict() for b in imported]}))
    logger.info("Import of %s finished: %d books", file.filename, len(imported))
    return imported
