import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, List, Optional, Union

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cache_manager import ResponseCache, cache_key
from config import settings
from importer import import_upload
from library import CatalogError, Library
from notifier import BOOK_ADDED, BOOK_DELETED, BOOK_UPDATED, ChangeEvent, ChangeNotifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the store, cache and notifier once and keep them on app.state."""
    app.state.library = Library(settings.database_file)
    app.state.cache = ResponseCache()
    app.state.notifier = ChangeNotifier(queue_size=settings.notifier_queue_size)
    logger.info("Catalog ready (database: %s)", app.state.library.db_file)
    try:
        yield
    finally:
        app.state.cache.clear()
        del app.state.notifier
        del app.state.cache
        del app.state.library
        logger.info("Catalog shut down")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Response cache ---
@app.middleware("http")
async def serve_from_cache(request: Request, call_next):
    """Answer repeated GETs under /books straight from the response cache."""
    if request.method == "GET" and request.url.path.startswith("/books"):
        cache: ResponseCache = request.app.state.cache
        key = cache_key(request)
        if cache.has(key):
            try:
                return JSONResponse(cache.get(key), headers={"X-Cache": "HIT"})
            except KeyError:
                pass  # cleared between has() and get()
    return await call_next(request)


# --- Request logging ---
@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# --- Dependencies ---
def get_library(request: Request) -> Library:
    return request.app.state.library


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.notifier


LibraryDep = Annotated[Library, Depends(get_library)]
CacheDep = Annotated[ResponseCache, Depends(get_cache)]
NotifierDep = Annotated[ChangeNotifier, Depends(get_notifier)]


# --- Error handling ---
@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location}: {err.get('msg')}")
    message = "; ".join(problems) or "Invalid request"
    logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: Optional[str] = None
    author: Optional[str] = None
    # Imported rows are stored as-is, so year is not guaranteed to be an integer
    year: Optional[Union[int, float, str]] = None
    genre: Optional[str] = None


class BookPayload(BaseModel):
    """Create/replace body. Presence of every field is checked by the store."""
    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None


class PaginationModel(BaseModel):
    page: int
    limit: int
    totalBooks: int
    totalPages: int


class BookPageModel(BaseModel):
    books: List[BookModel]
    pagination: PaginationModel


class RecommendationsModel(BaseModel):
    books: List[BookModel]
    message: str


class MessageModel(BaseModel):
    message: str


class ImportResultModel(MessageModel):
    imported: int


# --- Routes ---
@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version}


@app.get("/health")
def health(library: LibraryDep, cache: CacheDep):
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "total_books": library.count_books(),
        "cache": cache.stats(),
    }


@app.get("/books", response_model=BookPageModel)
def list_books(
    request: Request,
    library: LibraryDep,
    cache: CacheDep,
    page: int = Query(1, ge=1, description="Page number"),
    limit: Optional[int] = Query(None, ge=1, description="Books per page"),
):
    """List books page by page in storage order."""
    generation = cache.generation
    payload = library.list_books(page=page, limit=limit).to_dict()
    cache.set(cache_key(request), payload, generation)
    return payload


@app.get("/books/recommendations/{genre}", response_model=RecommendationsModel)
def recommend_books(genre: str, request: Request, library: LibraryDep, cache: CacheDep):
    """Books whose genre matches exactly. No match is an empty list, not an error."""
    generation = cache.generation
    books = library.books_by_genre(genre)
    if books:
        message = f"Found {len(books)} book(s) in genre '{genre}'"
    else:
        message = "No books found in this genre"
    payload = {"books": [b.to_dict() for b in books], "message": message}
    cache.set(cache_key(request), payload, generation)
    return payload


@app.post("/books/import", response_model=ImportResultModel)
async def import_books(
    library: LibraryDep,
    cache: CacheDep,
    notifier: NotifierDep,
    file: Optional[UploadFile] = File(None),
):
    """Import a JSON array of books in one all-or-nothing transaction."""
    imported = await import_upload(file, library, cache, notifier)
    return {"message": "Books imported successfully", "imported": len(imported)}


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, request: Request, library: LibraryDep, cache: CacheDep):
    generation = cache.generation
    payload = library.get_book(book_id).to_dict()
    cache.set(cache_key(request), payload, generation)
    return payload


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookPayload, library: LibraryDep, cache: CacheDep, notifier: NotifierDep):
    book = library.add_book(payload.title, payload.author, payload.year, payload.genre)
    cache.clear()
    notifier.publish(ChangeEvent(BOOK_ADDED, book.to_dict()))
    return book.to_dict()


@app.put("/books/{book_id}", response_model=MessageModel)
def update_book(book_id: int, payload: BookPayload, library: LibraryDep, cache: CacheDep, notifier: NotifierDep):
    book = library.update_book(book_id, payload.title, payload.author, payload.year, payload.genre)
    cache.clear()
    notifier.publish(ChangeEvent(BOOK_UPDATED, book.to_dict()))
    return {"message": "Book updated successfully"}


@app.delete("/books/{book_id}", response_model=MessageModel)
def delete_book(book_id: int, library: LibraryDep, cache: CacheDep, notifier: NotifierDep):
    library.remove_book(book_id)
    cache.clear()
    notifier.publish(ChangeEvent(BOOK_DELETED, {"id": book_id}))
    return {"message": "Book deleted successfully"}


# --- Change feed ---
@app.websocket("/ws")
async def change_feed(websocket: WebSocket):
    """Push every change event to the connected client as a JSON frame."""
    notifier: ChangeNotifier = websocket.app.state.notifier
    # Register before accepting so no event published after the handshake is missed
    subscription = notifier.subscribe()
    await websocket.accept()

    async def forward():
        while True:
            event = await subscription.get()
            await websocket.send_json(event.to_dict())

    async def drain():
        while True:
            await websocket.receive_text()  # client messages are ignored

    tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        # Either side ending (disconnect or failed send) closes the feed
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        notifier.unsubscribe(subscription)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, WebSocketDisconnect):
                logger.warning("Change feed closed after error: %r", result)
