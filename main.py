import logging
from pathlib import Path
from typing import Optional

import typer
from rich.logging import RichHandler

from config import settings
from importer import parse_books_document
from library import CatalogError, Library
from ui_helpers import print_book, print_books, print_message, set_output_mode

APP_NAME = "Library Catalog CLI"

app = typer.Typer(help=APP_NAME)


def _library() -> Library:
    return Library(settings.database_file)


def _fail(exc: CatalogError) -> None:
    print_message(exc.message, error=True)
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output mode: plain, json or rich"
    ),
):
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", help="Books per page"),
):
    """List books page by page."""
    try:
        result = _library().list_books(page=page, limit=limit)
    except CatalogError as e:
        _fail(e)
    footer = f"Page {result.page} of {result.total_pages} ({result.total_books} books)" if result.total_books else ""
    print_books(result.books, footer=footer)


@app.command("find")
def cli_find(book_id: int):
    """Show a single book."""
    try:
        print_book(_library().get_book(book_id))
    except CatalogError as e:
        _fail(e)


@app.command("add")
def cli_add(title: str, author: str, year: int, genre: str):
    """Add a book."""
    try:
        book = _library().add_book(title, author, year, genre)
    except CatalogError as e:
        _fail(e)
    print_message(f"Successfully added: {book.title} by {book.author} (id {book.id})")


@app.command("update")
def cli_update(book_id: int, title: str, author: str, year: int, genre: str):
    """Replace every field of a book."""
    try:
        _library().update_book(book_id, title, author, year, genre)
    except CatalogError as e:
        _fail(e)
    print_message("Book updated successfully")


@app.command("remove")
def cli_remove(book_id: int):
    """Delete a book."""
    try:
        _library().remove_book(book_id)
    except CatalogError as e:
        _fail(e)
    print_message("Book deleted successfully")


@app.command("recommend")
def cli_recommend(genre: str):
    """List books in a genre."""
    try:
        books = _library().books_by_genre(genre)
    except CatalogError as e:
        _fail(e)
    if not books:
        print_message("No books found in this genre")
        return
    print_books(books, title=f"Recommended: {genre}")


@app.command("import")
def cli_import(file_path: Path = typer.Argument(..., help="JSON file holding an array of books")):
    """Import a JSON array of books in a single transaction."""
    try:
        raw = file_path.read_bytes()
    except OSError:
        print_message("Failed to read the file", error=True)
        raise typer.Exit(code=1)
    try:
        imported = _library().import_books(parse_books_document(raw))
    except CatalogError as e:
        _fail(e)
    print_message(f"Books imported successfully ({len(imported)} books)")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host", help="Bind address"),
    port: int = typer.Option(settings.api_port, "--port", help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    uvicorn.run("api:app", host=host, port=port, reload=reload, log_config=None)


if __name__ == "__main__":
    app()
