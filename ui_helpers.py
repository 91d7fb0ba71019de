import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _book_line(b: Dict[str, Any]) -> str:
    return f"{b.get('id')} - {b.get('title')} by {b.get('author')} ({b.get('year')}) - {b.get('genre')}"


def print_books(books: List[Any], title: str = "Books", footer: str = "") -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author (Year) - Genre' lines, or 'No books in library.'
    - json: JSON array of book objects
    - rich: Rich table
    """
    mode = get_output_mode()
    rows = [b.to_dict() if hasattr(b, "to_dict") else dict(b) for b in books]

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
        return

    if not rows:
        print("No books in library.")
        return

    if mode == "rich":
        table = Table(title=f"📚 {title}", show_lines=True, header_style="bold cyan", caption=footer or None)
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Genre", style="green")
        for b in rows:
            table.add_row(*(str(b.get(k, "")) for k in ("id", "title", "author", "year", "genre")))
        _console.print(table)
    else:
        for b in rows:
            print(_book_line(b))
        if footer:
            print(footer)


def print_book(book: Any) -> None:
    data = book.to_dict() if hasattr(book, "to_dict") else dict(book)
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.capitalize()}:[/] {data.get(k)}" for k in ("title", "author", "year", "genre"))
        _console.print(Panel.fit(content, title=f"📖 Book {data.get('id')}", border_style="blue"))
    else:
        print(_book_line(data))


def print_message(message: str, error: bool = False) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"error" if error else "message": message}, ensure_ascii=False))
    elif mode == "rich":
        _console.print(f"[bold red]{message}[/]" if error else f"[green]{message}[/]")
    else:
        print(message)
