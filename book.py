from __future__ import annotations


class Book:
    """A single catalog entry."""

    def __init__(self, title: str | None, author: str | None, year: int | None, genre: str | None,
                 id: int | None = None) -> None:
        self.id = id
        self.title = title
        self.author = author
        self.year = year
        self.genre = genre

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.year}) - {self.genre}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Book):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "year": self.year,
            "genre": self.genre,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data.get("title"),
            author=data.get("author"),
            year=data.get("year"),
            genre=data.get("genre"),
        )
