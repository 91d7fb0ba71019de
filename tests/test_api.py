import json
import math

import pytest

DUNE = {"title": "Dune", "author": "Herbert", "year": 1965, "genre": "Sci-Fi"}


def _create(client, **overrides):
    payload = {**DUNE, **overrides}
    response = client.post("/books", json=payload)
    assert response.status_code == 201
    return response.json()


def _upload(client, content, filename="books.json"):
    if not isinstance(content, (bytes, str)):
        content = json.dumps(content)
    return client.post("/books/import", files={"file": (filename, content, "application/json")})


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "name" in response.json()


def test_health(client):
    _create(client)
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["total_books"] == 1
    assert "hits" in data["cache"]


def test_get_books_empty(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == {
        "books": [],
        "pagination": {"page": 1, "limit": 10, "totalBooks": 0, "totalPages": 0},
    }


def test_get_books_pagination(client):
    for i in range(7):
        _create(client, title=f"Book {i}")

    for limit in (1, 2, 3, 7, 10):
        data = client.get(f"/books?page=1&limit={limit}").json()
        assert data["pagination"]["totalBooks"] == 7
        assert data["pagination"]["totalPages"] == math.ceil(7 / limit)
        assert len(data["books"]) <= limit

    data = client.get("/books?page=2&limit=3").json()
    assert [b["title"] for b in data["books"]] == ["Book 3", "Book 4", "Book 5"]
    assert data["pagination"] == {"page": 2, "limit": 3, "totalBooks": 7, "totalPages": 3}


@pytest.mark.parametrize("query", ["page=0", "limit=0", "page=abc"])
def test_get_books_invalid_paging(client, query):
    response = client.get(f"/books?{query}")
    assert response.status_code == 400
    assert "error" in response.json()


def test_page_beyond_storage_range(client):
    _create(client)
    response = client.get("/books?page=99999999999999999999")
    assert response.status_code == 500
    assert "error" in response.json()


def test_create_with_out_of_range_year(client):
    response = client.post("/books", json=DUNE | {"year": 10**20})
    assert response.status_code == 500
    assert "error" in response.json()
    assert client.get("/books").json()["pagination"]["totalBooks"] == 0


def test_book_lifecycle(client):
    created = _create(client)
    assert isinstance(created["id"], int)
    assert {k: created[k] for k in DUNE} == DUNE

    response = client.get(f"/books/{created['id']}")
    assert response.status_code == 200
    assert response.json() == created

    response = client.delete(f"/books/{created['id']}")
    assert response.status_code == 200
    assert response.json() == {"message": "Book deleted successfully"}

    response = client.get(f"/books/{created['id']}")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}


@pytest.mark.parametrize("missing", ["title", "author", "year", "genre"])
def test_create_requires_every_field(client, missing):
    payload = {k: v for k, v in DUNE.items() if k != missing}
    response = client.post("/books", json=payload)
    assert response.status_code == 400
    assert "error" in response.json()
    assert client.get("/books").json()["pagination"]["totalBooks"] == 0


def test_update_book(client):
    created = _create(client)
    update = {"title": "Dune Messiah", "author": "Frank Herbert", "year": 1969, "genre": "Sci-Fi"}

    response = client.put(f"/books/{created['id']}", json=update)
    assert response.status_code == 200
    assert response.json() == {"message": "Book updated successfully"}
    assert client.get(f"/books/{created['id']}").json() == {"id": created["id"], **update}


def test_update_missing_fields(client):
    created = _create(client)
    response = client.put(f"/books/{created['id']}", json={"title": "Only a title"})
    assert response.status_code == 400
    assert client.get(f"/books/{created['id']}").json() == created


def test_update_not_found_leaves_store_unchanged(client):
    created = _create(client)
    response = client.put("/books/999", json=DUNE | {"title": "Other"})
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}
    books = client.get("/books").json()["books"]
    assert books == [created]


def test_delete_not_found_leaves_store_unchanged(client):
    created = _create(client)
    response = client.delete("/books/999")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}
    assert client.get("/books").json()["books"] == [created]


def test_recommendations(client):
    _create(client, title="Emma", author="Austen", year=1815, genre="Classic")
    _create(client)

    response = client.get("/books/recommendations/Classic")
    assert response.status_code == 200
    data = response.json()
    assert [b["title"] for b in data["books"]] == ["Emma"]
    assert data["message"]


def test_recommendations_no_match_is_empty_success(client):
    _create(client)
    response = client.get("/books/recommendations/InvalidGenre")
    assert response.status_code == 200
    assert response.json() == {"books": [], "message": "No books found in this genre"}


def test_recommendations_blank_genre(client):
    response = client.get("/books/recommendations/%20%20")
    assert response.status_code == 400
    assert response.json() == {"error": "Genre is required"}


# --- Response cache ---
def test_repeated_get_is_served_from_cache(client):
    _create(client)
    first = client.get("/books")
    assert "X-Cache" not in first.headers

    second = client.get("/books")
    assert second.headers["X-Cache"] == "HIT"
    assert second.json() == first.json()


def test_cache_key_includes_query_string(client):
    _create(client)
    client.get("/books?page=1&limit=1")
    response = client.get("/books?page=1&limit=2")
    assert "X-Cache" not in response.headers


def test_errors_are_not_cached(client, lib):
    assert client.get("/books/1").status_code == 404
    # Written behind the API's back, so nothing clears the cache
    book = lib.add_book("Dune", "Herbert", 1965, "Sci-Fi")
    response = client.get(f"/books/{book.id}")
    assert response.status_code == 200
    assert response.json()["title"] == "Dune"


@pytest.mark.parametrize("mutate", ["create", "update", "delete", "import"])
def test_mutations_invalidate_cache(client, mutate):
    created = _create(client)
    client.get("/books")
    assert client.get("/books").headers.get("X-Cache") == "HIT"

    if mutate == "create":
        _create(client, title="Another")
        expected_total = 2
    elif mutate == "update":
        client.put(f"/books/{created['id']}", json=DUNE | {"title": "Changed"})
        expected_total = 1
    elif mutate == "delete":
        client.delete(f"/books/{created['id']}")
        expected_total = 0
    else:
        _upload(client, [DUNE, DUNE])
        expected_total = 3

    response = client.get("/books")
    assert "X-Cache" not in response.headers
    assert response.json()["pagination"]["totalBooks"] == expected_total
    if mutate == "update":
        assert response.json()["books"][0]["title"] == "Changed"


def test_read_overtaken_by_a_write_is_not_cached(client, monkeypatch):
    _create(client)
    library = client.app.state.library
    cache = client.app.state.cache
    list_books = library.list_books

    def list_then_clear(*args, **kwargs):
        page = list_books(*args, **kwargs)
        cache.clear()  # a write commits after the read
        return page

    monkeypatch.setattr(library, "list_books", list_then_clear)
    assert client.get("/books").status_code == 200
    assert len(cache) == 0


def test_failed_mutation_keeps_cache(client):
    _create(client)
    client.get("/books")
    client.delete("/books/999")
    assert client.get("/books").headers.get("X-Cache") == "HIT"


# --- Batch import ---
def test_import_books(client):
    books = [
        {"title": "Emma", "author": "Austen", "year": 1815, "genre": "Classic"},
        {"title": "Persuasion", "author": "Austen", "year": 1817, "genre": "Classic"},
        DUNE,
    ]
    response = _upload(client, books)
    assert response.status_code == 200
    assert response.json() == {"message": "Books imported successfully", "imported": 3}
    assert client.get("/books").json()["pagination"]["totalBooks"] == 3


def test_import_without_file(client):
    response = client.post("/books/import")
    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded"}


def test_import_invalid_json(client):
    response = _upload(client, "{not json")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON format"}


def test_import_not_an_array(client):
    response = _upload(client, {"title": "Dune"})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON format: Expected an array of books"}


def test_import_failure_rolls_back_everything(client):
    _create(client)
    response = _upload(client, [DUNE, DUNE | {"title": {"nested": True}}, DUNE])
    assert response.status_code == 500
    assert "error" in response.json()
    assert client.get("/books").json()["pagination"]["totalBooks"] == 1


def test_import_out_of_range_integer_rolls_back(client):
    _create(client)
    response = _upload(client, [DUNE, DUNE | {"year": 10**20}])
    assert response.status_code == 500
    assert "error" in response.json()
    assert client.get("/books").json()["pagination"]["totalBooks"] == 1


def test_import_tolerates_missing_fields(client):
    response = _upload(client, [{"title": "Untitled author"}])
    assert response.status_code == 200
    book = client.get("/books").json()["books"][0]
    assert book["title"] == "Untitled author"
    assert book["author"] is None


def test_import_too_large(client, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "max_upload_size", 10)
    response = _upload(client, [DUNE])
    assert response.status_code == 400
    assert "too large" in response.json()["error"]


# --- Change feed ---
def test_change_feed_book_added(client):
    with client.websocket_connect("/ws") as ws:
        created = _create(client)
        event = ws.receive_json()
    assert event == {"event": "bookAdded", "data": created}


def test_change_feed_update_and_delete(client):
    created = _create(client)
    with client.websocket_connect("/ws") as ws:
        client.put(f"/books/{created['id']}", json=DUNE | {"year": 1966})
        updated = ws.receive_json()
        client.delete(f"/books/{created['id']}")
        deleted = ws.receive_json()

    assert updated == {"event": "bookUpdated", "data": created | {"year": 1966}}
    assert deleted == {"event": "bookDeleted", "data": {"id": created["id"]}}


def test_change_feed_books_imported(client):
    with client.websocket_connect("/ws") as ws:
        _upload(client, [DUNE, {"title": "Emma"}])
        event = ws.receive_json()

    assert event["event"] == "booksImported"
    titles = [b["title"] for b in event["data"]["books"]]
    assert titles == ["Dune", "Emma"]
    assert all(isinstance(b["id"], int) for b in event["data"]["books"])


def test_change_feed_reaches_every_listener(client):
    with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
        created = _create(client)
        assert first.receive_json()["data"] == created
        assert second.receive_json()["data"] == created


def test_change_feed_unsubscribes_on_disconnect(client):
    notifier = client.app.state.notifier
    with client.websocket_connect("/ws") as ws:
        created = _create(client)
        assert ws.receive_json()["data"] == created
        assert notifier.subscriber_count == 1

    assert notifier.subscriber_count == 0
    # Publishing with nobody listening is still fine
    assert client.delete(f"/books/{created['id']}").status_code == 200
