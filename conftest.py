import pytest
from fastapi.testclient import TestClient

from config import settings
from library import Library


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # Unique database file per test; everything built from settings picks it up
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(settings, "database_file", path)
    return path


@pytest.fixture
def lib(db_file):
    return Library(db_file=db_file)


@pytest.fixture
def client(db_file):
    from api import app

    # Entering the context runs the lifespan, which builds the store, cache and notifier
    with TestClient(app) as test_client:
        yield test_client
