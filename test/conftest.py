import pytest
from fastapi.testclient import TestClient

from lastmile.dependencies import get_store
from lastmile.main import app
from lastmile.store import InMemoryOrderStore


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
