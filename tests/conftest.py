import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from memory_store import InMemoryLedgerStore
from mongo_store import MongoLedgerStore
from sql_store import SqlLedgerStore


@pytest.fixture
def memory_store():
    return InMemoryLedgerStore()


@pytest.fixture
def sql_store(tmp_path):
    return SqlLedgerStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def mongo_store():
    return MongoLedgerStore(mongomock.MongoClient()["expense_ledger"])


@pytest.fixture(params=["memory", "sql", "mongo"])
def store(request):
    """Every ledger backend, so contract tests run against each of them."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client(memory_store):
    app = create_app(store=memory_store, settings=Settings(ledger_backend="memory"))
    return TestClient(app)
