"""Pytest fixtures for cardshop tests."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from cardshop.infra import timings
from cardshop.model.store import FileStore, SqlStore
from cardshop.store import Store


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def file_store(temp_dir):
    """An opened Store over a JSON file backend in a temp dir."""
    store = Store(FileStore(temp_dir / "data"))
    asyncio.run(store.open())
    return store


@pytest.fixture
def sql_url(temp_dir):
    return f"sqlite:///{temp_dir / 'shop.db'}"


@pytest.fixture
def sql_store(sql_url):
    """An opened Store over the SQL backend (sqlite file)."""
    store = Store(SqlStore(sql_url))
    asyncio.run(store.open())
    yield store
    asyncio.run(store.close())


@pytest.fixture(params=["file", "sql"])
def any_store(request):
    """Runs a test once per backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def app_env(temp_dir, monkeypatch):
    """Environment for the FastAPI app: file store, mock cashier."""
    for name in (
        "APP_ENV", "STORE_BACKEND", "DATABASE_URL", "PAYMENT_SECRET_KEY",
        "PAYMENT_ALLOW_MOCK_SIGNATURE", "PAYMENT_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATA_DIR", str(temp_dir / "data"))
    monkeypatch.setenv("PAYMENT_GATEWAY", "mock")
    monkeypatch.setenv("ADMIN_PASSWORD", "letmein")
    monkeypatch.setenv("FRONTEND_URL", "http://shop.test")
    return temp_dir
