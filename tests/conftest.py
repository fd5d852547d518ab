"""Shared fixtures: a throwaway SQLite database per test."""

import asyncio

import pytest

from api.app.db import init_db
from api.app.rate_limit import limiter

from .support import FakeGateway


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Point DATABASE_URL at a fresh file and create the schema."""
    db_file = tmp_path / "app.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_file}")
    monkeypatch.delenv("ADMIN_TOKEN", raising=False)
    asyncio.run(init_db())
    return db_file


@pytest.fixture(autouse=True)
def no_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def gateway():
    return FakeGateway()
