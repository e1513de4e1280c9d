"""Shared test fixtures for the card sync server and device clients."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.database import create_engine as create_db_engine
from backend.database import create_schema
from backend.main import create_app
from client.local_store import LocalStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from fastapi import FastAPI


@asynccontextmanager
async def create_test_app(settings: Settings) -> AsyncGenerator[FastAPI]:
    """Create a fully initialized app.

    Manually performs the work of the application lifespan (engine and
    schema) because ASGITransport does not trigger it.
    """
    app = create_app(settings)
    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    await create_schema(engine)
    try:
        yield app
    finally:
        await engine.dispose()


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app."""
    async with (
        create_test_app(settings) as app,
        AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac,
    ):
        yield ac


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary record store."""
    db_path = tmp_path / "server.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
    )


@pytest.fixture
async def app(test_settings: Settings) -> AsyncGenerator[FastAPI]:
    async with create_test_app(test_settings) as test_app:
        yield test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def make_store(tmp_path: Path) -> AsyncGenerator[Callable[..., LocalStore]]:
    """Factory for initialized-on-demand local stores, closed at teardown."""
    stores: list[LocalStore] = []

    def _make(name: str = "device", device_id: str | None = None, **kwargs: object) -> LocalStore:
        store = LocalStore(
            f"sqlite+aiosqlite:///{tmp_path / name / 'cards.db'}",
            device_id=device_id,
            **kwargs,  # type: ignore[arg-type]
        )
        stores.append(store)
        return store

    yield _make

    for store in stores:
        await store.close()
