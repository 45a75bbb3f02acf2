"""Tests for database session helpers."""

import pytest
from sqlalchemy import text

from recipestream import database
from recipestream.database import create_test_engine, require_session_factory


class TestRequireSessionFactory:
    def test_explicit_factory_wins(self, test_session_factory):
        assert require_session_factory(test_session_factory) is test_session_factory

    def test_raises_without_configuration(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(database, "async_session_factory", None)

        with pytest.raises(RuntimeError, match="Database not configured"):
            require_session_factory()


class TestGetSession:
    @pytest.mark.asyncio
    async def test_yields_session_from_configured_factory(self, monkeypatch, test_session_factory):
        monkeypatch.setattr(database, "async_session_factory", test_session_factory)

        sessions = database.get_session()
        session = await sessions.__anext__()
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

        with pytest.raises(StopAsyncIteration):
            await sessions.__anext__()


class TestCreateTestEngine:
    @pytest.mark.asyncio
    async def test_in_memory_engine(self):
        engine, factory = create_test_engine()

        async with factory() as session:
            assert (await session.execute(text("SELECT 1"))).scalar() == 1

        await engine.dispose()
