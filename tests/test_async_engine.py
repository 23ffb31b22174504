"""Tests for async database engine module."""

import pytest
from unittest.mock import MagicMock, patch

from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from config.database import DatabaseSettings


class TestCreateEngine:
    """Tests for create_engine function."""

    def test_sqlite_uses_null_pool(self, tmp_path):
        with patch('database.async_engine.create_async_engine') as mock_create:
            with patch('database.async_engine._setup_engine_events'):
                mock_create.return_value = MagicMock()

                from database.async_engine import create_engine
                create_engine(DatabaseSettings(sqlite_path=tmp_path / "efiling.db"))

                call_args, call_kwargs = mock_create.call_args
                assert call_kwargs['poolclass'] is NullPool
                assert call_args[0].startswith("sqlite+aiosqlite")
                assert "pool_size" not in call_kwargs

    def test_postgres_uses_queue_pool(self):
        with patch('database.async_engine.create_async_engine') as mock_create:
            with patch('database.async_engine._setup_engine_events'):
                mock_create.return_value = MagicMock()

                from database.async_engine import create_engine
                create_engine(DatabaseSettings(driver="postgresql+asyncpg", name="filings", pool_size=7))

                call_kwargs = mock_create.call_args[1]
                assert call_kwargs['poolclass'] is AsyncAdaptedQueuePool
                assert call_kwargs['pool_size'] == 7
                assert call_kwargs['connect_args'] == {"command_timeout": 30}


class TestDatabaseLifecycle:
    """Tests for the global engine, table creation and health checks."""

    @pytest.mark.asyncio
    async def test_init_health_close(self, tmp_path):
        import database.async_engine as module

        settings = DatabaseSettings(sqlite_path=tmp_path / "efiling.db")
        await module.init_database(settings)
        assert module.get_async_engine() is module.get_async_engine()

        health = await module.DatabaseHealth(settings).check()
        assert health == {"status": "healthy", "database": "sqlite", "driver": "sqlite+aiosqlite"}

        await module.close_database()
        assert module._async_engine is None

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, tmp_path):
        import database.async_engine as module
        from sqlalchemy import text

        settings = DatabaseSettings(sqlite_path=tmp_path / "efiling.db")
        await module.init_database(settings)
        try:
            with pytest.raises(RuntimeError):
                async with module.get_async_session(settings) as session:
                    await session.execute(
                        text(
                            "INSERT INTO filing_groups (group_id, account_id, filing_ids, created_at) "
                            "VALUES ('grp_1', 'acct_1', '[]', '2025-07-15 10:00:00')"
                        )
                    )
                    raise RuntimeError("handler failed")

            async with module.get_async_session(settings) as session:
                count = (await session.execute(text("SELECT COUNT(*) FROM filing_groups"))).scalar()
            assert count == 0
        finally:
            await module.close_database()
