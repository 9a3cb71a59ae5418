"""Tests for the SQLite adapter and engine dispatch."""

from __future__ import annotations

from pathlib import Path

import pytest
from billing_core.state.sqlite_adapter import (
    create_local_tables,
    get_local_engine,
    get_local_session,
)
from sqlalchemy import inspect, text

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        get_local_engine(db_path)
        assert db_path.parent.exists()

    def test_engine_url_contains_path(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "billing.db")
        assert "billing.db" in str(engine.url)


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    """Verify that ORM tables can be created in SQLite."""

    @pytest.mark.asyncio
    async def test_creates_all_tables(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

        assert {"billing_customers", "subscriptions", "invoices", "processed_webhook_events"} <= set(names)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_idempotent_creation(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "idem.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_in_memory_database_shared_between_sessions(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        async with get_local_session(engine) as session:
            await session.execute(
                text("INSERT INTO processed_webhook_events (event_id, event_type, processed_at) VALUES ('evt_1', 't', '2026-01-01')")
            )

        async with get_local_session(engine) as session:
            result = await session.execute(text("SELECT count(*) FROM processed_webhook_events"))
            assert result.scalar() == 1

        await engine.dispose()


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------


class TestGetLocalSession:
    """Verify session lifecycle with SQLite."""

    @pytest.mark.asyncio
    async def test_session_usable(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        async with get_local_session(engine) as session:
            result = await session.execute(text("SELECT 1"))
            assert result.scalar() == 1

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_session_rollback_on_error(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        with pytest.raises(ValueError, match="test error"):
            async with get_local_session(engine) as session:
                await session.execute(
                    text(
                        "INSERT INTO processed_webhook_events (event_id, event_type, processed_at) "
                        "VALUES ('evt_rb', 't', '2026-01-01')"
                    )
                )
                raise ValueError("test error")

        async with get_local_session(engine) as session:
            result = await session.execute(text("SELECT count(*) FROM processed_webhook_events"))
            assert result.scalar() == 0

        await engine.dispose()


# ---------------------------------------------------------------------------
# database.get_engine dispatch
# ---------------------------------------------------------------------------


class TestDatabaseDispatch:
    """Verify that database.get_engine dispatches SQLite URLs."""

    def test_sqlite_url_dispatches_to_local_engine(self) -> None:
        from billing_core.state.database import get_engine

        engine = get_engine("sqlite+aiosqlite:///:memory:")
        assert "sqlite" in str(engine.url)

    def test_sqlite_file_url_dispatches(self, tmp_path: Path) -> None:
        from billing_core.state.database import get_engine

        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
        assert "dispatch.db" in str(engine.url)

    def test_session_factory_is_cached(self) -> None:
        from billing_core.state.database import get_engine, get_session_factory

        engine = get_engine("sqlite+aiosqlite:///:memory:")
        assert get_session_factory(engine) is get_session_factory(engine)
