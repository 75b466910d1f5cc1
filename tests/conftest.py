"""Shared pytest fixtures for the Realmwatch test suite.

Database tests run against a throwaway SQLite file by default. Set
TEST_DATABASE_URL to a PostgreSQL DSN (postgresql+asyncpg://...) to run them
against a real server instead; the roster schema is recreated per test.
"""

import io
import os
from collections.abc import AsyncGenerator
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from openpyxl import Workbook
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings before any app import
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "testing")

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

from realm_common.db.engine import Database  # noqa: E402
from realm_common.db.models import SCHEMA, Base  # noqa: E402
from realm_common.identity import players as player_store  # noqa: E402
from realm_common.ingest import snapshots as snapshot_store  # noqa: E402
from realm_common.ingest.spreadsheet import COLUMN_MAP, PlayerRecord  # noqa: E402

HEADER = list(COLUMN_MAP)

DEFAULT_ROW = {
    "division": 1,
    "alliance_id": "1001",
    "alliance_tag": "ABC",
    "current_power": 12_000_000,
    "power": 12_500_000,
    "merits": 50_000,
    "city_level": 25,
    "faction": "Dragon",
}


def _enable_sqlite_savepoints(database: Database) -> None:
    """Let aiosqlite run SAVEPOINTs and enforce foreign keys."""

    @event.listens_for(database.engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(database.engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """Open Database with an empty roster schema."""
    if TEST_DATABASE_URL:
        db = Database(TEST_DATABASE_URL).open()
        try:
            async with db.engine.begin() as conn:
                await conn.execute(text(f"DROP SCHEMA IF EXISTS {SCHEMA} CASCADE"))
                await conn.execute(text(f"CREATE SCHEMA {SCHEMA}"))
                await conn.run_sync(Base.metadata.create_all)
        except Exception as exc:
            await db.close()
            pytest.skip(f"Test database not available ({TEST_DATABASE_URL}): {exc}")
    else:
        db = Database(
            f"sqlite+aiosqlite:///{tmp_path / 'roster.db'}",
            execution_options={"schema_translate_map": {SCHEMA: None}},
        ).open()
        _enable_sqlite_savepoints(db)
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield db

    await db.close()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Per-test session; uncommitted work is rolled back afterwards."""
    async with database.session() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_row():
    """Build one spreadsheet row (list in column order) for a player."""

    def _make_row(lord_id, name, **fields) -> list:
        values = {"lord_id": lord_id, "name": name, **DEFAULT_ROW, **fields}
        return [values.get(column) for column in COLUMN_MAP]

    return _make_row


@pytest.fixture
def make_workbook():
    """Build an .xlsx file in memory and return its bytes.

    ``rows`` go on a single sheet named ``sheet_name`` below the header row;
    pass ``sheets`` ({name: rows}) for multi-sheet workbooks.
    """

    def _make_workbook(rows=None, sheet_name="671", *, sheets=None, header=True) -> bytes:
        workbook = Workbook()
        workbook.remove(workbook.active)
        layout = sheets if sheets is not None else {sheet_name: rows or []}
        for name, sheet_rows in layout.items():
            sheet = workbook.create_sheet(title=name)
            if header:
                sheet.append(HEADER)
            for row in sheet_rows:
                sheet.append(row)
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return _make_workbook


@pytest.fixture
def make_record():
    """Build a parsed PlayerRecord with sensible defaults."""

    def _make_record(lord_id, name=None, **fields) -> PlayerRecord:
        values = {**DEFAULT_ROW, **fields}
        return PlayerRecord(lord_id=lord_id, name=name or f"Lord {lord_id}", **values)

    return _make_record


@pytest.fixture
def seed_snapshot():
    """Store a snapshot plus player rows directly, bypassing the pipeline.

    Players are upserted with last_seen_at = the snapshot timestamp.
    """

    async def _seed(
        db: AsyncSession,
        timestamp: datetime,
        records: list[PlayerRecord],
        kingdom: str = "671",
        season_id: int | None = None,
    ):
        for record in records:
            await player_store.upsert(
                db, record.lord_id, current_name=record.name, last_seen_at=timestamp
            )
        snapshot = await snapshot_store.create_snapshot(
            db,
            timestamp=timestamp,
            filename=f"{kingdom}_{timestamp:%Y%m%d_%H%M}utc.xlsx",
            kingdom=kingdom,
            season_id=season_id,
        )
        await snapshot_store.create_player_snapshots(db, snapshot.id, records)
        return snapshot

    return _seed


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


@pytest.fixture
def app_settings(monkeypatch):
    """Settings instance the app (and get_settings()) will see."""
    from realmwatch import config

    settings = config.Settings(
        database_url="sqlite+aiosqlite://",
        upload_api_key="",
        _env_file=None,
    )
    monkeypatch.setattr(config, "_settings", settings)
    return settings


@pytest_asyncio.fixture
async def client(database: Database, app_settings) -> AsyncGenerator[AsyncClient, None]:
    """FastAPI test client wired to the test Database."""
    from realmwatch.app import create_app
    from realmwatch.deps import get_database, get_db

    app = create_app(app_settings)

    async def override_get_db():
        async with database.session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
