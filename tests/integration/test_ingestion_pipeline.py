"""End-to-end tests for realm_common.ingest.pipeline.ingest_upload."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from realm_common.db.engine import Database
from realm_common.db.models import NameChange, Player, PlayerSnapshot, Snapshot
from realm_common.ingest import pipeline
from realm_common.ingest.errors import StorageError, ValidationError
from realm_common.ingest.pipeline import IngestOptions, ingest_upload


async def _count(database: Database, model) -> int:
    async with database.session() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _player(database: Database, lord_id: str) -> Player | None:
    async with database.session() as db:
        return await db.get(Player, lord_id)


async def _identities(database: Database) -> list[tuple]:
    async with database.session() as db:
        players = (await db.execute(select(Player).order_by(Player.lord_id))).scalars().all()
    return [
        (p.lord_id, p.current_name, p.last_seen_at, p.has_left_realm, p.left_realm_at)
        for p in players
    ]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_two_uploads_end_to_end(database: Database, make_workbook, make_row):
    first = make_workbook([
        make_row("P2", "Bob"),
        make_row("P3", "Carol"),
        make_row("P4", "Dave", current_power=15_000_000),
    ])
    await ingest_upload(database, first, "671_20241220_0000utc.xlsx")

    second = make_workbook([
        make_row("P1", "Alice"),
        make_row("P2", "Rob"),
        make_row("P3", "Carol"),
    ])
    summary = await ingest_upload(database, second, "671_20250101_0000utc.xlsx")

    assert summary.players_processed == 3
    assert summary.name_changes == 1
    assert summary.alliance_changes == 0
    assert summary.players_marked_as_left == 1
    assert summary.snapshot.kingdom == "671"
    assert summary.snapshot.timestamp == datetime(2025, 1, 1, tzinfo=timezone.utc)

    data = summary.as_dict()
    assert data["changes_detected"] == {"name_changes": 1, "alliance_changes": 0}
    assert data["timestamp"] == "2025-01-01T00:00:00+00:00"

    async with database.session() as db:
        rows = (
            await db.execute(
                select(func.count(PlayerSnapshot.id))
                .where(PlayerSnapshot.snapshot_id == summary.snapshot.id)
            )
        ).scalar_one()
        assert rows == 3

        (change,) = (await db.execute(select(NameChange))).scalars().all()
        assert (change.lord_id, change.old_name, change.new_name) == ("P2", "Bob", "Rob")

        dave = await db.get(Player, "P4")
        assert dave.has_left_realm is True
        assert dave.left_realm_at == datetime(2025, 1, 1, tzinfo=timezone.utc)

        bob = await db.get(Player, "P2")
        assert bob.current_name == "Rob"
        assert bob.last_seen_at == datetime(2025, 1, 1, tzinfo=timezone.utc)


async def test_reuploading_the_same_file_records_no_changes(
    database: Database, make_workbook, make_row
):
    await ingest_upload(
        database,
        make_workbook([make_row("P4", "Dave", current_power=15_000_000)]),
        "671_20241220_0000utc.xlsx",
    )
    data = make_workbook([make_row("1", "One"), make_row("2", "Two")])
    first = await ingest_upload(database, data, "671_20250101_0000utc.xlsx")
    assert first.players_marked_as_left == 1
    before = await _identities(database)

    again = await ingest_upload(database, data, "671_20250101_0000utc.xlsx")

    assert again.name_changes == 0
    assert again.alliance_changes == 0
    assert again.players_marked_as_left == 0
    assert again.names_corrected == 0
    assert await _identities(database) == before
    assert before[-1][1:] == (
        "Dave", datetime(2024, 12, 20, tzinfo=timezone.utc),
        True, datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    assert await _count(database, Snapshot) == 3
    assert await _count(database, Player) == 3
    assert await _count(database, NameChange) == 0


async def test_older_export_does_not_rewind_identity(
    database: Database, make_workbook, make_row
):
    await ingest_upload(
        database, make_workbook([make_row("P1", "NewName")]), "671_20250110_0000utc.xlsx"
    )

    backfill = await ingest_upload(
        database, make_workbook([make_row("P1", "OldName")]), "671_20250101_0000utc.xlsx"
    )

    assert backfill.players_processed == 1
    assert backfill.name_changes == 0
    assert backfill.names_corrected == 0
    player = await _player(database, "P1")
    assert player.current_name == "NewName"
    assert player.last_seen_at == datetime(2025, 1, 10, tzinfo=timezone.utc)
    assert await _count(database, NameChange) == 0
    assert await _count(database, PlayerSnapshot) == 2

    later = await ingest_upload(
        database, make_workbook([make_row("P1", "Newest")]), "671_20250115_0000utc.xlsx"
    )

    assert later.name_changes == 1
    async with database.session() as db:
        (change,) = (await db.execute(select(NameChange))).scalars().all()
    assert (change.old_name, change.new_name) == ("NewName", "Newest")


async def test_returning_player_is_unflagged(database: Database, make_workbook, make_row):
    await ingest_upload(
        database,
        make_workbook([make_row("P4", "Dave", current_power=15_000_000)]),
        "671_20241220_0000utc.xlsx",
    )
    await ingest_upload(
        database, make_workbook([make_row("P1", "Alice")]), "671_20250101_0000utc.xlsx"
    )
    assert (await _player(database, "P4")).has_left_realm is True

    await ingest_upload(
        database,
        make_workbook([make_row("P4", "Dave", current_power=15_000_000)]),
        "671_20250105_0000utc.xlsx",
    )

    dave = await _player(database, "P4")
    assert dave.has_left_realm is False
    assert dave.left_realm_at is None


async def test_departure_cutoff_boundary(database: Database, make_workbook, make_row):
    await ingest_upload(
        database, make_workbook([make_row("A", "On cutoff")]), "671_20241225_0000utc.xlsx"
    )
    await ingest_upload(
        database, make_workbook([make_row("B", "Just past")]), "671_20241224_2359utc.xlsx"
    )

    summary = await ingest_upload(
        database, make_workbook([make_row("C", "Newcomer")]), "671_20250101_0000utc.xlsx"
    )

    assert summary.players_marked_as_left == 1
    assert (await _player(database, "A")).has_left_realm is False
    assert (await _player(database, "B")).has_left_realm is True


async def test_oversized_counter_skips_only_that_row(
    database: Database, make_workbook, make_row
):
    data = make_workbook([make_row("P1", "Fine"), make_row("P2", "Overflow", merits="1" * 40)])

    summary = await ingest_upload(database, data, "671_20250101_0000utc.xlsx")

    assert summary.players_processed == 1
    assert summary.skipped_rows == 1
    assert (await _player(database, "P1")).current_name == "Fine"
    assert await _player(database, "P2") is None
    assert await _count(database, PlayerSnapshot) == 1


async def test_departure_only_considers_the_uploaded_kingdom(
    database: Database, make_workbook, make_row
):
    await ingest_upload(
        database, make_workbook([make_row("A", "Home")]), "671_20241201_0000utc.xlsx"
    )

    other = await ingest_upload(
        database,
        make_workbook([make_row("B", "Neighbour")], sheet_name="672"),
        "672_20250101_0000utc.xlsx",
    )

    assert other.players_marked_as_left == 0
    assert (await _player(database, "A")).has_left_realm is False

    home = await ingest_upload(
        database, make_workbook([make_row("C", "Newcomer")]), "671_20250101_0000utc.xlsx"
    )

    assert home.players_marked_as_left == 1
    assert (await _player(database, "A")).has_left_realm is True
    assert (await _player(database, "B")).has_left_realm is False


async def test_small_batches_store_every_player(database: Database, make_workbook, make_row):
    rows = [make_row(str(n), f"Player {n}") for n in range(1, 6)]

    summary = await ingest_upload(
        database,
        make_workbook(rows),
        "671_20250101_0000utc.xlsx",
        options=IngestOptions(batch_size=2),
    )

    assert summary.players_processed == 5
    assert await _count(database, PlayerSnapshot) == 5
    assert await _count(database, Player) == 5


def test_ingest_options_validation():
    with pytest.raises(ValueError):
        IngestOptions(batch_size=0)
    with pytest.raises(ValueError):
        IngestOptions(left_realm_cutoff_days=-1)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_invalid_file_stores_nothing(database: Database):
    with pytest.raises(ValidationError):
        await ingest_upload(database, b"not a spreadsheet", "671_20250101_0000utc.xlsx")

    assert await _count(database, Snapshot) == 0


async def test_bad_filename_stores_nothing(database: Database, make_workbook, make_row):
    with pytest.raises(ValidationError, match="Invalid filename"):
        await ingest_upload(database, make_workbook([make_row("1", "One")]), "export.xlsx")

    assert await _count(database, Snapshot) == 0


async def test_storage_failure_rolls_back_whole_upload(
    database: Database, make_workbook, make_row, monkeypatch
):
    async def broken_detect(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection lost"))

    monkeypatch.setattr(pipeline, "detect_changes", broken_detect)

    with pytest.raises(StorageError) as exc_info:
        await ingest_upload(
            database,
            make_workbook([make_row("1", "One"), make_row("2", "Two")]),
            "671_20250101_0000utc.xlsx",
        )

    assert exc_info.value.message == "Storage failure while detecting changes"
    assert await _count(database, Snapshot) == 0
    assert await _count(database, Player) == 0
    assert await _count(database, PlayerSnapshot) == 0


async def test_failing_player_is_skipped_not_flagged(
    database: Database, make_workbook, make_row, monkeypatch
):
    rows = [make_row("P1", "One"), make_row("P2", "Two", current_power=30_000_000)]
    await ingest_upload(database, make_workbook(rows), "671_20241201_0000utc.xlsx")

    real_upsert = pipeline.upsert

    async def flaky_upsert(db, lord_id, **fields):
        if lord_id == "P2":
            raise OperationalError("UPDATE players", {}, Exception("deadlock"))
        return await real_upsert(db, lord_id, **fields)

    monkeypatch.setattr(pipeline, "upsert", flaky_upsert)

    summary = await ingest_upload(database, make_workbook(rows), "671_20250101_0000utc.xlsx")

    assert summary.players_processed == 1
    assert summary.skipped_players == ["P2"]
    assert summary.players_marked_as_left == 0
    assert (await _player(database, "P2")).has_left_realm is False

    async with database.session() as db:
        stored = (
            await db.execute(
                select(PlayerSnapshot.lord_id)
                .where(PlayerSnapshot.snapshot_id == summary.snapshot.id)
            )
        ).scalars().all()
    assert stored == ["P1"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


async def test_concurrent_uploads_for_one_kingdom_are_serialized(
    database: Database, make_workbook, make_row
):
    first = make_workbook([make_row("1", "One"), make_row("2", "Two")], sheet_name="672")
    second = make_workbook([make_row("1", "Uno"), make_row("2", "Two")], sheet_name="672")

    results = await asyncio.gather(
        ingest_upload(database, first, "672_20250101_0000utc.xlsx"),
        ingest_upload(database, second, "672_20250102_0000utc.xlsx"),
    )

    assert all(r.players_processed == 2 for r in results)
    assert await _count(database, Snapshot) == 2
    assert await _count(database, PlayerSnapshot) == 4
    assert await _count(database, Player) == 2
    assert (await _player(database, "1")).current_name == "Uno"


async def test_concurrent_uploads_across_kingdoms_share_players(
    database: Database, make_workbook, make_row
):
    home = make_workbook([make_row("1", "One"), make_row("2", "Two")])
    away = make_workbook([make_row("1", "One"), make_row("2", "Two")], sheet_name="672")

    results = await asyncio.gather(
        ingest_upload(database, home, "671_20250101_0000utc.xlsx"),
        ingest_upload(database, away, "672_20250102_0000utc.xlsx"),
    )

    assert all(r.players_processed == 2 for r in results)
    assert await _count(database, PlayerSnapshot) == 4
    assert await _count(database, Player) == 2
    assert (await _player(database, "1")).last_seen_at == datetime(
        2025, 1, 2, tzinfo=timezone.utc
    )
