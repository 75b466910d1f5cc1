"""Snapshot store: append-only upload events and per-player measurements."""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from realm_common.db.models import Player, PlayerSnapshot, Snapshot
from realm_common.ingest.spreadsheet import PlayerRecord

logger = logging.getLogger(__name__)


async def create_snapshot(
    db: AsyncSession,
    *,
    timestamp: datetime,
    filename: str,
    kingdom: str,
    upload_id: int | None = None,
    season_id: int | None = None,
) -> Snapshot:
    snapshot = Snapshot(
        timestamp=timestamp,
        filename=filename,
        kingdom=kingdom,
        upload_id=upload_id,
        season_id=season_id,
    )
    db.add(snapshot)
    await db.flush()
    logger.info("Created snapshot %d for kingdom %s at %s", snapshot.id, kingdom, timestamp)
    return snapshot


async def create_player_snapshots(
    db: AsyncSession, snapshot_id: int, records: Iterable[PlayerRecord]
) -> int:
    """Insert one PlayerSnapshot per record in a single statement. Returns the row count."""
    rows = [{**record.as_row(), "snapshot_id": snapshot_id} for record in records]
    if not rows:
        return 0
    await db.execute(insert(PlayerSnapshot), rows)
    return len(rows)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_snapshot(db: AsyncSession, snapshot_id: int) -> Snapshot | None:
    return await db.get(Snapshot, snapshot_id)


async def find_latest(
    db: AsyncSession, season_id: int | None = None, kingdom: str | None = None
) -> Snapshot | None:
    """Most recent snapshot, optionally limited to one season and/or kingdom."""
    query = select(Snapshot)
    if season_id is not None:
        query = query.where(Snapshot.season_id == season_id)
    if kingdom is not None:
        query = query.where(Snapshot.kingdom == kingdom)
    result = await db.execute(
        query.order_by(Snapshot.timestamp.desc(), Snapshot.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_snapshots(
    db: AsyncSession,
    limit: int = 50,
    season_id: int | None = None,
    kingdom: str | None = None,
) -> list[Snapshot]:
    """Snapshots newest first."""
    query = select(Snapshot)
    if season_id is not None:
        query = query.where(Snapshot.season_id == season_id)
    if kingdom is not None:
        query = query.where(Snapshot.kingdom == kingdom)
    result = await db.execute(
        query.order_by(Snapshot.timestamp.desc(), Snapshot.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def count_player_snapshots(
    db: AsyncSession, snapshot_ids: Sequence[int]
) -> dict[int, int]:
    """snapshot_id → number of player rows."""
    if not snapshot_ids:
        return {}
    result = await db.execute(
        select(PlayerSnapshot.snapshot_id, func.count(PlayerSnapshot.id))
        .where(PlayerSnapshot.snapshot_id.in_(snapshot_ids))
        .group_by(PlayerSnapshot.snapshot_id)
    )
    return {snapshot_id: count for snapshot_id, count in result.all()}


async def get_player_snapshots(
    db: AsyncSession,
    snapshot_id: int,
    alliance: str | None = None,
    search: str | None = None,
    include_left_realm: bool = False,
    limit: int | None = None,
) -> list[PlayerSnapshot]:
    """Player rows of one snapshot, strongest first.

    ``alliance`` matches the alliance tag exactly; ``search`` matches name or
    lord id, case-insensitive. Players currently flagged as gone are hidden
    unless ``include_left_realm`` is set.
    """
    query = (
        select(PlayerSnapshot)
        .join(PlayerSnapshot.player)
        .where(PlayerSnapshot.snapshot_id == snapshot_id)
    )
    if not include_left_realm:
        query = query.where(Player.has_left_realm.is_(False))
    if alliance:
        query = query.where(PlayerSnapshot.alliance_tag == alliance)
    if search:
        pattern = f"%{search}%"
        query = query.where(
            or_(PlayerSnapshot.name.ilike(pattern), PlayerSnapshot.lord_id.ilike(pattern))
        )
    query = query.order_by(PlayerSnapshot.current_power.desc(), PlayerSnapshot.lord_id)
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_player_history(
    db: AsyncSession, lord_id: str, limit: int = 100
) -> list[PlayerSnapshot]:
    """A player's most recent ``limit`` rows, oldest first, with ``.snapshot`` loaded."""
    result = await db.execute(
        select(PlayerSnapshot)
        .join(PlayerSnapshot.snapshot)
        .options(contains_eager(PlayerSnapshot.snapshot))
        .where(PlayerSnapshot.lord_id == lord_id)
        .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
        .limit(limit)
    )
    history = list(result.scalars().all())
    history.reverse()
    return history


async def get_previous_player_snapshot(
    db: AsyncSession, lord_id: str, snapshot: Snapshot
) -> PlayerSnapshot | None:
    """The player's row from the latest snapshot before ``snapshot``.

    Snapshots sharing the same timestamp (a re-upload of one file) count as
    earlier as long as they are a different snapshot.
    """
    result = await db.execute(
        select(PlayerSnapshot)
        .join(PlayerSnapshot.snapshot)
        .where(PlayerSnapshot.lord_id == lord_id)
        .where(Snapshot.id != snapshot.id)
        .where(Snapshot.timestamp <= snapshot.timestamp)
        .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_alliances(db: AsyncSession, snapshot_id: int) -> list[tuple[str, int]]:
    """(alliance tag, member count) pairs present in a snapshot, alphabetical."""
    result = await db.execute(
        select(PlayerSnapshot.alliance_tag, func.count(PlayerSnapshot.id))
        .where(PlayerSnapshot.snapshot_id == snapshot_id)
        .where(PlayerSnapshot.alliance_tag.is_not(None))
        .group_by(PlayerSnapshot.alliance_tag)
        .order_by(PlayerSnapshot.alliance_tag)
    )
    return [(tag, count) for tag, count in result.all()]


async def find_new_players(
    db: AsyncSession, from_snapshot_id: int, to_snapshot_id: int
) -> list[PlayerSnapshot]:
    """Rows of ``to_snapshot_id`` whose lord id does not appear in ``from_snapshot_id``."""
    earlier = select(PlayerSnapshot.lord_id).where(
        PlayerSnapshot.snapshot_id == from_snapshot_id
    )
    result = await db.execute(
        select(PlayerSnapshot)
        .where(PlayerSnapshot.snapshot_id == to_snapshot_id)
        .where(PlayerSnapshot.lord_id.not_in(earlier))
        .order_by(PlayerSnapshot.current_power.desc(), PlayerSnapshot.lord_id)
    )
    return list(result.scalars().all())


async def get_snapshot_merits(
    db: AsyncSession, limit: int = 10
) -> list[tuple[Snapshot, dict[str, int]]]:
    """The last ``limit`` snapshots, newest first, each with lord_id → merits."""
    snapshots = await list_snapshots(db, limit=limit)
    if not snapshots:
        return []

    result = await db.execute(
        select(PlayerSnapshot.snapshot_id, PlayerSnapshot.lord_id, PlayerSnapshot.merits)
        .where(PlayerSnapshot.snapshot_id.in_([s.id for s in snapshots]))
    )
    merits: dict[int, dict[str, int]] = {s.id: {} for s in snapshots}
    for snapshot_id, lord_id, value in result.all():
        merits[snapshot_id][lord_id] = value or 0
    return [(s, merits[s.id]) for s in snapshots]
