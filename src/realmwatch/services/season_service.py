"""Season service: CRUD for merit seasons and merit-reset detection."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.models import Season, Snapshot
from realm_common.ingest.snapshots import get_snapshot_merits

logger = logging.getLogger(__name__)

RESET_LOOKBACK_SNAPSHOTS = 10
RESET_MIN_SNAPSHOTS = 3
RESET_MIN_COMMON_PLAYERS = 10
RESET_DECREASE_PERCENT = 70
RESET_SIGNIFICANT_PERCENT = 30
SIGNIFICANT_DROP_ABSOLUTE = 100_000


@dataclass(frozen=True)
class MeritReset:
    snapshot_id: int
    timestamp: datetime
    common_players: int
    players_with_decrease: int
    significant_drops: int


async def get_all_seasons(db: AsyncSession) -> list[Season]:
    """Return all seasons, newest first."""
    result = await db.execute(
        select(Season).order_by(Season.start_date.desc(), Season.id.desc())
    )
    return list(result.scalars().all())


async def get_season(db: AsyncSession, season_id: int) -> Season | None:
    return await db.get(Season, season_id)


async def get_active_season(db: AsyncSession) -> Season | None:
    result = await db.execute(
        select(Season)
        .where(Season.is_active.is_(True))
        .order_by(Season.start_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _deactivate_all(db: AsyncSession) -> None:
    await db.execute(
        update(Season).where(Season.is_active.is_(True)).values(is_active=False)
    )


async def create_season(
    db: AsyncSession,
    name: str,
    start_date: datetime,
    description: str | None = None,
    is_active: bool = False,
) -> Season:
    """Create a new season. Names are unique."""
    existing = await db.execute(select(Season.id).where(Season.name == name))
    if existing.scalar_one_or_none() is not None:
        raise ValueError(f"Season {name!r} already exists")

    if is_active:
        await _deactivate_all(db)

    season = Season(
        name=name,
        start_date=start_date,
        description=description,
        is_active=is_active,
    )
    db.add(season)
    await db.flush()
    await db.refresh(season)
    logger.info("Created season %s (id=%d, active=%s)", name, season.id, is_active)
    return season


async def activate_season(db: AsyncSession, season_id: int) -> Season:
    """Make one season the active one; every other season is deactivated."""
    season = await db.get(Season, season_id)
    if season is None:
        raise ValueError(f"Season {season_id} not found")
    await _deactivate_all(db)
    season.is_active = True
    await db.flush()
    await db.refresh(season)
    return season


async def end_season(
    db: AsyncSession, season_id: int, end_date: datetime | None = None
) -> Season:
    season = await db.get(Season, season_id)
    if season is None:
        raise ValueError(f"Season {season_id} not found")
    season.end_date = end_date or datetime.now(timezone.utc)
    season.is_active = False
    await db.flush()
    await db.refresh(season)
    return season


async def assign_unlinked_snapshots(db: AsyncSession, season_id: int | None = None) -> int:
    """Attach snapshots with no season to ``season_id`` (default: the active season)."""
    if season_id is None:
        active = await get_active_season(db)
        if active is None:
            raise ValueError("No active season found")
        season_id = active.id
    elif await db.get(Season, season_id) is None:
        raise ValueError(f"Season {season_id} not found")

    result = await db.execute(
        update(Snapshot).where(Snapshot.season_id.is_(None)).values(season_id=season_id)
    )
    logger.info("Linked %d snapshots to season %d", result.rowcount, season_id)
    return result.rowcount


# ---------------------------------------------------------------------------
# Merit reset detection
# ---------------------------------------------------------------------------

def find_merit_reset(
    history: Sequence[tuple[Snapshot, Mapping[str, int]]],
) -> MeritReset | None:
    """Find the newest snapshot where merits were wiped for most of the realm.

    ``history`` is newest first: (snapshot, lord_id → merits). Each snapshot is
    compared with the one before it; pairs sharing fewer than 10 players are
    ignored. A reset needs more than 70% of shared players to have lost merits
    and more than 30% to have lost over half of them (or over 100k).
    """
    if len(history) < RESET_MIN_SNAPSHOTS:
        return None

    for (current, current_merits), (_previous, previous_merits) in zip(history, history[1:]):
        common = [lord_id for lord_id in current_merits if lord_id in previous_merits]
        if len(common) < RESET_MIN_COMMON_PLAYERS:
            continue

        decreased = 0
        significant = 0
        for lord_id in common:
            before = previous_merits[lord_id] or 0
            after = current_merits[lord_id] or 0
            if after >= before:
                continue
            decreased += 1
            drop = before - after
            if drop * 2 > before or drop > SIGNIFICANT_DROP_ABSOLUTE:
                significant += 1

        if (
            decreased * 100 > len(common) * RESET_DECREASE_PERCENT
            and significant * 100 > len(common) * RESET_SIGNIFICANT_PERCENT
        ):
            return MeritReset(
                snapshot_id=current.id,
                timestamp=current.timestamp,
                common_players=len(common),
                players_with_decrease=decreased,
                significant_drops=significant,
            )
    return None


async def detect_merit_reset(db: AsyncSession) -> dict:
    """Look for a merit reset in the last 10 snapshots and suggest a season name."""
    history = await get_snapshot_merits(db, limit=RESET_LOOKBACK_SNAPSHOTS)
    if len(history) < RESET_MIN_SNAPSHOTS:
        return {
            "reset_detected": False,
            "message": "Not enough snapshots to analyze merit trends",
        }

    reset = find_merit_reset(history)
    if reset is None:
        return {
            "reset_detected": False,
            "message": "No merit reset detected in recent snapshots",
        }

    season_count = (await db.execute(select(func.count(Season.id)))).scalar_one()
    suggested = f"Season {season_count + 1} ({reset.timestamp:%B %Y})"
    logger.info("Merit reset detected at snapshot %d", reset.snapshot_id)
    return {
        "reset_detected": True,
        "reset_date": reset.timestamp.isoformat(),
        "reset_snapshot_id": reset.snapshot_id,
        "suggested_season_name": suggested,
        "message": f"Merit reset detected in snapshot from {reset.timestamp:%Y-%m-%d}",
    }
