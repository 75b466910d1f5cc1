"""Player identity store: the one mutable "current" row per lord id."""

import logging
from collections.abc import Collection, Sequence
from datetime import datetime

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from realm_common.db.models import NameChange, Player, PlayerSnapshot, Snapshot
from realm_common.ingest.snapshots import get_player_history

logger = logging.getLogger(__name__)

UPSERT_FIELDS = {"current_name", "last_seen_at", "has_left_realm", "left_realm_at"}

# Bound on ids per IN (...) clause
_ID_CHUNK = 500


def _check_realm_flags(player: Player) -> None:
    if player.has_left_realm and player.left_realm_at is None:
        raise ValueError(f"Player {player.lord_id} flagged as left without left_realm_at")
    if not player.has_left_realm and player.left_realm_at is not None:
        raise ValueError(f"Player {player.lord_id} has left_realm_at but is not flagged")


async def find_by_lord_id(db: AsyncSession, lord_id: str) -> Player | None:
    return await db.get(Player, lord_id)


async def upsert(db: AsyncSession, lord_id: str, **fields) -> Player:
    """Create the player on first sighting, otherwise update the given fields."""
    unknown = set(fields) - UPSERT_FIELDS
    if unknown:
        raise ValueError(f"Unknown player fields: {', '.join(sorted(unknown))}")

    player = await db.get(Player, lord_id)
    if player is None:
        player = Player(
            lord_id=lord_id,
            current_name="",
            has_left_realm=False,
            left_realm_at=None,
        )
        db.add(player)
    for key, value in fields.items():
        setattr(player, key, value)

    _check_realm_flags(player)
    await db.flush()
    return player


async def update_realm_status(
    db: AsyncSession,
    lord_id: str,
    has_left_realm: bool,
    left_realm_at: datetime | None = None,
) -> Player:
    player = await db.get(Player, lord_id)
    if player is None:
        raise ValueError(f"Player {lord_id} not found")
    if has_left_realm and left_realm_at is None:
        raise ValueError("left_realm_at is required when flagging a player as left")

    player.has_left_realm = has_left_realm
    player.left_realm_at = left_realm_at if has_left_realm else None
    await db.flush()
    return player


async def mark_players_as_left(
    db: AsyncSession, lord_ids: Sequence[str], as_of: datetime
) -> int:
    """Flag every given player as gone, stamped ``as_of``. Returns rows updated."""
    marked = 0
    for start in range(0, len(lord_ids), _ID_CHUNK):
        chunk = list(lord_ids[start:start + _ID_CHUNK])
        result = await db.execute(
            update(Player)
            .where(Player.lord_id.in_(chunk))
            .values(has_left_realm=True, left_realm_at=as_of)
        )
        marked += result.rowcount
    return marked


def _latest_sighting(column):
    return (
        select(column)
        .select_from(PlayerSnapshot)
        .join(Snapshot, PlayerSnapshot.snapshot_id == Snapshot.id)
        .where(PlayerSnapshot.lord_id == Player.lord_id)
        .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
        .limit(1)
        .correlate(Player)
        .scalar_subquery()
    )


def latest_power_expr():
    """Correlated scalar: current_power from the player's most recent snapshot."""
    return _latest_sighting(PlayerSnapshot.current_power)


def latest_kingdom_expr():
    """Correlated scalar: kingdom of the player's most recent snapshot."""
    return _latest_sighting(Snapshot.kingdom)


async def find_absent_players(
    db: AsyncSession,
    current_ids: Collection[str],
    cutoff: datetime,
    power_floor: int,
    kingdom: str | None = None,
) -> list[Player]:
    """Departure candidates.

    Players not in ``current_ids``, not already flagged, last seen strictly
    before ``cutoff`` and whose latest recorded power is at least
    ``power_floor``. Players with no recorded snapshot are never candidates.
    With ``kingdom`` set, only players last seen in that kingdom's exports
    are considered.
    """
    query = (
        select(Player)
        .where(Player.has_left_realm.is_(False))
        .where(Player.last_seen_at.is_not(None))
        .where(Player.last_seen_at < cutoff)
        .where(latest_power_expr() >= power_floor)
        .order_by(Player.lord_id)
    )
    if kingdom is not None:
        query = query.where(latest_kingdom_expr() == kingdom)
    result = await db.execute(query)
    present = set(current_ids)
    return [player for player in result.scalars().all() if player.lord_id not in present]


# ---------------------------------------------------------------------------
# Read-side helpers for the dashboard API
# ---------------------------------------------------------------------------

async def get_player_with_history(
    db: AsyncSession, lord_id: str, history_limit: int = 100
) -> tuple[Player, list[PlayerSnapshot]] | None:
    """Player (change records loaded) plus its snapshot history, oldest first."""
    result = await db.execute(
        select(Player)
        .options(selectinload(Player.name_changes), selectinload(Player.alliance_changes))
        .where(Player.lord_id == lord_id)
    )
    player = result.scalar_one_or_none()
    if player is None:
        return None
    history = await get_player_history(db, lord_id, limit=history_limit)
    return player, history


async def list_left_realm(
    db: AsyncSession, since: datetime | None = None, limit: int = 200
) -> list[tuple[Player, int | None]]:
    """Flagged players, most recent departures first, with their last known power."""
    power = latest_power_expr().label("last_power")
    query = select(Player, power).where(Player.has_left_realm.is_(True))
    if since is not None:
        query = query.where(Player.left_realm_at >= since)
    result = await db.execute(
        query.order_by(Player.left_realm_at.desc(), Player.lord_id).limit(limit)
    )
    return [(player, last_power) for player, last_power in result.all()]


async def search_players(db: AsyncSession, term: str, limit: int = 25) -> list[Player]:
    """Match lord id, current name or any earlier name."""
    pattern = f"%{term}%"
    former_name = exists().where(
        NameChange.lord_id == Player.lord_id, NameChange.old_name.ilike(pattern)
    )
    result = await db.execute(
        select(Player)
        .where(
            or_(
                Player.lord_id.ilike(pattern),
                Player.current_name.ilike(pattern),
                former_name,
            )
        )
        .order_by(Player.current_name, Player.lord_id)
        .limit(limit)
    )
    return list(result.scalars().all())
