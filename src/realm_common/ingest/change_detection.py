"""
Change detection for one ingestion.

Three passes, all run inside the caller's transaction:

1. ``detect_changes``: NameChange / AllianceChange records for every player
   whose name or alliance differs from what was known before this upload.
   Names are compared against the Player row as it stood before this upload
   touched it; alliances against the player's previous PlayerSnapshot.
   A snapshot older than the player's last sighting never changes the name.
2. ``verify_name_consistency``: make sure every Player row now carries the
   name from its latest parsed record.
3. ``process_realm_status``: flag players of the uploaded kingdom who have
   been absent long enough.

Each player is handled in its own SAVEPOINT so one failure only skips that
player.
"""

import logging
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.models import Player, Snapshot
from realm_common.identity.changes import record_alliance_change, record_name_change
from realm_common.identity.players import (
    find_absent_players,
    find_by_lord_id,
    latest_power_expr,
    mark_players_as_left,
    upsert,
)
from realm_common.ingest.snapshots import get_previous_player_snapshot
from realm_common.ingest.spreadsheet import PlayerRecord

logger = logging.getLogger(__name__)

DEFAULT_CUTOFF_DAYS = 7
DEFAULT_POWER_FLOOR = 10_000_000


@dataclass
class ChangeDetectionResult:
    name_changes: int = 0
    alliance_changes: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class RealmReconciliation:
    unmarked: list[str] = field(default_factory=list)
    marked: list[str] = field(default_factory=list)


def same_alliance(
    old_id: str | None, old_tag: str | None, new_id: str | None, new_tag: str | None
) -> bool:
    """Alliance ids win when both sides have one (tags can be renamed)."""
    if old_id and new_id:
        return old_id == new_id
    return (old_tag or None) == (new_tag or None)


def _seen_after(player: Player | None, timestamp: datetime) -> bool:
    """True when the stored identity comes from a snapshot newer than ``timestamp``."""
    return (
        player is not None
        and player.last_seen_at is not None
        and player.last_seen_at > timestamp
    )


async def _detect_player_changes(
    db: AsyncSession,
    record: PlayerRecord,
    snapshot: Snapshot,
    prior_names: Mapping[str, str | None] | None,
) -> tuple[int, int]:
    player = await find_by_lord_id(db, record.lord_id)
    if prior_names is not None and record.lord_id in prior_names:
        old_name = prior_names[record.lord_id]
    else:
        old_name = player.current_name if player is not None else None

    if old_name is None:
        return 0, 0  # first sighting

    named = 0
    if old_name != record.name and not _seen_after(player, snapshot.timestamp):
        await record_name_change(db, record.lord_id, old_name, record.name, snapshot.timestamp)
        logger.info("Name change: %s %r -> %r", record.lord_id, old_name, record.name)
        named = 1

    moved = 0
    previous = await get_previous_player_snapshot(db, record.lord_id, snapshot)
    if previous is not None and not same_alliance(
        previous.alliance_id, previous.alliance_tag, record.alliance_id, record.alliance_tag
    ):
        await record_alliance_change(
            db,
            record.lord_id,
            old_alliance=previous.alliance_tag,
            old_alliance_id=previous.alliance_id,
            new_alliance=record.alliance_tag,
            new_alliance_id=record.alliance_id,
            detected_at=snapshot.timestamp,
        )
        logger.info(
            "Alliance change: %s %s -> %s",
            record.lord_id, previous.alliance_tag or "-", record.alliance_tag or "-",
        )
        moved = 1

    return named, moved


async def detect_changes(
    db: AsyncSession,
    records: Sequence[PlayerRecord],
    snapshot: Snapshot,
    prior_names: Mapping[str, str | None] | None = None,
) -> ChangeDetectionResult:
    """Record name and alliance changes for every parsed player.

    ``prior_names`` maps lord id → stored name before this upload (None for
    players created by it). Players missing from it are looked up directly.
    """
    result = ChangeDetectionResult()
    for record in records:
        try:
            async with db.begin_nested():
                named, moved = await _detect_player_changes(db, record, snapshot, prior_names)
        except SQLAlchemyError as exc:
            logger.warning("Error detecting changes for player %s: %s", record.lord_id, exc)
            result.errors.append(record.lord_id)
            continue
        result.name_changes += named
        result.alliance_changes += moved

    logger.info(
        "Change detection complete: %d name changes, %d alliance changes, %d errors",
        result.name_changes, result.alliance_changes, len(result.errors),
    )
    return result


async def _correct_name(
    db: AsyncSession, record: PlayerRecord, as_of: datetime | None
) -> bool:
    player = await find_by_lord_id(db, record.lord_id)
    if player is None or player.current_name == record.name:
        return False
    if as_of is not None and _seen_after(player, as_of):
        return False
    logger.warning(
        "Correcting stored name for %s: %r -> %r",
        record.lord_id, player.current_name, record.name,
    )
    await upsert(db, record.lord_id, current_name=record.name)
    return True


async def verify_name_consistency(
    db: AsyncSession, records: Sequence[PlayerRecord], as_of: datetime | None = None
) -> int:
    """Force each Player's current name to match the parsed record. Returns corrections made.

    With ``as_of`` (the snapshot time), players already seen in a newer
    snapshot keep their stored name.
    """
    corrected = 0
    for record in records:
        try:
            async with db.begin_nested():
                changed = await _correct_name(db, record, as_of)
        except SQLAlchemyError as exc:
            logger.warning("Error verifying name for player %s: %s", record.lord_id, exc)
            continue
        if changed:
            corrected += 1

    if corrected:
        logger.info("Name consistency pass corrected %d players", corrected)
    else:
        logger.debug("Name consistency pass: all names match")
    return corrected


async def process_realm_status(
    db: AsyncSession,
    current_ids: Collection[str],
    as_of: datetime,
    *,
    cutoff_days: int = DEFAULT_CUTOFF_DAYS,
    power_floor: int = DEFAULT_POWER_FLOOR,
    kingdom: str | None = None,
) -> int:
    """Flag absent players last seen before ``as_of - cutoff_days``.

    The boundary is exclusive: a player last seen exactly at the cutoff stays.
    ``kingdom`` limits candidates to players last seen in that kingdom.
    """
    cutoff = as_of - timedelta(days=cutoff_days)
    candidates = await find_absent_players(
        db, current_ids, cutoff, power_floor, kingdom=kingdom
    )
    if not candidates:
        logger.info("No players to mark as left realm")
        return 0

    marked = await mark_players_as_left(db, [p.lord_id for p in candidates], as_of)
    logger.info(
        "Marked %d players as left realm (last seen before %s)", marked, cutoff.isoformat()
    )
    return marked


async def reconcile_realm_status(
    db: AsyncSession,
    as_of: datetime,
    *,
    cutoff_days: int = DEFAULT_CUTOFF_DAYS,
    power_floor: int = DEFAULT_POWER_FLOOR,
) -> RealmReconciliation:
    """Re-apply the departure rules to every player.

    Flagged players whose last known power is under the floor are un-flagged;
    unflagged players past the cutoff at or above the floor are flagged.
    """
    outcome = RealmReconciliation()

    result = await db.execute(
        select(Player)
        .where(Player.has_left_realm.is_(True))
        .where(func.coalesce(latest_power_expr(), 0) < power_floor)
        .order_by(Player.lord_id)
    )
    for player in result.scalars().all():
        player.has_left_realm = False
        player.left_realm_at = None
        outcome.unmarked.append(player.lord_id)
    await db.flush()

    cutoff = as_of - timedelta(days=cutoff_days)
    candidates = await find_absent_players(db, (), cutoff, power_floor)
    outcome.marked = [p.lord_id for p in candidates]
    await mark_players_as_left(db, outcome.marked, as_of)

    logger.info(
        "Realm status reconciled: %d unmarked, %d marked",
        len(outcome.unmarked), len(outcome.marked),
    )
    return outcome
