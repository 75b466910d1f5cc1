"""Roster read API: snapshots, players, change feeds and realm status admin.

Counters that can outgrow a JSON number are serialized as decimal strings.
"""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.models import AllianceChange, NameChange, Player, PlayerSnapshot, Snapshot
from realm_common.identity import changes as change_store
from realm_common.identity import players as player_store
from realm_common.ingest import snapshots as snapshot_store
from realm_common.ingest.change_detection import reconcile_realm_status
from realm_common.ingest.spreadsheet import BIG_COUNT_FIELDS, COLUMN_MAP
from realmwatch.config import get_settings
from realmwatch.deps import get_db, verify_upload_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["roster"])

MAX_LIMIT = 1000


def _not_found(message: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"ok": False, "error": message})


def _clamp(limit: int) -> int:
    return min(max(limit, 1), MAX_LIMIT)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _count(value: int | None) -> str | None:
    return str(value) if value is not None else None


def _snapshot_dict(snapshot: Snapshot, player_count: int | None = None) -> dict:
    data = {
        "id": snapshot.id,
        "timestamp": _iso(snapshot.timestamp),
        "filename": snapshot.filename,
        "kingdom": snapshot.kingdom,
        "upload_id": snapshot.upload_id,
        "season_id": snapshot.season_id,
    }
    if player_count is not None:
        data["player_count"] = player_count
    return data


def _player_snapshot_dict(row: PlayerSnapshot) -> dict:
    data = {"snapshot_id": row.snapshot_id}
    for name in COLUMN_MAP:
        value = getattr(row, name)
        data[name] = _count(value) if name in BIG_COUNT_FIELDS else value
    return data


def _player_dict(player: Player) -> dict:
    return {
        "lord_id": player.lord_id,
        "current_name": player.current_name,
        "last_seen_at": _iso(player.last_seen_at),
        "has_left_realm": player.has_left_realm,
        "left_realm_at": _iso(player.left_realm_at),
    }


def _name_change_dict(change: NameChange) -> dict:
    return {
        "id": change.id,
        "lord_id": change.lord_id,
        "old_name": change.old_name,
        "new_name": change.new_name,
        "detected_at": _iso(change.detected_at),
    }


def _alliance_change_dict(change: AllianceChange) -> dict:
    return {
        "id": change.id,
        "lord_id": change.lord_id,
        "old_alliance": change.old_alliance,
        "old_alliance_id": change.old_alliance_id,
        "new_alliance": change.new_alliance,
        "new_alliance_id": change.new_alliance_id,
        "detected_at": _iso(change.detected_at),
    }


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@router.get("/snapshots")
async def list_snapshots(
    limit: int = 50,
    season_id: int | None = None,
    kingdom: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    snapshots = await snapshot_store.list_snapshots(
        db, limit=_clamp(limit), season_id=season_id, kingdom=kingdom
    )
    counts = await snapshot_store.count_player_snapshots(db, [s.id for s in snapshots])
    return {
        "ok": True,
        "data": [_snapshot_dict(s, counts.get(s.id, 0)) for s in snapshots],
    }


@router.get("/snapshots/latest")
async def latest_snapshot(
    season_id: int | None = None,
    kingdom: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    snapshot = await snapshot_store.find_latest(db, season_id=season_id, kingdom=kingdom)
    if snapshot is None:
        return _not_found("No snapshots found")
    counts = await snapshot_store.count_player_snapshots(db, [snapshot.id])
    return {"ok": True, "data": _snapshot_dict(snapshot, counts.get(snapshot.id, 0))}


@router.get("/snapshots/{snapshot_id}/players")
async def snapshot_players(
    snapshot_id: int,
    alliance: str | None = None,
    search: str | None = None,
    include_left_realm: bool = False,
    limit: int = MAX_LIMIT,
    db: AsyncSession = Depends(get_db),
):
    snapshot = await snapshot_store.get_snapshot(db, snapshot_id)
    if snapshot is None:
        return _not_found(f"Snapshot {snapshot_id} not found")

    rows = await snapshot_store.get_player_snapshots(
        db,
        snapshot_id,
        alliance=alliance,
        search=search,
        include_left_realm=include_left_realm,
        limit=_clamp(limit),
    )
    alliances = await snapshot_store.list_alliances(db, snapshot_id)
    return {
        "ok": True,
        "data": {
            "snapshot": _snapshot_dict(snapshot),
            "alliances": [{"tag": tag, "members": count} for tag, count in alliances],
            "players": [_player_snapshot_dict(row) for row in rows],
        },
    }


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------


@router.get("/players/search")
async def search_players(q: str, limit: int = 25, db: AsyncSession = Depends(get_db)):
    if not q.strip():
        return {"ok": True, "data": []}
    players = await player_store.search_players(db, q.strip(), limit=min(max(limit, 1), 100))
    return {"ok": True, "data": [_player_dict(p) for p in players]}


@router.get("/players/left-realm")
async def left_realm(
    days_ago: int | None = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
):
    since = None
    if days_ago is not None:
        since = datetime.now(timezone.utc) - timedelta(days=days_ago)
    rows = await player_store.list_left_realm(db, since=since, limit=_clamp(limit))
    return {
        "ok": True,
        "data": [
            {**_player_dict(player), "last_power": _count(last_power)}
            for player, last_power in rows
        ],
    }


@router.get("/players/joined-realm")
async def joined_realm(
    from_snapshot_id: int | None = None,
    to_snapshot_id: int | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Players present in one snapshot but not the one before (default: latest two)."""
    if from_snapshot_id is None or to_snapshot_id is None:
        recent = await snapshot_store.list_snapshots(db, limit=2)
        if len(recent) < 2:
            return {"ok": True, "data": {"from_snapshot_id": None, "to_snapshot_id": None, "players": []}}
        to_snapshot_id = to_snapshot_id or recent[0].id
        from_snapshot_id = from_snapshot_id or recent[1].id

    rows = await snapshot_store.find_new_players(db, from_snapshot_id, to_snapshot_id)
    return {
        "ok": True,
        "data": {
            "from_snapshot_id": from_snapshot_id,
            "to_snapshot_id": to_snapshot_id,
            "players": [_player_snapshot_dict(row) for row in rows],
        },
    }


@router.get("/players/{lord_id}")
async def get_player(lord_id: str, history_limit: int = 100, db: AsyncSession = Depends(get_db)):
    found = await player_store.get_player_with_history(
        db, lord_id, history_limit=_clamp(history_limit)
    )
    if found is None:
        return _not_found(f"Player {lord_id} not found")

    player, history = found
    return {
        "ok": True,
        "data": {
            **_player_dict(player),
            "history": [
                {"timestamp": _iso(row.snapshot.timestamp), **_player_snapshot_dict(row)}
                for row in history
            ],
            "name_changes": [_name_change_dict(c) for c in player.name_changes],
            "alliance_changes": [_alliance_change_dict(c) for c in player.alliance_changes],
        },
    }


# ---------------------------------------------------------------------------
# Change feeds
# ---------------------------------------------------------------------------


@router.get("/name-changes")
async def name_changes(
    days: int | None = 30,
    search: str | None = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
):
    since = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    changes = await change_store.list_name_changes(
        db, since=since, search=search, limit=_clamp(limit)
    )
    return {"ok": True, "data": [_name_change_dict(c) for c in changes]}


@router.get("/alliance-moves")
async def alliance_moves(
    days: int | None = 30,
    alliance: str | None = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
):
    since = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    changes = await change_store.list_alliance_changes(
        db, since=since, alliance=alliance, limit=_clamp(limit)
    )
    return {"ok": True, "data": [_alliance_change_dict(c) for c in changes]}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.post(
    "/admin/realm-status/reconcile",
    dependencies=[Depends(verify_upload_key)],
    tags=["admin"],
)
async def reconcile_realm(db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    outcome = await reconcile_realm_status(
        db,
        datetime.now(timezone.utc),
        cutoff_days=settings.left_realm_cutoff_days,
        power_floor=settings.left_realm_power_floor,
    )
    return {
        "ok": True,
        "data": {
            "unmarked": outcome.unmarked,
            "marked": outcome.marked,
        },
    }
