"""
Ingestion orchestrator: one uploaded export → stored snapshot + updated identities.

Steps, in order, on a single session and a single transaction:
  1. parse the workbook (worker thread)
  2. create the Snapshot row
  3. upsert Player identities in fixed-size batches
  4. bulk-insert each batch's PlayerSnapshot rows
  5. name / alliance change detection
  6. name consistency pass
  7. realm departure inference

Any storage failure rolls the whole upload back and surfaces as StorageError,
so a failed upload never leaves a partial snapshot behind.
"""

import asyncio
import logging
import math
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.engine import Database
from realm_common.db.models import Snapshot
from realm_common.identity.players import find_by_lord_id, upsert
from realm_common.ingest.change_detection import (
    DEFAULT_CUTOFF_DAYS,
    DEFAULT_POWER_FLOOR,
    detect_changes,
    process_realm_status,
    verify_name_consistency,
)
from realm_common.ingest.errors import StorageError
from realm_common.ingest.snapshots import create_player_snapshots, create_snapshot
from realm_common.ingest.spreadsheet import ParsedSpreadsheet, PlayerRecord, parse_spreadsheet

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20

# Player identities are realm-wide, so uploads run one at a time per event loop
_ingest_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def _ingest_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _ingest_locks.get(loop)
    if lock is None:
        lock = _ingest_locks[loop] = asyncio.Lock()
    return lock


@dataclass(frozen=True)
class IngestOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    left_realm_cutoff_days: int = DEFAULT_CUTOFF_DAYS
    left_realm_power_floor: int = DEFAULT_POWER_FLOOR

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.left_realm_cutoff_days < 0:
            raise ValueError("left_realm_cutoff_days cannot be negative")


@dataclass
class IngestionSummary:
    snapshot: Snapshot
    players_processed: int
    name_changes: int
    alliance_changes: int
    players_marked_as_left: int
    names_corrected: int = 0
    skipped_rows: int = 0
    skipped_players: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "snapshot_id": self.snapshot.id,
            "timestamp": self.snapshot.timestamp.isoformat(),
            "kingdom": self.snapshot.kingdom,
            "filename": self.snapshot.filename,
            "players_processed": self.players_processed,
            "changes_detected": {
                "name_changes": self.name_changes,
                "alliance_changes": self.alliance_changes,
            },
            "players_marked_as_left": self.players_marked_as_left,
            "names_corrected": self.names_corrected,
            "skipped_rows": self.skipped_rows,
            "skipped_players": list(self.skipped_players),
        }


@asynccontextmanager
async def _storage_step(step: str):
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure while %s: %s", step, exc)
        raise StorageError(
            f"Storage failure while {step}", {"step": step, "error": str(exc)}
        ) from exc


async def _upsert_identity(db: AsyncSession, record: PlayerRecord, seen_at) -> str | None:
    """Refresh one player's identity. Returns the name stored before this upload.

    A snapshot older than the player's last sighting leaves the identity as is.
    """
    existing = await find_by_lord_id(db, record.lord_id)
    prior_name = existing.current_name if existing is not None else None
    if (
        existing is not None
        and existing.last_seen_at is not None
        and seen_at < existing.last_seen_at
    ):
        logger.info(
            "Player %s was seen after %s; keeping the newer identity",
            record.lord_id, seen_at.isoformat(),
        )
        return prior_name

    if existing is not None and existing.has_left_realm:
        logger.info("Player %s (%s) has returned to the realm", record.name, record.lord_id)

    await upsert(
        db,
        record.lord_id,
        current_name=record.name,
        last_seen_at=seen_at,
        has_left_realm=False,
        left_realm_at=None,
    )
    return prior_name


async def ingest_parsed(
    db: AsyncSession,
    parsed: ParsedSpreadsheet,
    *,
    upload_id: int | None = None,
    season_id: int | None = None,
    options: IngestOptions | None = None,
) -> IngestionSummary:
    """Run steps 2-7 on ``db``. The caller owns the transaction."""
    options = options or IngestOptions()
    info = parsed.file_info
    records = parsed.players

    async with _storage_step("creating snapshot"):
        snapshot = await create_snapshot(
            db,
            timestamp=info.timestamp,
            filename=info.filename,
            kingdom=info.kingdom,
            upload_id=upload_id,
            season_id=season_id,
        )

    prior_names: dict[str, str | None] = {}
    stored: list[PlayerRecord] = []
    skipped: list[str] = []
    total_batches = math.ceil(len(records) / options.batch_size)

    for number, start in enumerate(range(0, len(records), options.batch_size), start=1):
        batch = records[start:start + options.batch_size]
        batch_stored: list[PlayerRecord] = []

        async with _storage_step(f"updating players (batch {number})"):
            for record in batch:
                try:
                    async with db.begin_nested():
                        prior = await _upsert_identity(db, record, info.timestamp)
                except SQLAlchemyError as exc:
                    logger.warning("Error processing player %s: %s", record.lord_id, exc)
                    skipped.append(record.lord_id)
                    continue
                prior_names[record.lord_id] = prior
                batch_stored.append(record)

        async with _storage_step(f"storing player snapshots (batch {number})"):
            await create_player_snapshots(db, snapshot.id, batch_stored)

        stored.extend(batch_stored)
        logger.debug("Processed batch %d/%d (%d players)", number, total_batches, len(batch_stored))

    async with _storage_step("detecting changes"):
        changes = await detect_changes(db, stored, snapshot, prior_names)

    async with _storage_step("verifying player names"):
        corrected = await verify_name_consistency(db, stored, as_of=info.timestamp)

    async with _storage_step("processing realm status"):
        marked = await process_realm_status(
            db,
            [record.lord_id for record in records],
            info.timestamp,
            cutoff_days=options.left_realm_cutoff_days,
            power_floor=options.left_realm_power_floor,
            kingdom=info.kingdom,
        )

    return IngestionSummary(
        snapshot=snapshot,
        players_processed=len(stored),
        name_changes=changes.name_changes,
        alliance_changes=changes.alliance_changes,
        players_marked_as_left=marked,
        names_corrected=corrected,
        skipped_rows=parsed.skipped_rows,
        skipped_players=skipped,
    )


async def ingest_upload(
    database: Database,
    data: bytes,
    filename: str,
    *,
    upload_id: int | None = None,
    season_id: int | None = None,
    options: IngestOptions | None = None,
) -> IngestionSummary:
    """Parse and store one uploaded export.

    Raises ValidationError when the file is unusable and StorageError when it
    could not be stored; in the latter case nothing from this upload is kept.
    """
    parsed = await asyncio.to_thread(parse_spreadsheet, data, filename)

    lock = _ingest_lock()
    if lock.locked():
        logger.info("Waiting for another upload to finish before %s", parsed.file_info.filename)

    async with lock:
        try:
            async with database.session() as db:
                async with db.begin():
                    summary = await ingest_parsed(
                        db, parsed, upload_id=upload_id, season_id=season_id, options=options
                    )
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Upload %s could not be stored: %s", filename, exc)
            raise StorageError(
                "Storage failure while saving upload", {"error": str(exc)}
            ) from exc

    logger.info(
        "Ingested %s: %d players, %d name changes, %d alliance changes, %d marked as left",
        parsed.file_info.filename,
        summary.players_processed,
        summary.name_changes,
        summary.alliance_changes,
        summary.players_marked_as_left,
    )
    return summary
