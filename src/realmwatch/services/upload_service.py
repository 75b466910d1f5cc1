"""Upload service: run one uploaded export through ingestion with an upload record."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.engine import Database
from realm_common.db.models import Upload
from realm_common.ingest.errors import StorageError
from realm_common.ingest.pipeline import IngestionSummary, IngestOptions, ingest_upload
from realm_common.ingest.upload_log import UploadLogEntry
from realmwatch.services.season_service import get_active_season

logger = logging.getLogger(__name__)


async def process_upload(
    database: Database,
    data: bytes,
    filename: str,
    uploaded_by: str | None = None,
    options: IngestOptions | None = None,
) -> IngestionSummary:
    """Ingest one file, linking the snapshot to the active season.

    The uploads row is kept whatever the outcome; ingestion errors propagate.
    Failures reading the active season or writing the uploads row surface as
    StorageError.
    """
    try:
        async with database.session() as db:
            season = await get_active_season(db)
            season_id = season.id if season is not None else None

        async with UploadLogEntry(database, filename, uploaded_by) as entry:
            summary = await ingest_upload(
                database,
                data,
                filename,
                upload_id=entry.upload_id,
                season_id=season_id,
                options=options,
            )
            entry.rows_processed = summary.players_processed
    except SQLAlchemyError as exc:
        logger.error("Upload %s could not be recorded: %s", filename, exc)
        raise StorageError(
            "Storage failure while recording upload", {"error": str(exc)}
        ) from exc
    return summary


async def list_uploads(db: AsyncSession, limit: int = 50) -> list[Upload]:
    """Most recent upload attempts first."""
    result = await db.execute(
        select(Upload).order_by(Upload.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
