"""Helper for recording upload attempts in the uploads table."""

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import update

from realm_common.db.engine import Database
from realm_common.db.models import Upload

logger = logging.getLogger(__name__)


class UploadLogEntry:
    """Context manager that logs one upload attempt to roster.uploads.

    The row is written in its own transaction on entry (status 'processing') and
    finalized on exit, so a failed ingestion still leaves a 'failed' record.
    Set ``rows_processed`` inside the block to have it stored.
    """

    def __init__(self, database: Database, filename: str, uploaded_by: str | None = None):
        self.database = database
        self.filename = filename
        self.uploaded_by = uploaded_by
        self.upload_id = None
        self.start_time = None
        self.rows_processed = None

    async def __aenter__(self):
        self.start_time = time.time()
        async with self.database.session() as db, db.begin():
            upload = Upload(
                filename=self.filename,
                status="processing",
                uploaded_by=self.uploaded_by,
            )
            db.add(upload)
            await db.flush()
            self.upload_id = upload.id
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        status = "failed" if exc_type else "completed"
        error_msg = str(exc_val) if exc_val else None

        async with self.database.session() as db, db.begin():
            await db.execute(
                update(Upload)
                .where(Upload.id == self.upload_id)
                .values(
                    status=status,
                    rows_processed=self.rows_processed,
                    error_message=error_msg,
                    duration_seconds=duration,
                    completed_at=datetime.now(timezone.utc),
                )
            )

        if exc_type:
            logger.error("Upload %s failed after %.1fs: %s", self.filename, duration, exc_val)
        else:
            logger.info("Upload %s completed in %.1fs", self.filename, duration)

        return False  # Don't suppress exceptions
