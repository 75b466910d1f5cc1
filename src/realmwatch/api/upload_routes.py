"""Upload API routes: roster export ingestion and upload history."""

import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.engine import Database
from realm_common.ingest.errors import StorageError, ValidationError
from realmwatch.config import get_settings
from realmwatch.deps import get_database, get_db, verify_upload_key
from realmwatch.services import upload_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/uploads", tags=["uploads"])


def _error(status_code: int, message: str, details: dict | None = None) -> JSONResponse:
    content = {"ok": False, "error": message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@router.post("", dependencies=[Depends(verify_upload_key)])
async def upload_snapshot(
    file: UploadFile = File(...),
    uploaded_by: str | None = Form(None),
    database: Database = Depends(get_database),
):
    settings = get_settings()
    if not file.filename:
        return _error(400, "No file provided")

    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        return _error(413, f"File too large (limit {settings.max_upload_bytes} bytes)")
    if not data:
        return _error(400, "Uploaded file is empty")

    try:
        summary = await upload_service.process_upload(
            database,
            data,
            file.filename,
            uploaded_by=uploaded_by,
            options=settings.ingest_options(),
        )
    except ValidationError as exc:
        logger.warning("Rejected upload %s: %s", file.filename, exc.message)
        return _error(400, exc.message, exc.details)
    except StorageError as exc:
        return _error(500, exc.message)

    return {"ok": True, "data": summary.as_dict()}


@router.get("")
async def list_uploads(limit: int = 50, db: AsyncSession = Depends(get_db)):
    uploads = await upload_service.list_uploads(db, limit=min(max(limit, 1), 200))
    return {
        "ok": True,
        "data": [
            {
                "id": u.id,
                "filename": u.filename,
                "status": u.status,
                "uploaded_by": u.uploaded_by,
                "rows_processed": u.rows_processed,
                "error_message": u.error_message,
                "duration_seconds": u.duration_seconds,
                "created_at": u.created_at.isoformat() if u.created_at else None,
                "completed_at": u.completed_at.isoformat() if u.completed_at else None,
            }
            for u in uploads
        ],
    }
