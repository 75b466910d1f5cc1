"""Health check endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from realm_common.db.engine import Database
from realmwatch import __version__
from realmwatch.deps import get_database

router = APIRouter()


@router.get("/health")
async def health_check(database: Database = Depends(get_database)):
    db_status = "disconnected"
    try:
        async with database.session() as session:
            await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as exc:
        db_status = f"error: {exc}"

    return {
        "ok": True,
        "data": {
            "db": db_status,
            "version": __version__,
        },
    }
