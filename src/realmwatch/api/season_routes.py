"""Season admin API routes."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.models import Season
from realmwatch.deps import get_db, verify_upload_key
from realmwatch.services import season_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/seasons",
    tags=["admin"],
    dependencies=[Depends(verify_upload_key)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class SeasonCreate(BaseModel):
    name: str
    start_date: datetime
    description: str | None = None
    is_active: bool = False


class SeasonEnd(BaseModel):
    end_date: datetime | None = None


def _season_dict(season: Season) -> dict:
    return {
        "id": season.id,
        "name": season.name,
        "start_date": season.start_date.isoformat(),
        "end_date": season.end_date.isoformat() if season.end_date else None,
        "is_active": season.is_active,
        "description": season.description,
    }


@router.get("")
async def list_seasons(db: AsyncSession = Depends(get_db)):
    seasons = await season_service.get_all_seasons(db)
    return {"ok": True, "data": [_season_dict(s) for s in seasons]}


@router.post("")
async def create_season(body: SeasonCreate, db: AsyncSession = Depends(get_db)):
    name = body.name.strip()
    if not name:
        return JSONResponse(status_code=400, content={"ok": False, "error": "Season name is required"})
    try:
        season = await season_service.create_season(
            db,
            name=name,
            start_date=body.start_date,
            description=body.description,
            is_active=body.is_active,
        )
    except ValueError as e:
        return JSONResponse(status_code=409, content={"ok": False, "error": str(e)})
    return {"ok": True, "data": _season_dict(season)}


@router.post("/detect-reset")
async def detect_reset(db: AsyncSession = Depends(get_db)):
    return {"ok": True, "data": await season_service.detect_merit_reset(db)}


@router.post("/assign-snapshots")
async def assign_snapshots(season_id: int | None = None, db: AsyncSession = Depends(get_db)):
    try:
        linked = await season_service.assign_unlinked_snapshots(db, season_id)
    except ValueError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "data": {"snapshots_linked": linked}}


@router.patch("/{season_id}/activate")
async def activate_season(season_id: int, db: AsyncSession = Depends(get_db)):
    try:
        season = await season_service.activate_season(db, season_id)
    except ValueError as e:
        return JSONResponse(status_code=404, content={"ok": False, "error": str(e)})
    return {"ok": True, "data": _season_dict(season)}


@router.patch("/{season_id}/end")
async def end_season(
    season_id: int, body: SeasonEnd | None = None, db: AsyncSession = Depends(get_db)
):
    try:
        season = await season_service.end_season(
            db, season_id, end_date=body.end_date if body else None
        )
    except ValueError as e:
        return JSONResponse(status_code=404, content={"ok": False, "error": str(e)})
    return {"ok": True, "data": _season_dict(season)}
