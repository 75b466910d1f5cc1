"""Name and alliance change records."""

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.models import AllianceChange, NameChange


async def record_name_change(
    db: AsyncSession, lord_id: str, old_name: str, new_name: str, detected_at: datetime
) -> NameChange:
    change = NameChange(
        lord_id=lord_id, old_name=old_name, new_name=new_name, detected_at=detected_at
    )
    db.add(change)
    await db.flush()
    return change


async def record_alliance_change(
    db: AsyncSession,
    lord_id: str,
    old_alliance: str | None,
    old_alliance_id: str | None,
    new_alliance: str | None,
    new_alliance_id: str | None,
    detected_at: datetime,
) -> AllianceChange:
    change = AllianceChange(
        lord_id=lord_id,
        old_alliance=old_alliance,
        old_alliance_id=old_alliance_id,
        new_alliance=new_alliance,
        new_alliance_id=new_alliance_id,
        detected_at=detected_at,
    )
    db.add(change)
    await db.flush()
    return change


async def list_name_changes(
    db: AsyncSession,
    since: datetime | None = None,
    until: datetime | None = None,
    search: str | None = None,
    limit: int = 200,
) -> list[NameChange]:
    """Newest first. ``search`` matches old name, new name or lord id."""
    query = select(NameChange)
    if since is not None:
        query = query.where(NameChange.detected_at >= since)
    if until is not None:
        query = query.where(NameChange.detected_at <= until)
    if search:
        pattern = f"%{search}%"
        query = query.where(
            or_(
                NameChange.old_name.ilike(pattern),
                NameChange.new_name.ilike(pattern),
                NameChange.lord_id.ilike(pattern),
            )
        )
    result = await db.execute(
        query.order_by(NameChange.detected_at.desc(), NameChange.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_alliance_changes(
    db: AsyncSession,
    since: datetime | None = None,
    until: datetime | None = None,
    alliance: str | None = None,
    search: str | None = None,
    limit: int = 200,
) -> list[AllianceChange]:
    """Newest first. ``alliance`` matches either side of the move."""
    query = select(AllianceChange)
    if since is not None:
        query = query.where(AllianceChange.detected_at >= since)
    if until is not None:
        query = query.where(AllianceChange.detected_at <= until)
    if alliance:
        query = query.where(
            or_(
                AllianceChange.old_alliance == alliance,
                AllianceChange.new_alliance == alliance,
            )
        )
    if search:
        query = query.where(AllianceChange.lord_id.ilike(f"%{search}%"))
    result = await db.execute(
        query.order_by(AllianceChange.detected_at.desc(), AllianceChange.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
