"""FastAPI dependencies shared across routes."""

from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from realm_common.db.engine import Database
from realmwatch.config import get_settings


def get_database(request: Request) -> Database:
    """The Database opened by the app lifespan."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields a database session per request."""
    database: Database = request.app.state.database
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def verify_upload_key(x_api_key: str | None = Header(default=None)) -> None:
    """Require X-API-Key on write routes when UPLOAD_API_KEY is configured."""
    settings = get_settings()
    if not settings.upload_api_key:
        return
    if x_api_key != settings.upload_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
