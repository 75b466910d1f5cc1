"""Realmwatch application factory."""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from realm_common.db.engine import Database
from realmwatch import __version__
from realmwatch.config import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # SQL echo is controlled by DATABASE_ECHO, not the app log level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Realmwatch (env=%s)", settings.app_env)
        database = Database(settings.database_url, echo=settings.database_echo).open()
        app.state.database = database

        yield

        await database.close()
        logger.info("Realmwatch shutdown complete")

    app = FastAPI(
        title="Realmwatch Roster Tracker",
        version=__version__,
        lifespan=lifespan,
    )

    # ---------------------------------------------------------------------------
    # Exception handlers
    # ---------------------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc):
        error_id = str(uuid.uuid4())[:8]
        logger.error("Server error %s on %s: %s", error_id, request.url.path, exc)
        return Response(
            content=f'{{"ok":false,"error":"Internal server error","error_id":"{error_id}"}}',
            status_code=500,
            media_type="application/json",
        )

    # Register API routes
    from realmwatch.api.health import router as health_router
    from realmwatch.api.roster_routes import router as roster_router
    from realmwatch.api.season_routes import router as season_router
    from realmwatch.api.upload_routes import router as upload_router

    app.include_router(health_router, prefix="/api")
    app.include_router(upload_router)
    app.include_router(roster_router)
    app.include_router(season_router)

    return app
