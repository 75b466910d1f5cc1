"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


class Database:
    """Owns one async engine and its session factory.

    Constructed once by the application (or a script / test) and passed to the
    code that needs it. ``open()`` must be called before ``session()``;
    ``close()`` disposes the connection pool.
    """

    def __init__(self, database_url: str, echo: bool = False, **engine_kwargs):
        self.database_url = database_url
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    def open(self) -> "Database":
        if self.engine is None:
            self.engine = create_async_engine(
                self.database_url, echo=self.echo, **self.engine_kwargs
            )
            self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        return self

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError("Database is not open")
        return self.session_factory()

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None
