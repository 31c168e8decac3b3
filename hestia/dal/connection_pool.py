"""Database engine and session management."""

import asyncio
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hestia.config_manager import ConfigManager
from hestia.dal.models import Base
from hestia.exceptions import ConfigurationError

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class DatabaseConnectionPool:
    """Manages the SQLAlchemy engine and session maker backing the document store."""

    def __init__(self, config: ConfigManager, logger: "LoggerService") -> None:
        """Initialize the connection pool manager.

        Args:
            config: Configuration manager instance
            logger: Logger service instance
        """
        self.config = config
        self.logger = logger
        self._source_module = self.__class__.__name__

        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self._pool_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the AsyncEngine and session maker."""
        async with self._pool_lock:
            if self._engine is not None:
                return

            db_url = self.config.get_secure_value("database.url")
            if not db_url:
                self.logger.error(
                    "Database URL is not configured.",
                    source_module=self._source_module,
                )
                raise ConfigurationError("Database URL is missing (database.url / DATABASE_URL).")

            engine_kwargs: dict[str, object] = {
                "echo": self.config.get_bool("database.echo_sql", default=False),
            }
            # SQLite uses a single-file pool; size options only apply to server databases
            if not make_url(db_url).get_backend_name().startswith("sqlite"):
                engine_kwargs.update(
                    pool_size=self.config.get_int("database.pool.size", 5),
                    max_overflow=self.config.get_int("database.pool.max_overflow", 5),
                    pool_recycle=300,
                    pool_timeout=10,
                )

            try:
                self._engine = create_async_engine(db_url, **engine_kwargs)
                self._session_maker = async_sessionmaker(
                    self._engine, expire_on_commit=False, class_=AsyncSession,
                )
            except Exception:
                self.logger.exception(
                    "Failed to initialize SQLAlchemy AsyncEngine",
                    source_module=self._source_module,
                )
                raise

            self.logger.info(
                "SQLAlchemy AsyncEngine initialized",
                source_module=self._source_module,
                context={"backend": make_url(db_url).get_backend_name()},
            )

    async def create_schema(self) -> None:
        """Create every table known to ``Base.metadata`` if it does not exist."""
        async with self.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("Database schema ensured", source_module=self._source_module)

    async def ping(self) -> bool:
        """Run ``SELECT 1`` against the database."""
        async with self.get_session_maker()() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def close(self) -> None:
        """Dispose of the SQLAlchemy AsyncEngine."""
        async with self._pool_lock:
            if self._engine is not None:
                await self._engine.dispose()
                self.logger.info(
                    "SQLAlchemy AsyncEngine disposed",
                    source_module=self._source_module,
                )
            self._engine = None
            self._session_maker = None

    def get_engine(self) -> AsyncEngine:
        """Return the engine, raising if :meth:`initialize` has not run."""
        if self._engine is None:
            raise RuntimeError("DatabaseConnectionPool is not initialized.")
        return self._engine

    def get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        """Return the session maker, raising if :meth:`initialize` has not run."""
        if self._session_maker is None:
            raise RuntimeError("DatabaseConnectionPool is not initialized.")
        return self._session_maker
