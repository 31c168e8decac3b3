"""Generic async repository shared by the Hestia data access layer."""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.models import Base

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Single-row CRUD and filtered listing for one ORM class.

    Every method opens its own session, so calls never share a transaction.
    Conditional updates live in the concrete repositories.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        model_class: type[T],
        logger: "LoggerService",
    ) -> None:
        """Bind the repository to a session factory and an ORM class.

        Args:
            session_maker: Factory for the store's async sessions.
            model_class: ORM class whose rows this repository manages.
            logger: Logger service instance.
        """
        self.session_maker = session_maker
        self.model_class = model_class
        self.logger = logger
        self._source_module = self.__class__.__name__

    @property
    def _entity(self) -> str:
        return self.model_class.__name__

    async def create(self, data: dict[str, Any] | T) -> T:
        """Insert a row and return it refreshed with server-side defaults.

        Raises:
            SQLAlchemyError: If the insert fails, including unique-key violations.
        """
        row = self.model_class(**data) if isinstance(data, dict) else data
        try:
            async with self.session_maker() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except Exception:
            self.logger.exception(
                f"Could not insert {self._entity}", source_module=self._source_module)
            raise
        return row

    async def get_by_id(self, entity_id: Any) -> T | None:  # noqa: ANN401
        try:
            async with self.session_maker() as session:
                return await session.get(self.model_class, entity_id)
        except Exception:
            self.logger.exception(
                f"Could not load {self._entity} {entity_id}", source_module=self._source_module)
            raise

    async def update(self, entity_id: Any, updates: dict[str, Any]) -> T | None:  # noqa: ANN401
        """Set columns on one row; ``None`` when the row does not exist.

        Unknown column names are rejected before anything is written.
        """
        unknown = [name for name in updates if not hasattr(self.model_class, name)]
        if unknown:
            raise ValueError(f"{self._entity} has no columns {unknown}")
        try:
            async with self.session_maker() as session:
                row = await session.get(self.model_class, entity_id)
                if row is None:
                    return None
                for name, value in updates.items():
                    setattr(row, name, value)
                if hasattr(row, "updated_at"):
                    row.updated_at = datetime.now(UTC)
                await session.commit()
                await session.refresh(row)
        except Exception:
            self.logger.exception(
                f"Could not update {self._entity} {entity_id}", source_module=self._source_module)
            raise
        return row

    async def find_all(
        self,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
    ) -> Sequence[T]:
        """Rows equal to every ``filters`` value.

        ``order_by`` names a column, optionally followed by ``DESC``.
        """
        stmt = self._where(select(self.model_class), filters)
        if order_by:
            column, _, direction = order_by.partition(" ")
            if not hasattr(self.model_class, column):
                raise ValueError(f"{self._entity} has no column '{column}' to order by")
            order = desc if direction.strip().upper() == "DESC" else asc
            stmt = stmt.order_by(order(getattr(self.model_class, column)))
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)

        try:
            async with self.session_maker() as session:
                return (await session.execute(stmt)).scalars().all()
        except Exception:
            self.logger.exception(
                f"Could not list {self._entity} rows", source_module=self._source_module)
            raise

    async def count(self, filters: dict[str, Any] | None = None) -> int:
        stmt = self._where(select(func.count()).select_from(self.model_class), filters)
        async with self.session_maker() as session:
            return int((await session.execute(stmt)).scalar_one())

    def _where(self, stmt: Any, filters: dict[str, Any] | None) -> Any:  # noqa: ANN401
        for name, value in (filters or {}).items():
            if not hasattr(self.model_class, name):
                raise ValueError(f"{self._entity} has no column '{name}' to filter on")
            stmt = stmt.where(getattr(self.model_class, name) == value)
        return stmt
