"""Repository for deployment records."""

from collections.abc import Sequence
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import DeploymentRecord

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class DeploymentRepository(BaseRepository[DeploymentRecord]):
    """Persistence for rollout history."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the deployment repository."""
        super().__init__(session_maker, DeploymentRecord, logger)

    async def list_for_model(self, model_id: str) -> Sequence[DeploymentRecord]:
        """All deployments of a model, newest first."""
        return await self.find_all(filters={"model_id": model_id}, order_by="created_at DESC")

    async def count_by_status(self) -> dict[str, int]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(DeploymentRecord.status, func.count()).group_by(DeploymentRecord.status),
            )
            return {status: int(count) for status, count in result.all()}

    async def count_by_strategy(self) -> dict[str, int]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(DeploymentRecord.strategy, func.count())
                .group_by(DeploymentRecord.strategy),
            )
            return {strategy: int(count) for strategy, count in result.all()}
