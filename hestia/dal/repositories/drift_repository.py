"""Repository for drift policies, reference baselines and detection events."""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import DriftBaseline, DriftDetectionEvent, DriftPolicy

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class DriftRepository(BaseRepository[DriftDetectionEvent]):
    """Persistence for everything the drift monitor needs."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the drift repository."""
        super().__init__(session_maker, DriftDetectionEvent, logger)

    async def get_policy(self, model_id: str) -> DriftPolicy | None:
        async with self.session_maker() as session:
            return await session.get(DriftPolicy, model_id)

    async def replace_policy(self, model_id: str, policy: dict[str, Any]) -> DriftPolicy:
        """Replace the model's policy wholesale; the baseline is left untouched."""
        async with self.session_maker() as session:
            existing = await session.get(DriftPolicy, model_id)
            if existing is not None:
                await session.delete(existing)
                await session.flush()
            row = DriftPolicy(model_id=model_id, updated_at=datetime.now(UTC), **policy)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row

    async def get_baseline(self, model_id: str) -> DriftBaseline | None:
        async with self.session_maker() as session:
            return await session.get(DriftBaseline, model_id)

    async def save_baseline(
        self, model_id: str, samples: dict[str, list[Any]], sample_count: int, source: str,
    ) -> DriftBaseline:
        """Store (or overwrite) the reference distribution of a model."""
        async with self.session_maker() as session:
            row = await session.get(DriftBaseline, model_id)
            if row is None:
                row = DriftBaseline(model_id=model_id)
                session.add(row)
            row.samples = samples
            row.sample_count = sample_count
            row.source = source
            row.captured_at = datetime.now(UTC)
            await session.commit()
            await session.refresh(row)
            return row

    async def list_events(self, model_id: str, limit: int = 50) -> Sequence[DriftDetectionEvent]:
        """Latest detection events, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(DriftDetectionEvent)
                .where(DriftDetectionEvent.model_id == model_id)
                .order_by(desc(DriftDetectionEvent.detected_at))
                .limit(limit),
            )
            return result.scalars().all()
