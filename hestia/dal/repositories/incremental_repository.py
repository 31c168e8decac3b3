"""Repository for incremental-learning samples and batches."""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import IncrementalBatch, IncrementalSample

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class IncrementalRepository(BaseRepository[IncrementalBatch]):
    """Persistence for pending samples and the batches claimed from them.

    A sample belongs to at most one batch: batches are claimed with a
    conditional update on ``batch_id IS NULL`` and start over when another
    claimer won any of the rows.
    """

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the incremental-learning repository."""
        super().__init__(session_maker, IncrementalBatch, logger)

    async def add_sample(
        self, model_id: str, sample: dict[str, Any], prediction_id: str | None = None,
    ) -> None:
        async with self.session_maker() as session:
            session.add(
                IncrementalSample(model_id=model_id, sample=sample, prediction_id=prediction_id),
            )
            await session.commit()

    async def pending_count(self, model_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count())
                .select_from(IncrementalSample)
                .where(IncrementalSample.model_id == model_id, IncrementalSample.batch_id.is_(None)),
            )
            return int(result.scalar_one())

    async def claim_batch(
        self,
        model_id: str,
        size: int | None,
        *,
        learning_rate: float,
        epochs: int,
        forced: bool = False,
    ) -> tuple[IncrementalBatch, list[dict[str, Any]]] | None:
        """Claim up to ``size`` pending samples (all when ``size`` is None) into a new batch.

        When a concurrent claimer takes some of the selected samples first, the
        pending samples are read again.

        Returns:
            The batch and its samples, or None when not enough samples are pending.
        """
        while True:
            claimed, lost_race = await self._try_claim(
                model_id, size, learning_rate=learning_rate, epochs=epochs, forced=forced)
            if not lost_race:
                return claimed

    async def _try_claim(
        self,
        model_id: str,
        size: int | None,
        *,
        learning_rate: float,
        epochs: int,
        forced: bool,
    ) -> tuple[tuple[IncrementalBatch, list[dict[str, Any]]] | None, bool]:
        async with self.session_maker() as session:
            stmt = (
                select(IncrementalSample.id, IncrementalSample.sample)
                .where(IncrementalSample.model_id == model_id, IncrementalSample.batch_id.is_(None))
                .order_by(IncrementalSample.id)
            )
            if size is not None:
                stmt = stmt.limit(size)
            rows = (await session.execute(stmt)).all()
            if not rows or (size is not None and len(rows) < size):
                return None, False

            batch = IncrementalBatch(
                model_id=model_id,
                sample_count=len(rows),
                learning_rate=learning_rate,
                epochs=epochs,
                forced=forced,
            )
            session.add(batch)
            await session.flush()

            ids = [row_id for row_id, _ in rows]
            result = await session.execute(
                update(IncrementalSample)
                .where(IncrementalSample.id.in_(ids), IncrementalSample.batch_id.is_(None))
                .values(batch_id=batch.batch_id),
            )
            if result.rowcount != len(ids):
                await session.rollback()
                return None, True
            await session.commit()
            await session.refresh(batch)
            return (batch, [sample for _, sample in rows]), False

    async def release_batch(self, batch_id: str) -> None:
        """Return a batch's samples to the pending pool and drop the batch row."""
        async with self.session_maker() as session:
            await session.execute(
                update(IncrementalSample)
                .where(IncrementalSample.batch_id == batch_id)
                .values(batch_id=None),
            )
            batch = await session.get(IncrementalBatch, batch_id)
            if batch is not None:
                await session.delete(batch)
            await session.commit()

    async def set_job_id(self, batch_id: str, job_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                update(IncrementalBatch)
                .where(IncrementalBatch.batch_id == batch_id)
                .values(job_id=job_id),
            )
            await session.commit()

    async def list_batches(self, model_id: str) -> Sequence[IncrementalBatch]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(IncrementalBatch)
                .where(IncrementalBatch.model_id == model_id)
                .order_by(desc(IncrementalBatch.created_at)),
            )
            return result.scalars().all()
