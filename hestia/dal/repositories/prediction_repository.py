"""Repository for served predictions and the feedback log."""

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import FeedbackEntry, Prediction

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class PredictionRepository(BaseRepository[Prediction]):
    """Persistence for predictions, their feedback and aggregate statistics."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the prediction repository."""
        super().__init__(session_maker, Prediction, logger)

    async def attach_feedback(
        self,
        prediction_id: str,
        feedback: dict[str, Any],
        log_entry: dict[str, Any],
    ) -> bool:
        """Attach feedback to a prediction and append the model feedback log entry.

        Both writes share one transaction. The log is append-only so concurrent
        feedback for the same model never overwrites earlier entries.
        """
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Prediction)
                    .where(Prediction.id == prediction_id)
                    .values(feedback=feedback),
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                session.add(FeedbackEntry(**log_entry))
                await session.commit()
                return True
        except Exception:
            self.logger.exception(
                f"Error attaching feedback to prediction {prediction_id}",
                source_module=self._source_module,
            )
            raise

    async def recent(
        self,
        model_id: str | None = None,
        *,
        limit: int = 1000,
        since: datetime | None = None,
    ) -> Sequence[Prediction]:
        """Most recent predictions, newest first."""
        stmt = select(Prediction)
        if model_id is not None:
            stmt = stmt.where(Prediction.model_id == model_id)
        if since is not None:
            stmt = stmt.where(Prediction.created_at >= since)
        stmt = stmt.order_by(desc(Prediction.created_at)).limit(limit)
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def recent_inputs(self, model_id: str, limit: int) -> list[dict[str, Any]]:
        """Inputs of the latest ``limit`` predictions, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Prediction.input_data)
                .where(Prediction.model_id == model_id)
                .order_by(desc(Prediction.created_at))
                .limit(limit),
            )
            return [row for row in result.scalars().all() if isinstance(row, dict)]

    async def paginate(
        self, model_id: str, page: int, limit: int,
    ) -> tuple[Sequence[Prediction], int]:
        """Return one page of a model's predictions and the total count."""
        total = await self.count({"model_id": model_id})
        items = await self.find_all(
            filters={"model_id": model_id},
            limit=limit,
            offset=(page - 1) * limit,
            order_by="created_at DESC",
        )
        return items, total

    async def version_aggregates(self, model_id: str) -> dict[str, dict[str, float]]:
        """Per-version prediction count, mean confidence and mean processing time."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(
                    Prediction.version_used,
                    func.count(),
                    func.avg(Prediction.confidence),
                    func.avg(Prediction.processing_time_ms),
                )
                .where(Prediction.model_id == model_id)
                .group_by(Prediction.version_used),
            )
            return {
                version: {
                    "count": float(count),
                    "confidence": float(mean_conf or 0.0),
                    "processing_time": float(mean_time or 0.0),
                }
                for version, count, mean_conf, mean_time in result.all()
            }

    async def feedback_rows(self, model_id: str) -> list[tuple[str, Any, dict[str, Any]]]:
        """``(version_used, output, feedback)`` for every prediction with feedback."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Prediction.version_used, Prediction.output, Prediction.feedback)
                .where(Prediction.model_id == model_id, Prediction.feedback.is_not(None)),
            )
            return [(version, output, fb) for version, output, fb in result.all()]

    async def feedback_log(self, model_id: str, limit: int = 100) -> Sequence[FeedbackEntry]:
        """Latest feedback log entries of a model."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(FeedbackEntry)
                .where(FeedbackEntry.model_id == model_id)
                .order_by(desc(FeedbackEntry.created_at))
                .limit(limit),
            )
            return result.scalars().all()

    async def feedback_counts(self, model_id: str) -> tuple[int, int]:
        """Return ``(entries_with_verdict, incorrect_entries)`` from the feedback log."""
        async with self.session_maker() as session:
            total = await session.execute(
                select(func.count())
                .select_from(FeedbackEntry)
                .where(FeedbackEntry.model_id == model_id, FeedbackEntry.is_correct.is_not(None)),
            )
            incorrect = await session.execute(
                select(func.count())
                .select_from(FeedbackEntry)
                .where(FeedbackEntry.model_id == model_id, FeedbackEntry.is_correct.is_(False)),
            )
            return int(total.scalar_one()), int(incorrect.scalar_one())
