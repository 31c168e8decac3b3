"""Repository for A/B tests and their sample rows."""

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import ABTest, ABTestSample

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class ABTestRepository(BaseRepository[ABTest]):
    """Persistence for experiments.

    Samples are inserted as individual rows; counts and aggregates are always
    computed from those rows so concurrent recorders cannot lose updates.
    """

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the A/B test repository."""
        super().__init__(session_maker, ABTest, logger)

    async def add_sample(
        self,
        test_id: str,
        arm: str,
        value: float | None,
        payload: dict[str, Any] | None = None,
        prediction_id: str | None = None,
    ) -> bool:
        """Append a sample if the test is still running.

        Returns:
            False when the test is missing or stopped.
        """
        async with self.session_maker() as session:
            status = await session.execute(
                select(ABTest.status).where(ABTest.test_id == test_id),
            )
            if status.scalar_one_or_none() != "running":
                return False
            session.add(
                ABTestSample(
                    test_id=test_id,
                    arm=arm,
                    value=value,
                    payload=payload,
                    prediction_id=prediction_id,
                ),
            )
            await session.commit()
            return True

    async def arm_counts(self, test_id: str) -> dict[str, int]:
        """Number of samples per arm."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ABTestSample.arm, func.count())
                .where(ABTestSample.test_id == test_id)
                .group_by(ABTestSample.arm),
            )
            counts = {"A": 0, "B": 0}
            counts.update({arm: int(count) for arm, count in result.all()})
            return counts

    async def arm_values(self, test_id: str) -> dict[str, list[float]]:
        """Recorded metric values per arm (samples without a value are skipped)."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ABTestSample.arm, ABTestSample.value)
                .where(ABTestSample.test_id == test_id, ABTestSample.value.is_not(None))
                .order_by(ABTestSample.id),
            )
            values: dict[str, list[float]] = {"A": [], "B": []}
            for arm, value in result.all():
                values.setdefault(arm, []).append(float(value))
            return values

    async def mark_stopped(
        self,
        test_id: str,
        winner: str | None,
        confidence: float | None,
        results: dict[str, Any],
    ) -> bool:
        """Transition a running test to stopped; False if it was not running."""
        async with self.session_maker() as session:
            result = await session.execute(
                update(ABTest)
                .where(ABTest.test_id == test_id, ABTest.status == "running")
                .values(
                    status="stopped",
                    winner=winner,
                    confidence=confidence,
                    results=results,
                    stopped_at=datetime.now(UTC),
                ),
            )
            await session.commit()
            return result.rowcount == 1
