"""Repositories for models and their registered versions."""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hestia.dal.base import BaseRepository
from hestia.dal.models import (
    ABTest,
    ABTestSample,
    DeploymentRecord,
    DriftBaseline,
    DriftDetectionEvent,
    DriftPolicy,
    FeedbackEntry,
    IncrementalBatch,
    IncrementalSample,
    MLModel,
    ModelVersion,
    Prediction,
)

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService


class ModelRepository(BaseRepository[MLModel]):
    """Repository for tenant models and their lifecycle pointers."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the model repository."""
        super().__init__(session_maker, MLModel, logger)

    async def get_for_member(self, model_id: str, member_id: str) -> MLModel | None:
        """Fetch a model only when it belongs to ``member_id``."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(MLModel).where(MLModel.id == model_id, MLModel.member_id == member_id),
            )
            return result.scalar_one_or_none()

    async def slug_exists(self, member_id: str, slug: str) -> bool:
        """Return True when the tenant already owns ``slug``."""
        return await self.count({"member_id": member_id, "slug": slug}) > 0

    async def list_for_member(self, member_id: str, status: str | None = None) -> Sequence[MLModel]:
        """List a tenant's models, newest first."""
        filters: dict[str, Any] = {"member_id": member_id}
        if status:
            filters["status"] = status
        return await self.find_all(filters=filters, order_by="created_at DESC")

    async def count_by_status(self) -> dict[str, int]:
        """Count models grouped by status."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(MLModel.status, func.count()).group_by(MLModel.status),
            )
            return {status: int(count) for status, count in result.all()}

    async def apply_stage_change(
        self,
        model_id: str,
        expected_revision: int,
        version: str,
        to_stage: str,
        *,
        lifecycle: dict[str, Any] | None = None,
        demote: tuple[str, str] | None = None,
    ) -> bool:
        """Change a version's stage and the model's lifecycle in one transaction.

        Args:
            model_id: Model owning the version.
            expected_revision: Revision read before the change; a mismatch aborts.
            version: Version whose stage changes.
            to_stage: New stage of ``version``.
            lifecycle: Optional ``current_version``/``stage`` values for the model row.
            demote: Optional ``(version, stage)`` applied to a second version.

        Returns:
            False when a concurrent writer bumped the revision first.
        """
        async with self.session_maker() as session:
            result = await session.execute(
                update(MLModel)
                .where(MLModel.id == model_id, MLModel.revision == expected_revision)
                .values(
                    **(lifecycle or {}),
                    revision=MLModel.revision + 1,
                    updated_at=datetime.now(UTC),
                ),
            )
            if result.rowcount != 1:
                await session.rollback()
                return False

            await session.execute(
                update(ModelVersion)
                .where(ModelVersion.model_id == model_id, ModelVersion.version == version)
                .values(stage=to_stage),
            )
            if demote is not None:
                demote_version, demote_stage = demote
                await session.execute(
                    update(ModelVersion)
                    .where(
                        ModelVersion.model_id == model_id,
                        ModelVersion.version == demote_version,
                    )
                    .values(stage=demote_stage),
                )
            await session.commit()
            return True

    async def archive_versions(
        self, model_id: str, expected_revision: int, versions: Sequence[str],
    ) -> bool:
        """Archive ``versions`` unless the model changed since ``expected_revision``."""
        async with self.session_maker() as session:
            result = await session.execute(
                update(MLModel)
                .where(MLModel.id == model_id, MLModel.revision == expected_revision)
                .values(revision=MLModel.revision + 1, updated_at=datetime.now(UTC)),
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            if versions:
                await session.execute(
                    update(ModelVersion)
                    .where(ModelVersion.model_id == model_id, ModelVersion.version.in_(versions))
                    .values(stage="archived"),
                )
            await session.commit()
            return True

    async def delete_cascade(self, model_id: str) -> dict[str, int]:
        """Delete a model and every row that belongs to it.

        Returns:
            Number of deleted rows per table.
        """
        test_ids = select(ABTest.test_id).where(
            (ABTest.model_a_id == model_id) | (ABTest.model_b_id == model_id),
        )
        statements = [
            ("ab_test_samples", delete(ABTestSample).where(ABTestSample.test_id.in_(test_ids))),
            (
                "ab_tests",
                delete(ABTest).where(
                    (ABTest.model_a_id == model_id) | (ABTest.model_b_id == model_id),
                ),
            ),
            ("predictions", delete(Prediction).where(Prediction.model_id == model_id)),
            ("model_feedback", delete(FeedbackEntry).where(FeedbackEntry.model_id == model_id)),
            (
                "incremental_samples",
                delete(IncrementalSample).where(IncrementalSample.model_id == model_id),
            ),
            (
                "incremental_batches",
                delete(IncrementalBatch).where(IncrementalBatch.model_id == model_id),
            ),
            ("drift_policies", delete(DriftPolicy).where(DriftPolicy.model_id == model_id)),
            ("drift_baselines", delete(DriftBaseline).where(DriftBaseline.model_id == model_id)),
            (
                "drift_detection_events",
                delete(DriftDetectionEvent).where(DriftDetectionEvent.model_id == model_id),
            ),
            (
                "deployment_records",
                delete(DeploymentRecord).where(DeploymentRecord.model_id == model_id),
            ),
            ("model_versions", delete(ModelVersion).where(ModelVersion.model_id == model_id)),
            ("ml_models", delete(MLModel).where(MLModel.id == model_id)),
        ]
        counts: dict[str, int] = {}
        try:
            async with self.session_maker() as session:
                for table, stmt in statements:
                    result = await session.execute(stmt)
                    counts[table] = result.rowcount
                await session.commit()
        except Exception:
            self.logger.exception(
                f"Error deleting model {model_id} and its dependents",
                source_module=self._source_module,
            )
            raise
        return counts


class ModelVersionRepository(BaseRepository[ModelVersion]):
    """Repository for immutable model versions."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the version repository."""
        super().__init__(session_maker, ModelVersion, logger)

    async def get_version(self, model_id: str, version: str) -> ModelVersion | None:
        """Fetch a single (model, version) pair."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ModelVersion).where(
                    ModelVersion.model_id == model_id, ModelVersion.version == version,
                ),
            )
            return result.scalar_one_or_none()

    async def list_versions(
        self,
        model_id: str,
        *,
        include_archived: bool = True,
        stage: str | None = None,
    ) -> Sequence[ModelVersion]:
        """List versions of a model, newest ``saved_at`` first."""
        stmt = select(ModelVersion).where(ModelVersion.model_id == model_id)
        if not include_archived:
            stmt = stmt.where(ModelVersion.stage != "archived")
        if stage:
            stmt = stmt.where(ModelVersion.stage == stage)
        stmt = stmt.order_by(desc(ModelVersion.saved_at), desc(ModelVersion.version))
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def latest_in_stage(self, model_id: str, stage: str) -> ModelVersion | None:
        """Return the most recently saved version in ``stage``."""
        versions = await self.list_versions(model_id, stage=stage)
        return versions[0] if versions else None
