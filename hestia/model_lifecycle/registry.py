"""Model registry: tenant models, immutable versions and stage promotion."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from hestia.dal.repositories import (
    ModelRepository,
    ModelVersionRepository,
    PredictionRepository,
)
from hestia.exceptions import (
    ConcurrentUpdateError,
    DuplicateVersionError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

from .enums import JobType, ModelStage, ModelStatus, ModelType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import MLModel, ModelVersion
    from hestia.interfaces import AuthorizationChecker, JobQueue
    from hestia.logger_service import LoggerService

DELETE_PERMISSION = "models:delete"
MAX_SLUG_ATTEMPTS = 100
UPDATABLE_MODEL_FIELDS = frozenset({"name", "configuration"})

# Metrics where a lower value is better
MINIMIZED_METRICS = frozenset({"processing_time", "error_rate", "mae", "rmse"})
SUPPORTED_METRICS = frozenset({"accuracy", "confidence"}) | MINIMIZED_METRICS
DEFAULT_METRIC_BY_TYPE = {
    ModelType.CLASSIFICATION.value: "accuracy",
    ModelType.NLP.value: "accuracy",
    ModelType.REGRESSION.value: "mae",
    ModelType.TIME_SERIES.value: "mae",
    ModelType.CLUSTERING.value: "confidence",
}

VALID_PROMOTIONS = {
    ModelStage.DEVELOPMENT: {ModelStage.STAGING, ModelStage.ARCHIVED},
    ModelStage.STAGING: {ModelStage.PRODUCTION, ModelStage.ARCHIVED},
    ModelStage.PRODUCTION: {ModelStage.ARCHIVED},
    ModelStage.ARCHIVED: set(),
}

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase ``name`` and collapse every run of non-alphanumerics to ``-``."""
    return _SLUG_INVALID.sub("-", name.lower()).strip("-") or "model"


class ModelRegistry:
    """Centralized model registry with versioning and lifecycle management.

    Lifecycle pointers (``current_version``/``stage``) are only written through
    revision-checked updates; a write that loses its race is retried up to
    ``registry.max_update_retries`` times before :class:`ConcurrentUpdateError`.
    """

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        job_queue: JobQueue | None = None,
        authorization: AuthorizationChecker | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            job_queue: Queue receiving full retraining jobs
            authorization: Permission checker consulted before deletions
        """
        self.config = config
        self.logger = logger
        self.job_queue = job_queue
        self.authorization = authorization
        self._source_module = self.__class__.__name__

        self.model_repo = ModelRepository(session_maker, logger)
        self.version_repo = ModelVersionRepository(session_maker, logger)
        self.prediction_repo = PredictionRepository(session_maker, logger)
        self.max_update_retries = config.get_int("registry.max_update_retries", 5)

    # Models

    async def create_model(
        self,
        member_id: str,
        name: str,
        model_type: ModelType | str,
        configuration: Mapping[str, Any] | None = None,
        training_data: Mapping[str, Any] | None = None,
    ) -> MLModel:
        """Create a model in ``training`` status with a tenant-unique slug."""
        if not name or not name.strip():
            raise ValidationError("Model name must not be empty")
        try:
            model_type = ModelType(model_type)
        except ValueError as e:
            raise ValidationError(f"Unsupported model type: {model_type}") from e

        base_slug = slugify(name)
        for attempt in range(1, MAX_SLUG_ATTEMPTS + 1):
            slug = base_slug if attempt == 1 else f"{base_slug}-{attempt}"
            if await self.model_repo.slug_exists(member_id, slug):
                continue
            try:
                model = await self.model_repo.create({
                    "member_id": member_id,
                    "name": name.strip(),
                    "slug": slug,
                    "model_type": model_type.value,
                    "status": ModelStatus.TRAINING.value,
                    "configuration": dict(configuration or {}),
                    "training_data": dict(training_data) if training_data else None,
                })
            except IntegrityError:
                # Another request claimed the slug between the check and the insert
                continue
            self.logger.info(
                f"Created model {model.id} ({slug})",
                source_module=self._source_module,
                context={"member_id": member_id, "model_type": model_type.value},
            )
            return model
        raise ConcurrentUpdateError(f"Could not allocate a unique slug for '{name}'")

    async def get_model(self, model_id: str, member_id: str | None = None) -> MLModel:
        """Fetch a model, optionally restricted to one tenant.

        Raises:
            NotFoundError: If the model does not exist or belongs to another tenant.
        """
        if member_id is None:
            model = await self.model_repo.get_by_id(model_id)
        else:
            model = await self.model_repo.get_for_member(model_id, member_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        return model

    async def list_models(self, member_id: str, status: str | None = None) -> Sequence[MLModel]:
        return await self.model_repo.list_for_member(member_id, status)

    async def update_model_status(self, model_id: str, status: ModelStatus | str) -> MLModel:
        try:
            status = ModelStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unsupported model status: {status}") from e
        model = await self.model_repo.update(model_id, {"status": status.value})
        if model is None:
            raise NotFoundError("Model", model_id)
        self.logger.info(
            f"Model {model_id} status set to {status.value}",
            source_module=self._source_module,
        )
        return model

    async def update_model(self, model_id: str, updates: Mapping[str, Any]) -> MLModel:
        """Rename a model or replace its configuration.

        Status and lifecycle pointers have their own operations and cannot be
        set here.
        """
        unknown = sorted(set(updates) - UPDATABLE_MODEL_FIELDS)
        if unknown:
            raise ValidationError(f"Model fields cannot be updated: {unknown}")
        values = dict(updates)
        if "name" in values:
            if not isinstance(values["name"], str) or not values["name"].strip():
                raise ValidationError("Model name must not be empty")
            values["name"] = values["name"].strip()
        if "configuration" in values:
            if not isinstance(values["configuration"], Mapping):
                raise ValidationError("Model configuration must be an object")
            values["configuration"] = dict(values["configuration"])

        model = await self.model_repo.update(model_id, values)
        if model is None:
            raise NotFoundError("Model", model_id)
        self.logger.info(
            f"Model {model_id} updated",
            source_module=self._source_module,
            context={"fields": sorted(values)},
        )
        return model

    async def update_training_data(
        self, model_id: str, training_data: Mapping[str, Any],
    ) -> MLModel:
        """Merge ``training_data`` into the model's training data summary."""
        record_count = training_data.get("record_count")
        if record_count is not None and (not isinstance(record_count, int) or record_count < 0):
            raise ValidationError("record_count must be a non-negative integer")
        model = await self.get_model(model_id)
        merged = {**(model.training_data or {}), **training_data}
        updated = await self.model_repo.update(model_id, {"training_data": merged})
        if updated is None:
            raise NotFoundError("Model", model_id)
        return updated

    async def archive_model(self, model_id: str) -> MLModel:
        """Mark the model archived; its versions keep their stages."""
        return await self.update_model_status(model_id, ModelStatus.ARCHIVED)

    async def delete_model(self, model_id: str, member_id: str, user_id: str) -> dict[str, int]:
        """Delete a model and everything recorded for it.

        Raises:
            PermissionDeniedError: If ``user_id`` may not delete models of ``member_id``.
            NotFoundError: If the tenant owns no such model.
        """
        allowed = (
            await self.authorization.has_permission(user_id, member_id, DELETE_PERMISSION)
            if self.authorization is not None else False
        )
        if not allowed:
            self.logger.warning(
                f"User {user_id} denied deleting model {model_id}",
                source_module=self._source_module,
                context={"member_id": member_id},
            )
            raise PermissionDeniedError(user_id, DELETE_PERMISSION)

        await self.get_model(model_id, member_id)
        counts = await self.model_repo.delete_cascade(model_id)
        self.logger.info(
            f"Deleted model {model_id}",
            source_module=self._source_module,
            context=counts,
        )
        return counts

    async def trigger_retraining(self, model_id: str, reason: str) -> str:
        """Enqueue a full retraining job and move the model back to ``training``."""
        model = await self.get_model(model_id)
        if self.job_queue is None:
            raise InvalidStateError("No job queue configured for retraining")
        job_id = await self.job_queue.enqueue(
            JobType.FULL_RETRAINING.value,
            {
                "model_id": model.id,
                "reason": reason,
                "configuration": model.configuration or {},
                "training_data": model.training_data or {},
            },
        )
        await self.update_model_status(model_id, ModelStatus.TRAINING)
        self.logger.info(
            f"Queued full retraining for model {model_id}",
            source_module=self._source_module,
            context={"job_id": job_id, "reason": reason},
        )
        return job_id

    # Versions

    async def register_version(
        self,
        model_id: str,
        version: str,
        artifact_ref: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> ModelVersion:
        """Register an immutable version in the ``development`` stage.

        Raises:
            DuplicateVersionError: If the (model, version) pair already exists.
        """
        if not version or not artifact_ref:
            raise ValidationError("Both version and artifact_ref are required")
        await self.get_model(model_id)
        if await self.version_repo.get_version(model_id, version) is not None:
            raise DuplicateVersionError(model_id, version)
        try:
            record = await self.version_repo.create({
                "model_id": model_id,
                "version": version,
                "stage": ModelStage.DEVELOPMENT.value,
                "artifact_ref": artifact_ref,
                "version_metadata": dict(metadata or {}),
            })
        except IntegrityError as e:
            raise DuplicateVersionError(model_id, version) from e
        self.logger.info(
            f"Registered model {model_id} version {version}",
            source_module=self._source_module,
            context={"artifact_ref": artifact_ref},
        )
        return record

    async def get_version(self, model_id: str, version: str) -> ModelVersion:
        record = await self.version_repo.get_version(model_id, version)
        if record is None:
            raise NotFoundError("ModelVersion", f"{model_id}:{version}")
        return record

    async def get_model_versions(
        self, model_id: str, *, include_archived: bool = True,
    ) -> Sequence[ModelVersion]:
        """Versions of a model, newest ``saved_at`` first."""
        return await self.version_repo.list_versions(model_id, include_archived=include_archived)

    async def latest_version_in_stage(self, model_id: str, stage: ModelStage | str) -> ModelVersion:
        record = await self.version_repo.latest_in_stage(model_id, ModelStage(stage).value)
        if record is None:
            raise NotFoundError("ModelVersion", f"{model_id}@{ModelStage(stage).value}")
        return record

    async def promote_model(
        self, model_id: str, version: str, to_stage: ModelStage | str,
    ) -> ModelVersion:
        """Move a version one step along the stage ladder.

        Any non-archived promotion makes the version current in its new stage.
        Promotion to production also demotes the previously current version to
        staging.

        Raises:
            NotFoundError: If the version does not exist.
            InvalidStateError: If the transition is not allowed or would archive
                the current version.
        """
        to_stage = ModelStage(to_stage)
        record = await self.get_version(model_id, version)
        from_stage = ModelStage(record.stage)
        if to_stage not in VALID_PROMOTIONS[from_stage]:
            raise InvalidStateError(
                f"Invalid promotion for {model_id}:{version}: "
                f"{from_stage.value} -> {to_stage.value}",
            )

        try:
            for _ in range(self.max_update_retries):
                model = await self.get_model(model_id)
                lifecycle: dict[str, Any] | None = None
                demote: tuple[str, str] | None = None

                if to_stage == ModelStage.ARCHIVED:
                    if model.current_version == version:
                        raise InvalidStateError(
                            f"Cannot archive {model_id}:{version}; it is the current version",
                        )
                else:
                    lifecycle = {"current_version": version, "stage": to_stage.value}
                    if (
                        to_stage == ModelStage.PRODUCTION
                        and model.current_version
                        and model.current_version != version
                    ):
                        demote = (model.current_version, ModelStage.STAGING.value)

                if await self.model_repo.apply_stage_change(
                    model_id,
                    model.revision,
                    version,
                    to_stage.value,
                    lifecycle=lifecycle,
                    demote=demote,
                ):
                    self.logger.info(
                        f"Model promoted: {model_id} v{version} "
                        f"from {from_stage.value} to {to_stage.value}",
                        source_module=self._source_module,
                        context={"demoted": demote[0] if demote else None},
                    )
                    return await self.get_version(model_id, version)
        except InvalidStateError:
            raise
        except Exception:
            self.logger.exception(
                "Failed to promote model",
                source_module=self._source_module,
                context={"model_id": model_id, "version": version},
            )
            raise
        raise ConcurrentUpdateError(f"Promotion of {model_id}:{version} kept losing to concurrent updates")

    async def point_to_version(
        self, model_id: str, version: str, stage: ModelStage | str,
    ) -> str | None:
        """Make ``version`` current in ``stage`` outside the promotion ladder.

        Used by deployments and rollbacks. When the new stage is production the
        previously current version is demoted to staging.

        Returns:
            The version that was current before the change.
        """
        stage = ModelStage(stage)
        if stage == ModelStage.ARCHIVED:
            raise InvalidStateError("A model cannot be pointed at an archived stage")
        record = await self.get_version(model_id, version)
        if record.stage == ModelStage.ARCHIVED.value:
            raise InvalidStateError(f"Version {model_id}:{version} is archived")

        for _ in range(self.max_update_retries):
            model = await self.get_model(model_id)
            previous = model.current_version
            demote = None
            if stage == ModelStage.PRODUCTION and previous and previous != version:
                demote = (previous, ModelStage.STAGING.value)
            if await self.model_repo.apply_stage_change(
                model_id,
                model.revision,
                version,
                stage.value,
                lifecycle={"current_version": version, "stage": stage.value},
                demote=demote,
            ):
                self.logger.info(
                    f"Model {model_id} now serves version {version} in {stage.value}",
                    source_module=self._source_module,
                    context={"previous_version": previous},
                )
                return previous
        raise ConcurrentUpdateError(f"Repointing {model_id} to {version} kept losing to concurrent updates")

    async def archive_old_versions(self, model_id: str, keep_count: int) -> int:
        """Archive every non-archived version beyond the ``keep_count`` most recent.

        The current version is always kept; when it is older than the newest
        ``keep_count`` versions it takes the place of the oldest kept one.

        Returns:
            Number of versions archived.
        """
        if keep_count < 0:
            raise ValidationError("keep_count must be >= 0")

        for _ in range(self.max_update_retries):
            model = await self.get_model(model_id)
            versions = [
                v.version for v in
                await self.version_repo.list_versions(model_id, include_archived=False)
            ]
            keep = versions[:keep_count]
            current = model.current_version
            if current in versions and current not in keep:
                if keep:
                    keep[-1] = current
                else:
                    keep = [current]
            to_archive = [v for v in versions if v not in keep]
            if await self.model_repo.archive_versions(model_id, model.revision, to_archive):
                if to_archive:
                    self.logger.info(
                        f"Archived {len(to_archive)} old version(s) of model {model_id}",
                        source_module=self._source_module,
                        context={"archived": to_archive, "kept": keep},
                    )
                return len(to_archive)
        raise ConcurrentUpdateError(f"Archiving versions of {model_id} kept losing to concurrent updates")

    async def get_best_version(self, model_id: str, metric: str | None = None) -> str | None:
        """Return the non-archived version with the best aggregate ``metric``.

        Aggregates are computed from recorded predictions and their feedback.
        Ties go to the most recently saved version; versions without data for
        the metric are skipped.
        """
        model = await self.get_model(model_id)
        metric = metric or DEFAULT_METRIC_BY_TYPE.get(model.model_type, "confidence")
        if metric not in SUPPORTED_METRICS:
            raise ValidationError(f"Unsupported metric: {metric}")

        scores = await self.version_metrics(model_id)
        best_version: str | None = None
        best_value: float | None = None
        # Newest first, so only a strictly better value replaces the leader
        for record in await self.version_repo.list_versions(model_id, include_archived=False):
            value = scores.get(record.version, {}).get(metric)
            if value is None:
                continue
            if best_value is None or (
                value < best_value if metric in MINIMIZED_METRICS else value > best_value
            ):
                best_version, best_value = record.version, value
        return best_version

    async def version_metrics(self, model_id: str) -> dict[str, dict[str, float]]:
        """Per-version aggregate metrics computed from prediction history."""
        metrics: dict[str, dict[str, float]] = {}
        for version, agg in (await self.prediction_repo.version_aggregates(model_id)).items():
            if agg["count"] > 0:
                metrics[version] = {
                    "count": agg["count"],
                    "confidence": agg["confidence"],
                    "processing_time": agg["processing_time"],
                }

        verdicts: dict[str, list[bool]] = {}
        errors: dict[str, list[float]] = {}
        for version, output, feedback in await self.prediction_repo.feedback_rows(model_id):
            if feedback.get("is_correct") is not None:
                verdicts.setdefault(version, []).append(bool(feedback["is_correct"]))
            actual = _as_number(feedback.get("actual_value"))
            predicted = _as_number(output)
            if actual is not None and predicted is not None:
                errors.setdefault(version, []).append(predicted - actual)

        for version, values in verdicts.items():
            accuracy = sum(values) / len(values)
            metrics.setdefault(version, {}).update(accuracy=accuracy, error_rate=1.0 - accuracy)
        for version, diffs in errors.items():
            metrics.setdefault(version, {}).update(
                mae=sum(abs(d) for d in diffs) / len(diffs),
                rmse=math.sqrt(sum(d * d for d in diffs) / len(diffs)),
            )
        return metrics


def _as_number(value: Any) -> float | None:  # noqa: ANN401
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, Mapping):
        for key in ("value", "prediction"):
            if isinstance(value.get(key), int | float) and not isinstance(value.get(key), bool):
                return float(value[key])
    return None
