"""Model lifecycle and serving orchestrator.

Wires the registry, A/B router, prediction pipeline, feedback loop, deployment
orchestrator and monitors together around collaborators supplied by the caller.
The caller owns the collaborators' lifecycle (including the database pool); the
orchestrator only starts and stops what it creates.
"""

from __future__ import annotations

import dataclasses
import math
import random
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from hestia.exceptions import InvalidStateError, ValidationError
from hestia.model_lifecycle import (
    DeploymentOrchestrator,
    ExperimentManager,
    FeedbackService,
    HealthCheckConfig,
    IncrementalLearningTrigger,
    ModelRegistry,
    ModelStage,
    RollbackPolicy,
)
from hestia.monitoring import DriftMonitor, HealthCheckService, InMemoryMetricsEmitter
from hestia.serving import (
    FeatureTransformRegistry,
    ModelPool,
    PredictionPipeline,
    SecurityValidator,
)

if TYPE_CHECKING:
    from hestia.config_manager import ConfigManager
    from hestia.dal import DatabaseConnectionPool
    from hestia.interfaces import (
        AuthorizationChecker,
        HealthProbe,
        JobQueue,
        MetricsEmitter,
        TensorEngine,
    )
    from hestia.logger_service import LoggerService
    from hestia.model_lifecycle.enums import ModelStatus, ModelType
    from hestia.serving.feature_transforms import FeatureTransform
    from hestia.serving.prediction_pipeline import PredictionRequest

MAX_PAGE_SIZE = 100


class ModelOrchestrator:
    """Single entry point for every lifecycle and serving operation."""

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        database: DatabaseConnectionPool,
        engine: TensorEngine,
        job_queue: JobQueue,
        authorization: AuthorizationChecker,
        probe: HealthProbe,
        metrics: MetricsEmitter | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Configuration manager instance
            logger: Logger service instance
            database: Initialized connection pool backing the store
            engine: Tensor engine running inference
            job_queue: Durable queue for retraining work
            authorization: Permission checker for destructive operations
            probe: Health probe used by rollouts
            metrics: Metrics emitter; an in-memory Prometheus registry when omitted
            rng: Random source shared by A/B and canary routing
        """
        self.config = config
        self.logger = logger
        self.database = database
        self.engine = engine
        self.job_queue = job_queue
        self._source_module = self.__class__.__name__

        session_maker = database.get_session_maker()
        rng = rng or random.Random()  # noqa: S311
        self.metrics = metrics or InMemoryMetricsEmitter()

        self.registry = ModelRegistry(config, session_maker, logger, job_queue, authorization)
        self.experiments = ExperimentManager(config, session_maker, logger, self.registry, rng)
        self.incremental = IncrementalLearningTrigger(config, session_maker, logger, job_queue)
        self.feedback = FeedbackService(config, session_maker, logger, self.incremental)
        self.pool = ModelPool(engine, config, logger)
        self.deployments = DeploymentOrchestrator(
            config, session_maker, logger, self.registry, probe, self.pool, rng)

        self.validator = SecurityValidator(config, logger)
        self.transforms = FeatureTransformRegistry(logger)
        self.pipeline = PredictionPipeline(
            config,
            session_maker,
            logger,
            validator=self.validator,
            registry=self.registry,
            experiments=self.experiments,
            engine=engine,
            pool=self.pool,
            transforms=self.transforms,
            metrics=self.metrics,
            deployments=self.deployments,
        )

        self.drift = DriftMonitor(config, session_maker, logger, self.registry)
        self.health = HealthCheckService(config, session_maker, logger)
        self.health.add_component_check("store", database.ping)
        self.health.add_component_check("compute_engine", engine.ping)
        self.health.add_component_check("job_queue", job_queue.ping)
        self.health.add_component_check("model_cache", self.pool.is_healthy)

        self._is_running = False

    async def initialize(self) -> None:
        """Ensure the schema exists when ``database.create_schema`` is set."""
        if self.config.get_bool("database.create_schema", default=True):
            await self.database.create_schema()
        errors = self.config.validate_configuration()
        for error in errors:
            self.logger.warning(
                f"Configuration issue: {error}", source_module=self._source_module)

    async def start(self) -> None:
        if self._is_running:
            return
        await self.deployments.start()
        self._is_running = True
        self.logger.info("Model orchestrator started", source_module=self._source_module)

    async def stop(self) -> None:
        """Cancel running rollouts and drop loaded artifacts."""
        if not self._is_running:
            return
        self._is_running = False
        await self.deployments.stop()
        await self.pool.clear()
        self.logger.info("Model orchestrator stopped", source_module=self._source_module)

    # Models

    async def create_model(
        self,
        member_id: str,
        name: str,
        model_type: ModelType | str,
        configuration: Mapping[str, Any] | None = None,
        training_data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        model = await self.registry.create_model(
            member_id, name, model_type, configuration, training_data)
        return model.to_dict()

    async def get_model(self, model_id: str, member_id: str | None = None) -> dict[str, Any]:
        return (await self.registry.get_model(model_id, member_id)).to_dict()

    async def list_models(self, member_id: str, status: str | None = None) -> list[dict[str, Any]]:
        return [m.to_dict() for m in await self.registry.list_models(member_id, status)]

    async def update_model_status(self, model_id: str, status: ModelStatus | str) -> dict[str, Any]:
        return (await self.registry.update_model_status(model_id, status)).to_dict()

    async def update_model(self, model_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Update name or configuration.

        A new ``configuration.features`` list replaces the model's validation
        rules with one required numeric field per feature.
        """
        model = await self.registry.update_model(model_id, updates)
        features = (updates.get("configuration") or {}).get("features")
        if features:
            self.validator.generate_validation_rules_from_schema(model_id, {
                "properties": {name: {"type": "number"} for name in features},
                "required": list(features),
            })
        return model.to_dict()

    async def update_model_training_data(
        self, model_id: str, training_data: Mapping[str, Any],
    ) -> dict[str, Any]:
        return (await self.registry.update_training_data(model_id, training_data)).to_dict()

    async def evaluate_model(
        self,
        model_id: str,
        test_set: Sequence[Mapping[str, Any]],
        version: str | None = None,
    ) -> dict[str, Any]:
        """Score a version against ``[{"input": {...}, "target": y}, ...]``.

        Defaults to the current version. The artifact is loaded through the
        model pool first, so an unloadable version fails with ``ModelLoadError``.
        """
        for index, row in enumerate(test_set):
            valid = isinstance(row, Mapping) and isinstance(row.get("input"), Mapping)
            if not valid or "target" not in row:
                raise ValidationError(f"Test row {index} needs an 'input' object and a 'target'")
        model = await self.registry.get_model(model_id)
        version = version or model.current_version
        if version is None:
            raise InvalidStateError(f"Model {model_id} has no current version to evaluate")
        record = await self.registry.get_version(model_id, version)

        await self.pool.get(model_id, version, record.artifact_ref)
        try:
            metrics = await self.engine.evaluate(record.artifact_ref, list(test_set))
        except Exception:
            self.logger.exception(
                "Failed to evaluate model",
                source_module=self._source_module,
                context={"model_id": model_id, "version": version},
            )
            raise
        self.logger.info(
            f"Evaluated {model_id}:{version} on {len(test_set)} samples",
            source_module=self._source_module,
            context=metrics,
        )
        return {"model_id": model_id, "version": version, "metrics": metrics}

    async def archive_model(self, model_id: str) -> dict[str, Any]:
        return (await self.registry.archive_model(model_id)).to_dict()

    async def delete_model(self, model_id: str, member_id: str, user_id: str) -> dict[str, int]:
        """Delete a model with everything recorded for it and unload its artifacts."""
        counts = await self.registry.delete_model(model_id, member_id, user_id)
        await self.pool.evict(model_id)
        self.transforms.clear(model_id)
        return counts

    async def trigger_retraining(self, model_id: str, reason: str) -> str:
        return await self.registry.trigger_retraining(model_id, reason)

    async def get_model_predictions(
        self, model_id: str, page: int = 1, limit: int = 20,
    ) -> dict[str, Any]:
        """One page of a model's predictions, newest first."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit within 1-{MAX_PAGE_SIZE}")
        await self.registry.get_model(model_id)
        items, total = await self.pipeline.prediction_repo.paginate(model_id, page, limit)
        return {
            "predictions": [p.to_dict() for p in items],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    # Registry

    async def register_version(
        self,
        model_id: str,
        version: str,
        artifact_ref: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        record = await self.registry.register_version(model_id, version, artifact_ref, metadata)
        return record.to_dict()

    async def get_model_versions(self, model_id: str) -> list[dict[str, Any]]:
        return [v.to_dict() for v in await self.registry.get_model_versions(model_id)]

    async def promote_model(
        self, model_id: str, version: str, to_stage: ModelStage | str,
    ) -> dict[str, Any]:
        record = await self.registry.promote_model(model_id, version, to_stage)
        return record.to_dict()

    async def get_best_version(self, model_id: str, metric: str | None = None) -> str | None:
        return await self.registry.get_best_version(model_id, metric)

    async def archive_old_versions(self, model_id: str, keep_count: int) -> int:
        """Archive all but the newest ``keep_count`` versions and unload them."""
        count = await self.registry.archive_old_versions(model_id, keep_count)
        if count:
            for record in await self.registry.get_model_versions(model_id):
                if record.stage == ModelStage.ARCHIVED.value:
                    await self.pool.evict(model_id, record.version)
        return count

    async def get_version_metrics(self, model_id: str) -> dict[str, dict[str, float]]:
        return await self.registry.version_metrics(model_id)

    # A/B testing

    async def start_ab_test(
        self,
        test_id: str,
        model_a: Any,  # noqa: ANN401
        model_b: Any,  # noqa: ANN401
        traffic_split: int = 50,
        min_samples: int | None = None,
        metric: str | None = None,
    ) -> dict[str, Any]:
        test = await self.experiments.start_ab_test(
            test_id, model_a, model_b, traffic_split, min_samples, metric)
        return test.to_dict()

    async def route_ab_test(self, test_id: str) -> str:
        return await self.experiments.route_ab_test(test_id)

    async def record_ab_test_result(
        self, test_id: str, arm: str, sample_result: Mapping[str, Any] | float,
    ) -> bool:
        return await self.experiments.record_ab_test_result(test_id, arm, sample_result)

    async def get_ab_test_results(self, test_id: str) -> dict[str, Any]:
        return await self.experiments.get_ab_test_results(test_id)

    async def stop_ab_test(self, test_id: str) -> dict[str, Any]:
        return await self.experiments.stop_ab_test(test_id)

    # Serving

    async def predict(
        self,
        model_id: str,
        data: Mapping[str, Any],
        *,
        version: str | None = None,
        stage: str | None = None,
        ab_test_id: str | None = None,
        member_id: str | None = None,
    ) -> dict[str, Any]:
        return await self.pipeline.predict(
            model_id, data, version=version, stage=stage,
            ab_test_id=ab_test_id, member_id=member_id)

    async def batch_predict(
        self, requests: Sequence[PredictionRequest | Mapping[str, Any]],
    ) -> dict[str, Any]:
        return await self.pipeline.batch_predict(requests)

    def stream_predict(
        self, requests: Sequence[PredictionRequest | Mapping[str, Any]],
    ) -> AsyncIterator[dict[str, Any]]:
        return self.pipeline.stream_predict(requests)

    def register_feature_transforms(self, model_id: str, *transforms: FeatureTransform) -> None:
        self.transforms.register(model_id, *transforms)

    def configure_validation_rules(
        self, model_id: str, rules: Mapping[str, Mapping[str, Any]],
    ) -> None:
        self.validator.configure_validation_rules(model_id, rules)

    def generate_validation_rules_from_schema(
        self, model_id: str, schema: Mapping[str, Any],
    ) -> dict[str, Any]:
        rules = self.validator.generate_validation_rules_from_schema(model_id, schema)
        return {name: dataclasses.asdict(rule) for name, rule in rules.items()}

    def anonymize_data(self, data: Mapping[str, Any], fields: Sequence[str]) -> dict[str, Any]:
        return self.validator.anonymize_data(data, fields)

    def get_audit_log(self, model_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self.validator.get_audit_log(model_id, limit)

    def get_security_stats(self) -> dict[str, Any]:
        return self.validator.get_security_stats()

    # Feedback and incremental learning

    async def submit_feedback(
        self,
        prediction_id: str,
        feedback: Mapping[str, Any],
        trigger_incremental: bool = True,
    ) -> dict[str, Any]:
        return await self.feedback.submit_feedback(prediction_id, feedback, trigger_incremental)

    async def get_feedback_log(self, model_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return await self.feedback.get_feedback_log(model_id, limit)

    async def force_incremental_update(self, model_id: str) -> str | None:
        return await self.feedback.force_incremental_update(model_id)

    async def get_incremental_history(self, model_id: str) -> list[dict[str, Any]]:
        await self.registry.get_model(model_id)
        return await self.incremental.get_history(model_id)

    # Deployment

    async def deploy_model(
        self,
        model_id: str,
        version: str,
        stage: ModelStage | str = "production",
        strategy: Any = "immediate",  # noqa: ANN401
        *,
        strategy_options: Mapping[str, Any] | None = None,
        health_check: HealthCheckConfig | Mapping[str, Any] | None = None,
        rollback_policy: RollbackPolicy | Mapping[str, Any] | None = None,
        wait: bool = False,
    ) -> dict[str, Any]:
        """Start a rollout; mapping configs are validated into their dataclasses."""
        if isinstance(health_check, Mapping):
            health_check = _build(HealthCheckConfig, health_check)
        if isinstance(rollback_policy, Mapping):
            rollback_policy = _build(RollbackPolicy, rollback_policy)
        return await self.deployments.deploy_model(
            model_id,
            version,
            stage,
            strategy,
            strategy_options=strategy_options,
            health_check=health_check,
            rollback_policy=rollback_policy,
            wait=wait,
        )

    async def get_deployment(self, deployment_id: str) -> dict[str, Any]:
        return await self.deployments.get_deployment(deployment_id)

    async def list_deployments(self, model_id: str) -> list[dict[str, Any]]:
        return await self.deployments.list_deployments(model_id)

    async def wait_for_deployment(
        self, deployment_id: str, timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.deployments.wait_for_deployment(deployment_id, timeout)

    async def cancel_deployment(self, deployment_id: str) -> dict[str, Any]:
        return await self.deployments.cancel_deployment(deployment_id)

    async def get_deployment_stats(self) -> dict[str, Any]:
        return await self.deployments.get_deployment_stats()

    async def rollback_model(
        self, model_id: str, target_version: str | None = None,
    ) -> dict[str, Any]:
        return await self.deployments.rollback_model(model_id, target_version)

    # Drift and health

    async def configure_drift_detection(
        self, model_id: str, policy: Mapping[str, Any],
    ) -> dict[str, Any]:
        return await self.drift.configure_drift_detection(model_id, policy)

    async def capture_drift_baseline(
        self, model_id: str, samples: Sequence[Mapping[str, Any]] | None = None,
    ) -> dict[str, Any]:
        return await self.drift.capture_drift_baseline(model_id, samples)

    async def detect_model_drift(self, model_id: str) -> dict[str, Any]:
        return (await self.drift.detect_model_drift(model_id)).to_dict()

    async def list_drift_events(self, model_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self.drift.list_drift_events(model_id, limit)

    async def get_model_health(self, model_id: str) -> dict[str, Any]:
        return await self.health.get_model_health(model_id)

    async def get_health_status(self) -> dict[str, Any]:
        status = await self.health.get_health_status()
        status["model_pool"] = self.pool.stats()
        status["security"] = self.validator.get_security_stats()
        return status


def _build(cls: type[Any], values: Mapping[str, Any]) -> Any:  # noqa: ANN401
    try:
        return cls(**dict(values))
    except TypeError as e:
        raise ValidationError(f"Invalid {cls.__name__}: {e}") from e
