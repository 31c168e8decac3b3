"""Request-scoped prediction pipeline.

Every call walks ``received -> validated -> routed -> transformed -> inferred ->
recorded``. A call rejected by the security checks leaves nothing behind except
the rejection counter and an audit entry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from hestia.dal.repositories import ModelRepository, PredictionRepository
from hestia.exceptions import (
    AdversarialInputError,
    InvalidStateError,
    NotFoundError,
    SecurityRiskError,
    ValidationError,
)
from hestia.model_lifecycle.enums import ModelStage, ModelStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import MLModel, ModelVersion
    from hestia.interfaces import MetricsEmitter, TensorEngine
    from hestia.logger_service import LoggerService
    from hestia.model_lifecycle.deployment import DeploymentOrchestrator
    from hestia.model_lifecycle.experiment_manager import ArmTarget, ExperimentManager
    from hestia.model_lifecycle.registry import ModelRegistry

    from .feature_transforms import FeatureTransformRegistry
    from .model_pool import ModelPool
    from .security_validator import SecurityValidator

DEFAULT_MAX_BATCH_SIZE = 100
UNKNOWN_MODEL_TYPE = "unknown"


@dataclass
class PredictionRequest:
    """A single inference request."""
    model_id: str
    input: dict[str, Any]
    version: str | None = None
    stage: str | None = None
    ab_test_id: str | None = None
    member_id: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PredictionRequest:
        if "model_id" not in data:
            raise ValidationError("Prediction request requires 'model_id'")
        return cls(
            model_id=str(data["model_id"]),
            input=data.get("input", data.get("data")),  # type: ignore[arg-type]
            version=data.get("version"),
            stage=data.get("stage"),
            ab_test_id=data.get("ab_test_id"),
            member_id=data.get("member_id"),
        )


@dataclass
class _Route:
    """Where a validated request is served from."""
    model: MLModel
    version: ModelVersion
    arm: ArmTarget | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PredictionPipeline:
    """Validates, routes, runs and records predictions."""

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        *,
        validator: SecurityValidator,
        registry: ModelRegistry,
        experiments: ExperimentManager,
        engine: TensorEngine,
        pool: ModelPool,
        transforms: FeatureTransformRegistry,
        metrics: MetricsEmitter,
        deployments: DeploymentOrchestrator | None = None,
    ) -> None:
        """Initialize the prediction pipeline.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            validator: Input sanitizer and adversarial detector
            registry: Model registry used to resolve versions
            experiments: A/B router
            engine: Tensor engine running inference
            pool: Pool of loaded artifacts
            transforms: Per-model feature transforms
            metrics: Metrics emitter
            deployments: Optional orchestrator consulted for canary traffic
        """
        self.config = config
        self.logger = logger
        self.validator = validator
        self.registry = registry
        self.experiments = experiments
        self.engine = engine
        self.pool = pool
        self.transforms = transforms
        self.metrics = metrics
        self.deployments = deployments
        self._source_module = self.__class__.__name__

        self.model_repo = ModelRepository(session_maker, logger)
        self.prediction_repo = PredictionRepository(session_maker, logger)
        self.max_batch_size = config.get_int("prediction.max_batch_size", DEFAULT_MAX_BATCH_SIZE)

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
        """Serve one prediction.

        Raises:
            SecurityRiskError: If the sanitized input is too risky.
            AdversarialInputError: If the input looks like a high-risk adversarial sample.
            NotFoundError: If the model (or requested version) does not exist.
            InvalidStateError: If the model is not ready.
            ModelLoadError: If the artifact could not be loaded.
        """
        start = time.perf_counter()
        requested = await self._lookup_model(model_id, member_id)
        model_type = requested.model_type if requested else UNKNOWN_MODEL_TYPE

        sanitized = self.validator.validate_and_sanitize(model_id, data)
        if sanitized.risk_score > self.validator.risk_threshold:
            self._reject(model_id, model_type, "security_risk", {
                "risk_score": sanitized.risk_score,
                "actions": sanitized.action_dicts,
            })
            raise SecurityRiskError(
                sanitized.risk_score, self.validator.risk_threshold, sanitized.action_dicts)

        detection = self.validator.detect_adversarial(
            sanitized.data, requested.features if requested else None)
        if detection.is_adversarial and detection.risk_level == "high":
            self._reject(model_id, model_type, "adversarial", {
                "risk_score": sanitized.risk_score,
                "detection": detection.to_dict(),
            })
            raise AdversarialInputError(detection.to_dict())
        self.validator.record_audit("input_validated", model_id, {
            "risk_score": sanitized.risk_score,
            "actions": len(sanitized.actions),
            "adversarial_score": detection.score,
        })

        route: _Route | None = None
        try:
            route = await self._resolve(requested, model_id, version, stage, ab_test_id)
            model_input = await self.transforms.apply(route.model.id, sanitized.data)
            artifact = await self.pool.get(
                route.model.id, route.version.version, route.version.artifact_ref)
            result = await self.engine.infer(artifact, route.version.version, model_input)
            processing_time = (time.perf_counter() - start) * 1000

            prediction = await self.prediction_repo.create({
                "model_id": route.model.id,
                "version_used": route.version.version,
                "input_data": sanitized.data,
                "output": result.output,
                "confidence": float(result.confidence),
                "processing_time_ms": processing_time,
                "ab_test_id": ab_test_id,
                "ab_arm": route.arm.arm if route.arm else None,
            })
        except Exception:
            labels = {"model_type": route.model.model_type if route else model_type}
            self.metrics.observe(
                "prediction_latency_ms", (time.perf_counter() - start) * 1000, labels)
            self.metrics.increment("predictions_total", labels={**labels, "outcome": "error"})
            self.logger.exception(
                f"Prediction failed for model {model_id}",
                source_module=self._source_module,
                context={"version": route.version.version if route else version},
            )
            raise

        if route.arm is not None and ab_test_id is not None:
            await self.experiments.record_ab_test_result(
                ab_test_id,
                route.arm.arm,
                {
                    "confidence": prediction.confidence,
                    "processing_time": processing_time,
                    "output": result.output,
                },
                prediction_id=prediction.id,
            )

        labels = {"model_type": route.model.model_type}
        self.metrics.observe("prediction_latency_ms", processing_time, labels)
        self.metrics.increment("predictions_total", labels={**labels, "outcome": "success"})

        return {
            "id": prediction.id,
            "model_id": route.model.id,
            "data": result.output,
            "confidence": prediction.confidence,
            "model_version": route.version.version,
            "processing_time": processing_time,
            "ab_test": (
                {"test_id": ab_test_id, "arm": route.arm.arm} if route.arm else None
            ),
            "metadata": {
                "security_risk_score": sanitized.risk_score,
                "adversarial_detection": detection.to_dict(),
                "sanitization_actions": sanitized.action_dicts,
                **route.metadata,
                **result.metadata,
            },
        }

    async def _lookup_model(self, model_id: str, member_id: str | None) -> MLModel | None:
        if member_id is not None:
            return await self.model_repo.get_for_member(model_id, member_id)
        return await self.model_repo.get_by_id(model_id)

    def _reject(
        self, model_id: str, model_type: str, reason: str, details: dict[str, Any],
    ) -> None:
        self.metrics.increment(
            "prediction_rejections_total",
            labels={"model_type": model_type, "reason": reason},
        )
        self.validator.record_audit(f"{reason}_rejected", model_id, details)
        self.logger.warning(
            f"Prediction rejected for model {model_id}: {reason}",
            source_module=self._source_module,
            context={"risk_score": details.get("risk_score")},
        )

    async def _resolve(
        self,
        requested: MLModel | None,
        model_id: str,
        version: str | None,
        stage: str | None,
        ab_test_id: str | None,
    ) -> _Route:
        arm: ArmTarget | None = None
        metadata: dict[str, Any] = {}
        if ab_test_id is not None:
            arm = await self.experiments.select_arm(ab_test_id)
            if arm.model_id != model_id:
                requested = await self.model_repo.get_by_id(arm.model_id)
            model_id, version = arm.model_id, arm.version

        if requested is None:
            raise NotFoundError("Model", model_id)
        if requested.status != ModelStatus.READY.value:
            raise InvalidStateError(
                f"Model {model_id} is not ready (status: {requested.status})")

        if version is not None:
            record = await self.registry.get_version(model_id, version)
            if record.stage == ModelStage.ARCHIVED.value:
                raise InvalidStateError(f"Version {model_id}:{version} is archived")
        elif stage is not None:
            record = await self.registry.latest_version_in_stage(model_id, stage)
        else:
            canary = self.deployments.canary_target(model_id) if self.deployments else None
            if canary is not None:
                metadata["canary"] = True
                record = await self.registry.get_version(model_id, canary)
            elif requested.current_version is None:
                raise InvalidStateError(f"Model {model_id} has no current version")
            else:
                record = await self.registry.get_version(model_id, requested.current_version)
        return _Route(model=requested, version=record, arm=arm, metadata=metadata)

    async def batch_predict(
        self, requests: Sequence[PredictionRequest | Mapping[str, Any]],
    ) -> dict[str, Any]:
        """Run up to ``prediction.max_batch_size`` requests concurrently.

        Individual failures are reported per index and never fail the batch.
        """
        if len(requests) > self.max_batch_size:
            raise ValidationError(
                f"Batch of {len(requests)} requests exceeds maximum of {self.max_batch_size}")
        start = time.perf_counter()
        parsed = [self._parse(request) for request in requests]
        outcomes = await asyncio.gather(
            *(self._predict_request(request) for request in parsed),
            return_exceptions=True,
        )

        predictions: list[dict[str, Any] | None] = []
        errors: list[dict[str, Any]] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                predictions.append(None)
                errors.append(_error_entry(index, outcome))
            else:
                predictions.append(outcome)

        return {
            "predictions": predictions,
            "total_processing_time": (time.perf_counter() - start) * 1000,
            "success_count": len(requests) - len(errors),
            "error_count": len(errors),
            "errors": errors,
        }

    async def stream_predict(
        self, requests: Sequence[PredictionRequest | Mapping[str, Any]],
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield one result (or ``{index, error}``) per request, in order."""
        for index, request in enumerate(requests):
            try:
                result = await self._predict_request(self._parse(request))
            except Exception as e:
                yield _error_entry(index, e)
            else:
                yield {"index": index, **result}

    @staticmethod
    def _parse(request: PredictionRequest | Mapping[str, Any]) -> PredictionRequest:
        if isinstance(request, PredictionRequest):
            return request
        return PredictionRequest.from_mapping(request)

    async def _predict_request(self, request: PredictionRequest) -> dict[str, Any]:
        return await self.predict(
            request.model_id,
            request.input,
            version=request.version,
            stage=request.stage,
            ab_test_id=request.ab_test_id,
            member_id=request.member_id,
        )


def _error_entry(index: int, error: Exception) -> dict[str, Any]:
    return {"index": index, "error": str(error), "error_type": error.__class__.__name__}
