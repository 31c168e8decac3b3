"""Ground-truth feedback for served predictions."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from hestia.dal.repositories import ModelRepository, PredictionRepository
from hestia.exceptions import InvalidStateError, NotFoundError, ValidationError

from .enums import ModelType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.logger_service import LoggerService

    from .incremental_learning import IncrementalLearningTrigger

# Model types whose outputs can be compared to the ground truth for equality
EXACT_MATCH_TYPES = frozenset({ModelType.CLASSIFICATION.value, ModelType.NLP.value})


class FeedbackService:
    """Attaches feedback to predictions and forwards labelled samples for retraining."""

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        incremental: IncrementalLearningTrigger,
    ) -> None:
        """Initialize the feedback service.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            incremental: Trigger receiving qualifying samples
        """
        self.config = config
        self.logger = logger
        self.incremental = incremental
        self._source_module = self.__class__.__name__

        self.prediction_repo = PredictionRepository(session_maker, logger)
        self.model_repo = ModelRepository(session_maker, logger)

    async def submit_feedback(
        self,
        prediction_id: str,
        feedback: Mapping[str, Any],
        trigger_incremental: bool = True,
    ) -> dict[str, Any]:
        """Attach feedback to a prediction and append it to the model's feedback log.

        Forwarding to incremental learning never fails the submission; its errors
        are logged.

        Raises:
            NotFoundError: If the prediction or its model does not exist.
        """
        if not isinstance(feedback, Mapping):
            raise ValidationError("Feedback must be an object")
        prediction = await self.prediction_repo.get_by_id(prediction_id)
        if prediction is None:
            raise NotFoundError("Prediction", prediction_id)
        model = await self.model_repo.get_by_id(prediction.model_id)
        if model is None:
            raise NotFoundError("Model", prediction.model_id)

        actual_value = feedback.get("actual_value")
        is_correct = feedback.get("is_correct")
        if is_correct is None and actual_value is not None and model.model_type in EXACT_MATCH_TYPES:
            is_correct = actual_value == prediction.output
        record = {
            "actual_value": actual_value,
            "is_correct": None if is_correct is None else bool(is_correct),
            "comments": feedback.get("comments"),
            "provided_at": datetime.now(UTC).isoformat(),
            "provided_by": feedback.get("provided_by"),
        }

        attached = await self.prediction_repo.attach_feedback(
            prediction_id,
            record,
            {
                "model_id": model.id,
                "prediction_id": prediction_id,
                "input_data": prediction.input_data,
                "expected_output": actual_value,
                "actual_output": prediction.output,
                "is_correct": record["is_correct"],
                "comments": record["comments"],
                "provided_by": record["provided_by"],
            },
        )
        if not attached:
            raise NotFoundError("Prediction", prediction_id)
        self.logger.info(
            f"Feedback recorded for prediction {prediction_id}",
            source_module=self._source_module,
            context={"model_id": model.id, "is_correct": record["is_correct"]},
        )

        job_ids: list[str] = []
        settings = self.incremental.settings_for(model)
        qualifies = actual_value is not None or record["is_correct"] is not None
        if trigger_incremental and settings is not None and qualifies:
            try:
                job_ids = await self.incremental.add_sample(
                    model,
                    {
                        "input": prediction.input_data,
                        "target": actual_value,
                        "output": prediction.output,
                        "is_correct": record["is_correct"],
                    },
                    settings,
                    prediction_id=prediction_id,
                )
            except Exception:
                self.logger.exception(
                    f"Incremental learning forwarding failed for prediction {prediction_id}",
                    source_module=self._source_module,
                    context={"model_id": model.id},
                )

        return {
            "prediction_id": prediction_id,
            "model_id": model.id,
            "feedback": record,
            "incremental_jobs": job_ids,
        }

    async def get_feedback_log(self, model_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Latest feedback log entries of a model, newest first."""
        entries = await self.prediction_repo.feedback_log(model_id, limit)
        return [
            {
                "prediction_id": entry.prediction_id,
                "input": entry.input_data,
                "expected_output": entry.expected_output,
                "actual_output": entry.actual_output,
                "is_correct": entry.is_correct,
                "comments": entry.comments,
                "provided_by": entry.provided_by,
                "timestamp": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ]

    async def force_incremental_update(self, model_id: str) -> str | None:
        """Flush pending samples of a model into one batch.

        Raises:
            InvalidStateError: If incremental learning is disabled for the model.
        """
        model = await self.model_repo.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        settings = self.incremental.settings_for(model)
        if settings is None:
            raise InvalidStateError(f"Incremental learning is disabled for model {model_id}")
        return await self.incremental.force_update(model, settings)
