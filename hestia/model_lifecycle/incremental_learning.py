"""Accumulates labelled samples and hands incremental-update batches to the job queue."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hestia.dal.repositories import IncrementalRepository

from .enums import JobType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import IncrementalBatch, MLModel
    from hestia.interfaces import JobQueue
    from hestia.logger_service import LoggerService

DEFAULT_UPDATE_FREQUENCY = 50
DEFAULT_LEARNING_RATE = 0.0001
DEFAULT_EPOCHS = 1


@dataclass(frozen=True)
class IncrementalSettings:
    """Effective incremental-learning settings of one model."""
    update_frequency: int
    learning_rate: float
    epochs: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_frequency": self.update_frequency,
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
        }


class IncrementalLearningTrigger:
    """Turns every ``update_frequency`` pending samples into exactly one queued batch."""

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        job_queue: JobQueue,
    ) -> None:
        self.config = config
        self.logger = logger
        self.job_queue = job_queue
        self._source_module = self.__class__.__name__
        self.repo = IncrementalRepository(session_maker, logger)

    def settings_for(self, model: MLModel) -> IncrementalSettings | None:
        """Overlay ``configuration.incrementalLearning`` on the configured defaults.

        Returns:
            None when incremental learning is disabled for the model.
        """
        raw = (model.configuration or {}).get("incrementalLearning")
        if not raw:
            return None
        overrides: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        if overrides.get("enabled") is False:
            return None
        return IncrementalSettings(
            update_frequency=max(1, int(overrides.get(
                "updateFrequency",
                self.config.get_int(
                    "incremental_learning.update_frequency", DEFAULT_UPDATE_FREQUENCY),
            ))),
            learning_rate=float(overrides.get(
                "learningRate",
                self.config.get_float(
                    "incremental_learning.learning_rate", DEFAULT_LEARNING_RATE),
            )),
            epochs=max(1, int(overrides.get(
                "epochs",
                self.config.get_int("incremental_learning.epochs", DEFAULT_EPOCHS),
            ))),
        )

    async def add_sample(
        self,
        model: MLModel,
        sample: Mapping[str, Any],
        settings: IncrementalSettings,
        prediction_id: str | None = None,
    ) -> list[str]:
        """Store a sample and dispatch every full batch now available.

        Returns:
            Job ids of the batches dispatched by this call.
        """
        await self.repo.add_sample(model.id, dict(sample), prediction_id)
        job_ids: list[str] = []
        while True:
            claimed = await self.repo.claim_batch(
                model.id,
                settings.update_frequency,
                learning_rate=settings.learning_rate,
                epochs=settings.epochs,
            )
            if claimed is None:
                return job_ids
            batch, samples = claimed
            job_ids.append(await self._dispatch(model.id, batch, samples, settings))

    async def force_update(self, model: MLModel, settings: IncrementalSettings) -> str | None:
        """Flush every pending sample into one batch regardless of its size."""
        claimed = await self.repo.claim_batch(
            model.id,
            None,
            learning_rate=settings.learning_rate,
            epochs=settings.epochs,
            forced=True,
        )
        if claimed is None:
            self.logger.info(
                f"No pending incremental samples for model {model.id}",
                source_module=self._source_module,
            )
            return None
        batch, samples = claimed
        return await self._dispatch(model.id, batch, samples, settings)

    async def _dispatch(
        self,
        model_id: str,
        batch: IncrementalBatch,
        samples: list[dict[str, Any]],
        settings: IncrementalSettings,
    ) -> str:
        try:
            job_id = await self.job_queue.enqueue(
                JobType.INCREMENTAL_UPDATE.value,
                {
                    "model_id": model_id,
                    "batch_id": batch.batch_id,
                    "samples": samples,
                    "forced": batch.forced,
                    **settings.to_dict(),
                },
            )
        except Exception:
            self.logger.exception(
                f"Failed to enqueue incremental batch {batch.batch_id}; releasing samples",
                source_module=self._source_module,
                context={"model_id": model_id, "sample_count": len(samples)},
            )
            await self.repo.release_batch(batch.batch_id)
            raise

        await self.repo.set_job_id(batch.batch_id, job_id)
        self.logger.info(
            f"Queued incremental update for model {model_id}",
            source_module=self._source_module,
            context={"batch_id": batch.batch_id, "job_id": job_id, "samples": len(samples)},
        )
        return job_id

    async def pending_count(self, model_id: str) -> int:
        return await self.repo.pending_count(model_id)

    async def get_history(self, model_id: str) -> list[dict[str, Any]]:
        """Batches handed to the queue, newest first."""
        return [batch.to_dict() for batch in await self.repo.list_batches(model_id)]
