"""Tensor engine for joblib-serialized scikit-learn estimators.

This engine lets the orchestrator serve scikit-learn models without a separate
compute service. Estimator calls run in a worker thread so the event loop is
never blocked by inference.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import joblib
import numpy as np
from sklearn.metrics import accuracy_score, mean_absolute_error, mean_squared_error

from hestia.interfaces import InferenceResult
from hestia.logger_service import LoggerService


@dataclass(frozen=True)
class LoadedEstimator:
    """A loaded estimator and the feature order it expects."""
    estimator: Any
    feature_names: list[str] | None
    artifact_ref: str


class SklearnEngine:
    """Loads estimators with joblib and runs them in a worker thread."""

    def __init__(self, logger: LoggerService, base_path: str | None = None) -> None:
        """Initialize the engine.

        Args:
            logger: Logger service instance
            base_path: Directory relative artifact references are resolved against
        """
        self.logger = logger
        self.base_path = Path(base_path) if base_path else None
        self._source_module = self.__class__.__name__

    def _resolve(self, artifact_ref: str) -> Path:
        path = Path(artifact_ref)
        if not path.is_absolute() and self.base_path is not None:
            path = self.base_path / path
        return path

    async def load(self, artifact_ref: str, version: str) -> LoadedEstimator:
        """Load the estimator stored at ``artifact_ref``.

        Raises:
            FileNotFoundError: If the artifact does not exist.
        """
        path = self._resolve(artifact_ref)
        if not path.exists():
            msg = f"Model artifact not found: {path}"
            raise FileNotFoundError(msg)
        try:
            estimator = await asyncio.to_thread(joblib.load, path)
        except Exception:
            self.logger.exception(
                f"Failed to load scikit-learn model from {path}",
                source_module=self._source_module,
                context={"version": version},
            )
            raise
        names = getattr(estimator, "feature_names_in_", None)
        self.logger.info(
            f"Scikit-learn model loaded from {path}",
            source_module=self._source_module,
            context={"version": version, "estimator": type(estimator).__name__},
        )
        return LoadedEstimator(
            estimator=estimator,
            feature_names=[str(n) for n in names] if names is not None else None,
            artifact_ref=artifact_ref,
        )

    async def infer(
        self,
        artifact: LoadedEstimator,
        version: str,
        model_input: Mapping[str, Any],
    ) -> InferenceResult:
        """Predict one row.

        Confidence is the top class probability when the estimator has
        ``predict_proba``, otherwise 1.0.
        """
        features = _feature_vector(model_input, artifact.feature_names)
        return await asyncio.to_thread(_predict_row, artifact.estimator, features, version)

    async def evaluate(
        self,
        artifact_ref: str,
        test_set: list[Mapping[str, Any]],
    ) -> dict[str, float]:
        """Score the estimator against ``[{"input": {...}, "target": y}, ...]``."""
        artifact = await self.load(artifact_ref, "evaluation")
        if not test_set:
            return {"samples": 0.0}
        X = np.vstack([_feature_vector(row["input"], artifact.feature_names) for row in test_set])
        y_true = np.asarray([row["target"] for row in test_set])
        y_pred = await asyncio.to_thread(artifact.estimator.predict, X)

        if hasattr(artifact.estimator, "predict_proba"):
            return {"samples": float(len(test_set)), "accuracy": float(accuracy_score(y_true, y_pred))}
        y_true = y_true.astype(float)
        return {
            "samples": float(len(test_set)),
            "mae": float(mean_absolute_error(y_true, y_pred)),
            "rmse": float(np.sqrt(mean_squared_error(y_true, y_pred))),
        }

    async def ping(self) -> bool:
        return True


def _feature_vector(model_input: Mapping[str, Any], feature_names: list[str] | None) -> np.ndarray:
    names = feature_names or list(model_input)
    missing = [name for name in names if name not in model_input]
    if missing:
        msg = f"Input is missing features: {missing}"
        raise ValueError(msg)
    return np.asarray([[float(model_input[name]) for name in names]], dtype=float)


def _predict_row(estimator: Any, features: np.ndarray, version: str) -> InferenceResult:  # noqa: ANN401
    prediction = estimator.predict(features)[0]
    output = prediction.item() if isinstance(prediction, np.generic) else prediction
    confidence = 1.0
    if hasattr(estimator, "predict_proba"):
        probabilities = estimator.predict_proba(features)[0]
        confidence = float(np.max(probabilities))
    return InferenceResult(
        output=output,
        confidence=confidence,
        metadata={"version": version, "estimator": type(estimator).__name__},
    )
