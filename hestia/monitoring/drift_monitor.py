"""Input drift detection against a fixed per-model reference distribution."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import stats

from hestia.config_manager import SUPPORTED_DRIFT_METHODS
from hestia.dal.repositories import DriftRepository, ModelRepository, PredictionRepository
from hestia.exceptions import NotFoundError, ValidationError
from hestia.model_lifecycle.enums import DriftMethod, ModelStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import MLModel
    from hestia.logger_service import LoggerService
    from hestia.model_lifecycle.registry import ModelRegistry

PSI_BINS = 10
# Floor for empty bin shares so disjoint distributions still score
PSI_EPSILON = 1e-4
DEFAULT_THRESHOLD = 0.1
DEFAULT_WINDOW_SIZE = 1000
MIN_FEATURE_SAMPLES = 2
# Score multiple of the threshold above which rollback is recommended
SEVERE_DRIFT_FACTOR = 2.0


@dataclass
class DriftResult:
    """Outcome of one drift detection run."""
    model_id: str
    method: str
    drift_score: float
    threshold: float
    is_drifting: bool
    feature_scores: dict[str, float] = field(default_factory=dict)
    affected_features: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    window_size: int = 0
    baseline_captured: bool = False
    retraining_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "method": self.method,
            "drift_score": self.drift_score,
            "threshold": self.threshold,
            "is_drifting": self.is_drifting,
            "feature_scores": dict(self.feature_scores),
            "affected_features": list(self.affected_features),
            "recommendations": list(self.recommendations),
            "window_size": self.window_size,
            "baseline_captured": self.baseline_captured,
            "retraining_job_id": self.retraining_job_id,
        }


class DriftMonitor:
    """Scores recent prediction inputs against each model's stored baseline.

    The baseline is fixed: it is only replaced by an explicit
    :meth:`capture_drift_baseline` call. When a model has no baseline yet the
    first detection window becomes it.
    """

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        registry: ModelRegistry | None = None,
    ) -> None:
        """Initialize the drift monitor.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            registry: Registry used to trigger retraining when ``drift.auto_retrain`` is set
        """
        self.config = config
        self.logger = logger
        self.registry = registry
        self._source_module = self.__class__.__name__

        self.repo = DriftRepository(session_maker, logger)
        self.model_repo = ModelRepository(session_maker, logger)
        self.prediction_repo = PredictionRepository(session_maker, logger)

        self.default_threshold = config.get_float("drift.threshold", DEFAULT_THRESHOLD)
        self.default_window_size = config.get_int("drift.window_size", DEFAULT_WINDOW_SIZE)
        self.default_method = config.get("drift.method", DriftMethod.PSI.value)
        self.auto_retrain = config.get_bool("drift.auto_retrain", default=False)

    async def configure_drift_detection(
        self, model_id: str, policy: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Replace the model's drift policy; the stored baseline is kept."""
        await self._require_model(model_id)
        threshold = float(policy.get("threshold", self.default_threshold))
        window_size = int(policy.get("window_size", policy.get("windowSize", self.default_window_size)))
        method = str(policy.get("method", self.default_method))
        features = [str(f) for f in policy.get("features") or []]

        if threshold <= 0:
            raise ValidationError("Drift threshold must be > 0")
        if window_size < MIN_FEATURE_SAMPLES:
            raise ValidationError(f"window_size must be >= {MIN_FEATURE_SAMPLES}")
        if method not in SUPPORTED_DRIFT_METHODS:
            raise ValidationError(
                f"Unsupported drift method '{method}'; expected one of {SUPPORTED_DRIFT_METHODS}")

        row = await self.repo.replace_policy(model_id, {
            "threshold": threshold,
            "window_size": window_size,
            "features": features,
            "method": method,
        })
        self.logger.info(
            f"Drift policy configured for model {model_id}",
            source_module=self._source_module,
            context=row.to_dict(),
        )
        return row.to_dict()

    async def get_drift_policy(self, model_id: str) -> dict[str, Any]:
        """Active policy of a model, or the configured defaults when none was set."""
        row = await self.repo.get_policy(model_id)
        if row is not None:
            return row.to_dict()
        return {
            "model_id": model_id,
            "threshold": self.default_threshold,
            "window_size": self.default_window_size,
            "features": [],
            "method": self.default_method,
        }

    async def capture_drift_baseline(
        self,
        model_id: str,
        samples: Sequence[Mapping[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Snapshot ``samples`` (or the latest prediction window) as the reference.

        Returns:
            Summary of the stored baseline.
        """
        await self._require_model(model_id)
        policy = await self.get_drift_policy(model_id)
        source = "explicit"
        if samples is None:
            samples = await self.prediction_repo.recent_inputs(model_id, policy["window_size"])
            source = "window"
        if not samples:
            raise ValidationError(f"No samples available to capture a baseline for {model_id}")
        return await self._store_baseline(model_id, samples, policy["features"], source)

    async def _store_baseline(
        self,
        model_id: str,
        samples: Sequence[Mapping[str, Any]],
        features: Sequence[str],
        source: str,
    ) -> dict[str, Any]:
        columns = _columns(samples, features)
        row = await self.repo.save_baseline(model_id, columns, len(samples), source)
        self.logger.info(
            f"Drift baseline captured for model {model_id}",
            source_module=self._source_module,
            context={"samples": len(samples), "features": sorted(columns), "source": source},
        )
        return {
            "model_id": model_id,
            "sample_count": row.sample_count,
            "features": sorted(columns),
            "source": row.source,
            "captured_at": row.captured_at.isoformat() if row.captured_at else None,
        }

    async def detect_model_drift(self, model_id: str) -> DriftResult:
        """Score the latest ``window_size`` prediction inputs against the baseline.

        The overall score is the highest per-feature score.
        """
        model = await self._require_model(model_id)
        policy = await self.get_drift_policy(model_id)
        method = policy["method"]
        threshold = float(policy["threshold"])
        window = await self.prediction_repo.recent_inputs(model_id, policy["window_size"])
        result = DriftResult(
            model_id=model_id,
            method=method,
            drift_score=0.0,
            threshold=threshold,
            is_drifting=False,
            window_size=len(window),
        )
        if not window:
            result.recommendations.append("Not enough recent predictions to measure drift")
            return result

        baseline = await self.repo.get_baseline(model_id)
        if baseline is None:
            await self._store_baseline(model_id, window, policy["features"], "first_window")
            result.baseline_captured = True
            result.recommendations.append(
                "Baseline captured from the current window; drift is measured from the next run")
            return result

        current = _columns(window, policy["features"])
        for name, reference in baseline.samples.items():
            values = current.get(name, [])
            if len(reference) < MIN_FEATURE_SAMPLES or len(values) < MIN_FEATURE_SAMPLES:
                continue
            result.feature_scores[name] = feature_drift_score(method, reference, values)

        if result.feature_scores:
            result.drift_score = max(result.feature_scores.values())
        result.affected_features = sorted(
            name for name, score in result.feature_scores.items() if score > threshold)
        result.is_drifting = result.drift_score > threshold
        result.recommendations.extend(_recommendations(result))

        if result.is_drifting and self.auto_retrain and self.registry is not None:
            if model.status == ModelStatus.READY.value:
                result.retraining_job_id = await self.registry.trigger_retraining(
                    model_id, f"drift detected ({method}={result.drift_score:.4f})")

        await self.repo.create({
            "model_id": model_id,
            "method": method,
            "drift_score": result.drift_score,
            "threshold": threshold,
            "is_drifting": result.is_drifting,
            "details": {
                "feature_scores": result.feature_scores,
                "affected_features": result.affected_features,
                "window_size": result.window_size,
                "retraining_job_id": result.retraining_job_id,
            },
        })
        log = self.logger.warning if result.is_drifting else self.logger.info
        log(
            f"Drift check for model {model_id}: score={result.drift_score:.4f} "
            f"(threshold {threshold})",
            source_module=self._source_module,
            context={"method": method, "affected_features": result.affected_features},
        )
        return result

    async def list_drift_events(self, model_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return [
            {
                "event_id": event.event_id,
                "method": event.method,
                "drift_score": event.drift_score,
                "threshold": event.threshold,
                "is_drifting": event.is_drifting,
                "details": event.details or {},
                "detected_at": event.detected_at.isoformat() if event.detected_at else None,
            }
            for event in await self.repo.list_events(model_id, limit)
        ]

    async def _require_model(self, model_id: str) -> MLModel:
        model = await self.model_repo.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        return model


def _columns(samples: Sequence[Mapping[str, Any]], features: Sequence[str]) -> dict[str, list[Any]]:
    """Pivot input rows into ``feature -> values``, skipping missing values."""
    names = list(features) or sorted({key for row in samples for key in row})
    columns: dict[str, list[Any]] = {}
    for name in names:
        values = [
            row[name] for row in samples
            if row.get(name) is not None and not isinstance(row[name], dict | list)
        ]
        if values:
            columns[name] = values
    return columns


def _is_numeric(values: Sequence[Any]) -> bool:
    return all(isinstance(v, int | float) and not isinstance(v, bool) for v in values)


def feature_drift_score(method: str, reference: Sequence[Any], current: Sequence[Any]) -> float:
    """Drift score of one feature; non-numeric features are compared by category counts."""
    if not (_is_numeric(reference) and _is_numeric(current)):
        return chi2_score([str(v) for v in reference], [str(v) for v in current])

    ref = np.asarray(reference, dtype=float)
    cur = np.asarray(current, dtype=float)
    if method == DriftMethod.PSI.value:
        return psi_score(ref, cur)
    if method == DriftMethod.KS.value:
        return float(stats.ks_2samp(ref, cur).statistic)
    if method == DriftMethod.WASSERSTEIN.value:
        return float(stats.wasserstein_distance(ref, cur))
    if method == DriftMethod.CHI2.value:
        edges = _bin_edges(ref, cur)
        if edges is None:
            return 0.0
        return chi2_score(
            np.digitize(ref, edges[1:-1]).tolist(), np.digitize(cur, edges[1:-1]).tolist())
    raise ValidationError(f"Unsupported drift method '{method}'")


def _bin_edges(ref: np.ndarray, cur: np.ndarray) -> np.ndarray | None:
    low = float(min(ref.min(), cur.min()))
    high = float(max(ref.max(), cur.max()))
    if low == high:
        return None
    return np.linspace(low, high, PSI_BINS + 1)


def psi_score(ref: np.ndarray, cur: np.ndarray) -> float:
    """Population stability index over equal-width bins of the pooled range."""
    edges = _bin_edges(ref, cur)
    if edges is None:
        return 0.0
    ref_pct = np.maximum(np.histogram(ref, bins=edges)[0] / ref.size, PSI_EPSILON)
    cur_pct = np.maximum(np.histogram(cur, bins=edges)[0] / cur.size, PSI_EPSILON)
    return float(np.sum((cur_pct - ref_pct) * np.log(cur_pct / ref_pct)))


def chi2_score(reference: Sequence[Any], current: Sequence[Any]) -> float:
    """Chi-square statistic of current category counts, normalized by sample size."""
    categories = sorted(set(reference) | set(current), key=str)
    ref_counts = np.asarray([reference.count(c) for c in categories], dtype=float)
    cur_counts = np.asarray([current.count(c) for c in categories], dtype=float)
    expected = ref_counts / ref_counts.sum() * cur_counts.sum()
    mask = expected > 0
    statistic = np.sum((cur_counts[mask] - expected[mask]) ** 2 / expected[mask])
    # Categories never seen in the reference count fully against it
    statistic += cur_counts[~mask].sum()
    return float(statistic / cur_counts.sum())


def _recommendations(result: DriftResult) -> list[str]:
    if not result.is_drifting:
        return ["No action needed"]
    recommendations = [
        f"Retrain model {result.model_id} on recent data",
        f"Investigate drifting features: {', '.join(result.affected_features)}",
    ]
    if result.drift_score > result.threshold * SEVERE_DRIFT_FACTOR:
        recommendations.append("Consider rolling back to a version trained on similar data")
    return recommendations
