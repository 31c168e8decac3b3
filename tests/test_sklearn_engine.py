"""Tests for the joblib-backed scikit-learn engine."""

from unittest.mock import MagicMock

import joblib
import numpy as np
import pytest
from sklearn.linear_model import LinearRegression, LogisticRegression

from hestia.engines.sklearn_engine import SklearnEngine
from hestia.logger_service import LoggerService

pytestmark = pytest.mark.integration


@pytest.fixture
def sklearn_engine(tmp_path) -> SklearnEngine:
    return SklearnEngine(MagicMock(spec=LoggerService), base_path=str(tmp_path))


@pytest.fixture
def classifier_ref(tmp_path) -> str:
    X = np.array([[-2.0, 0.0], [-1.0, 0.5], [1.0, 0.5], [2.0, 0.0]])
    y = np.array(["negative", "negative", "positive", "positive"])
    joblib.dump(LogisticRegression().fit(X, y), tmp_path / "classifier.joblib")
    return "classifier.joblib"


@pytest.mark.asyncio
async def test_classifier_inference_reports_class_probability(sklearn_engine, classifier_ref):
    artifact = await sklearn_engine.load(classifier_ref, "1.0.0")

    result = await sklearn_engine.infer(artifact, "1.0.0", {"a": 3.0, "b": 0.0})

    assert artifact.feature_names is None
    assert result.output == "positive"
    assert 0.5 < result.confidence <= 1.0
    assert result.metadata == {"version": "1.0.0", "estimator": "LogisticRegression"}


@pytest.mark.asyncio
async def test_classifier_evaluation_reports_accuracy(sklearn_engine, classifier_ref):
    metrics = await sklearn_engine.evaluate(classifier_ref, [
        {"input": {"a": -3.0, "b": 0.0}, "target": "negative"},
        {"input": {"a": 3.0, "b": 0.0}, "target": "positive"},
    ])

    assert metrics == {"samples": 2.0, "accuracy": 1.0}


@pytest.mark.asyncio
async def test_regressor_has_full_confidence_and_error_metrics(sklearn_engine, tmp_path):
    X = np.array([[0.0], [1.0], [2.0], [3.0]])
    joblib.dump(LinearRegression().fit(X, 2 * X.ravel()), tmp_path / "regressor.joblib")
    artifact = await sklearn_engine.load("regressor.joblib", "2.0.0")

    result = await sklearn_engine.infer(artifact, "2.0.0", {"x": 4.0})
    metrics = await sklearn_engine.evaluate("regressor.joblib", [
        {"input": {"x": 5.0}, "target": 10.0},
        {"input": {"x": 6.0}, "target": 13.0},
    ])

    assert result.output == pytest.approx(8.0)
    assert result.confidence == 1.0
    assert metrics["mae"] == pytest.approx(0.5)
    assert metrics["rmse"] == pytest.approx(np.sqrt(0.5))


@pytest.mark.asyncio
async def test_missing_artifact_and_features(sklearn_engine, classifier_ref):
    with pytest.raises(FileNotFoundError):
        await sklearn_engine.load("missing.joblib", "1.0.0")

    artifact = await sklearn_engine.load(classifier_ref, "1.0.0")
    artifact = artifact.__class__(
        estimator=artifact.estimator, feature_names=["a", "b"], artifact_ref=classifier_ref)
    with pytest.raises(ValueError, match="missing features"):
        await sklearn_engine.infer(artifact, "1.0.0", {"a": 1.0})

    assert await sklearn_engine.evaluate(classifier_ref, []) == {"samples": 0.0}
    assert await sklearn_engine.ping() is True
