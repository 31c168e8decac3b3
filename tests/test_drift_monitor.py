"""Tests for input drift detection against stored baselines."""

import numpy as np
import pytest

from hestia.exceptions import NotFoundError, ValidationError
from hestia.monitoring.drift_monitor import chi2_score, feature_drift_score, psi_score

UNIFORM = [{"x": i / 100} for i in range(100)]


async def _serve(service, model_id, rows):
    for row in rows:
        await service.predict(model_id, row)


def test_scores_are_zero_for_identical_samples():
    values = np.linspace(0, 1, 50)

    assert psi_score(values, values) == pytest.approx(0.0)
    assert feature_drift_score("ks", values.tolist(), values.tolist()) == pytest.approx(0.0)
    assert feature_drift_score("wasserstein", values.tolist(), values.tolist()) == pytest.approx(0.0)
    assert chi2_score(["a", "b"], ["a", "b"]) == pytest.approx(0.0)


def test_disjoint_samples_score_high():
    reference = np.linspace(0, 1, 50)
    current = np.linspace(5, 6, 50)

    assert psi_score(reference, current) > 1.0
    assert feature_drift_score("ks", reference.tolist(), current.tolist()) == pytest.approx(1.0)
    assert feature_drift_score("chi2", reference.tolist(), current.tolist()) > 0.5


def test_categorical_features_use_category_counts():
    assert chi2_score(["a"] * 10, ["z"] * 10) == pytest.approx(2.0)
    assert feature_drift_score("psi", ["a", "b"] * 5, ["a", "b"] * 5) == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_no_window_reports_not_enough_predictions(orchestrator, ready_model):
    result = await orchestrator.detect_model_drift(ready_model)

    assert result["is_drifting"] is False
    assert result["window_size"] == 0
    assert result["recommendations"][0].startswith("Not enough recent predictions")


@pytest.mark.asyncio
async def test_first_window_becomes_the_baseline(orchestrator, ready_model):
    await _serve(orchestrator, ready_model, UNIFORM[:20])

    first = await orchestrator.detect_model_drift(ready_model)
    second = await orchestrator.detect_model_drift(ready_model)

    assert first["baseline_captured"] is True
    assert first["is_drifting"] is False
    assert second["baseline_captured"] is False
    assert second["drift_score"] == pytest.approx(0.0)
    assert second["recommendations"] == ["No action needed"]
    assert len(await orchestrator.list_drift_events(ready_model)) == 1


@pytest.mark.asyncio
async def test_shifted_inputs_are_detected(orchestrator, ready_model):
    captured = await orchestrator.capture_drift_baseline(ready_model, UNIFORM)
    await _serve(orchestrator, ready_model, [{"x": 5 + i / 30} for i in range(30)])

    result = await orchestrator.detect_model_drift(ready_model)

    assert captured["sample_count"] == 100
    assert captured["features"] == ["x"]
    assert captured["source"] == "explicit"
    assert result["is_drifting"] is True
    assert result["affected_features"] == ["x"]
    assert result["window_size"] == 30
    assert any("Retrain" in r for r in result["recommendations"])
    assert any("rolling back" in r for r in result["recommendations"])

    [event] = await orchestrator.list_drift_events(ready_model)
    assert event["is_drifting"] is True
    assert event["details"]["affected_features"] == ["x"]


@pytest.mark.asyncio
async def test_reconfiguring_keeps_the_baseline(orchestrator, ready_model):
    await orchestrator.capture_drift_baseline(ready_model, UNIFORM)
    policy = await orchestrator.configure_drift_detection(
        ready_model, {"method": "ks", "threshold": 0.5, "window_size": 10})
    await _serve(orchestrator, ready_model, [{"x": 3.0 + i} for i in range(15)])

    result = await orchestrator.detect_model_drift(ready_model)

    assert policy["method"] == "ks"
    assert result["baseline_captured"] is False
    assert result["method"] == "ks"
    assert result["window_size"] == 10
    assert result["drift_score"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_categorical_drift(orchestrator, ready_model):
    await orchestrator.capture_drift_baseline(ready_model, [{"city": "Lisbon"}] * 20)
    await _serve(orchestrator, ready_model, [{"city": "Porto", "x": 1}] * 5)

    result = await orchestrator.detect_model_drift(ready_model)

    assert result["feature_scores"] == {"city": pytest.approx(2.0)}
    assert result["is_drifting"] is True


@pytest.mark.asyncio
async def test_baseline_from_recent_window(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.capture_drift_baseline(ready_model)

    await _serve(orchestrator, ready_model, UNIFORM[:5])
    captured = await orchestrator.capture_drift_baseline(ready_model)

    assert captured["source"] == "window"
    assert captured["sample_count"] == 5


@pytest.mark.asyncio
async def test_drift_can_trigger_retraining(orchestrator, job_queue, ready_model):
    orchestrator.drift.auto_retrain = True
    await orchestrator.capture_drift_baseline(ready_model, UNIFORM)
    await _serve(orchestrator, ready_model, [{"x": 9.0 + i / 10} for i in range(10)])

    result = await orchestrator.detect_model_drift(ready_model)

    [payload] = job_queue.of_type("full_retraining")
    assert result["retraining_job_id"] == "job-1"
    assert payload["reason"].startswith("drift detected")
    assert (await orchestrator.get_model(ready_model))["status"] == "training"


@pytest.mark.asyncio
async def test_policy_validation(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.configure_drift_detection(ready_model, {"method": "magic"})
    with pytest.raises(ValidationError):
        await orchestrator.configure_drift_detection(ready_model, {"threshold": 0})
    with pytest.raises(NotFoundError):
        await orchestrator.configure_drift_detection("missing", {})
