"""Tests for service-wide and per-model health reporting."""

import asyncio

import pytest

from hestia.exceptions import ModelLoadError, NotFoundError
from hestia.monitoring.health_check import (
    ComponentChecker,
    HealthStatus,
    MemoryChecker,
)


def _checks(status):
    return {check["name"]: check for check in status["checks"]}


@pytest.mark.asyncio
async def test_service_is_healthy_with_reachable_collaborators(orchestrator, ready_model):
    status = await orchestrator.get_health_status()

    assert status["status"] == "healthy"
    assert set(_checks(status)) == {"store", "compute_engine", "job_queue", "model_cache"}
    assert status["models"] == {"total": 1, "by_status": {"ready": 1}}
    assert status["predictions"] == {"sampled": 0, "error_rate": 0.0}
    assert status["model_pool"]["max_size"] == 4
    assert "total_validations" in status["security"]


@pytest.mark.asyncio
async def test_unreachable_engine_makes_service_unhealthy(orchestrator, engine):
    engine.healthy = False

    status = await orchestrator.get_health_status()

    assert status["status"] == "unhealthy"
    assert _checks(status)["compute_engine"]["status"] == "unhealthy"
    assert _checks(status)["store"]["status"] == "healthy"


@pytest.mark.asyncio
async def test_failing_artifact_loads_make_service_unhealthy(orchestrator, engine, ready_model):
    engine.fail_loads = 100
    for _ in range(3):
        with pytest.raises(ModelLoadError):
            await orchestrator.predict(ready_model, {"x": 1})

    status = await orchestrator.get_health_status()

    assert status["status"] == "unhealthy"
    assert _checks(status)["model_cache"]["status"] == "unhealthy"
    assert status["model_pool"]["consecutive_failures"] == 3

    engine.fail_loads = 0
    await orchestrator.predict(ready_model, {"x": 1})

    assert (await orchestrator.get_health_status())["status"] == "healthy"


@pytest.mark.asyncio
async def test_low_confidence_traffic_degrades_service(orchestrator, engine, ready_model):
    engine.confidence = 0.3
    for i in range(4):
        await orchestrator.predict(ready_model, {"x": i})

    status = await orchestrator.get_health_status()

    assert status["status"] == "degraded"
    assert status["predictions"]["sampled"] == 4
    assert status["predictions"]["error_rate"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_model_without_traffic_is_degraded(orchestrator, ready_model):
    health = await orchestrator.get_model_health(ready_model)

    checks = {check["name"]: check["status"] for check in health["checks"]}
    assert health["status"] == "degraded"
    assert checks == {"availability": "pass", "volume": "warn"}
    assert health["metrics"] == {"prediction_count": 0}


@pytest.mark.asyncio
async def test_model_with_good_traffic_is_healthy(orchestrator, ready_model):
    for i in range(3):
        prediction = await orchestrator.predict(ready_model, {"x": i})
        await orchestrator.submit_feedback(prediction["id"], {"actual_value": "positive"})

    health = await orchestrator.get_model_health(ready_model)

    checks = {check["name"]: check["status"] for check in health["checks"]}
    assert health["status"] == "healthy"
    assert set(checks) == {"availability", "latency", "volume", "confidence", "error_rate"}
    assert health["metrics"]["prediction_count"] == 3
    assert health["metrics"]["error_rate"] == pytest.approx(0.0)
    assert health["metrics"]["avg_confidence"] == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_wrong_answers_make_model_unhealthy(orchestrator, ready_model):
    prediction = await orchestrator.predict(ready_model, {"x": 1})
    await orchestrator.submit_feedback(prediction["id"], {"actual_value": "negative"})

    health = await orchestrator.get_model_health(ready_model)

    error_rate = next(c for c in health["checks"] if c["name"] == "error_rate")
    assert error_rate["status"] == "fail"
    assert health["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_availability_follows_model_status(orchestrator, ready_model):
    await orchestrator.update_model_status(ready_model, "training")
    training = await orchestrator.get_model_health(ready_model)
    await orchestrator.update_model_status(ready_model, "error")
    failed = await orchestrator.get_model_health(ready_model)

    assert training["checks"][0] == {
        "name": "availability", "status": "warn", "message": "Model is training", "value": "training",
    }
    assert failed["checks"][0]["status"] == "fail"
    assert failed["status"] == "unhealthy"
    with pytest.raises(NotFoundError):
        await orchestrator.get_model_health("missing")


@pytest.mark.asyncio
async def test_memory_check_is_reported_but_not_critical():
    result = await MemoryChecker(warning_threshold=0.0, critical_threshold=101.0).check()

    assert result.status == HealthStatus.DEGRADED
    assert result.critical is False
    assert result.details["usage_percent"] >= 0


@pytest.mark.asyncio
async def test_component_check_times_out():
    async def hangs() -> bool:
        await asyncio.sleep(1)
        return True

    async def explodes() -> bool:
        raise ConnectionError("refused")

    slow = await ComponentChecker("queue", hangs, timeout=0.01).check()
    broken = await ComponentChecker("store", explodes).check()

    assert slow.status == HealthStatus.UNHEALTHY
    assert "timeout" in slow.message
    assert broken.status == HealthStatus.UNHEALTHY
    assert "refused" in broken.message
