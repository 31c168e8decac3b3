"""Tests for the orchestrator lifecycle and configuration handling."""

import asyncio
import random

import pytest
import yaml

from hestia.config_manager import ConfigManager
from hestia.exceptions import InvalidStateError, ModelLoadError, NotFoundError, ValidationError
from hestia.model_lifecycle import HealthCheckConfig
from hestia.orchestrator import ModelOrchestrator

from .conftest import make_ready_model


@pytest.fixture
def service(config, mock_logger, database, engine, job_queue, authorization, probe, metrics):
    return ModelOrchestrator(
        config, mock_logger, database, engine, job_queue, authorization, probe,
        metrics=metrics, rng=random.Random(7))


def _logged(mock_method) -> list[str]:
    return [call.args[0] for call in mock_method.call_args_list]


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(service, mock_logger):
    await service.initialize()
    await service.start()
    await service.start()
    await service.stop()
    await service.stop()

    messages = _logged(mock_logger.info)
    assert messages.count("Model orchestrator started") == 1
    assert messages.count("Model orchestrator stopped") == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stop_cancels_running_rollouts_and_unloads_models(service, engine):
    await service.initialize()
    await service.start()
    model_id = await make_ready_model(service, versions=("1.0.0", "1.1.0"))
    await service.predict(model_id, {"x": 1})
    record = await service.deploy_model(
        model_id, "1.1.0", strategy="canary",
        health_check=HealthCheckConfig(interval=60, success_threshold=2))
    await asyncio.sleep(0.05)

    await service.stop()

    stopped = await service.get_deployment(record["deployment_id"])
    assert stopped["status"] == "failed"
    assert stopped["error_message"] == "cancelled"
    assert service.pool.stats()["size"] == 0
    assert (await service.get_deployment_stats())["active"] == 0


@pytest.mark.asyncio
async def test_initialize_reports_configuration_issues(
    tmp_path, config_values, mock_logger, database, engine, job_queue, authorization, probe,
):
    config_values["drift"]["method"] = "magic"
    config_values["prediction"]["max_batch_size"] = 0
    path = tmp_path / "invalid.yaml"
    path.write_text(yaml.safe_dump(config_values))
    config = ConfigManager(config_path=path)

    service = ModelOrchestrator(config, mock_logger, database, engine, job_queue, authorization, probe)
    await service.initialize()

    warnings = _logged(mock_logger.warning)
    assert not config.is_valid()
    assert any("'drift.method' must be one of" in w for w in warnings)
    assert any("'prediction.max_batch_size' must be a positive integer" in w for w in warnings)


@pytest.mark.asyncio
async def test_prediction_page_bounds(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.get_model_predictions(ready_model, page=0)
    with pytest.raises(ValidationError):
        await orchestrator.get_model_predictions(ready_model, limit=101)

    page = await orchestrator.get_model_predictions(ready_model)
    assert page == {"predictions": [], "total": 0, "page": 1, "limit": 20, "pages": 0}


def test_config_getters_and_secure_values(config, monkeypatch):
    monkeypatch.setenv("SECURITY_API_TOKEN", "from-env")
    monkeypatch.setenv("DRIFT_SECRET", "alt-env")

    assert config.get_int("model_pool.max_size") == 4
    assert config.get_float("drift.threshold") == pytest.approx(0.1)
    assert config.get_bool("health.check_memory", default=True) is False
    assert config.get("model_pool.missing.key", "fallback") == "fallback"
    assert config.get_list("security.adversarial.methods") == ["statistical"]
    assert config.get_dict("ab_testing") == {"min_samples": 50}
    assert config.get_secure_value("security.anonymization_salt") == "test-salt"
    assert config.get_secure_value("security.api_token") == "from-env"
    assert config.get_secure_value("drift.nested.secret") == "alt-env"
    assert config.get_secure_value("nothing.here", "default") == "default"


def test_reload_keeps_previous_config_when_new_one_is_invalid(tmp_path, config_values):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_values))
    config = ConfigManager(config_path=path)

    config_values["security"]["risk_threshold"] = 250
    path.write_text(yaml.safe_dump(config_values))
    errors = config.reload_config()

    assert errors == ["'security.risk_threshold' must be between 0 and 100"]
    assert config.get_float("security.risk_threshold") == pytest.approx(70.0)
    assert config.is_valid()

    config_values["security"]["risk_threshold"] = 40
    path.write_text(yaml.safe_dump(config_values))
    assert config.reload_config() == []
    assert config.get_float("security.risk_threshold") == pytest.approx(40.0)


def test_missing_config_file_loads_empty(tmp_path):
    config = ConfigManager(config_path=tmp_path / "absent.yaml")

    assert config.get("database.url") is None
    assert config.is_valid()


@pytest.mark.asyncio
async def test_update_model_regenerates_validation_rules(orchestrator, ready_model):
    updated = await orchestrator.update_model(
        ready_model, {"name": " Churn v2 ", "configuration": {"features": ["x", "tenure"]}})

    rules = orchestrator.validator.get_validation_rules(ready_model)
    assert updated["name"] == "Churn v2"
    assert updated["configuration"] == {"features": ["x", "tenure"]}
    assert set(rules) == {"x", "tenure"}
    assert rules["tenure"].type == "number"
    assert rules["tenure"].required is True


@pytest.mark.asyncio
async def test_update_model_rejects_lifecycle_fields(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.update_model(ready_model, {"current_version": "9.9.9"})
    with pytest.raises(ValidationError):
        await orchestrator.update_model(ready_model, {"name": "  "})
    with pytest.raises(NotFoundError):
        await orchestrator.update_model("missing", {"name": "Other"})

    model = await orchestrator.get_model(ready_model)
    assert model["lifecycle"]["current_version"] == "1.0.0"


@pytest.mark.asyncio
async def test_update_training_data_merges_summary(orchestrator, ready_model):
    await orchestrator.update_model_training_data(
        ready_model, {"source": "s3://bucket/churn.csv", "record_count": 1200})
    model = await orchestrator.update_model_training_data(ready_model, {"record_count": 1500})

    assert model["training_data"] == {"source": "s3://bucket/churn.csv", "record_count": 1500}
    with pytest.raises(ValidationError):
        await orchestrator.update_model_training_data(ready_model, {"record_count": -1})


@pytest.mark.asyncio
async def test_evaluate_model_uses_current_version(orchestrator, engine, ready_model):
    test_set = [
        {"input": {"x": 1}, "target": "positive"},
        {"input": {"x": -1}, "target": "negative"},
    ]

    result = await orchestrator.evaluate_model(ready_model, test_set)

    assert result == {"model_id": ready_model, "version": "1.0.0", "metrics": {"samples": 2.0}}
    assert (ready_model, "1.0.0") in orchestrator.pool
    with pytest.raises(ValidationError):
        await orchestrator.evaluate_model(ready_model, [{"input": {"x": 1}}])


@pytest.mark.asyncio
async def test_evaluate_model_reports_load_failures(orchestrator, engine):
    model_id = await make_ready_model(orchestrator, versions=("1.0.0", "1.1.0"))
    engine.fail_loads = 3

    with pytest.raises(ModelLoadError):
        await orchestrator.evaluate_model(
            model_id, [{"input": {"x": 1}, "target": "positive"}], version="1.1.0")

    draft = await orchestrator.create_model("member-1", "Draft", "regression")
    with pytest.raises(InvalidStateError):
        await orchestrator.evaluate_model(draft["id"], [])
