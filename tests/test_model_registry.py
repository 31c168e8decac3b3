"""Tests for model management, version registration and stage promotion."""

import pytest

from hestia.exceptions import (
    DuplicateVersionError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from hestia.model_lifecycle.registry import slugify

from .conftest import make_ready_model


def test_slugify():
    assert slugify("Churn Classifier v2!") == "churn-classifier-v2"
    assert slugify("***") == "model"


@pytest.mark.asyncio
async def test_create_model_allocates_unique_slug_per_member(orchestrator):
    first = await orchestrator.create_model("member-1", "Churn Classifier", "classification")
    second = await orchestrator.create_model("member-1", "Churn Classifier", "classification")
    other = await orchestrator.create_model("member-2", "Churn Classifier", "classification")

    assert first["slug"] == "churn-classifier"
    assert second["slug"] == "churn-classifier-2"
    assert other["slug"] == "churn-classifier"
    assert first["status"] == "training"
    assert first["lifecycle"] == {"stage": None, "current_version": None}


@pytest.mark.asyncio
async def test_create_model_rejects_unknown_type(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.create_model("member-1", "Forecast", "reinforcement")


@pytest.mark.asyncio
async def test_get_model_is_scoped_to_member(orchestrator, ready_model):
    assert (await orchestrator.get_model(ready_model, "member-1"))["id"] == ready_model

    with pytest.raises(NotFoundError):
        await orchestrator.get_model(ready_model, "member-2")


@pytest.mark.asyncio
async def test_list_models_filters_by_status(orchestrator, ready_model):
    await orchestrator.create_model("member-1", "Draft", "regression")

    ready = await orchestrator.list_models("member-1", status="ready")
    everything = await orchestrator.list_models("member-1")

    assert [m["id"] for m in ready] == [ready_model]
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_duplicate_version_is_rejected(orchestrator, ready_model):
    with pytest.raises(DuplicateVersionError):
        await orchestrator.register_version(ready_model, "1.0.0", "artifacts/other.joblib")

    versions = await orchestrator.get_model_versions(ready_model)
    assert [v["artifact_ref"] for v in versions] == ["artifacts/1.0.0.joblib"]


@pytest.mark.asyncio
async def test_register_version_requires_existing_model(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.register_version("missing", "1.0.0", "a.joblib")


@pytest.mark.asyncio
async def test_first_promotion_sets_current_version(orchestrator):
    model = await orchestrator.create_model("member-1", "Ranker", "regression")
    await orchestrator.register_version(model["id"], "0.1.0", "a.joblib")

    promoted = await orchestrator.promote_model(model["id"], "0.1.0", "staging")
    refreshed = await orchestrator.get_model(model["id"])

    assert promoted["stage"] == "staging"
    assert refreshed["lifecycle"] == {"stage": "staging", "current_version": "0.1.0"}


@pytest.mark.asyncio
async def test_promotion_must_follow_the_ladder(orchestrator, ready_model):
    await orchestrator.register_version(ready_model, "1.1.0", "artifacts/1.1.0.joblib")

    with pytest.raises(InvalidStateError):
        await orchestrator.promote_model(ready_model, "1.1.0", "production")


@pytest.mark.asyncio
async def test_promotion_to_production_demotes_previous_current(orchestrator, ready_model):
    await orchestrator.register_version(ready_model, "1.1.0", "artifacts/1.1.0.joblib")
    await orchestrator.promote_model(ready_model, "1.1.0", "staging")

    await orchestrator.promote_model(ready_model, "1.1.0", "production")

    model = await orchestrator.get_model(ready_model)
    stages = {v["version"]: v["stage"] for v in await orchestrator.get_model_versions(ready_model)}
    assert model["lifecycle"] == {"stage": "production", "current_version": "1.1.0"}
    assert stages == {"1.0.0": "staging", "1.1.0": "production"}


@pytest.mark.asyncio
async def test_promotion_to_staging_moves_current_version(orchestrator, ready_model):
    await orchestrator.register_version(ready_model, "1.1.0", "artifacts/1.1.0.joblib")

    promoted = await orchestrator.promote_model(ready_model, "1.1.0", "staging")

    model = await orchestrator.get_model(ready_model)
    stages = {v["version"]: v["stage"] for v in await orchestrator.get_model_versions(ready_model)}
    assert promoted["stage"] == "staging"
    assert model["lifecycle"] == {"stage": "staging", "current_version": "1.1.0"}
    assert stages == {"1.0.0": "production", "1.1.0": "staging"}


@pytest.mark.asyncio
async def test_archiving_another_version_keeps_current(orchestrator, ready_model):
    await orchestrator.register_version(ready_model, "0.9.0", "artifacts/0.9.0.joblib")

    await orchestrator.promote_model(ready_model, "0.9.0", "archived")

    model = await orchestrator.get_model(ready_model)
    assert model["lifecycle"] == {"stage": "production", "current_version": "1.0.0"}


@pytest.mark.asyncio
async def test_current_version_cannot_be_archived(orchestrator, ready_model):
    with pytest.raises(InvalidStateError):
        await orchestrator.promote_model(ready_model, "1.0.0", "archived")


@pytest.mark.asyncio
async def test_archive_old_versions_keeps_current(orchestrator, engine):
    model_id = await make_ready_model(
        orchestrator, versions=("1.0.0", "1.1.0", "1.2.0", "1.3.0"))
    await orchestrator.pool.get(model_id, "1.1.0", "artifacts/1.1.0.joblib")

    archived = await orchestrator.archive_old_versions(model_id, keep_count=2)

    stages = {v["version"]: v["stage"] for v in await orchestrator.get_model_versions(model_id)}
    assert archived == 2
    assert stages["1.0.0"] == "production"
    assert stages["1.3.0"] == "development"
    assert stages["1.1.0"] == stages["1.2.0"] == "archived"
    assert (model_id, "1.1.0") not in orchestrator.pool
    assert await orchestrator.archive_old_versions(model_id, keep_count=2) == 0


@pytest.mark.asyncio
async def test_archive_old_versions_rejects_negative_keep(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.archive_old_versions(ready_model, keep_count=-1)


@pytest.mark.asyncio
async def test_get_best_version_by_confidence_and_accuracy(orchestrator, engine):
    model_id = await make_ready_model(orchestrator, versions=("1.0.0", "1.1.0"))
    assert await orchestrator.get_best_version(model_id) is None

    engine.confidence = 0.6
    old = await orchestrator.predict(model_id, {"x": 1}, version="1.0.0")
    engine.confidence = 0.95
    new = await orchestrator.predict(model_id, {"x": 1}, version="1.1.0")

    assert await orchestrator.get_best_version(model_id, "confidence") == "1.1.0"

    await orchestrator.submit_feedback(old["id"], {"actual_value": "positive"})
    await orchestrator.submit_feedback(new["id"], {"actual_value": "negative"})

    assert await orchestrator.get_best_version(model_id) == "1.0.0"
    metrics = await orchestrator.get_version_metrics(model_id)
    assert metrics["1.1.0"]["error_rate"] == 1.0


@pytest.mark.asyncio
async def test_get_best_version_rejects_unknown_metric(orchestrator, ready_model):
    with pytest.raises(ValidationError):
        await orchestrator.get_best_version(ready_model, "f1")


@pytest.mark.asyncio
async def test_delete_model_requires_permission(orchestrator, authorization, ready_model):
    with pytest.raises(PermissionDeniedError):
        await orchestrator.delete_model(ready_model, "member-1", "user-1")

    authorization.grant("user-1", "member-1", "models:delete")
    await orchestrator.predict(ready_model, {"x": 1})
    counts = await orchestrator.delete_model(ready_model, "member-1", "user-1")

    assert counts["ml_models"] == 1
    assert counts["model_versions"] == 1
    assert counts["predictions"] == 1
    assert (ready_model, "1.0.0") not in orchestrator.pool
    with pytest.raises(NotFoundError):
        await orchestrator.get_model(ready_model)


@pytest.mark.asyncio
async def test_trigger_retraining_enqueues_job(orchestrator, job_queue, ready_model):
    job_id = await orchestrator.trigger_retraining(ready_model, "scheduled refresh")

    model = await orchestrator.get_model(ready_model)
    [payload] = job_queue.of_type("full_retraining")
    assert job_id == "job-1"
    assert payload["model_id"] == ready_model
    assert payload["reason"] == "scheduled refresh"
    assert model["status"] == "training"


@pytest.mark.asyncio
async def test_archive_model_keeps_versions(orchestrator, ready_model):
    archived = await orchestrator.archive_model(ready_model)

    assert archived["status"] == "archived"
    assert [v["stage"] for v in await orchestrator.get_model_versions(ready_model)] == ["production"]
