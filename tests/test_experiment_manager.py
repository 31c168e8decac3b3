"""Tests for A/B test routing, sample recording and winner determination."""

import asyncio

import pytest

from hestia.exceptions import DuplicateTestError, InvalidStateError, NotFoundError, ValidationError
from hestia.model_lifecycle.experiment_manager import _decide_winner, parse_arm

from .conftest import make_ready_model


@pytest.fixture
async def two_versions(orchestrator) -> str:
    return await make_ready_model(orchestrator, versions=("1.0.0", "1.1.0"))


def test_parse_arm_accepts_several_shapes():
    assert parse_arm("abc:1.0.0") == ("abc", "1.0.0")
    assert parse_arm(("abc", "1.0.0")) == ("abc", "1.0.0")
    assert parse_arm({"model_id": "abc", "version": "2"}) == ("abc", "2")
    with pytest.raises(ValidationError):
        parse_arm("no-version")


def test_winner_is_the_arm_with_higher_mean():
    winner, confidence = _decide_winner([0.9, 0.8] * 25, [0.5, 0.4] * 25)

    assert winner == "A"
    assert confidence > 0.99
    assert _decide_winner([0.5, 0.5], [0.5, 0.5]) == (None, 0.0)


@pytest.mark.asyncio
async def test_start_validates_arms_and_rejects_duplicates(orchestrator, two_versions):
    test = await orchestrator.start_ab_test(
        "exp-1", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=30)

    assert test["status"] == "running"
    assert test["traffic_split"] == 30
    assert test["min_samples"] == 50
    assert test["metric"] == "confidence"

    with pytest.raises(DuplicateTestError):
        await orchestrator.start_ab_test(
            "exp-1", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")
    with pytest.raises(NotFoundError):
        await orchestrator.start_ab_test(
            "exp-2", f"{two_versions}:1.0.0", f"{two_versions}:9.9.9")
    with pytest.raises(ValidationError):
        await orchestrator.start_ab_test(
            "exp-3", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=150)


@pytest.mark.asyncio
async def test_routing_follows_traffic_split(orchestrator, two_versions):
    await orchestrator.start_ab_test(
        "all-a", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=100)
    await orchestrator.start_ab_test(
        "all-b", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=0)
    await orchestrator.start_ab_test(
        "mixed", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=70)

    assert {await orchestrator.route_ab_test("all-a") for _ in range(20)} == {"A"}
    assert {await orchestrator.route_ab_test("all-b") for _ in range(20)} == {"B"}
    draws = [await orchestrator.route_ab_test("mixed") for _ in range(400)]
    assert 0.6 < draws.count("A") / len(draws) < 0.8


@pytest.mark.asyncio
async def test_concurrent_samples_are_all_counted(orchestrator, two_versions):
    await orchestrator.start_ab_test("exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")

    await asyncio.gather(*(
        orchestrator.record_ab_test_result("exp", "A" if i % 2 else "B", {"confidence": 0.7})
        for i in range(20)
    ))

    results = await orchestrator.get_ab_test_results("exp")
    assert results["arms"]["A"]["count"] == 10
    assert results["arms"]["B"]["count"] == 10
    assert results["arms"]["A"]["mean"] == pytest.approx(0.7)
    assert results["ready"] is False


@pytest.mark.asyncio
async def test_stop_without_enough_samples_has_no_winner(orchestrator, two_versions):
    await orchestrator.start_ab_test("exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")
    for _ in range(40):
        await orchestrator.record_ab_test_result("exp", "A", 0.9)
        await orchestrator.record_ab_test_result("exp", "B", 0.1)

    results = await orchestrator.stop_ab_test("exp")

    assert results["status"] == "stopped"
    assert results["winner"] is None
    assert results["arms"]["A"]["count"] == 40


@pytest.mark.asyncio
async def test_stop_with_enough_samples_declares_winner(orchestrator, two_versions):
    await orchestrator.start_ab_test("exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")
    for i in range(50):
        await orchestrator.record_ab_test_result("exp", "A", 0.5 - 0.1 * (i % 2))
        await orchestrator.record_ab_test_result("exp", "B", 0.9 - 0.1 * (i % 2))

    results = await orchestrator.stop_ab_test("exp")

    assert results["winner"] == "B"
    assert results["confidence"] > 0.99
    assert results["ready"] is True


@pytest.mark.asyncio
async def test_samples_after_stop_are_dropped(orchestrator, two_versions):
    await orchestrator.start_ab_test("exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")
    await orchestrator.stop_ab_test("exp")

    assert await orchestrator.record_ab_test_result("exp", "A", 0.9) is False
    assert (await orchestrator.get_ab_test_results("exp"))["arms"]["A"]["count"] == 0
    with pytest.raises(ValidationError):
        await orchestrator.record_ab_test_result("exp", "C", 0.9)


@pytest.mark.asyncio
async def test_predict_through_test_records_sample(orchestrator, engine, two_versions):
    await orchestrator.start_ab_test(
        "exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0", traffic_split=0)

    result = await orchestrator.predict(two_versions, {"x": 1}, ab_test_id="exp")

    assert result["ab_test"] == {"test_id": "exp", "arm": "B"}
    assert result["model_version"] == "1.1.0"
    results = await orchestrator.get_ab_test_results("exp")
    assert results["arms"]["B"]["count"] == 1
    assert results["arms"]["B"]["mean"] == pytest.approx(engine.confidence)


@pytest.mark.asyncio
async def test_predict_through_stopped_test_fails(orchestrator, two_versions):
    await orchestrator.start_ab_test("exp", f"{two_versions}:1.0.0", f"{two_versions}:1.1.0")
    await orchestrator.stop_ab_test("exp")

    with pytest.raises(InvalidStateError):
        await orchestrator.predict(two_versions, {"x": 1}, ab_test_id="exp")
