"""Unit tests for the artifact pool."""

import asyncio

import pytest

from hestia.exceptions import ModelLoadError
from hestia.serving import ModelPool


@pytest.fixture
def pool(engine, config, mock_logger) -> ModelPool:
    return ModelPool(engine, config, mock_logger)


@pytest.mark.asyncio
async def test_concurrent_cold_gets_share_one_load(pool, engine):
    engine.load_delay = 0.05

    artifacts = await asyncio.gather(*(pool.get("m1", "1.0.0", "a.joblib") for _ in range(10)))

    assert len(engine.loads) == 1
    assert all(artifact is artifacts[0] for artifact in artifacts)
    assert ("m1", "1.0.0") in pool


@pytest.mark.asyncio
async def test_warm_get_is_a_hit(pool, engine):
    await pool.get("m1", "1.0.0", "a.joblib")
    await pool.get("m1", "1.0.0", "a.joblib")

    stats = pool.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert len(engine.loads) == 1


@pytest.mark.asyncio
async def test_load_is_retried(pool, engine):
    engine.fail_loads = 2

    artifact = await pool.get("m1", "1.0.0", "a.joblib")

    assert artifact["version"] == "1.0.0"
    assert len(engine.loads) == 3


@pytest.mark.asyncio
async def test_load_gives_up_after_retries(pool, engine):
    engine.fail_loads = 5

    with pytest.raises(ModelLoadError) as exc_info:
        await pool.get("m1", "1.0.0", "a.joblib")

    assert exc_info.value.attempts == 3
    assert ("m1", "1.0.0") not in pool
    assert pool.stats()["in_flight"] == 0


@pytest.mark.asyncio
async def test_failed_load_is_shared_by_waiters(pool, engine):
    engine.fail_loads = 5
    engine.load_delay = 0.01

    results = await asyncio.gather(
        *(pool.get("m1", "1.0.0", "a.joblib") for _ in range(3)), return_exceptions=True)

    assert all(isinstance(r, ModelLoadError) for r in results)
    assert len(engine.loads) == 3


@pytest.mark.asyncio
async def test_least_recently_used_entry_is_evicted(pool):
    for version in ("1", "2", "3", "4"):
        await pool.get("m1", version, f"{version}.joblib")
    await pool.get("m1", "1", "1.joblib")
    await pool.get("m1", "5", "5.joblib")

    assert ("m1", "1") in pool
    assert ("m1", "2") not in pool
    assert pool.stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_evict_and_clear(pool):
    await pool.get("m1", "1", "1.joblib")
    await pool.get("m1", "2", "2.joblib")
    await pool.get("m2", "1", "1.joblib")

    assert await pool.evict("m1", "1") == 1
    assert await pool.evict("m1") == 1
    assert ("m2", "1") in pool

    await pool.clear()
    assert pool.stats()["size"] == 0


@pytest.mark.asyncio
async def test_cancelled_load_does_not_poison_key(pool, engine):
    engine.load_delay = 0.5
    task = asyncio.create_task(pool.get("m1", "1.0.0", "a.joblib"))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    engine.load_delay = 0
    artifact = await pool.get("m1", "1.0.0", "a.joblib")

    assert artifact["artifact_ref"] == "a.joblib"


@pytest.mark.asyncio
async def test_repeated_load_failures_make_pool_unhealthy(pool, engine):
    engine.fail_loads = 9
    for version in ("1", "2", "3"):
        with pytest.raises(ModelLoadError):
            await pool.get("m1", version, f"{version}.joblib")

    assert pool.stats()["consecutive_failures"] == 3
    assert not await pool.is_healthy()

    await pool.get("m1", "4", "4.joblib")

    assert pool.stats()["consecutive_failures"] == 0
    assert await pool.is_healthy()
