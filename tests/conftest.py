"""Shared fixtures for the Hestia test suite.

Every test gets its own file-backed SQLite database, a ConfigManager built from
a temporary YAML file and hand-written fakes for the external collaborators.
"""

import asyncio
import random
from collections.abc import Mapping
from typing import Any
from unittest.mock import MagicMock

import pytest
import yaml

from hestia.config_manager import ConfigManager
from hestia.dal import DatabaseConnectionPool
from hestia.interfaces import InferenceResult
from hestia.logger_service import LoggerService
from hestia.monitoring import InMemoryMetricsEmitter
from hestia.orchestrator import ModelOrchestrator


class FakeEngine:
    """Engine returning a sign label for input ``x`` with a fixed confidence."""

    def __init__(self) -> None:
        self.confidence = 0.9
        self.load_delay = 0.0
        self.fail_loads = 0
        self.loads: list[tuple[str, str]] = []
        self.infer_calls: list[tuple[Any, str, dict[str, Any]]] = []
        self.healthy = True

    async def load(self, artifact_ref: str, version: str) -> dict[str, str]:
        self.loads.append((artifact_ref, version))
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise OSError(f"artifact {artifact_ref} unavailable")
        return {"artifact_ref": artifact_ref, "version": version}

    async def infer(
        self, artifact: Any, version: str, model_input: Mapping[str, Any],
    ) -> InferenceResult:
        self.infer_calls.append((artifact, version, dict(model_input)))
        label = "positive" if float(model_input.get("x", 0)) >= 0 else "negative"
        return InferenceResult(output=label, confidence=self.confidence)

    async def evaluate(self, artifact_ref: str, test_set: list[Mapping[str, Any]]) -> dict[str, float]:
        return {"samples": float(len(test_set))}

    async def ping(self) -> bool:
        return self.healthy


class FakeJobQueue:
    def __init__(self) -> None:
        self.jobs: list[tuple[str, dict[str, Any]]] = []
        self.healthy = True

    async def enqueue(self, job_type: str, payload: Mapping[str, Any]) -> str:
        self.jobs.append((job_type, dict(payload)))
        return f"job-{len(self.jobs)}"

    async def ping(self) -> bool:
        return self.healthy

    def of_type(self, job_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.jobs if kind == job_type]


class FakeAuthorization:
    def __init__(self) -> None:
        self.granted: set[tuple[str, str, str]] = set()

    def grant(self, user_id: str, member_id: str, permission: str) -> None:
        self.granted.add((user_id, member_id, permission))

    async def has_permission(self, user_id: str, member_id: str, permission: str) -> bool:
        return (user_id, member_id, permission) in self.granted


class FakeProbe:
    """Reports every version healthy except the ones listed in ``unhealthy``."""

    def __init__(self) -> None:
        self.unhealthy: set[str] = set()
        self.calls: list[dict[str, Any]] = []

    async def probe(self, target: Mapping[str, Any], check: Any) -> bool:
        self.calls.append(dict(target))
        return target["version"] not in self.unhealthy


@pytest.fixture
def config_values(tmp_path) -> dict[str, Any]:
    """Configuration written to the temporary YAML file; tests may tweak it first."""
    return {
        "database": {
            "url": f"sqlite+aiosqlite:///{tmp_path / 'hestia.db'}",
            "create_schema": True,
        },
        "security": {
            "risk_threshold": 70,
            "anonymization_salt": "test-salt",
            "adversarial": {"enabled": True, "threshold": 0.7, "methods": ["statistical"]},
        },
        "model_pool": {"max_size": 4, "load_retries": 3, "retry_backoff_seconds": 0},
        "prediction": {"max_batch_size": 5},
        "ab_testing": {"min_samples": 50},
        "deployment": {"poll_interval_seconds": 0},
        "drift": {"threshold": 0.1, "window_size": 100, "method": "psi"},
        "health": {"check_memory": False},
        "logging": {"level": "DEBUG", "console": {"enabled": False}},
    }


@pytest.fixture
def config(tmp_path, config_values) -> ConfigManager:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_values))
    return ConfigManager(config_path=path)


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock(spec=LoggerService)


@pytest.fixture
async def database(config, mock_logger):
    pool = DatabaseConnectionPool(config, mock_logger)
    await pool.initialize()
    await pool.create_schema()
    yield pool
    await pool.close()


@pytest.fixture
def session_maker(database):
    return database.get_session_maker()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def authorization() -> FakeAuthorization:
    return FakeAuthorization()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def metrics() -> InMemoryMetricsEmitter:
    return InMemoryMetricsEmitter()


@pytest.fixture
async def orchestrator(
    config, mock_logger, database, engine, job_queue, authorization, probe, metrics,
):
    service = ModelOrchestrator(
        config,
        mock_logger,
        database,
        engine,
        job_queue,
        authorization,
        probe,
        metrics=metrics,
        rng=random.Random(42),
    )
    await service.initialize()
    await service.start()
    yield service
    await service.stop()


async def make_ready_model(
    service: ModelOrchestrator,
    *,
    name: str = "Churn Classifier",
    model_type: str = "classification",
    configuration: Mapping[str, Any] | None = None,
    versions: tuple[str, ...] = ("1.0.0",),
) -> str:
    """Create a ready model whose first version is current in production."""
    model = await service.create_model("member-1", name, model_type, configuration or {})
    for version in versions:
        await service.register_version(model["id"], version, f"artifacts/{version}.joblib")
    first = versions[0]
    await service.promote_model(model["id"], first, "staging")
    await service.promote_model(model["id"], first, "production")
    await service.update_model_status(model["id"], "ready")
    return model["id"]


@pytest.fixture
async def ready_model(orchestrator) -> str:
    return await make_ready_model(orchestrator)
