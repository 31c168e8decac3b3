"""Strategy-driven model rollouts with health polling and automatic rollback.

Every rollout runs as its own supervised task. The task drives the record
through ``pending -> in_progress -> healthy | rolled_back | failed`` and may be
cancelled at any time, which ends the rollout as ``failed``.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

from hestia.dal.repositories import DeploymentRepository, PredictionRepository
from hestia.exceptions import (
    DeploymentFailure,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

from .enums import DeploymentStatus, DeploymentStrategyType, ModelStage, ModelStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import DeploymentRecord
    from hestia.interfaces import HealthProbe
    from hestia.logger_service import LoggerService
    from hestia.serving import ModelPool

    from .registry import ModelRegistry

MAX_TRAFFIC_PERCENT = 100
EQ_TOLERANCE = 0.001
LOW_CONFIDENCE = 0.5
TRIGGER_METRICS = ("error_rate", "latency_p95", "latency_mean", "confidence_mean")
TRIGGER_OPERATORS = ("gt", "lt", "eq")

VALID_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.IN_PROGRESS, DeploymentStatus.FAILED},
    DeploymentStatus.IN_PROGRESS: {
        DeploymentStatus.HEALTHY,
        DeploymentStatus.ROLLED_BACK,
        DeploymentStatus.FAILED,
    },
}


# Strategy configuration


@dataclass(frozen=True)
class ImmediateStrategy:
    """Cut all traffic over at once; the first probe decides the outcome."""
    strategy_type: ClassVar[DeploymentStrategyType] = DeploymentStrategyType.IMMEDIATE

    def to_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class RollingStrategy:
    """Replace replicas batch by batch while probes stay healthy."""
    strategy_type: ClassVar[DeploymentStrategyType] = DeploymentStrategyType.ROLLING
    replicas: int = 3
    batch_size: int | None = None

    def __post_init__(self) -> None:
        if self.replicas < 1:
            raise ValidationError("replicas must be >= 1")
        if self.batch_size is None:
            object.__setattr__(self, "batch_size", max(1, self.replicas // 3))
        elif not 1 <= self.batch_size <= self.replicas:
            raise ValidationError("batch_size must be within 1..replicas")

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class CanaryStrategy:
    """Route a small share of traffic first and widen it on sustained health."""
    strategy_type: ClassVar[DeploymentStrategyType] = DeploymentStrategyType.CANARY
    initial_traffic_percent: int = 10
    traffic_step_percent: int = 30
    checks_per_step: int = 2

    def __post_init__(self) -> None:
        if not 1 <= self.initial_traffic_percent <= MAX_TRAFFIC_PERCENT:
            raise ValidationError("initial_traffic_percent must be within 1-100")
        if self.traffic_step_percent < 1:
            raise ValidationError("traffic_step_percent must be >= 1")
        if self.checks_per_step < 1:
            raise ValidationError("checks_per_step must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class BlueGreenStrategy:
    """Warm the new version up in parallel, then switch atomically."""
    strategy_type: ClassVar[DeploymentStrategyType] = DeploymentStrategyType.BLUE_GREEN
    warmup_checks: int = 3
    keep_old_version: bool = True

    def __post_init__(self) -> None:
        if self.warmup_checks < 1:
            raise ValidationError("warmup_checks must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


DeploymentStrategy = ImmediateStrategy | RollingStrategy | CanaryStrategy | BlueGreenStrategy

_STRATEGY_CLASSES: dict[DeploymentStrategyType, type[Any]] = {
    DeploymentStrategyType.IMMEDIATE: ImmediateStrategy,
    DeploymentStrategyType.ROLLING: RollingStrategy,
    DeploymentStrategyType.CANARY: CanaryStrategy,
    DeploymentStrategyType.BLUE_GREEN: BlueGreenStrategy,
}


def build_strategy(
    strategy: DeploymentStrategy | DeploymentStrategyType | str,
    options: Mapping[str, Any] | None = None,
) -> DeploymentStrategy:
    """Build a validated strategy config from a name (and options) or pass one through."""
    if isinstance(strategy, ImmediateStrategy | RollingStrategy | CanaryStrategy | BlueGreenStrategy):
        return strategy
    try:
        strategy_type = DeploymentStrategyType(strategy)
    except ValueError as e:
        raise ValidationError(f"Unsupported deployment strategy: {strategy}") from e
    try:
        return _STRATEGY_CLASSES[strategy_type](**dict(options or {}))
    except TypeError as e:
        raise ValidationError(f"Invalid options for {strategy_type.value}: {e}") from e


@dataclass(frozen=True)
class HealthCheckConfig:
    """How a rollout probes the deployed version."""
    type: str = "http"
    endpoint: str = "/health"
    timeout: float = 5.0
    interval: float = 10.0
    retries: int = 0
    success_threshold: int = 1
    failure_threshold: int = 3

    def __post_init__(self) -> None:
        if self.timeout <= 0 or self.interval < 0:
            raise ValidationError("timeout must be > 0 and interval >= 0")
        if self.retries < 0:
            raise ValidationError("retries must be >= 0")
        if self.success_threshold < 1 or self.failure_threshold < 1:
            raise ValidationError("success and failure thresholds must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class RollbackTrigger:
    """Live serving metric that counts as a probe failure when it crosses ``threshold``."""
    metric: str
    threshold: float
    duration: float = 0.0
    operator: str = "gt"

    def __post_init__(self) -> None:
        if self.metric not in TRIGGER_METRICS:
            raise ValidationError(f"Unsupported trigger metric: {self.metric}")
        if self.operator not in TRIGGER_OPERATORS:
            raise ValidationError(f"Unsupported trigger operator: {self.operator}")

    def breached(self, value: float) -> bool:
        if self.operator == "gt":
            return value > self.threshold
        if self.operator == "lt":
            return value < self.threshold
        return abs(value - self.threshold) < EQ_TOLERANCE

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class RollbackPolicy:
    """When and how often a failed rollout may revert to the prior stable version."""
    enabled: bool = True
    auto_rollback: bool = True
    triggers: tuple[RollbackTrigger, ...] = ()
    max_rollback_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_rollback_attempts < 0:
            raise ValidationError("max_rollback_attempts must be >= 0")
        object.__setattr__(self, "triggers", tuple(
            t if isinstance(t, RollbackTrigger) else RollbackTrigger(**t) for t in self.triggers
        ))

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "auto_rollback": self.auto_rollback,
            "triggers": [t.to_dict() for t in self.triggers],
            "max_rollback_attempts": self.max_rollback_attempts,
        }


def default_health_check(
    strategy_type: DeploymentStrategyType, interval: float = 10.0,
) -> HealthCheckConfig:
    if strategy_type == DeploymentStrategyType.CANARY:
        return HealthCheckConfig(interval=30.0, success_threshold=2, failure_threshold=3)
    if strategy_type == DeploymentStrategyType.BLUE_GREEN:
        return HealthCheckConfig(interval=interval, success_threshold=3, failure_threshold=2)
    return HealthCheckConfig(interval=interval, success_threshold=1, failure_threshold=3)


def default_rollback_policy(strategy_type: DeploymentStrategyType) -> RollbackPolicy:
    if strategy_type == DeploymentStrategyType.CANARY:
        return RollbackPolicy(
            triggers=(
                RollbackTrigger("error_rate", 0.05, duration=60.0),
                RollbackTrigger("latency_p95", 1000.0, duration=60.0),
            ),
            max_rollback_attempts=3,
        )
    if strategy_type == DeploymentStrategyType.BLUE_GREEN:
        return RollbackPolicy(max_rollback_attempts=1)
    if strategy_type == DeploymentStrategyType.ROLLING:
        return RollbackPolicy(max_rollback_attempts=2)
    return RollbackPolicy(auto_rollback=False, max_rollback_attempts=0)


@dataclass
class _Rollout:
    """Mutable state of one running rollout."""
    deployment_id: str
    model_id: str
    version: str
    stage: ModelStage
    strategy: DeploymentStrategy
    check: HealthCheckConfig
    policy: RollbackPolicy
    prior_version: str | None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    traffic_percent: int = 0
    cut_over: bool = False
    health_checks: list[dict[str, Any]] = field(default_factory=list)
    status_history: list[str] = field(default_factory=list)
    breach_started: dict[str, float] = field(default_factory=dict)


class DeploymentOrchestrator:
    """Runs rollouts and out-of-band rollbacks against the model registry."""

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        registry: ModelRegistry,
        probe: HealthProbe,
        pool: ModelPool,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the deployment orchestrator.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            registry: Registry whose pointers rollouts move
            probe: Health probe applied to deployed versions
            pool: Artifact pool warmed with the target version before a rollout
            rng: Random source for canary traffic routing
        """
        self.config = config
        self.logger = logger
        self.registry = registry
        self.probe = probe
        self.pool = pool
        self._source_module = self.__class__.__name__
        # Not used for security, just for traffic assignment
        self._rng = rng or random.Random()  # noqa: S311

        self.repo = DeploymentRepository(session_maker, logger)
        self.prediction_repo = PredictionRepository(session_maker, logger)
        self.default_interval = config.get_float("deployment.poll_interval_seconds", 10.0)

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._active: dict[str, _Rollout] = {}

    async def start(self) -> None:
        """Nothing to start; rollouts are spawned per deploy call."""
        return None

    async def stop(self) -> None:
        """Cancel every running rollout and wait for it to settle."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.logger.info(
            f"Deployment orchestrator stopped ({len(tasks)} rollout(s) cancelled)",
            source_module=self._source_module,
        )

    async def deploy_model(
        self,
        model_id: str,
        version: str,
        stage: ModelStage | str = ModelStage.PRODUCTION,
        strategy: DeploymentStrategy | DeploymentStrategyType | str = DeploymentStrategyType.IMMEDIATE,
        *,
        strategy_options: Mapping[str, Any] | None = None,
        health_check: HealthCheckConfig | None = None,
        rollback_policy: RollbackPolicy | None = None,
        wait: bool = False,
    ) -> dict[str, Any]:
        """Start a rollout of ``version`` into ``stage``.

        Returns:
            The deployment record; the final one when ``wait`` is True.
        """
        stage = ModelStage(stage)
        if stage == ModelStage.ARCHIVED:
            raise ValidationError("Cannot deploy into the archived stage")
        strategy_config = build_strategy(strategy, strategy_options)
        check = health_check or default_health_check(
            strategy_config.strategy_type, self.default_interval)
        policy = rollback_policy or default_rollback_policy(strategy_config.strategy_type)

        model = await self.registry.get_model(model_id)
        if model.status != ModelStatus.READY.value:
            raise InvalidStateError(
                f"Model {model_id} is not ready for deployment (status: {model.status})")
        target = await self.registry.get_version(model_id, version)
        if target.stage == ModelStage.ARCHIVED.value:
            raise InvalidStateError(f"Version {model_id}:{version} is archived")
        # Load failures surface as ModelLoadError before a record is created
        await self.pool.get(model_id, version, target.artifact_ref)
        prior = await self._prior_stable_version(model_id, version, model.current_version)

        record = await self.repo.create({
            "model_id": model_id,
            "version": version,
            "stage": stage.value,
            "strategy": strategy_config.strategy_type.value,
            "strategy_config": strategy_config.to_dict(),
            "status": DeploymentStatus.PENDING.value,
            "previous_version": prior,
            "health_check_config": check.to_dict(),
            "rollback_policy": policy.to_dict(),
            "status_history": [DeploymentStatus.PENDING.value],
        })
        rollout = _Rollout(
            deployment_id=record.deployment_id,
            model_id=model_id,
            version=version,
            stage=stage,
            strategy=strategy_config,
            check=check,
            policy=policy,
            prior_version=prior,
            status_history=[DeploymentStatus.PENDING.value],
        )
        self.logger.info(
            f"Deployment {record.deployment_id} created for {model_id}:{version}",
            source_module=self._source_module,
            context={
                "strategy": strategy_config.strategy_type.value,
                "stage": stage.value,
                "prior_version": prior,
            },
        )

        self._active[record.deployment_id] = rollout
        task = asyncio.create_task(self._run(rollout), name=f"deployment-{record.deployment_id}")
        self._tasks[record.deployment_id] = task
        task.add_done_callback(lambda _t, d=record.deployment_id: self._tasks.pop(d, None))

        if wait:
            return await self.wait_for_deployment(record.deployment_id)
        return record.to_dict()

    async def _prior_stable_version(
        self, model_id: str, version: str, current: str | None,
    ) -> str | None:
        if current and current != version:
            return current
        for candidate in await self.registry.get_model_versions(model_id, include_archived=False):
            if candidate.version != version:
                return candidate.version
        return None

    # Rollout execution

    async def _run(self, rollout: _Rollout) -> None:
        try:
            await self._transition(rollout, DeploymentStatus.IN_PROGRESS)
            healthy = await self._execute_strategy(rollout)
            if healthy:
                await self._complete(rollout)
            else:
                await self._handle_failure(rollout, "health checks failed")
        except asyncio.CancelledError:
            self.logger.warning(
                f"Deployment {rollout.deployment_id} cancelled",
                source_module=self._source_module,
            )
            await asyncio.shield(self._finish(rollout, DeploymentStatus.FAILED, "cancelled"))
            raise
        except Exception as e:
            self.logger.exception(
                f"Deployment {rollout.deployment_id} crashed",
                source_module=self._source_module,
            )
            await self._handle_failure(rollout, f"rollout error: {e!s}")
        finally:
            self._active.pop(rollout.deployment_id, None)

    async def _execute_strategy(self, rollout: _Rollout) -> bool:
        strategy = rollout.strategy
        if isinstance(strategy, ImmediateStrategy):
            await self._cut_over(rollout)
            await self._set_traffic(rollout, MAX_TRAFFIC_PERCENT)
            return await self._probe_once(rollout, "immediate")

        if isinstance(strategy, RollingStrategy):
            replaced = 0
            while replaced < strategy.replicas:
                replaced = min(strategy.replicas, replaced + (strategy.batch_size or 1))
                await self._set_traffic(rollout, replaced * MAX_TRAFFIC_PERCENT // strategy.replicas)
                if not await self._await_health(
                    rollout, f"rolling {replaced}/{strategy.replicas}", rollout.check.success_threshold,
                ):
                    return False
                if not rollout.cut_over:
                    await self._cut_over(rollout)
            return True

        if isinstance(strategy, CanaryStrategy):
            traffic = strategy.initial_traffic_percent
            required = max(rollout.check.success_threshold, strategy.checks_per_step)
            while True:
                await self._set_traffic(rollout, traffic)
                if traffic >= MAX_TRAFFIC_PERCENT and not rollout.cut_over:
                    await self._cut_over(rollout)
                if not await self._await_health(rollout, f"canary {traffic}%", required):
                    return False
                if traffic >= MAX_TRAFFIC_PERCENT:
                    return True
                traffic = min(MAX_TRAFFIC_PERCENT, traffic + strategy.traffic_step_percent)

        # Blue/green: warm up the idle environment, then switch atomically
        required = max(rollout.check.success_threshold, strategy.warmup_checks)
        if not await self._await_health(rollout, "blue_green warmup", required):
            return False
        await self._cut_over(rollout)
        await self._set_traffic(rollout, MAX_TRAFFIC_PERCENT)
        return await self._probe_once(rollout, "blue_green cutover")

    async def _await_health(self, rollout: _Rollout, phase: str, required_successes: int) -> bool:
        """Probe until ``required_successes`` consecutive passes or ``failure_threshold`` failures."""
        successes = 0
        failures = 0
        while True:
            if await self._probe_once(rollout, phase):
                successes += 1
                failures = 0
                if successes >= required_successes:
                    return True
            else:
                failures += 1
                successes = 0
                if failures >= rollout.check.failure_threshold:
                    return False
            await asyncio.sleep(rollout.check.interval)

    async def _probe_once(
        self, rollout: _Rollout, phase: str, version: str | None = None,
    ) -> bool:
        """Run one probe (with retries) and evaluate rollback triggers.

        A timeout counts as a failed attempt; it never aborts the rollout.
        """
        version = version or rollout.version
        target = {
            "deployment_id": rollout.deployment_id,
            "model_id": rollout.model_id,
            "version": version,
            "stage": rollout.stage.value,
            "traffic_percent": rollout.traffic_percent,
        }
        healthy = False
        error: str | None = None
        attempts = 0
        started = time.perf_counter()
        for attempts in range(1, rollout.check.retries + 2):
            try:
                healthy = bool(await asyncio.wait_for(
                    self.probe.probe(target, rollout.check), timeout=rollout.check.timeout))
                error = None if healthy else "probe reported unhealthy"
            except TimeoutError:
                healthy, error = False, f"probe timed out after {rollout.check.timeout}s"
            except Exception as e:
                healthy, error = False, f"probe error: {e!s}"
            if healthy:
                break

        fired: list[str] = []
        if healthy and version == rollout.version and rollout.policy.triggers:
            fired = await self._fired_triggers(rollout)
            if fired:
                healthy, error = False, f"rollback trigger fired: {', '.join(fired)}"

        rollout.health_checks.append({
            "timestamp": datetime.now(UTC).isoformat(),
            "phase": phase,
            "version": version,
            "traffic_percent": rollout.traffic_percent,
            "healthy": healthy,
            "attempts": attempts,
            "duration_ms": (time.perf_counter() - started) * 1000,
            "error": error,
            "triggers_fired": fired,
        })
        await self.repo.update(rollout.deployment_id, {"health_checks": list(rollout.health_checks)})
        return healthy

    async def _fired_triggers(self, rollout: _Rollout) -> list[str]:
        metrics = await self._live_metrics(rollout)
        if metrics is None:
            return []
        now = time.monotonic()
        fired: list[str] = []
        for trigger in rollout.policy.triggers:
            key = f"{trigger.metric}:{trigger.operator}:{trigger.threshold}"
            if not trigger.breached(metrics[trigger.metric]):
                rollout.breach_started.pop(key, None)
                continue
            since = rollout.breach_started.setdefault(key, now)
            if now - since >= trigger.duration:
                fired.append(f"{trigger.metric} {trigger.operator} {trigger.threshold}")
        return fired

    async def _live_metrics(self, rollout: _Rollout) -> dict[str, float] | None:
        """Serving metrics of the deployed version since the rollout started."""
        rows = [
            p for p in await self.prediction_repo.recent(
                rollout.model_id, since=rollout.started_at)
            if p.version_used == rollout.version
        ]
        if not rows:
            return None
        latencies = np.asarray([p.processing_time_ms for p in rows], dtype=float)
        confidences = np.asarray([p.confidence for p in rows], dtype=float)
        return {
            "error_rate": float(np.mean(confidences < LOW_CONFIDENCE)),
            "latency_p95": float(np.percentile(latencies, 95)),
            "latency_mean": float(latencies.mean()),
            "confidence_mean": float(confidences.mean()),
        }

    async def _cut_over(self, rollout: _Rollout) -> None:
        await self.registry.point_to_version(rollout.model_id, rollout.version, rollout.stage)
        rollout.cut_over = True

    async def _set_traffic(self, rollout: _Rollout, percent: int) -> None:
        rollout.traffic_percent = min(MAX_TRAFFIC_PERCENT, percent)
        await self.repo.update(rollout.deployment_id, {"traffic_percent": rollout.traffic_percent})

    async def _complete(self, rollout: _Rollout) -> None:
        await self._finish(rollout, DeploymentStatus.HEALTHY)
        strategy = rollout.strategy
        if (
            isinstance(strategy, BlueGreenStrategy)
            and not strategy.keep_old_version
            and rollout.prior_version
        ):
            try:
                await self.registry.promote_model(
                    rollout.model_id, rollout.prior_version, ModelStage.ARCHIVED)
            except (InvalidStateError, NotFoundError) as e:
                self.logger.warning(
                    f"Could not retire previous version {rollout.prior_version}: {e!s}",
                    source_module=self._source_module,
                )

    async def _handle_failure(self, rollout: _Rollout, reason: str) -> None:
        policy = rollout.policy
        if policy.enabled and policy.auto_rollback and rollout.prior_version:
            for attempt in range(1, policy.max_rollback_attempts + 1):
                await self.repo.update(rollout.deployment_id, {"rollback_attempts_used": attempt})
                if await self._rollback_attempt(rollout, attempt):
                    await self._finish(rollout, DeploymentStatus.ROLLED_BACK, reason)
                    return
            reason = f"{reason}; rollback to {rollout.prior_version} failed"

        failure = DeploymentFailure(rollout.deployment_id, reason, rollout.health_checks)
        self.logger.error(
            str(failure),
            source_module=self._source_module,
            context={"model_id": rollout.model_id, "health_checks": failure.health_checks},
        )
        await self._finish(rollout, DeploymentStatus.FAILED, reason)

    async def _rollback_attempt(self, rollout: _Rollout, attempt: int) -> bool:
        prior = rollout.prior_version
        try:
            model = await self.registry.get_model(rollout.model_id)
            if model.current_version != prior:
                await self.registry.point_to_version(rollout.model_id, prior, rollout.stage)
            rollout.cut_over = False
            restored = await self._probe_once(rollout, f"rollback attempt {attempt}", version=prior)
        except Exception:
            self.logger.exception(
                f"Rollback attempt {attempt} of deployment {rollout.deployment_id} failed",
                source_module=self._source_module,
            )
            return False
        self.logger.info(
            f"Rollback attempt {attempt} to {rollout.model_id}:{prior} "
            f"{'succeeded' if restored else 'failed health check'}",
            source_module=self._source_module,
        )
        return restored

    async def _transition(self, rollout: _Rollout, status: DeploymentStatus) -> None:
        current = DeploymentStatus(rollout.status_history[-1])
        if status not in VALID_TRANSITIONS.get(current, set()):
            raise InvalidStateError(
                f"Deployment {rollout.deployment_id}: {current.value} -> {status.value}",
            )
        rollout.status_history.append(status.value)
        values: dict[str, Any] = {
            "status": status.value,
            "status_history": list(rollout.status_history),
        }
        if status.is_terminal:
            values["completed_at"] = datetime.now(UTC)
        await self.repo.update(rollout.deployment_id, values)

    async def _finish(
        self, rollout: _Rollout, status: DeploymentStatus, reason: str | None = None,
    ) -> None:
        if DeploymentStatus(rollout.status_history[-1]).is_terminal:
            return
        await self._transition(rollout, status)
        if reason:
            await self.repo.update(rollout.deployment_id, {"error_message": reason})
        self.logger.info(
            f"Deployment {rollout.deployment_id} finished: {status.value}",
            source_module=self._source_module,
            context={"model_id": rollout.model_id, "version": rollout.version, "reason": reason},
        )

    # Queries and control

    async def get_deployment(self, deployment_id: str) -> dict[str, Any]:
        record = await self._get_record(deployment_id)
        return record.to_dict()

    async def _get_record(self, deployment_id: str) -> DeploymentRecord:
        record = await self.repo.get_by_id(deployment_id)
        if record is None:
            raise NotFoundError("Deployment", deployment_id)
        return record

    async def list_deployments(self, model_id: str) -> list[dict[str, Any]]:
        return [record.to_dict() for record in await self.repo.list_for_model(model_id)]

    async def wait_for_deployment(
        self, deployment_id: str, timeout: float | None = None,
    ) -> dict[str, Any]:
        """Wait for a rollout to reach a terminal state and return its record."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get_deployment(deployment_id)

    async def cancel_deployment(self, deployment_id: str) -> dict[str, Any]:
        """Cancel a running rollout; it ends as ``failed``."""
        task = self._tasks.get(deployment_id)
        if task is None:
            record = await self._get_record(deployment_id)
            if not DeploymentStatus(record.status).is_terminal:
                raise InvalidStateError(f"Deployment {deployment_id} has no running rollout")
            return record.to_dict()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return await self.get_deployment(deployment_id)

    async def get_deployment_stats(self) -> dict[str, Any]:
        by_status = await self.repo.count_by_status()
        terminal = sum(
            count for status, count in by_status.items()
            if DeploymentStatus(status).is_terminal
        )
        return {
            "total": sum(by_status.values()),
            "active": len(self._tasks),
            "by_status": by_status,
            "by_strategy": await self.repo.count_by_strategy(),
            "success_rate": (
                by_status.get(DeploymentStatus.HEALTHY.value, 0) / terminal if terminal else 0.0
            ),
        }

    def canary_target(self, model_id: str) -> str | None:
        """Version a request should use while a canary of ``model_id`` shifts traffic.

        Returns None when the request stays on the current version.
        """
        for rollout in self._active.values():
            if (
                rollout.model_id == model_id
                and isinstance(rollout.strategy, CanaryStrategy)
                and not rollout.cut_over
                and rollout.traffic_percent > 0
            ):
                if self._rng.random() * MAX_TRAFFIC_PERCENT < rollout.traffic_percent:
                    return rollout.version
                return None
        return None

    async def rollback_model(
        self, model_id: str, target_version: str | None = None,
    ) -> dict[str, Any]:
        """Revert the model's current version out of band.

        ``target_version`` defaults to the newest other non-archived version.
        """
        model = await self.registry.get_model(model_id)
        if target_version is None:
            target_version = await self._prior_stable_version(model_id, model.current_version or "", None)
            if target_version is None:
                raise InvalidStateError(f"Model {model_id} has no version to roll back to")
        stage = ModelStage(model.stage) if model.stage else ModelStage.PRODUCTION
        if stage == ModelStage.ARCHIVED:
            stage = ModelStage.PRODUCTION
        previous = await self.registry.point_to_version(model_id, target_version, stage)
        self.logger.info(
            f"Rolled back model {model_id} to {target_version}",
            source_module=self._source_module,
            context={"previous_version": previous},
        )
        return {
            "model_id": model_id,
            "previous_version": previous,
            "current_version": target_version,
            "stage": stage.value,
        }
