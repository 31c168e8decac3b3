"""Health checks for the serving stack and for individual models.

Collaborator reachability (store, compute engine, job queue, artifact cache) is
critical: one unreachable collaborator makes the whole service unhealthy. Host
memory is reported alongside but never changes the overall status.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
import psutil

from hestia.config_manager import ConfigManager
from hestia.dal.repositories import ModelRepository, PredictionRepository
from hestia.exceptions import NotFoundError
from hestia.logger_service import LoggerService
from hestia.model_lifecycle.enums import ModelStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

LOW_CONFIDENCE = 0.5
DEGRADED_ERROR_RATE = 0.05
_MB = 1024 * 1024


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckOutcome(Enum):
    """Verdict of a single per-model check."""
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class HealthCheckResult:
    """Outcome of one infrastructure check."""
    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    critical: bool = True
    duration_ms: float | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "critical": self.critical,
            "timestamp": self.checked_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


class HealthChecker:
    """One named check; ``critical`` checks decide the service status."""

    def __init__(self, name: str, critical: bool = True) -> None:
        self.name = name
        self.critical = critical

    async def check(self) -> HealthCheckResult:
        raise NotImplementedError

    def outcome(self, status: HealthStatus, message: str, **kwargs: Any) -> HealthCheckResult:  # noqa: ANN401
        return HealthCheckResult(
            name=self.name, status=status, message=message, critical=self.critical, **kwargs)


class MemoryChecker(HealthChecker):
    """Host memory pressure plus this process's resident set size.

    Loaded model artifacts live in process memory, so the RSS figure shows how much
    of the host the model pool is holding.
    """

    def __init__(self, warning_threshold: float = 80.0, critical_threshold: float = 90.0) -> None:
        """Set the host usage percentages that degrade or fail the check.

        Args:
            warning_threshold: Usage percentage reported as degraded
            critical_threshold: Usage percentage reported as unhealthy
        """
        super().__init__("memory", critical=False)
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

    async def check(self) -> HealthCheckResult:
        try:
            host = psutil.virtual_memory()
            rss = psutil.Process().memory_info().rss
        except psutil.Error as e:
            return self.outcome(HealthStatus.UNHEALTHY, f"Memory statistics unavailable: {e!s}")

        details = {
            "usage_percent": host.percent,
            "available_mb": host.available / _MB,
            "total_mb": host.total / _MB,
            "process_rss_mb": rss / _MB,
        }
        if host.percent >= self.critical_threshold:
            status = HealthStatus.UNHEALTHY
        elif host.percent >= self.warning_threshold:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return self.outcome(status, f"Host memory at {host.percent:.1f}%", details=details)


class ComponentChecker(HealthChecker):
    """Reachability of a collaborator through its async ``ping``."""

    def __init__(
        self,
        name: str,
        check_func: Callable[[], Awaitable[bool]],
        critical: bool = True,
        timeout: float = 5.0) -> None:
        """Wrap a collaborator's ping.

        Args:
            name: Collaborator name reported in the check list
            check_func: Coroutine function returning True when reachable
            critical: Whether an unreachable collaborator fails the service
            timeout: Seconds before the ping counts as failed
        """
        super().__init__(name, critical)
        self.check_func = check_func
        self.timeout = timeout

    async def check(self) -> HealthCheckResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            reachable = await asyncio.wait_for(self.check_func(), timeout=self.timeout)
        except TimeoutError:
            return self.outcome(
                HealthStatus.UNHEALTHY, f"{self.name} ping timeout ({self.timeout}s)")
        except Exception as e:
            return self.outcome(HealthStatus.UNHEALTHY, f"{self.name} ping failed: {e!s}")

        elapsed_ms = (loop.time() - started) * 1000
        if reachable:
            return self.outcome(
                HealthStatus.HEALTHY, f"{self.name} is reachable", duration_ms=elapsed_ms)
        return self.outcome(
            HealthStatus.UNHEALTHY, f"{self.name} is unreachable", duration_ms=elapsed_ms)


class HealthCheckService:
    """Aggregates infrastructure checks with model-level serving statistics."""

    def __init__(
        self,
        config: ConfigManager,
        session_maker: "async_sessionmaker[AsyncSession]",
        logger: LoggerService) -> None:
        """Build the service; collaborator pings are added with :meth:`add_component_check`.

        Args:
            config: Source of the ``health.*`` settings
            session_maker: Session factory for model and prediction statistics
            logger: Logger service instance
        """
        self.config = config
        self.logger = logger
        self._source_module = self.__class__.__name__

        self.model_repo = ModelRepository(session_maker, logger)
        self.prediction_repo = PredictionRepository(session_maker, logger)

        self.checkers: list[HealthChecker] = []
        self._error_rate_window = config.get_int("health.error_rate_window", 1000)
        self._volume_window = timedelta(hours=config.get_float("health.volume_window_hours", 24.0))
        self._timeout = config.get_float("health.check_timeout_seconds", 5.0)

        if config.get_bool("health.check_memory", default=True):
            self.checkers.append(MemoryChecker(
                warning_threshold=config.get_float("health.memory_warning_threshold", 80.0),
                critical_threshold=config.get_float("health.memory_critical_threshold", 90.0)))

    def add_component_check(
        self, name: str, check_func: Callable[[], Awaitable[bool]], critical: bool = True,
    ) -> None:
        self.checkers.append(ComponentChecker(name, check_func, critical, self._timeout))

    async def run_checks(self) -> list[HealthCheckResult]:
        """Run every checker concurrently; a checker that raises counts as unhealthy."""
        results = await asyncio.gather(
            *(checker.check() for checker in self.checkers), return_exceptions=True)

        outcomes: list[HealthCheckResult] = []
        for checker, result in zip(self.checkers, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                result = checker.outcome(
                    HealthStatus.UNHEALTHY, f"{checker.name} check crashed: {result!s}")
            outcomes.append(result)
        return outcomes

    async def get_health_status(self) -> dict[str, Any]:
        """Service-wide health.

        ``unhealthy`` if any critical check fails, else ``degraded`` when the share of
        low-confidence recent predictions reaches 5%, else ``healthy``.
        """
        checks = await self.run_checks()
        status_counts = await self.model_repo.count_by_status()
        recent = await self.prediction_repo.recent(limit=self._error_rate_window)
        error_rate = (
            sum(1 for p in recent if p.confidence < LOW_CONFIDENCE) / len(recent)
            if recent else 0.0
        )

        if any(c.critical and c.status == HealthStatus.UNHEALTHY for c in checks):
            overall = HealthStatus.UNHEALTHY
        elif error_rate >= DEGRADED_ERROR_RATE:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        if overall != HealthStatus.HEALTHY:
            self.logger.warning(
                f"System health check: {overall.value}",
                source_module=self._source_module,
                context={
                    "failed_checks": [
                        c.name for c in checks if c.status == HealthStatus.UNHEALTHY
                    ],
                    "error_rate": error_rate,
                })

        return {
            "status": overall.value,
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": [check.to_dict() for check in checks],
            "models": {
                "total": sum(status_counts.values()),
                "by_status": status_counts,
            },
            "predictions": {
                "sampled": len(recent),
                "error_rate": error_rate,
            },
        }

    async def get_model_health(self, model_id: str) -> dict[str, Any]:
        """Health of one model from its recent serving statistics.

        Any failed check makes the model ``unhealthy``; otherwise any warning makes
        it ``degraded``.
        """
        model = await self.model_repo.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)

        checks: list[dict[str, Any]] = []

        def add(name: str, outcome: CheckOutcome, message: str, value: Any = None) -> None:  # noqa: ANN401
            checks.append({
                "name": name, "status": outcome.value, "message": message, "value": value})

        if model.status == ModelStatus.READY.value:
            add("availability", CheckOutcome.PASS, "Model is ready", model.status)
        elif model.status == ModelStatus.TRAINING.value:
            add("availability", CheckOutcome.WARN, "Model is training", model.status)
        else:
            add("availability", CheckOutcome.FAIL, f"Model is {model.status}", model.status)

        since = datetime.now(UTC) - self._volume_window
        recent = await self.prediction_repo.recent(model_id, since=since)
        metrics: dict[str, Any] = {"prediction_count": len(recent)}

        if recent:
            latencies = np.asarray([p.processing_time_ms for p in recent], dtype=float)
            confidences = np.asarray([p.confidence for p in recent], dtype=float)
            p95 = float(np.percentile(latencies, 95))
            mean_latency = float(latencies.mean())
            mean_confidence = float(confidences.mean())
            metrics.update({
                "avg_latency_ms": mean_latency,
                "p95_latency_ms": p95,
                "avg_confidence": mean_confidence,
            })
            if p95 > self.config.get_float("health.latency_p95_fail_ms", 5000.0):
                add("latency", CheckOutcome.FAIL, f"p95 latency {p95:.0f}ms", p95)
            elif mean_latency > self.config.get_float("health.latency_mean_warn_ms", 1000.0):
                add("latency", CheckOutcome.WARN, f"Mean latency {mean_latency:.0f}ms", mean_latency)
            else:
                add("latency", CheckOutcome.PASS, "Latency within limits", p95)

            add("volume", CheckOutcome.PASS, f"{len(recent)} recent predictions", len(recent))

            if mean_confidence < LOW_CONFIDENCE:
                add("confidence", CheckOutcome.WARN,
                    f"Mean confidence {mean_confidence:.2f}", mean_confidence)
            else:
                add("confidence", CheckOutcome.PASS, "Confidence within limits", mean_confidence)
        else:
            add("volume", CheckOutcome.WARN, "No recent predictions", 0)

        with_verdict, incorrect = await self.prediction_repo.feedback_counts(model_id)
        if with_verdict:
            error_rate = incorrect / with_verdict
            metrics["error_rate"] = error_rate
            if error_rate > self.config.get_float("health.error_rate_fail", 0.3):
                add("error_rate", CheckOutcome.FAIL, f"Error rate {error_rate:.1%}", error_rate)
            elif error_rate > self.config.get_float("health.error_rate_warn", 0.1):
                add("error_rate", CheckOutcome.WARN, f"Error rate {error_rate:.1%}", error_rate)
            else:
                add("error_rate", CheckOutcome.PASS, "Error rate within limits", error_rate)

        outcomes = {check["status"] for check in checks}
        if CheckOutcome.FAIL.value in outcomes:
            status = HealthStatus.UNHEALTHY
        elif CheckOutcome.WARN.value in outcomes:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "model_id": model_id,
            "status": status.value,
            "checks": checks,
            "metrics": metrics,
            "timestamp": datetime.now(UTC).isoformat(),
        }
