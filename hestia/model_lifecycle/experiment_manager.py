"""A/B test router: traffic splitting, sample recording and winner determination."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import stats
from sqlalchemy.exc import IntegrityError

from hestia.dal.repositories import ABTestRepository
from hestia.exceptions import (
    DuplicateTestError,
    InsufficientSamplesError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

from .enums import ABTestStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hestia.config_manager import ConfigManager
    from hestia.dal.models import ABTest
    from hestia.logger_service import LoggerService

    from .registry import ModelRegistry

# Constants
ARMS = ("A", "B")
DEFAULT_TRAFFIC_SPLIT = 50
DEFAULT_MIN_SAMPLES = 100
DEFAULT_METRIC = "confidence"
MAX_TRAFFIC_SPLIT = 100


@dataclass(frozen=True)
class ArmTarget:
    """The model version served by one arm of a test."""
    arm: str
    model_id: str
    version: str


def parse_arm(arm: str | tuple[str, str] | Mapping[str, str]) -> tuple[str, str]:
    """Accept ``"model_id:version"``, a ``(model_id, version)`` pair or a mapping."""
    if isinstance(arm, str):
        model_id, sep, version = arm.rpartition(":")
        if not sep or not model_id or not version:
            raise ValidationError(f"Arm must look like 'model_id:version', got '{arm}'")
        return model_id, version
    if isinstance(arm, Mapping):
        return str(arm["model_id"]), str(arm["version"])
    model_id, version = arm
    return str(model_id), str(version)


class ExperimentManager:
    """Manages A/B tests between two model versions.

    Routing is an independent weighted draw per call. Samples are stored as
    individual rows, so concurrent recorders are all counted.
    """

    def __init__(
        self,
        config: ConfigManager,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
        registry: ModelRegistry,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the experiment manager.

        Args:
            config: Configuration manager instance
            session_maker: SQLAlchemy async_sessionmaker for database sessions
            logger: Logger service instance
            registry: Registry used to validate arm versions
            rng: Random source for routing draws
        """
        self.config = config
        self.logger = logger
        self.registry = registry
        self._source_module = self.__class__.__name__
        # Not used for security, just for traffic assignment
        self._rng = rng or random.Random()  # noqa: S311

        self.repo = ABTestRepository(session_maker, logger)
        self.default_min_samples = config.get_int("ab_testing.min_samples", DEFAULT_MIN_SAMPLES)
        self.default_metric = config.get("ab_testing.metric", DEFAULT_METRIC)

    async def start_ab_test(
        self,
        test_id: str,
        model_a: str | tuple[str, str] | Mapping[str, str],
        model_b: str | tuple[str, str] | Mapping[str, str],
        traffic_split: int = DEFAULT_TRAFFIC_SPLIT,
        min_samples: int | None = None,
        metric: str | None = None,
    ) -> ABTest:
        """Start a running test.

        Args:
            test_id: Unique test identifier
            model_a: Arm A target
            model_b: Arm B target
            traffic_split: Percentage of traffic routed to arm A
            min_samples: Samples each arm needs before a winner is declared
            metric: Sample field compared between arms

        Raises:
            DuplicateTestError: If ``test_id`` already exists.
        """
        if not 0 <= traffic_split <= MAX_TRAFFIC_SPLIT:
            raise ValidationError(f"traffic_split must be within 0-100, got {traffic_split}")
        min_samples = self.default_min_samples if min_samples is None else min_samples
        if min_samples < 1:
            raise ValidationError("min_samples must be >= 1")

        model_a_id, version_a = parse_arm(model_a)
        model_b_id, version_b = parse_arm(model_b)
        await self.registry.get_version(model_a_id, version_a)
        await self.registry.get_version(model_b_id, version_b)

        if await self.repo.get_by_id(test_id) is not None:
            raise DuplicateTestError(test_id)
        try:
            test = await self.repo.create({
                "test_id": test_id,
                "model_a_id": model_a_id,
                "version_a": version_a,
                "model_b_id": model_b_id,
                "version_b": version_b,
                "traffic_split": traffic_split,
                "min_samples": min_samples,
                "metric": metric or self.default_metric,
                "status": ABTestStatus.RUNNING.value,
            })
        except IntegrityError as e:
            raise DuplicateTestError(test_id) from e

        self.logger.info(
            f"Started A/B test {test_id}",
            source_module=self._source_module,
            context={
                "arm_a": f"{model_a_id}:{version_a}",
                "arm_b": f"{model_b_id}:{version_b}",
                "traffic_split": traffic_split,
                "min_samples": min_samples,
            },
        )
        return test

    async def get_test(self, test_id: str) -> ABTest:
        test = await self.repo.get_by_id(test_id)
        if test is None:
            raise NotFoundError("ABTest", test_id)
        return test

    async def route_ab_test(self, test_id: str) -> str:
        """Return ``"A"`` with probability ``traffic_split / 100``, else ``"B"``."""
        test = await self.get_test(test_id)
        return self._draw(test)

    async def select_arm(self, test_id: str) -> ArmTarget:
        """Draw an arm for a running test and resolve its model version.

        Raises:
            InvalidStateError: If the test is stopped.
        """
        test = await self.get_test(test_id)
        if test.status != ABTestStatus.RUNNING.value:
            raise InvalidStateError(f"A/B test {test_id} is not running")
        arm = self._draw(test)
        model_id, version = test.arm_target(arm)
        return ArmTarget(arm=arm, model_id=model_id, version=version)

    def _draw(self, test: ABTest) -> str:
        return "A" if self._rng.random() < test.traffic_split / MAX_TRAFFIC_SPLIT else "B"

    async def record_ab_test_result(
        self,
        test_id: str,
        arm: str,
        sample_result: Mapping[str, Any] | float,
        prediction_id: str | None = None,
    ) -> bool:
        """Append a sample to ``arm``.

        Returns:
            False when the test is no longer running (the sample is dropped).
        """
        if arm not in ARMS:
            raise ValidationError(f"Unknown arm '{arm}'")
        test = await self.get_test(test_id)

        payload: dict[str, Any] | None
        if isinstance(sample_result, Mapping):
            payload = dict(sample_result)
            raw = sample_result.get(test.metric)
        else:
            payload = None
            raw = sample_result
        value = float(raw) if isinstance(raw, int | float) and not isinstance(raw, bool) else None

        recorded = await self.repo.add_sample(test_id, arm, value, payload, prediction_id)
        if not recorded:
            self.logger.info(
                f"Ignoring sample for A/B test {test_id}; test is not running",
                source_module=self._source_module,
                context={"arm": arm},
            )
        return recorded

    async def get_ab_test_results(self, test_id: str) -> dict[str, Any]:
        """Per-arm sample counts and aggregate statistics.

        ``ready`` is False until every arm reached ``min_samples``; until then the
        aggregates describe a partial sample.
        """
        test = await self.get_test(test_id)
        counts = await self.repo.arm_counts(test_id)
        values = await self.repo.arm_values(test_id)
        arms = {arm: _summarize(counts.get(arm, 0), values.get(arm, [])) for arm in ARMS}
        return {
            "test_id": test_id,
            "status": test.status,
            "metric": test.metric,
            "traffic_split": test.traffic_split,
            "min_samples": test.min_samples,
            "ready": all(counts.get(arm, 0) >= test.min_samples for arm in ARMS),
            "arms": arms,
            "winner": test.winner,
            "confidence": test.confidence,
        }

    async def stop_ab_test(self, test_id: str) -> dict[str, Any]:
        """Stop a test and decide its winner.

        When either arm is below ``min_samples`` the shortfall is logged and the
        test stops without a winner.
        """
        test = await self.get_test(test_id)
        if test.status != ABTestStatus.RUNNING.value:
            self.logger.info(
                f"A/B test {test_id} already stopped",
                source_module=self._source_module,
            )
            return await self.get_ab_test_results(test_id)

        counts = await self.repo.arm_counts(test_id)
        values = await self.repo.arm_values(test_id)
        winner: str | None = None
        confidence: float | None = None

        if any(counts.get(arm, 0) < test.min_samples for arm in ARMS):
            error = InsufficientSamplesError(test_id, counts, test.min_samples)
            self.logger.warning(str(error), source_module=self._source_module)
        else:
            winner, confidence = _decide_winner(values["A"], values["B"])

        results = {
            "arms": {arm: _summarize(counts.get(arm, 0), values.get(arm, [])) for arm in ARMS},
            "stopped_at": datetime.now(UTC).isoformat(),
        }
        if not await self.repo.mark_stopped(test_id, winner, confidence, results):
            # A concurrent stop won; report what it stored
            return await self.get_ab_test_results(test_id)

        self.logger.info(
            f"Stopped A/B test {test_id}",
            source_module=self._source_module,
            context={"winner": winner, "confidence": confidence, "counts": counts},
        )
        return await self.get_ab_test_results(test_id)


def _summarize(count: int, values: list[float]) -> dict[str, Any]:
    arr = np.asarray(values, dtype=float)
    return {
        "count": count,
        "mean": float(arr.mean()) if arr.size else None,
        "std": float(arr.std(ddof=1)) if arr.size > 1 else 0.0,
    }


def _decide_winner(a: list[float], b: list[float]) -> tuple[str | None, float | None]:
    """Pick the arm with the higher mean and the confidence of that difference.

    Confidence is one minus the two-sided p-value of a z-test on the difference
    of means with per-arm variances weighted by sample size.
    """
    if not a or not b:
        return None, None
    arr_a = np.asarray(a, dtype=float)
    arr_b = np.asarray(b, dtype=float)
    diff = float(arr_a.mean() - arr_b.mean())
    var_a = float(arr_a.var(ddof=1)) if arr_a.size > 1 else 0.0
    var_b = float(arr_b.var(ddof=1)) if arr_b.size > 1 else 0.0
    se = float(np.sqrt(var_a / arr_a.size + var_b / arr_b.size))

    if se == 0:
        if diff == 0:
            return None, 0.0
        return ("A" if diff > 0 else "B"), 1.0
    if diff == 0:
        return None, 0.0

    z = diff / se
    p_value = 2 * (1 - stats.norm.cdf(abs(z)))
    return ("A" if diff > 0 else "B"), float(1 - p_value)
