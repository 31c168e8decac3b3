"""Protocols for the external collaborators the orchestrator depends on.

The orchestrator never constructs these itself; concrete implementations are passed to
:class:`hestia.orchestrator.ModelOrchestrator` by the caller that owns their lifecycle.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from hestia.model_lifecycle.deployment import HealthCheckConfig


@dataclass(frozen=True)
class InferenceResult:
    """Output of a single inference call."""

    output: Any
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class LifecycleService(Protocol):
    """Protocol for components with an explicit start/stop lifecycle."""

    async def initialize(self) -> None:
        """Perform any asynchronous initialization logic."""
        ...

    async def start(self) -> None:
        """Start the service."""
        ...

    async def stop(self) -> None:
        """Stop the service and release its resources."""
        ...


@runtime_checkable
class TensorEngine(Protocol):
    """Numeric computation engine that loads artifacts and runs inference."""

    async def load(self, artifact_ref: str, version: str) -> Any:  # noqa: ANN401
        """Load the artifact referenced by ``artifact_ref`` and return a handle."""
        ...

    async def infer(
        self,
        artifact: Any,  # noqa: ANN401
        version: str,
        model_input: Mapping[str, Any],
    ) -> InferenceResult:
        """Run inference with a loaded artifact."""
        ...

    async def evaluate(
        self,
        artifact_ref: str,
        test_set: list[Mapping[str, Any]],
    ) -> dict[str, float]:
        """Evaluate an artifact against a labelled test set."""
        ...

    async def ping(self) -> bool:
        """Return True when the engine is reachable."""
        ...


@runtime_checkable
class JobQueue(Protocol):
    """Durable queue for long running training work."""

    async def enqueue(self, job_type: str, payload: Mapping[str, Any]) -> str:
        """Enqueue a job and return its identifier."""
        ...

    async def ping(self) -> bool:
        """Return True when the queue is reachable."""
        ...


@runtime_checkable
class AuthorizationChecker(Protocol):
    """Permission checks consulted before destructive operations."""

    async def has_permission(self, user_id: str, member_id: str, permission: str) -> bool:
        """Return True when ``user_id`` holds ``permission`` within ``member_id``."""
        ...


@runtime_checkable
class MetricsEmitter(Protocol):
    """Counters and histograms labelled by model type and outcome."""

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter."""
        ...

    def observe(
        self,
        name: str,
        value: float,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Record a histogram observation."""
        ...


@runtime_checkable
class HealthProbe(Protocol):
    """Probe used by rollouts to decide whether a deployed version is healthy."""

    async def probe(self, target: Mapping[str, Any], check: HealthCheckConfig) -> bool:
        """Return True when the target passes ``check``."""
        ...
