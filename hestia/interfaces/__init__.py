"""Collaborator interfaces for the Hestia orchestrator.

Each protocol describes an external system (compute engine, job queue, authorization,
telemetry, deployment health probes) that is injected rather than constructed.
"""

from .collaborators import (
    AuthorizationChecker,
    HealthProbe,
    InferenceResult,
    JobQueue,
    LifecycleService,
    MetricsEmitter,
    TensorEngine,
)

__all__ = [
    "AuthorizationChecker",
    "HealthProbe",
    "InferenceResult",
    "JobQueue",
    "LifecycleService",
    "MetricsEmitter",
    "TensorEngine",
]
