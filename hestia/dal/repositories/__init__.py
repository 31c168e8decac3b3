"""Repository implementations for the document store."""

from .ab_test_repository import ABTestRepository
from .deployment_repository import DeploymentRepository
from .drift_repository import DriftRepository
from .incremental_repository import IncrementalRepository
from .model_repository import ModelRepository, ModelVersionRepository
from .prediction_repository import PredictionRepository

__all__ = [
    "ABTestRepository",
    "DeploymentRepository",
    "DriftRepository",
    "IncrementalRepository",
    "ModelRepository",
    "ModelVersionRepository",
    "PredictionRepository",
]
