"""Initialize the models module.

Makes model classes available when the package is imported so that
``Base.metadata`` knows about every table.
"""

from .ab_test import ABTest, ABTestSample
from .deployment_record import DeploymentRecord
from .drift import DriftBaseline, DriftDetectionEvent, DriftPolicy
from .incremental import IncrementalBatch, IncrementalSample
from .ml_model import MLModel
from .model_version import ModelVersion
from .models_base import Base
from .prediction import FeedbackEntry, Prediction

__all__ = [
    "ABTest",
    "ABTestSample",
    "Base",
    "DeploymentRecord",
    "DriftBaseline",
    "DriftDetectionEvent",
    "DriftPolicy",
    "FeedbackEntry",
    "IncrementalBatch",
    "IncrementalSample",
    "MLModel",
    "ModelVersion",
    "Prediction",
]
