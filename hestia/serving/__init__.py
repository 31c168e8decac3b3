"""Request-path components: input security, artifact pool and the prediction pipeline."""

from .feature_transforms import FeatureTransformRegistry
from .model_pool import ModelPool
from .prediction_pipeline import PredictionPipeline, PredictionRequest
from .security_validator import (
    AdversarialDetection,
    FieldRule,
    SanitizationAction,
    SanitizationResult,
    SecurityValidator,
)

__all__ = [
    "AdversarialDetection",
    "FeatureTransformRegistry",
    "FieldRule",
    "ModelPool",
    "PredictionPipeline",
    "PredictionRequest",
    "SanitizationAction",
    "SanitizationResult",
    "SecurityValidator",
]
