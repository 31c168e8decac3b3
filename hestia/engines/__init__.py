"""Concrete tensor engines."""

from .sklearn_engine import LoadedEstimator, SklearnEngine

__all__ = [
    "LoadedEstimator",
    "SklearnEngine",
]
