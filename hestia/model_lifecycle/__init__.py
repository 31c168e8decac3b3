"""Model lifecycle management components."""

from .deployment import (
    BlueGreenStrategy,
    CanaryStrategy,
    DeploymentOrchestrator,
    HealthCheckConfig,
    ImmediateStrategy,
    RollbackPolicy,
    RollbackTrigger,
    RollingStrategy,
)
from .enums import (
    ABTestStatus,
    DeploymentStatus,
    DeploymentStrategyType,
    DriftMethod,
    ModelStage,
    ModelStatus,
    ModelType,
)
from .experiment_manager import ArmTarget, ExperimentManager
from .feedback import FeedbackService
from .health_probes import CallableHealthProbe, HttpHealthProbe, TcpHealthProbe
from .incremental_learning import IncrementalLearningTrigger, IncrementalSettings
from .registry import ModelRegistry

__all__ = [
    "ABTestStatus",
    "ArmTarget",
    "BlueGreenStrategy",
    "CallableHealthProbe",
    "CanaryStrategy",
    "DeploymentOrchestrator",
    "DeploymentStatus",
    "DeploymentStrategyType",
    "DriftMethod",
    "ExperimentManager",
    "FeedbackService",
    "HealthCheckConfig",
    "HttpHealthProbe",
    "ImmediateStrategy",
    "IncrementalLearningTrigger",
    "IncrementalSettings",
    "ModelRegistry",
    "ModelStage",
    "ModelStatus",
    "ModelType",
    "RollbackPolicy",
    "RollbackTrigger",
    "RollingStrategy",
    "TcpHealthProbe",
]
