"""Model lifecycle enums and constants."""

from enum import Enum


class ModelStage(Enum):
    """Model version lifecycle stages."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    ARCHIVED = "archived"


class ModelStatus(Enum):
    """Model training/serving status."""
    TRAINING = "training"
    READY = "ready"
    ERROR = "error"
    ARCHIVED = "archived"


class ModelType(Enum):
    """Supported model families."""
    CLASSIFICATION = "classification"
    REGRESSION = "regression"
    CLUSTERING = "clustering"
    TIME_SERIES = "time_series"
    NLP = "nlp"


class ABTestStatus(Enum):
    """A/B test status."""
    RUNNING = "running"
    STOPPED = "stopped"


class DeploymentStrategyType(Enum):
    """Rollout strategies."""
    IMMEDIATE = "immediate"
    ROLLING = "rolling"
    CANARY = "canary"
    BLUE_GREEN = "blue_green"


class DeploymentStatus(Enum):
    """Rollout state machine states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    HEALTHY = "healthy"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states never transition again."""
        return self in (
            DeploymentStatus.HEALTHY,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.FAILED,
        )


class DriftMethod(Enum):
    """Statistical methods for drift scoring."""
    PSI = "psi"
    KS = "ks"
    CHI2 = "chi2"
    WASSERSTEIN = "wasserstein"


class JobType(Enum):
    """Job types handed to the durable job queue."""
    INCREMENTAL_UPDATE = "incremental_update"
    FULL_RETRAINING = "full_retraining"
