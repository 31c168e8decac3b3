"""Standard exceptions for the Hestia model serving orchestrator."""

from typing import Any


class HestiaError(Exception):
    """Base class for Hestia specific errors."""


class SetupError(HestiaError):
    """Base class for errors during application setup."""


class DependencyMissingError(SetupError):
    """Errors when a required collaborator is unavailable for a setup step."""

    def __init__(self, component: str, dependency: str, message: str | None = None) -> None:
        """Initialize DependencyMissingError.

        Args:
            component: The component that has a missing dependency
            dependency: The name of the missing dependency
            message: Optional custom error message
        """
        self.component = component
        self.dependency = dependency
        if message is None:
            message = (
                f"Dependency '{dependency}' is missing or "
                f"unavailable for component '{component}'."
            )
        super().__init__(message)


class ConfigurationError(SetupError):
    """Exception raised for errors in the configuration."""


class OperationalError(HestiaError):
    """Base class for errors during application operation."""


class ValidationError(OperationalError, ValueError):
    """Malformed request or value outside of its accepted range."""


class SecurityRiskError(OperationalError):
    """Input rejected because its sanitization risk score is too high."""

    def __init__(
        self,
        risk_score: float,
        threshold: float,
        actions: list[dict[str, Any]] | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize SecurityRiskError.

        Args:
            risk_score: The computed risk score (0-100)
            threshold: The threshold the score exceeded
            actions: Sanitization actions that contributed to the score
            message: Optional custom error message
        """
        self.risk_score = risk_score
        self.threshold = threshold
        self.actions = actions or []
        if message is None:
            message = f"Input rejected: risk score {risk_score:.1f} exceeds {threshold:.1f}"
        super().__init__(message)


class AdversarialInputError(OperationalError):
    """Input rejected because it was classified as a high-risk adversarial sample."""

    def __init__(self, detection: dict[str, Any], message: str | None = None) -> None:
        """Initialize AdversarialInputError.

        Args:
            detection: Serialized adversarial detection result
            message: Optional custom error message
        """
        self.detection = detection
        if message is None:
            message = (
                "Input rejected: adversarial sample detected "
                f"(score={detection.get('score', 0.0):.2f}, "
                f"risk_level={detection.get('risk_level')})"
            )
        super().__init__(message)


class NotFoundError(OperationalError, LookupError):
    """A model, version, prediction, test or deployment does not exist."""

    def __init__(self, entity: str, identifier: str, message: str | None = None) -> None:
        """Initialize NotFoundError."""
        self.entity = entity
        self.identifier = identifier
        if message is None:
            message = f"{entity} not found: {identifier}"
        super().__init__(message)


class InvalidStateError(OperationalError):
    """Operation is not valid for the current lifecycle state."""


class DuplicateVersionError(OperationalError):
    """A (model, version) pair is already registered."""

    def __init__(self, model_id: str, version: str) -> None:
        """Initialize DuplicateVersionError."""
        self.model_id = model_id
        self.version = version
        super().__init__(f"Version '{version}' already registered for model {model_id}")


class DuplicateTestError(OperationalError):
    """An A/B test with the same identifier already exists."""

    def __init__(self, test_id: str) -> None:
        """Initialize DuplicateTestError."""
        self.test_id = test_id
        super().__init__(f"A/B test already exists: {test_id}")


class ModelLoadError(OperationalError):
    """Model artifact could not be loaded after the configured retries."""

    def __init__(
        self,
        model_id: str,
        version: str,
        attempts: int,
        message: str | None = None,
    ) -> None:
        """Initialize ModelLoadError.

        Args:
            model_id: Model whose artifact failed to load
            version: Version that was requested
            attempts: Number of load attempts made
            message: Optional custom error message
        """
        self.model_id = model_id
        self.version = version
        self.attempts = attempts
        if message is None:
            message = (
                f"Failed to load model {model_id} version {version} "
                f"after {attempts} attempt(s)"
            )
        super().__init__(message)


class DeploymentFailure(OperationalError):
    """A rollout reached a terminal failure."""

    def __init__(
        self,
        deployment_id: str,
        reason: str,
        health_checks: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize DeploymentFailure.

        Args:
            deployment_id: Identifier of the failed deployment
            reason: Human readable failure reason
            health_checks: Full probe history of the rollout
        """
        self.deployment_id = deployment_id
        self.reason = reason
        self.health_checks = health_checks or []
        super().__init__(f"Deployment {deployment_id} failed: {reason}")


class InsufficientSamplesError(OperationalError):
    """An A/B test was evaluated before every arm reached its minimum sample count."""

    def __init__(self, test_id: str, counts: dict[str, int], min_samples: int) -> None:
        """Initialize InsufficientSamplesError."""
        self.test_id = test_id
        self.counts = counts
        self.min_samples = min_samples
        super().__init__(
            f"A/B test {test_id} has insufficient samples {counts} (minimum {min_samples})",
        )


class PermissionDeniedError(OperationalError):
    """The caller lacks the permission required for a destructive operation."""

    def __init__(self, user_id: str, permission: str) -> None:
        """Initialize PermissionDeniedError."""
        self.user_id = user_id
        self.permission = permission
        super().__init__(f"User {user_id} lacks permission '{permission}'")


class ConcurrentUpdateError(OperationalError):
    """A conditional write kept losing to concurrent writers."""

