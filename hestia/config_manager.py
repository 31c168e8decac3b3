"""Configuration for the Hestia model serving orchestrator.

Settings live in one YAML document with a section per concern (``database``,
``security``, ``model_pool``, ``prediction``, ``drift``, ``deployment``, ``health``,
``logging``). Secrets such as the database URL or the anonymization salt may come
from environment variables instead of the file.

Nothing watches the file; call :meth:`ConfigManager.reload_config` to pick up edits.
"""

import logging
import operator
import os
from functools import reduce
from pathlib import Path
from typing import Any

import yaml

SUPPORTED_DRIFT_METHODS = ("psi", "ks", "chi2", "wasserstein")
SUPPORTED_ADVERSARIAL_METHODS = ("statistical", "gradient", "reconstruction")

_TRUTHY = frozenset({"true", "1", "yes", "on"})


class ConfigManager:
    """Read-mostly view over the orchestrator's YAML settings."""

    _MAX_RISK_SCORE = 100.0
    _MIN_ENV_KEY_PARTS = 2

    def __init__(
        self,
        config_path: str | Path = "config/config.yaml",
        logger_service: logging.Logger | None = None,
    ) -> None:
        """Load and validate the settings file.

        Invalid settings are logged, not raised; callers check :meth:`is_valid`.

        Args:
            config_path: YAML settings file.
            logger_service: Logger to report loading problems to.
        """
        self._path = Path(config_path).resolve()
        self._config: dict[str, Any] | None = None
        self.validation_errors: list[str] = []
        self._logger: logging.Logger = logger_service or logging.getLogger(__name__)

        self._logger.info("Loading Hestia settings from %s", self._path)
        self.load_config()
        self.validation_errors = self.validate_configuration()
        if self.validation_errors:
            self._logger.error(
                "Hestia settings are invalid: %s", "; ".join(self.validation_errors))

    def load_config(self) -> None:
        """(Re)read the YAML file; any read or parse problem leaves an empty config."""
        self._config = {}
        if not self._path.exists():
            self._logger.error("Settings file %s does not exist", self._path)
            return
        try:
            with self._path.open("r") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError:
            self._logger.exception("Settings file %s is not valid YAML", self._path)
            return
        except OSError:
            self._logger.exception("Settings file %s could not be read", self._path)
            return

        if loaded is None:
            return
        if not isinstance(loaded, dict):
            self._logger.error(
                "Settings file %s must hold a mapping at the top level, got %s",
                self._path,
                type(loaded).__name__,
            )
            return
        self._config = loaded
        self._logger.info("Loaded %d settings sections from %s", len(loaded), self._path)

    def get(self, key: str, default: Any | None = None) -> Any:  # noqa: ANN401
        """Look up a dotted key such as ``model_pool.max_size``.

        Args:
        ----
            key: Dotted path into the settings document.
            default: Returned when any segment of the path is missing.

        Returns:
        -------
            The stored value, or ``default``.
        """
        if self._config is None:
            return default
        try:
            return reduce(operator.getitem, key.split("."), self._config)
        except (KeyError, TypeError):
            # Missing segment, or a segment that is not a mapping
            return default

    def _coerce(self, key: str, default: Any, cast: type) -> Any:  # noqa: ANN401
        value = self.get(key, default)
        try:
            return cast(value)
        except (ValueError, TypeError):
            self._logger.warning(
                "Setting %s=%r is not a valid %s; using %r",
                key,
                value,
                cast.__name__,
                default,
            )
            return default

    def get_int(self, key: str, default: int = 0) -> int:
        return self._coerce(key, default, int)

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._coerce(key, default, float)

    def get_bool(self, key: str, *, default: bool = False) -> bool:
        """Booleans pass through; strings such as ``"yes"`` or ``"off"`` are parsed."""
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)

    def get_list(self, key: str, default: list[Any] | None = None) -> list[Any]:
        value = self.get(key)
        return value if isinstance(value, list) else list(default or [])

    def get_dict(self, key: str, default: dict | None = None) -> dict:
        value = self.get(key)
        return value if isinstance(value, dict) else dict(default or {})

    def validate_configuration(self) -> list[str]:
        """Validate the loaded configuration and return a list of errors."""
        errors: list[str] = []
        if self._config is None or not isinstance(self._config, dict):
            errors.append("Configuration could not be loaded or is not a valid dictionary")
            return errors

        self._validate_database_section(errors)
        self._validate_security_section(errors)
        self._validate_serving_sections(errors)
        self._validate_drift_section(errors)
        self._validate_deployment_section(errors)

        return errors

    def _validate_database_section(self, errors: list[str]) -> None:
        """Validate the database configuration section."""
        database = self.get("database", {})
        if not isinstance(database, dict):
            errors.append("'database' section must be a dictionary")
            return
        url = database.get("url")
        if url is not None and (not isinstance(url, str) or "://" not in url):
            errors.append("'database.url' must be a SQLAlchemy URL such as 'sqlite+aiosqlite:///...'")

    def _validate_security_section(self, errors: list[str]) -> None:
        """Validate the security configuration section."""
        security = self.get("security", {})
        if not isinstance(security, dict):
            errors.append("'security' section must be a dictionary")
            return

        risk_threshold = security.get("risk_threshold")
        if risk_threshold is not None:
            try:
                value = float(risk_threshold)
                if not 0 <= value <= self._MAX_RISK_SCORE:
                    errors.append("'security.risk_threshold' must be between 0 and 100")
            except (ValueError, TypeError):
                errors.append("'security.risk_threshold' must be a valid number")

        max_input = security.get("max_input_size")
        if max_input is not None and (not isinstance(max_input, int) or max_input <= 0):
            errors.append("'security.max_input_size' must be a positive integer")

        adversarial = security.get("adversarial", {})
        if not isinstance(adversarial, dict):
            errors.append("'security.adversarial' section must be a dictionary")
            return
        threshold = adversarial.get("threshold")
        if threshold is not None:
            try:
                if not 0 <= float(threshold) <= 1:
                    errors.append("'security.adversarial.threshold' must be between 0 and 1")
            except (ValueError, TypeError):
                errors.append("'security.adversarial.threshold' must be a valid number")
        errors.extend(
            f"Unknown adversarial detection method: '{method}'"
            for method in adversarial.get("methods", []) or []
            if method not in SUPPORTED_ADVERSARIAL_METHODS
        )

    def _validate_serving_sections(self, errors: list[str]) -> None:
        """Validate model pool, prediction and incremental learning settings."""
        positive_ints = [
            "model_pool.max_size",
            "model_pool.load_retries",
            "model_pool.unhealthy_after_failures",
            "prediction.max_batch_size",
            "incremental_learning.update_frequency",
            "incremental_learning.epochs",
        ]
        for key in positive_ints:
            value = self.get(key)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                errors.append(f"'{key}' must be a positive integer")

    def _validate_drift_section(self, errors: list[str]) -> None:
        """Validate the drift detection defaults."""
        drift = self.get("drift", {})
        if not isinstance(drift, dict):
            errors.append("'drift' section must be a dictionary")
            return
        method = drift.get("method")
        if method is not None and method not in SUPPORTED_DRIFT_METHODS:
            errors.append(
                f"'drift.method' must be one of {', '.join(SUPPORTED_DRIFT_METHODS)}",
            )
        threshold = drift.get("threshold")
        if threshold is not None:
            try:
                if float(threshold) <= 0:
                    errors.append("'drift.threshold' must be greater than 0")
            except (ValueError, TypeError):
                errors.append("'drift.threshold' must be a valid number")

    def _validate_deployment_section(self, errors: list[str]) -> None:
        """Validate the deployment section."""
        deployment = self.get("deployment", {})
        if not isinstance(deployment, dict):
            errors.append("'deployment' section must be a dictionary")
            return
        interval = deployment.get("poll_interval_seconds")
        if interval is not None:
            try:
                if float(interval) < 0:
                    errors.append("'deployment.poll_interval_seconds' must not be negative")
            except (ValueError, TypeError):
                errors.append("'deployment.poll_interval_seconds' must be a valid number")


    def reload_config(self) -> list[str]:
        """Re-read the settings file, keeping the current settings if the new ones are invalid.

        Returns:
            Validation errors of the new file; empty when it was applied.
        """
        previous = self._config
        self.load_config()
        errors = self.validate_configuration()
        if errors:
            self._config = previous
            self._logger.error(
                "Reloaded settings rejected, keeping the previous ones: %s", "; ".join(errors))
            return errors

        self.validation_errors = []
        self._logger.info("Settings reloaded from %s", self._path)
        return []

    def is_valid(self) -> bool:
        return not self.validation_errors

    def get_secure_value(self, key: str, default: str | None = None) -> str | None:
        """Resolve a secret from the settings file or the environment.

        ``security.anonymization_salt`` is looked up as the setting itself, then
        ``SECURITY_ANONYMIZATION_SALT``. Keys nested deeper than two levels also
        try ``<FIRST>_<LAST>`` (``a.b.c`` -> ``A_C``).
        """
        configured = self.get(key)
        if configured:
            return str(configured)

        parts = key.split(".")
        candidates = ["_".join(parts).upper()]
        if len(parts) > self._MIN_ENV_KEY_PARTS:
            candidates.append(f"{parts[0]}_{parts[-1]}".upper())
        for env_key in candidates:
            value = os.getenv(env_key)
            if value:
                return value
        return default
