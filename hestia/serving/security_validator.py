"""Input sanitization, risk scoring and adversarial-sample detection.

Validation and detection are synchronous and free of side effects; the
prediction pipeline records the outcome with :meth:`SecurityValidator.record_audit`
once it has decided what to do with a request.
"""

import hashlib
import json
import re
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from hestia.config_manager import ConfigManager
from hestia.exceptions import ValidationError
from hestia.logger_service import LoggerService

DEFAULT_RISK_THRESHOLD = 70.0
DEFAULT_MAX_INPUT_SIZE = 1024 * 1024
DEFAULT_ADVERSARIAL_THRESHOLD = 0.7
DEFAULT_ADVERSARIAL_METHODS = ("statistical", "reconstruction")
MAX_RISK_SCORE = 100.0

# Risk contributions
RISK_MISSING_REQUIRED = 10
RISK_TYPE_MISMATCH = 20
RISK_HTML_REMOVED = 5
RISK_SCRIPT_REMOVED = 15
RISK_SQL_ESCAPED = 2
RISK_CONSTRAINT_VIOLATION = 10
RISK_SQL_PATTERN = 25

SCRIPT_PATTERN = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")
REPEATED_CHAR_PATTERN = re.compile(r"(.)\1{10,}")
SQL_PATTERNS = (
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER)\b", re.IGNORECASE),
    re.compile(r"UNION\s+SELECT", re.IGNORECASE),
    re.compile(r"\bOR\s+1\s*=\s*1\b", re.IGNORECASE),
)
SQL_ESCAPES = {"\\": "\\\\", "'": "''", '"': '\\"', ";": "\\;"}

FIELD_TYPES = ("string", "number", "boolean", "array", "object")
SANITIZATION_STEPS = ("trim", "lowercase", "normalize_whitespace", "strip_html", "escape_sql")

# Statistical heuristics
EXTREME_VALUE = 1_000_000
LARGE_VALUE = 10_000
MAX_DECIMAL_PLACES = 10
MAX_STRING_LENGTH = 1000
MAX_FEATURE_COUNT = 100
HIGH_RISK_SCORE = 0.8
MEDIUM_RISK_SCORE = 0.5


@dataclass
class SanitizationAction:
    """One change or finding produced while sanitizing a field."""
    field: str
    action: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "action": self.action, "reason": self.reason}


@dataclass
class SanitizationResult:
    """Sanitized input with its risk score."""
    data: dict[str, Any]
    risk_score: float
    actions: list[SanitizationAction] = field(default_factory=list)
    blocked_fields: list[str] = field(default_factory=list)

    @property
    def action_dicts(self) -> list[dict[str, str]]:
        return [action.to_dict() for action in self.actions]


@dataclass
class AdversarialDetection:
    """Combined verdict of the enabled adversarial detection methods."""
    is_adversarial: bool
    score: float
    detection_method: str
    suspicious_features: list[str] = field(default_factory=list)
    risk_level: str = "low"

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_adversarial": self.is_adversarial,
            "score": self.score,
            "detection_method": self.detection_method,
            "suspicious_features": list(self.suspicious_features),
            "risk_level": self.risk_level,
        }


@dataclass
class FieldRule:
    """Validation rule for a single input field."""
    type: str | None = None
    required: bool = False
    constraints: dict[str, Any] = field(default_factory=dict)
    sanitization: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.type is not None and self.type not in FIELD_TYPES:
            raise ValidationError(f"Unsupported field type: {self.type}")
        unknown = [step for step in self.sanitization if step not in SANITIZATION_STEPS]
        if unknown:
            raise ValidationError(f"Unsupported sanitization steps: {unknown}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FieldRule":
        return cls(
            type=data.get("type"),
            required=bool(data.get("required", False)),
            constraints=dict(data.get("constraints") or {}),
            sanitization=list(data.get("sanitization") or []),
        )


class SecurityValidator:
    """Sanitizes untrusted prediction input and scores how risky it looks."""

    def __init__(self, config: ConfigManager, logger: LoggerService) -> None:
        """Initialize the validator.

        Args:
            config: Configuration manager instance
            logger: Logger service instance
        """
        self.config = config
        self.logger = logger
        self._source_module = self.__class__.__name__

        self.risk_threshold = config.get_float("security.risk_threshold", DEFAULT_RISK_THRESHOLD)
        self.max_input_size = config.get_int("security.max_input_size", DEFAULT_MAX_INPUT_SIZE)
        self.adversarial_enabled = config.get_bool(
            "security.adversarial.enabled", default=True)
        self.adversarial_threshold = config.get_float(
            "security.adversarial.threshold", DEFAULT_ADVERSARIAL_THRESHOLD)
        self.adversarial_methods = tuple(
            config.get_list("security.adversarial.methods", list(DEFAULT_ADVERSARIAL_METHODS)))
        self._salt = config.get_secure_value("security.anonymization_salt", "hestia") or ""

        self._rules: dict[str, dict[str, FieldRule]] = {}
        self._audit_log: deque[dict[str, Any]] = deque(
            maxlen=config.get_int("security.audit_log_size", 1000))

    # Rules

    def configure_validation_rules(
        self, model_id: str, rules: Mapping[str, FieldRule | Mapping[str, Any]],
    ) -> None:
        """Replace the per-field rules of a model."""
        self._rules[model_id] = {
            name: rule if isinstance(rule, FieldRule) else FieldRule.from_mapping(rule)
            for name, rule in rules.items()
        }
        self.logger.info(
            f"Configured {len(rules)} validation rules for model {model_id}",
            source_module=self._source_module,
        )

    def generate_validation_rules_from_schema(
        self, model_id: str, schema: Mapping[str, Any],
    ) -> dict[str, FieldRule]:
        """Derive field rules from a JSON-schema style ``{"properties", "required"}`` mapping."""
        required = set(schema.get("required", []))
        rules: dict[str, FieldRule] = {}
        for name, prop in (schema.get("properties") or {}).items():
            field_type = prop.get("type")
            if field_type == "integer":
                field_type = "number"
            constraints = {
                target: prop[source]
                for source, target in (
                    ("minimum", "min"),
                    ("maximum", "max"),
                    ("minLength", "min_length"),
                    ("maxLength", "max_length"),
                    ("pattern", "pattern"),
                    ("enum", "enum"),
                )
                if source in prop
            }
            sanitization = ["trim", "strip_html"] if field_type == "string" else []
            rules[name] = FieldRule(
                type=field_type if field_type in FIELD_TYPES else None,
                required=name in required,
                constraints=constraints,
                sanitization=sanitization,
            )
        self.configure_validation_rules(model_id, rules)
        return rules

    def get_validation_rules(self, model_id: str) -> dict[str, FieldRule]:
        return dict(self._rules.get(model_id, {}))

    # Sanitization

    def validate_and_sanitize(self, model_id: str, data: Any) -> SanitizationResult:  # noqa: ANN401
        """Sanitize ``data`` and compute its risk score.

        Raises:
            ValidationError: If ``data`` is not a mapping or exceeds the size limit.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Prediction input must be an object")
        try:
            size = len(json.dumps(data, default=str).encode("utf-8"))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Prediction input is not serializable: {e}") from e
        if size > self.max_input_size:
            raise ValidationError(
                f"Input size {size} bytes exceeds maximum of {self.max_input_size} bytes",
            )

        rules = self._rules.get(model_id)
        actions: list[SanitizationAction] = []
        blocked: list[str] = []
        risk = 0.0
        sanitized: dict[str, Any] = {}

        if rules:
            for name, rule in rules.items():
                if name not in data or data[name] is None:
                    if rule.required:
                        risk += RISK_MISSING_REQUIRED
                        actions.append(
                            SanitizationAction(name, "missing_required", "required field absent"))
                    continue
                value, field_risk = self._apply_rule(name, data[name], rule, actions)
                risk += field_risk
                if value is None:
                    blocked.append(name)
                sanitized[name] = value
            for name, value in data.items():
                if name not in rules:
                    sanitized[name], field_risk = self._basic_sanitize(name, value, actions)
                    risk += field_risk
        else:
            for name, value in data.items():
                sanitized[name], field_risk = self._basic_sanitize(name, value, actions)
                risk += field_risk

        return SanitizationResult(
            data=sanitized,
            risk_score=min(MAX_RISK_SCORE, max(0.0, risk)),
            actions=actions,
            blocked_fields=blocked,
        )

    def _apply_rule(
        self,
        name: str,
        value: Any,  # noqa: ANN401
        rule: FieldRule,
        actions: list[SanitizationAction],
    ) -> tuple[Any, float]:
        if rule.type is not None and not _matches_type(value, rule.type):
            actions.append(
                SanitizationAction(name, "blocked", f"expected {rule.type}, got {type(value).__name__}"))
            return None, RISK_TYPE_MISMATCH

        risk = 0.0
        if isinstance(value, str):
            for step in rule.sanitization:
                value, step_risk = self._sanitize_step(name, value, step, actions)
                risk += step_risk

        for violation in _constraint_violations(value, rule.constraints):
            risk += RISK_CONSTRAINT_VIOLATION
            actions.append(SanitizationAction(name, "constraint_violation", violation))
        return value, risk

    def _sanitize_step(
        self, name: str, value: str, step: str, actions: list[SanitizationAction],
    ) -> tuple[str, float]:
        if step == "trim":
            return value.strip(), 0.0
        if step == "lowercase":
            return value.lower(), 0.0
        if step == "normalize_whitespace":
            return WHITESPACE_PATTERN.sub(" ", value).strip(), 0.0
        if step == "strip_html":
            risk = 0.0
            without_scripts = SCRIPT_PATTERN.sub("", value)
            if without_scripts != value:
                risk += RISK_SCRIPT_REMOVED
                actions.append(SanitizationAction(name, "script_removed", "script tag removed"))
            without_tags = HTML_TAG_PATTERN.sub("", without_scripts)
            if without_tags != without_scripts:
                risk += RISK_HTML_REMOVED
                actions.append(SanitizationAction(name, "html_removed", "html tags removed"))
            return without_tags, risk
        # escape_sql
        escaped = "".join(SQL_ESCAPES.get(char, char) for char in value)
        if escaped != value:
            actions.append(SanitizationAction(name, "sql_escaped", "special characters escaped"))
            return escaped, RISK_SQL_ESCAPED
        return value, 0.0

    def _basic_sanitize(
        self,
        path: str,
        value: Any,  # noqa: ANN401
        actions: list[SanitizationAction],
    ) -> tuple[Any, float]:
        """Sanitize every string reachable from ``value``."""
        if isinstance(value, str):
            risk = 0.0
            cleaned = SCRIPT_PATTERN.sub("", value)
            if cleaned != value:
                risk += RISK_SCRIPT_REMOVED
                actions.append(SanitizationAction(path, "script_removed", "script tag removed"))
            if any(pattern.search(cleaned) for pattern in SQL_PATTERNS):
                risk += RISK_SQL_PATTERN
                actions.append(SanitizationAction(path, "blocked", "sql injection pattern"))
            stripped = HTML_TAG_PATTERN.sub("", cleaned)
            if stripped != cleaned:
                risk += RISK_HTML_REMOVED
                actions.append(SanitizationAction(path, "html_removed", "html tags removed"))
            return stripped, risk
        if isinstance(value, Mapping):
            risk = 0.0
            cleaned_map: dict[str, Any] = {}
            for key, item in value.items():
                cleaned_map[key], item_risk = self._basic_sanitize(f"{path}.{key}", item, actions)
                risk += item_risk
            return cleaned_map, risk
        if isinstance(value, list):
            risk = 0.0
            cleaned_list: list[Any] = []
            for index, item in enumerate(value):
                cleaned_item, item_risk = self._basic_sanitize(f"{path}[{index}]", item, actions)
                cleaned_list.append(cleaned_item)
                risk += item_risk
            return cleaned_list, risk
        return value, 0.0

    # Adversarial detection

    def detect_adversarial(
        self,
        data: Mapping[str, Any],
        expected_features: Sequence[str] | None = None,
    ) -> AdversarialDetection:
        """Score ``data`` with every enabled detection method and average the scores."""
        if not self.adversarial_enabled or not self.adversarial_methods:
            return AdversarialDetection(
                is_adversarial=False, score=0.0, detection_method="disabled")

        results: list[tuple[str, float, list[str]]] = []
        for method in self.adversarial_methods:
            if method == "statistical":
                score, features = _statistical_anomalies(data)
            elif method == "gradient":
                score, features = _gradient_anomalies(data)
            elif method == "reconstruction":
                score, features = _reconstruction_anomalies(data, expected_features or ())
            else:
                continue
            results.append((method, score, features))

        if not results:
            return AdversarialDetection(
                is_adversarial=False, score=0.0, detection_method="disabled")

        avg_score = sum(score for _, score, _ in results) / len(results)
        best_method = max(results, key=lambda result: result[1])[0]
        suspicious = list(dict.fromkeys(f for _, _, features in results for f in features))
        if avg_score > HIGH_RISK_SCORE:
            risk_level = "high"
        elif avg_score > MEDIUM_RISK_SCORE:
            risk_level = "medium"
        else:
            risk_level = "low"
        return AdversarialDetection(
            is_adversarial=avg_score > self.adversarial_threshold,
            score=avg_score,
            detection_method=best_method,
            suspicious_features=suspicious,
            risk_level=risk_level,
        )

    # Privacy

    def anonymize_data(self, data: Mapping[str, Any], fields: Sequence[str]) -> dict[str, Any]:
        """Replace the named fields with a salted SHA-256 digest of their value."""
        anonymized = dict(data)
        for name in fields:
            if name in anonymized and anonymized[name] is not None:
                digest = hashlib.sha256(
                    f"{self._salt}:{anonymized[name]}".encode()).hexdigest()
                anonymized[name] = digest
        return anonymized

    # Audit

    def record_audit(
        self,
        event: str,
        model_id: str | None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        """Append an entry to the bounded in-memory audit log."""
        self._audit_log.append({
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "model_id": model_id,
            "details": dict(details or {}),
        })

    def get_audit_log(self, model_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """Latest audit entries, newest first."""
        entries = [
            entry for entry in reversed(self._audit_log)
            if model_id is None or entry["model_id"] == model_id
        ]
        return entries[:limit]

    def get_security_stats(self) -> dict[str, Any]:
        validations = [e for e in self._audit_log if "risk_score" in e["details"]]
        blocked = [e for e in self._audit_log if e["event"].endswith("rejected")]
        avg_risk = (
            sum(float(e["details"]["risk_score"]) for e in validations) / len(validations)
            if validations else 0.0
        )
        return {
            "total_events": len(self._audit_log),
            "total_validations": len(validations),
            "blocked": len(blocked),
            "average_risk_score": avg_risk,
            "risk_threshold": self.risk_threshold,
        }


def _matches_type(value: Any, field_type: str) -> bool:  # noqa: ANN401
    if field_type == "string":
        return isinstance(value, str)
    if field_type == "number":
        return isinstance(value, int | float) and not isinstance(value, bool)
    if field_type == "boolean":
        return isinstance(value, bool)
    if field_type == "array":
        return isinstance(value, list)
    return isinstance(value, Mapping)


def _constraint_violations(value: Any, constraints: Mapping[str, Any]) -> list[str]:  # noqa: ANN401
    violations: list[str] = []
    if isinstance(value, int | float) and not isinstance(value, bool):
        if "min" in constraints and value < constraints["min"]:
            violations.append(f"value {value} below minimum {constraints['min']}")
        if "max" in constraints and value > constraints["max"]:
            violations.append(f"value {value} above maximum {constraints['max']}")
    if isinstance(value, str | list):
        if "min_length" in constraints and len(value) < constraints["min_length"]:
            violations.append(f"length {len(value)} below {constraints['min_length']}")
        if "max_length" in constraints and len(value) > constraints["max_length"]:
            violations.append(f"length {len(value)} above {constraints['max_length']}")
    if isinstance(value, str) and "pattern" in constraints:
        if re.fullmatch(constraints["pattern"], value) is None:
            violations.append(f"value does not match pattern {constraints['pattern']}")
    if "enum" in constraints and value not in constraints["enum"]:
        violations.append(f"value not in {list(constraints['enum'])}")
    return violations


def _decimal_places(value: float) -> int:
    text = repr(value)
    if "e" in text or "." not in text:
        return 0
    return len(text.split(".", 1)[1])


def _statistical_anomalies(data: Mapping[str, Any]) -> tuple[float, list[str]]:
    suspicious: list[str] = []
    total = 0.0
    counted = 0
    for name, value in data.items():
        if isinstance(value, int | float) and not isinstance(value, bool):
            counted += 1
            if abs(value) > EXTREME_VALUE:
                suspicious.append(name)
                total += 0.8
            elif abs(value) > LARGE_VALUE:
                total += 0.3
            if isinstance(value, float) and _decimal_places(value) > MAX_DECIMAL_PLACES:
                suspicious.append(name)
                total += 0.5
        elif isinstance(value, str):
            counted += 1
            if len(value) > MAX_STRING_LENGTH:
                suspicious.append(name)
                total += 0.7
            if REPEATED_CHAR_PATTERN.search(value):
                suspicious.append(name)
                total += 0.6
    score = total / counted if counted else 0.0
    return min(1.0, score), suspicious


def _gradient_anomalies(data: Mapping[str, Any]) -> tuple[float, list[str]]:
    suspicious = [
        name for name, value in data.items()
        if isinstance(value, int | float) and not isinstance(value, bool)
        and abs(value) > EXTREME_VALUE
    ]
    return min(1.0, 0.8 * len(suspicious)), suspicious


def _reconstruction_anomalies(
    data: Mapping[str, Any], expected_features: Sequence[str],
) -> tuple[float, list[str]]:
    score = 0.0
    if len(data) > MAX_FEATURE_COUNT:
        score += 0.5
    missing = [name for name in expected_features if name not in data]
    score += 0.2 * len(missing)
    return min(1.0, score), missing
