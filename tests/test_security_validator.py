"""Unit tests for input sanitization, risk scoring and adversarial detection."""

import hashlib

import pytest

from hestia.exceptions import ValidationError
from hestia.serving import FieldRule, SecurityValidator


@pytest.fixture
def validator(config, mock_logger) -> SecurityValidator:
    return SecurityValidator(config, mock_logger)


def test_clean_input_passes_unchanged(validator):
    result = validator.validate_and_sanitize("m1", {"x": 1.5, "city": "Lisbon"})

    assert result.risk_score == 0
    assert result.data == {"x": 1.5, "city": "Lisbon"}
    assert result.actions == []


def test_script_and_sql_pattern_raise_risk(validator):
    result = validator.validate_and_sanitize(
        "m1", {"comment": "<script>alert(1)</script>DROP TABLE users"})

    assert result.risk_score == 40
    assert result.data["comment"] == "DROP TABLE users"
    assert [a.action for a in result.actions] == ["script_removed", "blocked"]


def test_nested_strings_are_sanitized(validator):
    result = validator.validate_and_sanitize(
        "m1", {"profile": {"bio": "<b>hi</b>"}, "tags": ["<i>a</i>", "b"]})

    assert result.data == {"profile": {"bio": "hi"}, "tags": ["a", "b"]}
    assert result.risk_score == 10
    assert {a.field for a in result.actions} == {"profile.bio", "tags[0]"}


def test_risk_score_is_clamped_to_100(validator):
    payload = "<script>x</script> SELECT * FROM users"
    result = validator.validate_and_sanitize("m1", {"a": payload, "b": payload, "c": payload})

    assert result.risk_score == 100


def test_non_mapping_input_is_rejected(validator):
    with pytest.raises(ValidationError):
        validator.validate_and_sanitize("m1", ["not", "an", "object"])


def test_oversized_input_is_rejected(validator):
    validator.max_input_size = 32

    with pytest.raises(ValidationError, match="exceeds maximum"):
        validator.validate_and_sanitize("m1", {"text": "x" * 100})


def test_field_rules_apply_sanitization_and_constraints(validator):
    validator.configure_validation_rules("m1", {
        "age": {"type": "number", "required": True, "constraints": {"min": 0, "max": 120}},
        "name": {"type": "string", "sanitization": ["trim", "strip_html"]},
    })

    result = validator.validate_and_sanitize("m1", {"age": 150, "name": "  <b>Bob</b> "})

    assert result.data == {"age": 150, "name": "Bob"}
    # constraint violation (+10) and html removed (+5)
    assert result.risk_score == 15


def test_missing_required_field_and_type_mismatch(validator):
    validator.configure_validation_rules("m1", {
        "age": {"type": "number", "required": True},
        "score": {"type": "number"},
    })

    result = validator.validate_and_sanitize("m1", {"score": "high"})

    assert result.risk_score == 30
    assert result.blocked_fields == ["score"]
    assert result.data["score"] is None


def test_escape_sql_step(validator):
    validator.configure_validation_rules("m1", {
        "query": {"type": "string", "sanitization": ["escape_sql"]},
    })

    result = validator.validate_and_sanitize("m1", {"query": "it's"})

    assert result.data["query"] == "it''s"
    assert result.risk_score == 2


def test_unknown_rule_type_is_rejected():
    with pytest.raises(ValidationError):
        FieldRule(type="date")


def test_rules_generated_from_schema(validator):
    rules = validator.generate_validation_rules_from_schema("m1", {
        "properties": {
            "age": {"type": "integer", "minimum": 18},
            "email": {"type": "string", "maxLength": 64},
        },
        "required": ["email"],
    })

    assert rules["age"].type == "number"
    assert rules["age"].constraints == {"min": 18}
    assert rules["email"].required is True
    assert rules["email"].sanitization == ["trim", "strip_html"]
    assert validator.get_validation_rules("m1").keys() == {"age", "email"}

    result = validator.validate_and_sanitize("m1", {"age": 12})
    # under minimum (+10) and missing required email (+10)
    assert result.risk_score == 20


def test_statistical_detection_levels(validator):
    low = validator.detect_adversarial({"x": 1.5})
    medium = validator.detect_adversarial({"x": 5_000_000.0})
    high = validator.detect_adversarial({"s": "a" * 1500})

    assert low.is_adversarial is False
    assert low.risk_level == "low"
    assert medium.score == pytest.approx(0.8)
    assert medium.is_adversarial is True
    assert medium.risk_level == "medium"
    assert high.score == 1.0
    assert high.risk_level == "high"
    assert high.suspicious_features == ["s"]


def test_reconstruction_detection_counts_missing_features(validator):
    validator.adversarial_methods = ("reconstruction",)

    detection = validator.detect_adversarial({"a": 1}, ["a", "b", "c"])

    assert detection.score == pytest.approx(0.4)
    assert detection.suspicious_features == ["b", "c"]
    assert detection.detection_method == "reconstruction"


def test_disabled_detection(validator):
    validator.adversarial_enabled = False

    detection = validator.detect_adversarial({"s": "a" * 1500})

    assert detection.is_adversarial is False
    assert detection.detection_method == "disabled"


def test_anonymize_data_hashes_named_fields(validator):
    anonymized = validator.anonymize_data({"email": "alice@example.com", "x": 1}, ["email", "missing"])

    expected = hashlib.sha256(b"test-salt:alice@example.com").hexdigest()
    assert anonymized == {"email": expected, "x": 1}


def test_audit_log_and_stats(validator):
    validator.record_audit("input_validated", "m1", {"risk_score": 10})
    validator.record_audit("security_risk_rejected", "m2", {"risk_score": 90})
    validator.record_audit("input_validated", "m1", {"risk_score": 20})

    log = validator.get_audit_log("m1")
    stats = validator.get_security_stats()

    assert [entry["details"]["risk_score"] for entry in log] == [20, 10]
    assert len(validator.get_audit_log(limit=1)) == 1
    assert stats["total_events"] == 3
    assert stats["blocked"] == 1
    assert stats["average_risk_score"] == pytest.approx(40.0)
