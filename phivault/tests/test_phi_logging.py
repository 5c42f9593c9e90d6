"""
Tests for PHI logging safety.

Verifies that:
- Sensitive fields are redacted before rendering
- PII patterns are masked in every other field
- Rendered log output of a real protect/unprotect cycle carries no plaintext
"""

import logging

import pytest
import structlog

from phivault.app.logging_config import configure_logging, redact_phi
from phivault.app.services.redaction import REDACTED, mask_pii
from phivault.tests.runtime_helpers import DOCTOR, PATIENT


@pytest.fixture
def json_logging(caplog):
    caplog.set_level(logging.DEBUG)
    configure_logging(level="DEBUG", log_format="json", force=True)
    yield caplog
    structlog.reset_defaults()


def test_sensitive_fields_are_redacted():
    event = redact_phi(
        None,
        "info",
        {"event": "record_stored", "payload": {"a": 1}, "Access_Token": "abc", "record_id": "R1"},
    )
    assert event["payload"] == REDACTED
    assert event["Access_Token"] == REDACTED
    assert event["record_id"] == "R1"


def test_other_fields_are_masked():
    event = redact_phi(
        None,
        "info",
        {"event": "contact", "note": "call 555-123-4567 or mail jo@example.com", "level": "info"},
    )
    assert event["note"] == "call XXX-XXX-XXXX or mail ***@***.***"
    assert event["level"] == "info"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SSN 123-45-6789", "SSN XXX-XX-XXXX"),
        ("card 4111 1111 1111 1111", "card XXXX-XXXX-XXXX-XXXX"),
        ("phone 555.123.4567", "phone XXX-XXX-XXXX"),
        ("no pii here", "no pii here"),
    ],
)
def test_mask_text_patterns(raw, expected):
    assert mask_pii(raw) == expected


def test_mask_nested_structures_and_names():
    masked = mask_pii(
        {"patient": {"firstName": "Ada", "ssn": "123-45-6789"}, "contacts": ["a@b.org"], "age": 40}
    )
    assert masked == {
        "patient": {"firstName": REDACTED, "ssn": "XXX-XX-XXXX"},
        "contacts": ["***@***.***"],
        "age": 40,
    }


def test_non_string_values_pass_through():
    assert mask_pii(42) == 42
    assert mask_pii(None) is None


def test_rendered_logs_carry_no_phi(json_logging):
    logger = structlog.get_logger("phivault.test")
    logger.info("intake", payload={"diagnosis": "asthma"}, note="patient SSN 123-45-6789")

    assert "asthma" not in json_logging.text
    assert "123-45-6789" not in json_logging.text
    assert REDACTED in json_logging.text


def test_protect_cycle_logs_no_plaintext(json_logging, staffed):
    secret = "rare-condition-marker-7731"
    package = staffed.protection.protect({"patientId": PATIENT, "diagnosis": secret}, DOCTOR)
    staffed.protection.unprotect(package, DOCTOR)

    assert secret not in json_logging.text
    assert "data_protected" in json_logging.text
