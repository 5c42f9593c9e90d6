"""
PII masking.

Used on anything that may leave the core in readable form: log events and
record summaries. Masking works on the JSON text so nested structures are
covered without walking them by hand.
"""

import json
import re
from typing import Any

REDACTED = "REDACTED"

_PII_PATTERNS = [
    # Card numbers first so the phone/SSN patterns don't eat their groups.
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "XXXX-XXXX-XXXX-XXXX"),
    (re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"), "XXX-XX-XXXX"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "XXX-XXX-XXXX"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "***@***.***"),
]

NAME_FIELDS = (
    "name",
    "firstName",
    "lastName",
    "first_name",
    "last_name",
    "patientName",
    "patient_name",
    "doctorName",
    "doctor_name",
    "physicianName",
    "physician_name",
)

_NAME_PATTERN = re.compile(
    r'("(?:%s)"\s*:\s*)"(?:[^"\\]|\\.)*"' % "|".join(NAME_FIELDS), re.IGNORECASE
)


def mask_text(text: str) -> str:
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_pii(data: Any) -> Any:
    """
    Mask SSNs, phone numbers, e-mail addresses, card numbers and name fields.

    Strings are masked directly; dicts and lists are masked through their
    JSON form and returned as the same structure. Other values are returned
    unchanged.
    """
    if isinstance(data, str):
        return mask_text(data)
    if not isinstance(data, (dict, list)):
        return data

    masked = mask_text(json.dumps(data, ensure_ascii=False))
    masked = _NAME_PATTERN.sub(lambda m: f'{m.group(1)}"{REDACTED}"', masked)
    return json.loads(masked)
