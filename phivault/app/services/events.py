"""
Domain event names.

Every state-changing operation emits one event for external subscribers
(notification and monitoring pipelines). Payloads carry correlation fields
only: ids, categories, statuses and timestamps.
"""

from typing import Any, Dict

from phivault.app.db.ledger import Ledger

MEDICAL_DATA_STORED = "MedicalDataStored"
MEDICAL_DATA_ACCESSED = "MedicalDataAccessed"
MEDICAL_DATA_UPDATED = "MedicalDataUpdated"
MEDICAL_DATA_REVOKED = "MedicalDataRevoked"

DATA_PROTECTED = "DataProtected"
DATA_UNPROTECTED = "DataUnprotected"
BATCH_PROTECTED = "BatchProtected"
DATA_SHARED = "DataShared"
PACKAGE_REVOKED = "PackageRevoked"

RSA_KEY_PAIR_GENERATED = "RSAKeyPairGenerated"
SYMMETRIC_KEY_GENERATED = "SymmetricKeyGenerated"
SYMMETRIC_KEY_ROTATED = "SymmetricKeyRotated"
KEY_REVOKED = "KeyRevoked"

CONSENT_GRANTED = "ConsentGranted"
CONSENT_REVOKED = "ConsentRevoked"
CONSENT_EXPIRED = "ConsentExpired"
EMERGENCY_ACCESS_GRANTED = "EmergencyAccessGranted"

ROLE_ASSIGNED = "RoleAssigned"
ROLE_REVOKED = "RoleRevoked"
PERMISSION_OVERRIDE_SET = "PermissionOverrideSet"
APPROVAL_REQUESTED = "ApprovalRequested"
APPROVAL_RECORDED = "ApprovalRecorded"
APPROVAL_EXECUTED = "ApprovalExecuted"


def emit(ledger: Ledger, name: str, **fields: Any) -> Dict[str, Any]:
    """Queue an event with a timestamp; delivered when the transaction commits."""
    payload = dict(fields)
    payload.setdefault("timestamp", ledger.clock.now_iso())
    return ledger.set_event(name, payload)
