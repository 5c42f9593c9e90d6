"""
Patient consent and emergency access.

A consent is a patient-authorized, time-bounded grant of read access to one
grantee for one data category. Per (patient, grantee, category) the state
machine is:

    none -> active -> revoked | expired      (terminal)

A consent is never reactivated; granting again creates a new consent id.
A consent past its expiry stops granting access immediately, before any
cleanup sweep flips its flag.

Emergency access bypasses consent. It requires the EMERGENCY_RESPONDER role
AND an explicit, unexpired emergency record for the patient, bound to a
reason. Holding the role alone is not enough.

Ledger layout:
    CONSENT~{consent_id}
    EMERGENCY~{access_id}
    index patient-consents   (patient_id, consent_id)
    index grantee-consents   (grantee_id, consent_id)
    index consent-pair       (patient_id, grantee_id, consent_id)
    index emergency-access   (patient_id, accessor_id, access_id)
"""

import json
from datetime import timedelta
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import (
    AccessDeniedError,
    DuplicateConsentError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    RoleMismatchError,
)
from phivault.app.services import events
from phivault.app.services.access_control import HEALTHCARE_ROLES, AccessControlMatrix, Role
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.clock import format_utc, parse_utc
from phivault.app.services.hashing import hash_data
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)

CONSENT_PREFIX = "CONSENT~"
CONSENT_SEQ_PREFIX = "CONSENT_SEQ~"
EMERGENCY_PREFIX = "EMERGENCY~"
PATIENT_INDEX = "patient-consents"
GRANTEE_INDEX = "grantee-consents"
PAIR_INDEX = "consent-pair"
EMERGENCY_INDEX = "emergency-access"


class DataCategory(IntEnum):
    GENERAL_INFO = 0
    LAB_RESULTS = 1
    IMAGING = 2
    PRESCRIPTIONS = 3
    MENTAL_HEALTH = 4
    FULL_RECORD = 5


def parse_category(value: Any) -> DataCategory:
    if isinstance(value, bool):
        raise InvalidInputError("Invalid data category", {"data_category": str(value)})
    if isinstance(value, str):
        if value.isdigit():
            value = int(value)
        elif value.upper() in DataCategory.__members__:
            return DataCategory[value.upper()]
    try:
        return DataCategory(value)
    except (ValueError, TypeError):
        raise InvalidInputError("Invalid data category", {"data_category": str(value)})


class ConsentRegistry:
    def __init__(
        self,
        ledger: Ledger,
        audit: AuditLog,
        access_control: AccessControlMatrix,
        settings: ProtectionSettings = None,
        clock=None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.access_control = access_control
        self.settings = settings or ProtectionSettings()
        self.clock = clock or ledger.clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, consent_id: str) -> Dict[str, Any]:
        record = self.ledger.get_json(CONSENT_PREFIX + consent_id) if consent_id else None
        if record is None:
            raise NotFoundError("Consent not found", {"consent_id": consent_id})
        return record

    def _save(self, record: Dict[str, Any]) -> None:
        self.ledger.put_json(CONSENT_PREFIX + record["consent_id"], record)

    def _is_expired(self, record: Dict[str, Any]) -> bool:
        return parse_utc(record["expires_at"]) <= self.clock.now()

    def is_valid(self, record: Dict[str, Any]) -> bool:
        """Active and not past expiry."""
        return bool(record["is_active"]) and not self._is_expired(record)

    def status(self, record: Dict[str, Any]) -> str:
        if record["is_active"]:
            return "expired" if self._is_expired(record) else "active"
        return record.get("termination_reason") or "revoked"

    def _view(self, record: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(record)
        view["status"] = self.status(record)
        return view

    def _pair_consents(self, patient_id: str, grantee_id: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(PAIR_INDEX, [patient_id, grantee_id])
        return [self._load(consent_id) for _, consent_id in rows]

    def _next_sequence(self, patient_id: str) -> int:
        key = CONSENT_SEQ_PREFIX + patient_id
        sequence = int(self.ledger.get_state(key) or 0) + 1
        self.ledger.put_state(key, str(sequence))
        return sequence

    # ------------------------------------------------------------------
    # Consent lifecycle
    # ------------------------------------------------------------------

    def grant_consent(
        self,
        patient_id: str,
        grantee_id: str,
        data_category: Any,
        duration_seconds: float,
        purpose: str,
        allow_sub_access: bool = False,
    ) -> Dict[str, Any]:
        """
        Grant a grantee time-bounded access to one category of a patient's data.

        Args:
            patient_id: Patient granting consent (must hold PATIENT)
            grantee_id: Recipient (must hold a healthcare role)
            data_category: DataCategory value or name
            duration_seconds: Lifetime, in (0, 365 days]
            purpose: Why access is granted (required)
            allow_sub_access: Whether the grantee may delegate

        Returns:
            The new consent record

        Raises:
            RoleMismatchError: Patient lacks PATIENT or grantee lacks a healthcare role
            InvalidInputError: Self-grant, bad duration, category or purpose
            DuplicateConsentError: An active consent for the same
                (patient, grantee, category) exists
        """
        with self.ledger.transaction(), self.audit.audited(
            patient_id or "",
            "CONSENT_GRANT",
            "consent",
            role=Role.PATIENT.value,
            details={"grantee_id": grantee_id},
        ) as scope:
            if not patient_id or not grantee_id:
                raise InvalidInputError("Patient and grantee are required")
            if not self.access_control.has_role(patient_id, Role.PATIENT):
                raise RoleMismatchError("Only patients can grant consent", {"patient_id": patient_id})
            if grantee_id == patient_id:
                raise InvalidInputError("Patients cannot grant consent to themselves")
            if (
                isinstance(duration_seconds, bool)
                or not isinstance(duration_seconds, (int, float))
                or duration_seconds <= 0
                or duration_seconds > self.settings.max_consent_seconds
            ):
                raise InvalidInputError(
                    "Consent duration must be greater than zero and at most 365 days"
                )
            category = parse_category(data_category)
            scope.details["data_category"] = category.name
            if not isinstance(purpose, str) or not purpose.strip():
                raise InvalidInputError("Consent purpose is required")
            grantee_roles = set(self.access_control.get_roles(grantee_id))
            if not grantee_roles & HEALTHCARE_ROLES:
                raise RoleMismatchError(
                    "Grantee does not hold a recognized healthcare role", {"grantee_id": grantee_id}
                )

            for existing in self._pair_consents(patient_id, grantee_id):
                if existing["data_category"] == category.value and self.is_valid(existing):
                    raise DuplicateConsentError(
                        "An active consent already exists",
                        {"consent_id": existing["consent_id"]},
                    )

            now = self.clock.now()
            granted_at = format_utc(now)
            consent_id = "CNS_" + hash_data(
                {
                    "patient_id": patient_id,
                    "grantee_id": grantee_id,
                    "data_category": category.value,
                    "purpose": purpose,
                    "duration_seconds": duration_seconds,
                    "granted_at": granted_at,
                    "sequence": self._next_sequence(patient_id),
                }
            )[:32]
            scope.target_resource = consent_id

            record = {
                "consent_id": consent_id,
                "patient_id": patient_id,
                "grantee_id": grantee_id,
                "data_category": category.value,
                "data_category_name": category.name,
                "granted_at": granted_at,
                "expires_at": format_utc(now + timedelta(seconds=duration_seconds)),
                "is_active": True,
                "purpose": purpose,
                "allow_sub_access": bool(allow_sub_access),
                "revoked_at": None,
                "termination_reason": None,
            }
            self._save(record)
            for index, attributes in (
                (PATIENT_INDEX, [patient_id, consent_id]),
                (GRANTEE_INDEX, [grantee_id, consent_id]),
                (PAIR_INDEX, [patient_id, grantee_id, consent_id]),
            ):
                self.ledger.put_state(Ledger.create_composite_key(index, attributes), consent_id)

            events.emit(
                self.ledger,
                events.CONSENT_GRANTED,
                consent_id=consent_id,
                patient_id=patient_id,
                grantee_id=grantee_id,
                data_category=category.value,
                expires_at=record["expires_at"],
            )

        logger.info("consent_granted", consent_id=consent_id, data_category=category.name)
        return self._view(record)

    def revoke_consent(self, consent_id: str, requester_id: str) -> Dict[str, Any]:
        """
        Revoke an active consent. Only the patient who granted it may revoke.

        Raises:
            NotFoundError, AccessDeniedError, InvalidStateError (already inactive)
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id or "", "CONSENT_REVOKE", consent_id or ""
        ):
            record = self._load(consent_id)
            if record["patient_id"] != requester_id:
                raise AccessDeniedError(
                    "Only the patient can revoke this consent", {"consent_id": consent_id}
                )
            if not record["is_active"]:
                raise InvalidStateError("Consent is no longer active", {"consent_id": consent_id})

            record["is_active"] = False
            record["revoked_at"] = self.clock.now_iso()
            record["termination_reason"] = "revoked"
            self._save(record)
            events.emit(
                self.ledger,
                events.CONSENT_REVOKED,
                consent_id=consent_id,
                patient_id=record["patient_id"],
                grantee_id=record["grantee_id"],
            )
        return self._view(record)

    def cleanup_expired_consents(
        self, consent_ids: Optional[Sequence[str]] = None, requester_id: str = "system"
    ) -> Dict[str, Any]:
        """
        Flip every listed consent that is past expiry to inactive.

        Idempotent and safe for anyone to call: the transition is one-way.
        With no ids, every consent in the registry is swept. One audit entry
        per call; one ConsentExpired event per consent flipped.
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id, "CONSENT_CLEANUP", "consent"
        ) as scope:
            if consent_ids is None:
                records = [json.loads(raw) for _, raw in self.ledger.scan_prefix(CONSENT_PREFIX)]
                unknown = []
            else:
                records, unknown = [], []
                for consent_id in consent_ids:
                    record = self.ledger.get_json(CONSENT_PREFIX + consent_id)
                    if record is None:
                        unknown.append(consent_id)
                    else:
                        records.append(record)

            expired = []
            now_iso = self.clock.now_iso()
            for record in records:
                if record["is_active"] and self._is_expired(record):
                    record["is_active"] = False
                    record["termination_reason"] = "expired"
                    record["expired_at"] = now_iso
                    self._save(record)
                    expired.append(record["consent_id"])
                    events.emit(
                        self.ledger,
                        events.CONSENT_EXPIRED,
                        consent_id=record["consent_id"],
                        patient_id=record["patient_id"],
                        grantee_id=record["grantee_id"],
                    )

            scope.details.update({"expired": expired, "count": len(expired), "not_found": unknown})

        return {"expired": expired, "count": len(expired), "not_found": unknown}

    # ------------------------------------------------------------------
    # Emergency access
    # ------------------------------------------------------------------

    def grant_emergency_access(
        self,
        accessor_id: str,
        patient_id: str,
        reason: str,
        duration_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Open a time-boxed emergency grant for a patient's records.

        Raises:
            RoleMismatchError: Accessor does not hold EMERGENCY_RESPONDER
            InvalidInputError: Missing patient or reason, duration outside (0, 24h]
        """
        if duration_seconds is None:
            duration_seconds = self.settings.max_emergency_seconds

        with self.ledger.transaction(), self.audit.audited(
            accessor_id or "",
            "EMERGENCY_ACCESS_GRANT",
            patient_id or "",
            role=Role.EMERGENCY_RESPONDER.value,
        ) as scope:
            if not patient_id:
                raise InvalidInputError("Patient id is required")
            if not self.access_control.has_role(accessor_id, Role.EMERGENCY_RESPONDER):
                raise RoleMismatchError(
                    "Emergency access requires the emergency responder role",
                    {"accessor_id": accessor_id},
                )
            if not isinstance(reason, str) or not reason.strip():
                raise InvalidInputError("An emergency reason is required")
            if (
                isinstance(duration_seconds, bool)
                or not isinstance(duration_seconds, (int, float))
                or duration_seconds <= 0
                or duration_seconds > self.settings.max_emergency_seconds
            ):
                raise InvalidInputError("Emergency access lasts at most 24 hours")

            now = self.clock.now()
            granted_at = format_utc(now)
            access_id = "EMG_" + hash_data(
                {"patient_id": patient_id, "accessor_id": accessor_id, "granted_at": granted_at, "reason": reason}
            )[:32]
            record = {
                "access_id": access_id,
                "patient_id": patient_id,
                "accessor_id": accessor_id,
                "reason": reason,
                "granted_at": granted_at,
                "expires_at": format_utc(now + timedelta(seconds=duration_seconds)),
                "used": False,
                "used_at": None,
            }
            self.ledger.put_json(EMERGENCY_PREFIX + access_id, record)
            self.ledger.put_state(
                Ledger.create_composite_key(EMERGENCY_INDEX, [patient_id, accessor_id, access_id]),
                access_id,
            )
            scope.details["access_id"] = access_id
            events.emit(
                self.ledger,
                events.EMERGENCY_ACCESS_GRANTED,
                access_id=access_id,
                patient_id=patient_id,
                accessor_id=accessor_id,
                expires_at=record["expires_at"],
            )

        logger.warning("emergency_access_granted", access_id=access_id)
        return record

    def _active_emergency_record(self, patient_id: str, accessor_id: str) -> Optional[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(
            EMERGENCY_INDEX, [patient_id, accessor_id]
        )
        now = self.clock.now()
        for _, access_id in rows:
            record = self.ledger.get_json(EMERGENCY_PREFIX + access_id)
            if record and parse_utc(record["expires_at"]) > now:
                return record
        return None

    # ------------------------------------------------------------------
    # Access decision
    # ------------------------------------------------------------------

    def has_data_access(self, patient_id: str, accessor_id: str, data_category: Any) -> bool:
        """
        Decide whether an accessor may read a category of a patient's data.

        Decision order:
        1. accessor holds EMERGENCY_RESPONDER and has an unexpired emergency
           record for this patient (the record is marked used)
        2. an active, unexpired consent for the category or FULL_RECORD

        Always audited.
        """
        with self.ledger.transaction(), self.audit.audited(
            accessor_id or "", "DATA_ACCESS_CHECK", patient_id or ""
        ) as scope:
            category = parse_category(data_category)
            scope.details["data_category"] = category.name
            granted, basis = False, "no_consent"

            if self.access_control.has_role(accessor_id, Role.EMERGENCY_RESPONDER):
                emergency = self._active_emergency_record(patient_id, accessor_id)
                if emergency is not None:
                    if not emergency["used"]:
                        emergency["used"] = True
                        emergency["used_at"] = self.clock.now_iso()
                        self.ledger.put_json(EMERGENCY_PREFIX + emergency["access_id"], emergency)
                    granted, basis = True, "emergency"
                    scope.details["access_id"] = emergency["access_id"]

            if not granted:
                for consent in self._pair_consents(patient_id, accessor_id):
                    if not self.is_valid(consent):
                        continue
                    if consent["data_category"] in (category.value, DataCategory.FULL_RECORD.value):
                        granted, basis = True, "consent"
                        scope.details["consent_id"] = consent["consent_id"]
                        break

            scope.details["basis"] = basis
            if not granted:
                scope.success = False
                scope.error_code = AccessDeniedError.error_code
        return granted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _listed(self, index: str, owner_id: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(index, [owner_id])
        return [self._view(self._load(consent_id)) for _, consent_id in rows]

    def get_consent(self, consent_id: str) -> Dict[str, Any]:
        return self._view(self._load(consent_id))

    def get_patient_consents(self, patient_id: str, requester_id: str) -> List[Dict[str, Any]]:
        """Consents a patient has granted; visible to the patient and administrators."""
        with self.audit.audited(requester_id or "", "CONSENT_LIST_PATIENT", patient_id or "") as scope:
            if requester_id != patient_id and not self.access_control.has_role(requester_id, Role.ADMIN):
                raise AccessDeniedError("Not allowed to list these consents", {"patient_id": patient_id})
            consents = self._listed(PATIENT_INDEX, patient_id)
            scope.details["count"] = len(consents)
        return consents

    def get_grantee_consents(self, grantee_id: str, requester_id: str) -> List[Dict[str, Any]]:
        """Consents held by a grantee; visible to the grantee and administrators."""
        with self.audit.audited(requester_id or "", "CONSENT_LIST_GRANTEE", grantee_id or "") as scope:
            if requester_id != grantee_id and not self.access_control.has_role(requester_id, Role.ADMIN):
                raise AccessDeniedError("Not allowed to list these consents", {"grantee_id": grantee_id})
            consents = self._listed(GRANTEE_INDEX, grantee_id)
            scope.details["count"] = len(consents)
        return consents
