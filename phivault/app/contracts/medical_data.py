"""
Ledger-facing operations for medical records.

A medical record is a thin ledger entry pointing at the protected package
that holds its sealed payload. Record summaries returned from here carry
metadata and the record-local audit trail, never ciphertext or plaintext.

Ledger layout:
    CONTRACT_INIT
    RECORD~{record_id}
    index patient-records  (patient_id, record_id)
    index provider-records (provider_id, record_id)
"""

import json
from typing import Any, Dict, List, Optional, Union

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import (
    AccessDeniedError,
    DuplicateEntityError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from phivault.app.services import events
from phivault.app.services.access_control import (
    ROLE_PRECEDENCE,
    AccessControlMatrix,
    Permission,
    ResourceClass,
    Role,
    role_allows,
)
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.consent_registry import DataCategory, parse_category
from phivault.app.services.data_protection import DataProtectionOrchestrator
from phivault.app.services.hashing import fingerprint
from phivault.app.services.redaction import mask_pii
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)

INIT_KEY = "CONTRACT_INIT"
RECORD_PREFIX = "RECORD~"
PATIENT_INDEX = "patient-records"
PROVIDER_INDEX = "provider-records"

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"


def bump_version(version: str) -> str:
    """'1.0' -> '1.1', '1.9' -> '1.10'."""
    major, _, minor = version.partition(".")
    return f"{major}.{int(minor or 0) + 1}"


def parse_payload(payload_json: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(payload_json, dict):
        return dict(payload_json)
    try:
        payload = json.loads(payload_json)
    except (TypeError, ValueError):
        raise InvalidInputError("Payload is not valid JSON")
    if not isinstance(payload, dict):
        raise InvalidInputError("Payload must be a JSON object")
    return payload


class MedicalDataContract:
    def __init__(
        self,
        ledger: Ledger,
        audit: AuditLog,
        protection: DataProtectionOrchestrator,
        access_control: AccessControlMatrix,
        settings: ProtectionSettings = None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.protection = protection
        self.access_control = access_control
        self.settings = settings or ProtectionSettings()
        self.clock = ledger.clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, record_id: str) -> Dict[str, Any]:
        record = self.ledger.get_json(RECORD_PREFIX + record_id) if record_id else None
        if record is None:
            raise NotFoundError("Medical record not found", {"record_id": record_id})
        return record

    def _save(self, record: Dict[str, Any]) -> None:
        self.ledger.put_json(RECORD_PREFIX + record["record_id"], record)

    def _trail(self, record: Dict[str, Any], action: str, principal: str, **details: Any) -> None:
        record["audit_trail"].append(
            {
                "action": action,
                "timestamp": self.clock.now_iso(),
                "principal": principal,
                "details": details,
            }
        )

    def _require_writer(self, provider_id: str) -> None:
        held = set(self.access_control.get_roles(provider_id))
        role = next(
            (
                r
                for r in ROLE_PRECEDENCE
                if r in held and role_allows(r, Permission.WRITE, ResourceClass.MEDICAL_RECORD)
            ),
            None,
        )
        if role is None or not self.access_control.has_permission(
            provider_id, role, Permission.WRITE, ResourceClass.MEDICAL_RECORD
        ):
            raise AccessDeniedError("Provider may not write medical records", {"provider_id": provider_id})

    def _summary(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return mask_pii(
            {
                "record_id": record["record_id"],
                "patient_id": record["patient_id"],
                "provider_id": record["provider_id"],
                "protection_id": record["protection_id"],
                "data_category": record["data_category"],
                "metadata": record["metadata"],
                "audit_trail": record["audit_trail"],
            }
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def init_ledger(self, admin_id: str) -> Dict[str, Any]:
        """Bootstrap the ledger: contract record plus the first administrator."""
        with self.ledger.transaction():
            self.access_control.bootstrap_admin(admin_id)
            init_record = {
                "contract_name": "MedicalDataContract",
                "version": "1.0",
                "initialized_at": self.clock.now_iso(),
                "initialized_by": admin_id,
                "compliance_level": self.settings.compliance_level,
                "encryption_standard": self.settings.encryption_standard,
            }
            self.ledger.put_json(INIT_KEY, init_record)
        logger.info("ledger_initialized")
        return init_record

    def store_protected_medical_data(
        self,
        record_id: str,
        payload_json: Union[str, Dict[str, Any]],
        provider_id: str,
        patient_id: str,
        data_category: Any = DataCategory.GENERAL_INFO,
    ) -> Dict[str, Any]:
        """
        Protect a record's payload and register the record.

        Returns:
            {record_id, protection_id, timestamp}

        Raises:
            InvalidInputError: Missing parameter or malformed payload
            AccessDeniedError: Provider may not write medical records
            DuplicateEntityError: Record id already used
        """
        with self.audit.audited(
            provider_id or "", "RECORD_STORE", record_id or "", details={"patient_id": patient_id}
        ) as scope:
            if not record_id or not provider_id or not patient_id or not payload_json:
                raise InvalidInputError("Missing required parameters")
            if self.ledger.get_state(RECORD_PREFIX + record_id) is not None:
                raise DuplicateEntityError("Medical record already exists", {"record_id": record_id})
            payload = parse_payload(payload_json)
            category = parse_category(data_category)
            self._require_writer(provider_id)

            with self.ledger.transaction():
                payload["patientId"] = patient_id
                package = self.protection.protect(
                    payload,
                    provider_id,
                    {
                        "patient_id": patient_id,
                        "data_category": category,
                        "record_type": "ledger_stored",
                        "classification": "PHI",
                        "retention_policy": "LONG_TERM",
                    },
                )
                now_iso = self.clock.now_iso()
                record = {
                    "record_id": record_id,
                    "patient_id": patient_id,
                    "provider_id": provider_id,
                    "protection_id": package["protection_id"],
                    "protection_history": [],
                    "data_category": category.value,
                    "metadata": {
                        "created_at": now_iso,
                        "created_by": provider_id,
                        "data_size": package["metadata"]["original_size"],
                        "version": "1.0",
                        "status": STATUS_ACTIVE,
                    },
                    "audit_trail": [],
                }
                self._trail(record, "CREATED", provider_id)
                self._save(record)
                for index, owner in ((PATIENT_INDEX, patient_id), (PROVIDER_INDEX, provider_id)):
                    self.ledger.put_state(Ledger.create_composite_key(index, [owner, record_id]), record_id)
                scope.details["protection_id"] = package["protection_id"]

                events.emit(
                    self.ledger,
                    events.MEDICAL_DATA_STORED,
                    record_id=record_id,
                    patient_id=patient_id,
                    provider_id=provider_id,
                    protection_id=package["protection_id"],
                )
        return {"record_id": record_id, "protection_id": package["protection_id"], "timestamp": now_iso}

    def retrieve_protected_medical_data(
        self, record_id: str, requester_id: str, access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Decrypt a record for a requester.

        The patient and the original provider always have access; anyone
        else needs role permission and consent (see unprotect). The access
        token is correlation data only: its fingerprint goes into the audit
        entry and it never grants access on its own.

        Returns:
            {record_id, data, metadata, timestamp}
        """
        details = {"access_token": fingerprint(access_token)} if access_token else {}
        with self.audit.audited(
            requester_id or "", "RECORD_RETRIEVE", record_id or "", details=details
        ) as scope:
            if not record_id or not requester_id:
                raise InvalidInputError("Missing required parameters")
            record = self._load(record_id)
            if record["metadata"]["status"] == STATUS_REVOKED:
                raise AccessDeniedError("Record access has been revoked", {"record_id": record_id})

            payload = self.protection.unprotect(record["protection_id"], requester_id)
            scope.details["protection_id"] = record["protection_id"]

            with self.ledger.transaction():
                record = self._load(record_id)
                self._trail(record, "ACCESSED", requester_id)
                self._save(record)
                events.emit(
                    self.ledger,
                    events.MEDICAL_DATA_ACCESSED,
                    record_id=record_id,
                    patient_id=record["patient_id"],
                    requester_id=requester_id,
                )
        return {
            "record_id": record_id,
            "data": payload,
            "metadata": record["metadata"],
            "timestamp": self.clock.now_iso(),
        }

    def update_medical_record(
        self, record_id: str, payload_json: Union[str, Dict[str, Any]], provider_id: str
    ) -> Dict[str, Any]:
        """
        Replace a record's payload with a newly protected one and bump its version.

        Raises:
            AccessDeniedError: Not the original provider
            InvalidStateError: Record revoked
        """
        with self.ledger.transaction(), self.audit.audited(
            provider_id or "", "RECORD_UPDATE", record_id or ""
        ) as scope:
            if not record_id or not provider_id or not payload_json:
                raise InvalidInputError("Missing required parameters")
            record = self._load(record_id)
            if record["provider_id"] != provider_id:
                raise AccessDeniedError(
                    "Only the original provider can update this record", {"record_id": record_id}
                )
            if record["metadata"]["status"] == STATUS_REVOKED:
                raise InvalidStateError("Record has been revoked", {"record_id": record_id})

            payload = parse_payload(payload_json)
            payload["patientId"] = record["patient_id"]
            package = self.protection.protect(
                payload,
                provider_id,
                {
                    "patient_id": record["patient_id"],
                    "data_category": record["data_category"],
                    "record_type": "ledger_updated",
                    "classification": "PHI",
                    "retention_policy": "LONG_TERM",
                },
            )
            record["protection_history"].append(record["protection_id"])
            record["protection_id"] = package["protection_id"]
            record["metadata"]["version"] = bump_version(record["metadata"]["version"])
            record["metadata"]["updated_at"] = self.clock.now_iso()
            record["metadata"]["updated_by"] = provider_id
            self._trail(record, "UPDATED", provider_id, version=record["metadata"]["version"])
            self._save(record)
            scope.details.update(
                {"protection_id": package["protection_id"], "version": record["metadata"]["version"]}
            )

            events.emit(
                self.ledger,
                events.MEDICAL_DATA_UPDATED,
                record_id=record_id,
                patient_id=record["patient_id"],
                provider_id=provider_id,
                version=record["metadata"]["version"],
            )
        return {
            "record_id": record_id,
            "version": record["metadata"]["version"],
            "protection_id": package["protection_id"],
        }

    def get_patient_records(self, patient_id: str, requester_id: str) -> Dict[str, Any]:
        """
        Record summaries for a patient.

        The patient and administrators see every record; other requesters
        only see the records they provided.
        """
        with self.audit.audited(requester_id or "", "RECORD_LIST", patient_id or "") as scope:
            if not patient_id or not requester_id:
                raise InvalidInputError("Missing required parameters")
            see_all = requester_id == patient_id or self.access_control.has_role(requester_id, Role.ADMIN)

            records: List[Dict[str, Any]] = []
            for _, record_id in self.ledger.get_state_by_partial_composite_key(PATIENT_INDEX, [patient_id]):
                record = self._load(record_id)
                if see_all or record["provider_id"] == requester_id:
                    records.append(self._summary(record))
            scope.details["count"] = len(records)

        return {"patient_id": patient_id, "total_records": len(records), "records": records}

    def revoke_record_access(self, record_id: str, patient_id: str) -> Dict[str, Any]:
        """
        Revoke all access to a record. Only the patient can revoke; the
        underlying package and its shares are revoked with it.
        """
        with self.ledger.transaction(), self.audit.audited(
            patient_id or "", "RECORD_REVOKE", record_id or ""
        ):
            if not record_id or not patient_id:
                raise InvalidInputError("Missing required parameters")
            record = self._load(record_id)
            if record["patient_id"] != patient_id:
                raise AccessDeniedError("Only the patient can revoke access", {"record_id": record_id})
            if record["metadata"]["status"] == STATUS_REVOKED:
                raise InvalidStateError("Record access already revoked", {"record_id": record_id})

            self.protection.revoke_package(record["protection_id"], patient_id, "revoked_by_patient")
            record["metadata"]["status"] = STATUS_REVOKED
            record["metadata"]["revoked_at"] = self.clock.now_iso()
            self._trail(record, "REVOKED", patient_id)
            self._save(record)
            events.emit(
                self.ledger, events.MEDICAL_DATA_REVOKED, record_id=record_id, patient_id=patient_id
            )
        return {"record_id": record_id, "status": STATUS_REVOKED, "timestamp": record["metadata"]["revoked_at"]}

    def get_record_audit_trail(self, record_id: str, requester_id: str) -> Dict[str, Any]:
        """Record-local trail plus ledger audit entries; patient, provider or administrator only."""
        with self.audit.audited(requester_id or "", "RECORD_AUDIT_TRAIL", record_id or ""):
            record = self._load(record_id)
            if requester_id not in (record["patient_id"], record["provider_id"]) and not (
                self.access_control.has_role(requester_id, Role.ADMIN)
            ):
                raise AccessDeniedError(
                    "Not allowed to view this audit trail", {"record_id": record_id}
                )
            entries = self.audit.for_resource(record_id)

        return {
            "record_id": record_id,
            "audit_trail": record["audit_trail"],
            "ledger_entries": entries,
        }
