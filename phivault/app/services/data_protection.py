"""
Data protection orchestrator.

Ties the key manager, encryption engine, hash engine and authorization
engines together:

    protect   -> deny-list check -> provider key -> seal -> integrity hash -> package
    unprotect -> ownership or (role permission AND consent) -> open -> re-verify
    batch     -> per-item protect in atomic chunks + Merkle tree over the payloads
    share     -> open -> re-seal under a fresh key wrapped for the recipient

Each public operation appends exactly one audit entry, success or failure.
Authorization checks called from here (permission and consent checks, key
generation on first use) are operations of their own and audit themselves.

Ledger layout:
    PACKAGE~{protection_id}
    BATCH~{batch_id}
    SHARE~{share_id}
    index owner-packages   (owner_id, protection_id)
    index patient-packages (patient_id, protection_id)
    index package-shares   (protection_id, share_id)
"""

import json
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import (
    AccessDeniedError,
    DuplicateEntityError,
    ExpiredError,
    IntegrityViolationError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PhiVaultError,
)
from phivault.app.services import events
from phivault.app.services.access_control import (
    ROLE_PRECEDENCE,
    AccessControlMatrix,
    Permission,
    ResourceClass,
    Role,
    parse_role,
    role_allows,
)
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.clock import format_utc, parse_utc
from phivault.app.services.consent_registry import ConsentRegistry, DataCategory, parse_category
from phivault.app.services.hashing import (
    batch_hash,
    canonical_bytes,
    generate_proof_record,
    hash_data,
    salted_hash,
    verify_integrity,
    verify_proof_record,
)
from phivault.app.services.key_registry import KeyManager
from phivault.app.services.merkle import MerkleTree, verify_proof
from phivault.app.services.uuid7 import generate_uuid7
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)

PACKAGE_PREFIX = "PACKAGE~"
BATCH_PREFIX = "BATCH~"
SHARE_PREFIX = "SHARE~"
OWNER_INDEX = "owner-packages"
PATIENT_INDEX = "patient-packages"
SHARE_INDEX = "package-shares"

KEY_PURPOSE = "medical-data"
PACKAGE_VERSION = "1.0"

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"

# Injection markers a payload may never carry.
DENY_LIST = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"<img", re.IGNORECASE),
]

_SEALED_FIELDS = ("sealed_payload", "wrapped_key")
_TRUSTED_FIELDS = ("owner_id", "patient_id", "data_category", "status", "key_reference")


def validate_payload(payload: Any) -> None:
    """
    Reject payloads that are not JSON objects or that carry injection markers.

    Raises:
        InvalidInputError: Fails closed; nothing is sealed
    """
    if not isinstance(payload, dict) or not payload:
        raise InvalidInputError("Payload must be a non-empty JSON object")
    serialized = canonical_bytes(payload).decode("utf-8")
    for pattern in DENY_LIST:
        if pattern.search(serialized):
            raise InvalidInputError("Payload contains disallowed content")


def package_view(record: Dict[str, Any]) -> Dict[str, Any]:
    """Package metadata without the sealed payload (safe for summaries)."""
    return {k: v for k, v in record.items() if k not in _SEALED_FIELDS}


def _associated_data(record_id: str, owner_id: str) -> str:
    return f"{record_id}|{owner_id}"


def _package_associated_data(
    protection_id: str, owner_id: str, patient_id: Optional[str], data_category: int
) -> str:
    # Owner, patient and category decide access, so they are authenticated too.
    return f"{protection_id}|{owner_id}|{patient_id or ''}|{data_category}"


class DataProtectionOrchestrator:
    """Seals, opens, batches and shares protected packages."""

    def __init__(
        self,
        ledger: Ledger,
        audit: AuditLog,
        keys: KeyManager,
        access_control: AccessControlMatrix,
        consents: ConsentRegistry,
        settings: ProtectionSettings = None,
        clock=None,
        rng=None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.keys = keys
        self.access_control = access_control
        self.consents = consents
        self.settings = settings or ProtectionSettings()
        self.clock = clock or ledger.clock
        self.rng = rng or secrets.SystemRandom()

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _load(self, protection_id: str) -> Dict[str, Any]:
        record = self.ledger.get_json(PACKAGE_PREFIX + protection_id) if protection_id else None
        if record is None:
            raise NotFoundError("Protected package not found", {"protection_id": protection_id})
        return record

    def _resolve(self, package: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Stored package for an id, or a caller-held package.

        A caller-held package may carry the ciphertext, but the fields access is
        decided on (owner, patient, data category and status) always come from
        the stored copy when there is one. A detached package cannot be
        relabelled either; those fields are bound into the associated data.
        """
        if isinstance(package, str):
            return self._load(package)
        if not isinstance(package, dict) or not package.get("protection_id"):
            raise InvalidInputError("A protected package or protection id is required")
        stored = self.ledger.get_json(PACKAGE_PREFIX + package["protection_id"])
        if stored is not None:
            package = {**package, **{field: stored.get(field) for field in _TRUSTED_FIELDS}}
        return package

    def get_package(self, protection_id: str) -> Dict[str, Any]:
        return package_view(self._load(protection_id))

    def _packages_in(self, index: str, attribute: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(index, [attribute])
        return [package_view(self._load(pid)) for _, pid in rows]

    def list_owner_packages(self, owner_id: str) -> List[Dict[str, Any]]:
        return self._packages_in(OWNER_INDEX, owner_id)

    def list_patient_packages(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._packages_in(PATIENT_INDEX, patient_id)

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    def _seal_package(
        self,
        payload: Dict[str, Any],
        owner_id: str,
        key: Dict[str, Any],
        protection_id: str,
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Seal one payload and store its package. Runs inside the caller's transaction."""
        category = parse_category(options.get("data_category", DataCategory.GENERAL_INFO))
        patient_id = options.get("patient_id") or payload.get("patientId") or payload.get("patient_id")
        created_at = self.clock.now_iso()
        plaintext = canonical_bytes(payload)

        sealed, key_version = self.keys.seal_with(
            key["key_id"],
            plaintext,
            _package_associated_data(protection_id, owner_id, patient_id, category.value),
        )
        record = {
            "protection_id": protection_id,
            "owner_id": owner_id,
            "patient_id": patient_id,
            "sealed_payload": sealed,
            "integrity_hash": salted_hash(payload),
            "cryptographic_proof": generate_proof_record(
                payload,
                {
                    "owner_id": owner_id,
                    "protection_id": protection_id,
                    "encryption_standard": self.settings.encryption_standard,
                },
                created_at,
            ),
            "key_reference": {
                "key_id": key["key_id"],
                "key_type": key["key_type"],
                "key_version": key_version,
            },
            "classification": options.get("classification", "PHI"),
            "data_category": category.value,
            "record_type": options.get("record_type", "general"),
            "batch_id": options.get("batch_id"),
            "batch_index": options.get("batch_index"),
            "metadata": {
                "original_size": len(plaintext),
                "protection_level": self.settings.compliance_level,
                "version": PACKAGE_VERSION,
            },
            "compliance": {
                "standard": self.settings.compliance_level,
                "encryption_method": self.settings.encryption_standard,
                "data_classification": options.get("classification", "PHI"),
                "retention_policy": options.get("retention_policy", "STANDARD"),
            },
            "created_at": created_at,
            "status": STATUS_ACTIVE,
            "revoked_at": None,
        }
        self.ledger.put_json(PACKAGE_PREFIX + protection_id, record)
        self.ledger.put_state(
            Ledger.create_composite_key(OWNER_INDEX, [owner_id, protection_id]), protection_id
        )
        if patient_id:
            self.ledger.put_state(
                Ledger.create_composite_key(PATIENT_INDEX, [patient_id, protection_id]),
                protection_id,
            )
        return record

    def _provider_key(self, owner_id: str) -> Dict[str, Any]:
        return self.keys.get_or_create_symmetric_key(owner_id, KEY_PURPOSE, owner_id)

    def protect(
        self, payload: Dict[str, Any], owner_id: str, options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Seal a payload for its owner.

        Args:
            payload: JSON object to protect
            owner_id: Provider that owns the package
            options: Optional patient_id, data_category, classification,
                record_type, retention_policy and protection_id

        Returns:
            The stored package (sealed payload included; it is ciphertext)

        Raises:
            InvalidInputError: Missing owner, malformed or malicious payload
            DuplicateEntityError: A package with the requested id exists
        """
        options = dict(options or {})
        with self.audit.audited(owner_id or "", "PROTECT", "package") as scope:
            if not owner_id:
                raise InvalidInputError("Owner id is required")
            validate_payload(payload)

            protection_id = options.get("protection_id") or "prot_" + hash_data(
                {"owner_id": owner_id, "nonce": generate_uuid7()}
            )[:32]
            scope.target_resource = protection_id
            if self.ledger.get_state(PACKAGE_PREFIX + protection_id) is not None:
                raise DuplicateEntityError(
                    "Protected package already exists", {"protection_id": protection_id}
                )

            key = self._provider_key(owner_id)
            with self.ledger.transaction():
                record = self._seal_package(payload, owner_id, key, protection_id, options)
                events.emit(
                    self.ledger,
                    events.DATA_PROTECTED,
                    protection_id=protection_id,
                    owner_id=owner_id,
                    key_id=key["key_id"],
                )
            scope.details.update(
                {
                    "protection_id": protection_id,
                    "key_id": key["key_id"],
                    "size": record["metadata"]["original_size"],
                }
            )

        logger.info("data_protected", protection_id=protection_id, key_id=key["key_id"])
        return record

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def _reading_role(self, requester_id: str) -> Optional[Role]:
        """Highest-precedence held role that may read medical records."""
        held = set(self.access_control.get_roles(requester_id))
        for role in ROLE_PRECEDENCE:
            if role in held and role_allows(role, Permission.READ, ResourceClass.MEDICAL_RECORD):
                return role
        return self.access_control.primary_role(requester_id)

    def _authorize_read(
        self,
        package: Dict[str, Any],
        requester_id: str,
        role: Optional[Union[Role, str]] = None,
    ) -> str:
        """
        Decide whether requester_id may open a package; returns the basis.

        Owners and the patient the record is about always may. Anyone else
        needs READ on medical records under a role they hold AND consent (or
        an emergency grant) for the package's data category.
        """
        if requester_id == package["owner_id"]:
            return "owner"
        if package.get("patient_id") and requester_id == package["patient_id"]:
            return "patient"

        role = parse_role(role) if role else self._reading_role(requester_id)
        if role is None:
            raise AccessDeniedError(
                "Requester has no role", {"protection_id": package["protection_id"]}
            )
        if not self.access_control.has_permission(
            requester_id, role, Permission.READ, ResourceClass.MEDICAL_RECORD
        ):
            raise AccessDeniedError(
                "Role does not permit reading this record",
                {"protection_id": package["protection_id"], "role": role.value},
            )
        subject = package.get("patient_id") or package["owner_id"]
        if not self.consents.has_data_access(subject, requester_id, package["data_category"]):
            raise AccessDeniedError(
                "No active consent for this record", {"protection_id": package["protection_id"]}
            )
        return "emergency" if role == Role.EMERGENCY_RESPONDER else "consent"

    def _open_package(self, package: Dict[str, Any]) -> Dict[str, Any]:
        """Decrypt and re-verify a package. No authorization, no audit."""
        reference = package["key_reference"]
        plaintext = self.keys.open_with(
            reference["key_id"],
            reference.get("key_version", 1),
            package["sealed_payload"],
            _package_associated_data(
                package["protection_id"],
                package["owner_id"],
                package.get("patient_id"),
                package.get("data_category"),
            ),
        )
        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except ValueError as e:
            raise IntegrityViolationError(
                "Decrypted payload is malformed", {"protection_id": package["protection_id"]}
            ) from e

        if not verify_integrity(payload, package["integrity_hash"]):
            raise IntegrityViolationError(
                "Integrity hash no longer matches", {"protection_id": package["protection_id"]}
            )
        proof = package.get("cryptographic_proof")
        if proof is not None and not verify_proof_record(payload, proof)["valid"]:
            raise IntegrityViolationError(
                "Cryptographic proof no longer matches", {"protection_id": package["protection_id"]}
            )
        return payload

    def unprotect(
        self,
        package: Union[str, Dict[str, Any]],
        requester_id: str,
        role: Optional[Union[Role, str]] = None,
    ) -> Dict[str, Any]:
        """
        Open a package for a requester.

        Args:
            package: Protection id or a package dict
            requester_id: Who is asking
            role: Role to act under; defaults to the highest-precedence held
                role that may read medical records

        Returns:
            The original payload

        Raises:
            NotFoundError: Unknown protection id
            InvalidStateError: Package revoked
            AccessDeniedError: Not owner or patient and no valid grant
            IntegrityViolationError: Ciphertext, tag or integrity hash mismatch
        """
        protection_id = package if isinstance(package, str) else (package or {}).get("protection_id")
        with self.audit.audited(
            requester_id or "", "UNPROTECT", protection_id or "", details={"protection_id": protection_id}
        ) as scope:
            record = self._resolve(package)
            if record["status"] != STATUS_ACTIVE:
                raise InvalidStateError("Package has been revoked", {"protection_id": protection_id})
            basis = self._authorize_read(record, requester_id, role)
            scope.details["basis"] = basis

            with self.ledger.transaction():
                payload = self._open_package(record)
                events.emit(
                    self.ledger,
                    events.DATA_UNPROTECTED,
                    protection_id=record["protection_id"],
                    requester_id=requester_id,
                    basis=basis,
                )
        return payload

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def protect_batch(
        self,
        payloads: Sequence[Dict[str, Any]],
        owner_id: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Protect a batch of payloads and build a Merkle tree over them.

        Items are sealed in chunks of batch_chunk_size; each chunk commits
        atomically. Protection ids are derived from (batch_id, index), and
        the batch id from the owner and the batch content unless given, so
        calling again with the same payloads resumes after a failed chunk and
        never seals an item twice.

        The tree is built over the original payloads, so its root can be
        compared with an externally notarized value without decrypting.

        Returns:
            Batch record: batch_id, items [{index, protection_id, leaf_hash,
            proof}], merkle {root, depth, leaf_count}, batch_integrity
        """
        options = dict(options or {})
        with self.audit.audited(owner_id or "", "PROTECT_BATCH", "batch") as scope:
            if not owner_id:
                raise InvalidInputError("Owner id is required")
            if not isinstance(payloads, (list, tuple)) or not payloads:
                raise InvalidInputError("Batch must be a non-empty list")
            if len(payloads) > self.settings.max_batch_size:
                raise InvalidInputError(
                    "Batch is too large",
                    {"item_count": len(payloads), "max_batch_size": self.settings.max_batch_size},
                )
            for index, payload in enumerate(payloads):
                try:
                    validate_payload(payload)
                except InvalidInputError as e:
                    e.details["index"] = index
                    raise

            tree = MerkleTree(payloads)
            batch_id = options.pop("batch_id", None) or "batch_" + hash_data(
                {"owner_id": owner_id, "merkle_root": tree.root, "item_count": tree.leaf_count}
            )[:32]
            scope.target_resource = batch_id
            scope.details["batch_id"] = batch_id

            key = self._provider_key(owner_id)
            items = []
            sealed_count = 0
            chunk_size = self.settings.batch_chunk_size
            for start in range(0, len(payloads), chunk_size):
                with self.ledger.transaction():
                    for index in range(start, min(start + chunk_size, len(payloads))):
                        protection_id = "prot_" + hash_data({"batch_id": batch_id, "index": index})[:32]
                        if self.ledger.get_state(PACKAGE_PREFIX + protection_id) is None:
                            item_options = {**options, "batch_id": batch_id, "batch_index": index}
                            self._seal_package(payloads[index], owner_id, key, protection_id, item_options)
                            sealed_count += 1
                        items.append(
                            {
                                "index": index,
                                "protection_id": protection_id,
                                "leaf_hash": tree.leaves[index],
                                "proof": tree.generate_proof(index),
                            }
                        )
                scope.details["completed_items"] = len(items)

            with self.ledger.transaction():
                batch = {
                    "batch_id": batch_id,
                    "owner_id": owner_id,
                    "item_count": len(items),
                    "items": items,
                    "merkle": tree.summary(),
                    "merkle_root": tree.root,
                    "batch_integrity": batch_hash(list(payloads), batch_id),
                    "created_at": self.clock.now_iso(),
                    "protection_level": self.settings.compliance_level,
                }
                self.ledger.put_json(BATCH_PREFIX + batch_id, batch)
                events.emit(
                    self.ledger,
                    events.BATCH_PROTECTED,
                    batch_id=batch_id,
                    owner_id=owner_id,
                    item_count=len(items),
                    merkle_root=tree.root,
                )
            scope.details.update(
                {"item_count": len(items), "sealed_items": sealed_count, "merkle_root": tree.root}
            )

        logger.info("batch_protected", batch_id=batch_id, item_count=len(items))
        return batch

    def get_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = self.ledger.get_json(BATCH_PREFIX + batch_id) if batch_id else None
        if batch is None:
            raise NotFoundError("Batch not found", {"batch_id": batch_id})
        return batch

    def verify_batch_integrity(
        self, batch: Union[str, Dict[str, Any]], requester_id: str
    ) -> Dict[str, Any]:
        """
        Probabilistic batch check: fully open a random sample of items.

        At most spot_check_size items (3 by default) are decrypted, re-hashed
        and checked against their stored Merkle proof. Batch integrity is only
        certain when every item is checked individually.

        Returns:
            {batch_id, is_valid, item_count, spot_check_results, merkle_root, verified_at}

        Raises:
            NotFoundError: Unknown batch
            AccessDeniedError: Requester does not own the batch
        """
        batch_id = batch if isinstance(batch, str) else (batch or {}).get("batch_id")
        with self.audit.audited(requester_id or "", "VERIFY_BATCH", batch_id or "") as scope:
            record = self.get_batch(batch_id)
            if record["owner_id"] != requester_id:
                raise AccessDeniedError("Only the batch owner may verify it", {"batch_id": batch_id})

            count = min(self.settings.spot_check_size, record["item_count"])
            indexes = sorted(self.rng.sample(range(record["item_count"]), count))
            root = record["merkle_root"]

            results = []
            for index in indexes:
                item = record["items"][index]
                result = {"index": index, "protection_id": item["protection_id"]}
                try:
                    payload = self._open_package(self._load(item["protection_id"]))
                    merkle_valid = verify_proof(payload, item["proof"], root)
                    result.update({"valid": merkle_valid, "merkle_valid": merkle_valid, "error_code": None})
                    if not merkle_valid:
                        result["error_code"] = IntegrityViolationError.error_code
                except PhiVaultError as e:
                    result.update({"valid": False, "merkle_valid": False, "error_code": e.error_code})
                results.append(result)

            is_valid = all(r["valid"] for r in results)
            scope.details.update(
                {"spot_checked": [r["index"] for r in results], "all_valid": is_valid}
            )

        return {
            "batch_id": batch_id,
            "is_valid": is_valid,
            "item_count": record["item_count"],
            "spot_check_results": results,
            "merkle_root": root,
            "verified_at": self.clock.now_iso(),
        }

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def _share_expiry(self, expires_at: Any) -> Optional[str]:
        if expires_at is None:
            return None
        if isinstance(expires_at, datetime):
            moment = expires_at
        else:
            try:
                moment = parse_utc(str(expires_at))
            except ValueError:
                raise InvalidInputError("Share expiry must be an ISO-8601 timestamp")
        if moment <= self.clock.now():
            raise InvalidInputError("Share expiry must be in the future")
        return format_utc(moment)

    def share(
        self,
        package: Union[str, Dict[str, Any]],
        from_id: str,
        to_id: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Re-encrypt a package for another principal.

        The payload is sealed under a fresh one-time key wrapped with the
        recipient's RSA public key; the owner's key material is never reused
        for the recipient.

        Args:
            options: share_type, purpose, expires_at (ISO or datetime) or
                expires_in_seconds

        Raises:
            AccessDeniedError: from_id is neither owner nor patient
            InvalidInputError: Missing or same recipient, expiry not in the future
            InvalidStateError: Package revoked
        """
        options = dict(options or {})
        protection_id = package if isinstance(package, str) else (package or {}).get("protection_id")
        with self.audit.audited(
            from_id or "", "SHARE", protection_id or "", details={"protection_id": protection_id}
        ) as scope:
            record = self._resolve(package)
            if not to_id or to_id == from_id:
                raise InvalidInputError("A different recipient is required")
            if from_id not in (record["owner_id"], record.get("patient_id")):
                raise AccessDeniedError(
                    "Only the owner or patient may share this record", {"protection_id": protection_id}
                )
            if record["status"] != STATUS_ACTIVE:
                raise InvalidStateError("Package has been revoked", {"protection_id": protection_id})

            expires_at = options.get("expires_at")
            if expires_at is None and options.get("expires_in_seconds"):
                expires_at = self.clock.now() + timedelta(seconds=options["expires_in_seconds"])
            expires_at = self._share_expiry(expires_at)

            self.keys.ensure_asymmetric_key_pair(to_id)
            share_id = "share_" + hash_data(
                {"protection_id": protection_id, "from_id": from_id, "to_id": to_id, "nonce": generate_uuid7()}
            )[:32]
            scope.details.update({"share_id": share_id, "to_id": to_id})

            with self.ledger.transaction():
                payload = self._open_package(record)
                sealed, wrapped = self.keys.seal_for_recipient(
                    to_id, canonical_bytes(payload), _associated_data(share_id, to_id)
                )
                share = {
                    "share_id": share_id,
                    "from_id": from_id,
                    "to_id": to_id,
                    "original_protection_id": protection_id,
                    "sealed_payload": sealed,
                    "wrapped_key": wrapped,
                    "target_key_id": wrapped["key_id"],
                    "shared_at": self.clock.now_iso(),
                    "share_type": options.get("share_type", "provider_to_provider"),
                    "purpose": options.get("purpose", "medical_consultation"),
                    "expires_at": expires_at,
                    "original_integrity": record["integrity_hash"],
                    "compliance": {**record["compliance"], "data_sharing": True},
                    "status": STATUS_ACTIVE,
                }
                self.ledger.put_json(SHARE_PREFIX + share_id, share)
                self.ledger.put_state(
                    Ledger.create_composite_key(SHARE_INDEX, [protection_id, share_id]), share_id
                )
                events.emit(
                    self.ledger,
                    events.DATA_SHARED,
                    share_id=share_id,
                    protection_id=protection_id,
                    from_id=from_id,
                    to_id=to_id,
                    expires_at=expires_at,
                )

        logger.info("data_shared", share_id=share_id, protection_id=protection_id)
        return package_view(share)

    def get_share(self, share_id: str) -> Dict[str, Any]:
        share = self.ledger.get_json(SHARE_PREFIX + share_id) if share_id else None
        if share is None:
            raise NotFoundError("Share not found", {"share_id": share_id})
        return share

    def access_shared(self, share: Union[str, Dict[str, Any]], requester_id: str) -> Dict[str, Any]:
        """
        Open a share package as its recipient.

        Raises:
            AccessDeniedError: Requester is not the recipient
            ExpiredError: Past the share's expires_at
            InvalidStateError: Share revoked along with its package
        """
        share_id = share if isinstance(share, str) else (share or {}).get("share_id")
        with self.audit.audited(
            requester_id or "", "ACCESS_SHARED", share_id or "", details={"share_id": share_id}
        ):
            record = self.get_share(share_id)
            if record["to_id"] != requester_id:
                raise AccessDeniedError("Not the recipient of this share", {"share_id": share_id})
            if record["expires_at"] and parse_utc(record["expires_at"]) <= self.clock.now():
                raise ExpiredError("Share has expired", {"share_id": share_id})
            if record["status"] != STATUS_ACTIVE:
                raise InvalidStateError("Share has been revoked", {"share_id": share_id})

            with self.ledger.transaction():
                plaintext = self.keys.open_for_recipient(
                    record["wrapped_key"],
                    record["sealed_payload"],
                    _associated_data(share_id, requester_id),
                )
                payload = json.loads(plaintext.decode("utf-8"))
                if not verify_integrity(payload, record["original_integrity"]):
                    raise IntegrityViolationError(
                        "Shared payload does not match the original", {"share_id": share_id}
                    )
        return payload

    # ------------------------------------------------------------------
    # Revocation and reporting
    # ------------------------------------------------------------------

    def revoke_package(self, protection_id: str, requester_id: str, reason: str = "") -> Dict[str, Any]:
        """
        Revoke a package and every share derived from it. The record stays for audit.

        Raises:
            AccessDeniedError: Not owner, patient or administrator
            InvalidStateError: Already revoked
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id or "", "REVOKE_PACKAGE", protection_id or "", details={"protection_id": protection_id}
        ) as scope:
            record = self._load(protection_id)
            allowed = requester_id in (record["owner_id"], record.get("patient_id"))
            if not allowed and not self.access_control.has_role(requester_id, Role.ADMIN):
                raise AccessDeniedError(
                    "Not allowed to revoke this record", {"protection_id": protection_id}
                )
            if record["status"] == STATUS_REVOKED:
                raise InvalidStateError("Package already revoked", {"protection_id": protection_id})

            now_iso = self.clock.now_iso()
            record["status"] = STATUS_REVOKED
            record["revoked_at"] = now_iso
            record["revocation_reason"] = reason
            self.ledger.put_json(PACKAGE_PREFIX + protection_id, record)

            revoked_shares = []
            for _, share_id in self.ledger.get_state_by_partial_composite_key(SHARE_INDEX, [protection_id]):
                share = self.get_share(share_id)
                if share["status"] == STATUS_ACTIVE:
                    share["status"] = STATUS_REVOKED
                    share["revoked_at"] = now_iso
                    self.ledger.put_json(SHARE_PREFIX + share_id, share)
                    revoked_shares.append(share_id)
            scope.details["revoked_shares"] = revoked_shares

            events.emit(
                self.ledger,
                events.PACKAGE_REVOKED,
                protection_id=protection_id,
                revoked_by=requester_id,
                revoked_shares=len(revoked_shares),
            )
        return package_view(record)

    def audit_report(
        self, requester_id: str, start: Optional[str] = None, end: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Compliance report for a time window (last 30 days by default).

        Only administrators may generate it.
        """
        with self.audit.audited(requester_id or "", "AUDIT_REPORT", "audit-log") as scope:
            if not self.access_control.has_role(requester_id, Role.ADMIN):
                raise AccessDeniedError("Audit reports require the administrator role")
            now = self.clock.now()
            start = start or format_utc(now - timedelta(days=30))
            end = end or format_utc(now)
            scope.details.update({"from": start, "to": end})

            by_owner: Dict[str, int] = {}
            total, revoked = 0, 0
            for _, raw in self.ledger.scan_prefix(PACKAGE_PREFIX):
                record = json.loads(raw)
                total += 1
                revoked += record["status"] == STATUS_REVOKED
                by_owner[record["owner_id"]] = by_owner.get(record["owner_id"], 0) + 1

            chain = self.audit.verify_chain()
            report = {
                "report_generated": format_utc(now),
                "period": {"start": start, "end": end},
                "audit_summary": self.audit.summarize(start, end),
                "key_management": self.keys.statistics(),
                "data_protection": {
                    "total_protected": total,
                    "revoked": revoked,
                    "by_owner": by_owner,
                },
                "audit_chain_valid": chain["valid"],
                "compliance_level": self.settings.compliance_level,
                "compliance_status": "COMPLIANT" if chain["valid"] else "CHAIN_BROKEN",
            }
        return report
