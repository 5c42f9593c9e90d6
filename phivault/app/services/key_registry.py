"""
Key lifecycle management for PHI Vault.

The KeyManager owns every key in the system:
1. One RSA key pair per principal, used to receive wrapped symmetric keys
2. Per-(owner, purpose) AES-256 keys that seal record payloads
3. Rotation without breaking old packages: each symmetric rotation adds a
   new material version, and packages name the version they were sealed with
4. Revocation: key records are never deleted, only status-flipped

Security principle: raw key material never leaves this module. It is sealed
at rest in the KeyVault and only unsealed inside seal_with / open_with /
seal_for_recipient / open_for_recipient, which hand it straight to the
EncryptionEngine.

Ledger layout:
    KEY~{key_id}                                  key record (JSON)
    index owner-keys     (owner_id, key_id)       -> key_id
    index custodian-keys (custodian_id, key_id)   -> key_id
    index rsa-owner      (owner_id, key_id)       -> key_id
"""

import json
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import (
    AccessDeniedError,
    DuplicateKeyError,
    ExpiredError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from phivault.app.services import events
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.clock import format_utc, parse_utc
from phivault.app.services.encryption import KEY_WRAP_ALGORITHM, EncryptionEngine
from phivault.app.services.hashing import hash_data, sha256_hex
from phivault.app.services.key_vault import KeyVault
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)

KEY_PREFIX = "KEY~"
OWNER_INDEX = "owner-keys"
CUSTODIAN_INDEX = "custodian-keys"
RSA_OWNER_INDEX = "rsa-owner"

SYMMETRIC_ALGORITHM = "AES-256-GCM"
ASYMMETRIC_ALGORITHM = "RSA-OAEP"

STATUS_ACTIVE = "active"
STATUS_ROTATED = "rotated"
STATUS_REVOKED = "revoked"

USAGE_OPERATIONS = ("encrypt", "decrypt")

# Fields that refer to sealed material; stripped from anything returned to callers.
_PRIVATE_FIELDS = ("private_material_handle", "material_handles")


def public_view(record: Dict[str, Any]) -> Dict[str, Any]:
    """Key record without material handles (safe to return or log)."""
    view = {k: v for k, v in record.items() if k not in _PRIVATE_FIELDS}
    view["rotation_history"] = [
        {k: v for k, v in entry.items() if k != "material_handle"}
        for entry in record.get("rotation_history", [])
    ]
    return view


class KeyManager:
    """
    Registry and custodian of all key material.

    In production, the vault would be backed by an HSM or a cloud KMS.
    Here material is sealed under the master key inside the ledger.
    """

    def __init__(
        self,
        ledger: Ledger,
        vault: KeyVault,
        audit: AuditLog,
        settings: ProtectionSettings = None,
        engine: EncryptionEngine = None,
        clock=None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.settings = settings or ProtectionSettings()
        self.clock = clock or ledger.clock
        self._vault = vault
        self._engine = engine or EncryptionEngine()

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _load(self, key_id: str) -> Dict[str, Any]:
        record = self.ledger.get_json(KEY_PREFIX + key_id)
        if record is None:
            raise NotFoundError("Key not found", {"key_id": key_id})
        return record

    def _save(self, record: Dict[str, Any]) -> None:
        self.ledger.put_json(KEY_PREFIX + record["key_id"], record)

    def _index(self, index: str, attribute: str, key_id: str) -> None:
        self.ledger.put_state(Ledger.create_composite_key(index, [attribute, key_id]), key_id)

    def _records_in(self, index: str, attribute: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(index, [attribute])
        return [self._load(key_id) for _, key_id in rows]

    def _is_expired(self, record: Dict[str, Any]) -> bool:
        return parse_utc(record["expires_at"]) <= self.clock.now()

    def _new_usage(self) -> Dict[str, Any]:
        return {"encrypt_count": 0, "decrypt_count": 0, "last_used": None}

    # ------------------------------------------------------------------
    # Asymmetric keys
    # ------------------------------------------------------------------

    def get_active_key_pair(self, owner_id: str) -> Optional[Dict[str, Any]]:
        """Active RSA record for a principal, or None."""
        for record in self._records_in(RSA_OWNER_INDEX, owner_id):
            if record["status"] == STATUS_ACTIVE:
                return record
        return None

    def generate_asymmetric_key_pair(
        self,
        owner_id: str,
        key_size: Optional[int] = None,
        user_type: str = "user",
        allow_rotation: bool = False,
        requester_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Generate an RSA key pair for a principal.

        Args:
            owner_id: Principal receiving the pair
            key_size: RSA modulus size (default from settings, minimum 2048)
            user_type: Principal type recorded on the key (patient, doctor, ...)
            allow_rotation: Replace an existing active pair instead of failing;
                the old pair becomes 'rotated' and can still unwrap keys
            requester_id: Who asked (defaults to the owner)

        Returns:
            Public view of the new key record

        Raises:
            InvalidInputError: Missing owner or key size below 2048
            DuplicateKeyError: An active pair exists and allow_rotation is False
        """
        requester_id = requester_id or owner_id or ""
        key_size = key_size or self.settings.rsa_key_size

        with self.ledger.transaction(), self.audit.audited(
            requester_id, "KEY_GENERATE_RSA", owner_id or "", details={"owner_id": owner_id}
        ) as scope:
            if not owner_id:
                raise InvalidInputError("Owner id is required")
            if not isinstance(key_size, int) or key_size < 2048:
                raise InvalidInputError("RSA key size must be at least 2048 bits")

            existing = self.get_active_key_pair(owner_id)
            if existing and not allow_rotation:
                raise DuplicateKeyError(
                    "An active key pair already exists", {"key_id": existing["key_id"]}
                )

            now = self.clock.now()
            created_at = format_utc(now)
            version = 1
            if existing:
                version = existing["version"] + 1
            key_id = "RSA_" + hash_data(
                {"owner_id": owner_id, "created_at": created_at, "version": version}
            )[:32]

            private_key = self._engine.generate_rsa_private_key(key_size)
            private_pem = self._engine.private_key_to_pem(private_key)
            public_pem = self._engine.public_key_to_pem(private_key.public_key())

            record = {
                "key_id": key_id,
                "key_type": "asymmetric",
                "owner_id": owner_id,
                "custodian_id": owner_id,
                "user_type": user_type,
                "purpose": "key-wrapping",
                "algorithm": ASYMMETRIC_ALGORITHM,
                "key_size": key_size,
                "public_material": public_pem,
                "private_material_handle": self._vault.store(private_pem),
                "key_hash": sha256_hex(public_pem.encode("utf-8")),
                "status": STATUS_ACTIVE,
                "version": version,
                "created_at": created_at,
                "expires_at": format_utc(now + timedelta(days=self.settings.rsa_key_days)),
                "rotated_at": None,
                "revoked_at": None,
                "replaced_by": None,
                "usage": self._new_usage(),
                "rotation_history": [],
            }

            if existing:
                existing["status"] = STATUS_ROTATED
                existing["rotated_at"] = created_at
                existing["replaced_by"] = key_id
                self._save(existing)
                scope.details["replaced_key_id"] = existing["key_id"]

            self._save(record)
            self._index(RSA_OWNER_INDEX, owner_id, key_id)
            self._index(OWNER_INDEX, owner_id, key_id)
            self._index(CUSTODIAN_INDEX, owner_id, key_id)
            scope.target_resource = key_id
            scope.details["key_id"] = key_id

            events.emit(
                self.ledger,
                events.RSA_KEY_PAIR_GENERATED,
                key_id=key_id,
                owner_id=owner_id,
                user_type=user_type,
                key_size=key_size,
            )

        logger.info("rsa_key_pair_generated", key_id=key_id, key_size=key_size)
        return public_view(record)

    def ensure_asymmetric_key_pair(self, owner_id: str, user_type: str = "user") -> Dict[str, Any]:
        """Active pair for a principal, generating one if needed."""
        existing = self.get_active_key_pair(owner_id)
        if existing:
            return public_view(existing)
        return self.generate_asymmetric_key_pair(owner_id, user_type=user_type)

    # ------------------------------------------------------------------
    # Symmetric keys
    # ------------------------------------------------------------------

    def generate_symmetric_key(
        self, owner_id: str, purpose: str, custodian_id: str
    ) -> Dict[str, Any]:
        """
        Generate an AES-256 key for (owner, purpose) held by a custodian.

        The key id is derived from (owner_id, purpose, timestamp); expiry is
        symmetric_key_days (30 by default) after creation.

        Raises:
            InvalidInputError: Missing owner, purpose or custodian
            DuplicateKeyError: Same id already issued (same owner and purpose
                at the same instant)
        """
        with self.ledger.transaction(), self.audit.audited(
            custodian_id or "",
            "KEY_GENERATE_SYMMETRIC",
            owner_id or "",
            details={"owner_id": owner_id, "purpose": purpose},
        ) as scope:
            if not owner_id or not purpose or not custodian_id:
                raise InvalidInputError("Owner, purpose and custodian are required")

            now = self.clock.now()
            created_at = format_utc(now)
            key_id = "SYM_" + hash_data(
                {"owner_id": owner_id, "purpose": purpose, "timestamp": created_at}
            )[:32]
            scope.target_resource = key_id
            scope.details["key_id"] = key_id

            if self.ledger.get_state(KEY_PREFIX + key_id) is not None:
                raise DuplicateKeyError("Key id already issued", {"key_id": key_id})

            material = self._engine.generate_key()
            handle = self._vault.store(material)
            record = {
                "key_id": key_id,
                "key_type": "symmetric",
                "owner_id": owner_id,
                "custodian_id": custodian_id,
                "purpose": purpose,
                "algorithm": SYMMETRIC_ALGORITHM,
                "key_size": len(material) * 8,
                "public_material": None,
                "private_material_handle": handle,
                "material_handles": {"1": handle},
                "key_hash": sha256_hex(material),
                "status": STATUS_ACTIVE,
                "version": 1,
                "created_at": created_at,
                "expires_at": format_utc(now + timedelta(days=self.settings.symmetric_key_days)),
                "rotated_at": None,
                "revoked_at": None,
                "replaced_by": None,
                "usage": self._new_usage(),
                "rotation_history": [],
            }
            self._save(record)
            self._index(OWNER_INDEX, owner_id, key_id)
            self._index(CUSTODIAN_INDEX, custodian_id, key_id)

            events.emit(
                self.ledger,
                events.SYMMETRIC_KEY_GENERATED,
                key_id=key_id,
                owner_id=owner_id,
                custodian_id=custodian_id,
                purpose=purpose,
                expires_at=record["expires_at"],
            )

        logger.info("symmetric_key_generated", key_id=key_id, purpose=purpose)
        return public_view(record)

    def find_active_symmetric_key(
        self, owner_id: str, purpose: str, custodian_id: str
    ) -> Optional[Dict[str, Any]]:
        for record in self._records_in(OWNER_INDEX, owner_id):
            if (
                record["key_type"] == "symmetric"
                and record["purpose"] == purpose
                and record["custodian_id"] == custodian_id
                and record["status"] == STATUS_ACTIVE
            ):
                return record
        return None

    def get_or_create_symmetric_key(
        self, owner_id: str, purpose: str, custodian_id: str
    ) -> Dict[str, Any]:
        """
        Active key for (owner, purpose, custodian); created on first use and
        rotated in place when it has expired.
        """
        record = self.find_active_symmetric_key(owner_id, purpose, custodian_id)
        if record is None:
            return self.generate_symmetric_key(owner_id, purpose, custodian_id)
        if self._is_expired(record):
            return self.rotate_symmetric_key(
                record["key_id"], custodian_id, reason="expired_rotation"
            )
        return public_view(record)

    def rotate_symmetric_key(
        self, key_id: str, requester_id: str, reason: str = "scheduled_rotation"
    ) -> Dict[str, Any]:
        """
        Issue fresh material for a symmetric key, keeping its key_id.

        Earlier versions stay in the record so packages sealed before the
        rotation still open.

        Raises:
            NotFoundError: Unknown key
            AccessDeniedError: Requester is neither owner nor custodian
            InvalidStateError: Key is not active (or not symmetric)
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id, "KEY_ROTATE", key_id, details={"key_id": key_id, "reason": reason}
        ) as scope:
            record = self._load(key_id)
            if requester_id not in (record["owner_id"], record["custodian_id"]):
                raise AccessDeniedError(
                    "Only the key owner or custodian may rotate a key", {"key_id": key_id}
                )
            if record["key_type"] != "symmetric":
                raise InvalidStateError("Only symmetric keys rotate in place", {"key_id": key_id})
            if record["status"] != STATUS_ACTIVE:
                raise InvalidStateError(
                    "Only active keys can be rotated",
                    {"key_id": key_id, "status": record["status"]},
                )

            now = self.clock.now()
            rotated_at = format_utc(now)
            record["rotation_history"].append(
                {
                    "version": record["version"],
                    "old_key_hash": record["key_hash"],
                    "rotated_at": rotated_at,
                    "rotated_by": requester_id,
                    "reason": reason,
                    "material_handle": record["private_material_handle"],
                }
            )

            material = self._engine.generate_key()
            handle = self._vault.store(material)
            record["version"] += 1
            record["material_handles"][str(record["version"])] = handle
            record["private_material_handle"] = handle
            record["key_hash"] = sha256_hex(material)
            record["rotated_at"] = rotated_at
            record["expires_at"] = format_utc(
                now + timedelta(days=self.settings.symmetric_key_days)
            )
            self._save(record)
            scope.details["version"] = record["version"]

            events.emit(
                self.ledger,
                events.SYMMETRIC_KEY_ROTATED,
                key_id=key_id,
                rotated_by=requester_id,
                version=record["version"],
                new_expires_at=record["expires_at"],
            )

        logger.info("symmetric_key_rotated", key_id=key_id, version=record["version"])
        return public_view(record)

    # ------------------------------------------------------------------
    # Lifecycle and lookup
    # ------------------------------------------------------------------

    def revoke(self, key_id: str, requester_id: str, reason: str) -> Dict[str, Any]:
        """
        Revoke a key. The record stays for audit; it can no longer seal or open.

        Raises:
            InvalidInputError: Missing reason
            NotFoundError: Unknown key
            AccessDeniedError: Requester is neither owner nor custodian
            InvalidStateError: Already revoked
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id, "KEY_REVOKE", key_id, details={"key_id": key_id}
        ):
            if not reason:
                raise InvalidInputError("A revocation reason is required")
            record = self._load(key_id)
            if requester_id not in (record["owner_id"], record["custodian_id"]):
                raise AccessDeniedError(
                    "Only the key owner or custodian may revoke a key", {"key_id": key_id}
                )
            if record["status"] == STATUS_REVOKED:
                raise InvalidStateError("Key is already revoked", {"key_id": key_id})

            record["status"] = STATUS_REVOKED
            record["revoked_at"] = self.clock.now_iso()
            record["revoked_by"] = requester_id
            record["revocation_reason"] = reason
            self._save(record)

            events.emit(self.ledger, events.KEY_REVOKED, key_id=key_id, revoked_by=requester_id)

        return public_view(record)

    def record_usage(self, key_id: str, operation: str) -> Dict[str, Any]:
        """Increment the encrypt or decrypt counter. Counters only ever grow."""
        if operation not in USAGE_OPERATIONS:
            raise InvalidInputError(
                "Usage operation must be 'encrypt' or 'decrypt'", {"key_id": key_id}
            )
        with self.ledger.transaction():
            record = self._load(key_id)
            record["usage"][f"{operation}_count"] += 1
            record["usage"]["last_used"] = self.clock.now_iso()
            self._save(record)
        return record["usage"]

    def get_key(self, key_id: str) -> Dict[str, Any]:
        """Public view of a key record, whatever its status."""
        return public_view(self._load(key_id))

    def get_key_info(self, key_id: str, requester_id: str) -> Dict[str, Any]:
        """
        Key metadata for its owner or custodian.

        Raises:
            NotFoundError, AccessDeniedError
        """
        with self.audit.audited(requester_id, "KEY_INFO", key_id, details={"key_id": key_id}):
            record = self._load(key_id)
            if requester_id not in (record["owner_id"], record["custodian_id"]):
                raise AccessDeniedError("Not allowed to view this key", {"key_id": key_id})
            info = public_view(record)
        return info

    def list_owner_keys(self, owner_id: str, requester_id: str) -> List[Dict[str, Any]]:
        """All keys of an owner; only the owner may list them."""
        with self.audit.audited(requester_id, "KEY_LIST", owner_id, details={"owner_id": owner_id}) as scope:
            if owner_id != requester_id:
                raise AccessDeniedError("Can only list own keys", {"owner_id": owner_id})
            keys = [public_view(r) for r in self._records_in(OWNER_INDEX, owner_id)]
            scope.details["count"] = len(keys)
        return keys

    def check_rotation_needed(
        self, custodian_id: str, horizon_days: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Active keys held by a custodian that expire within the horizon or
        have been used more often than the usage threshold.
        """
        if horizon_days is None:
            horizon_days = self.settings.rotation_horizon_days
        now = self.clock.now()
        horizon = now + timedelta(days=horizon_days)

        due = []
        for record in self._records_in(CUSTODIAN_INDEX, custodian_id):
            if record["status"] != STATUS_ACTIVE:
                continue
            expires_at = parse_utc(record["expires_at"])
            usage_total = record["usage"]["encrypt_count"] + record["usage"]["decrypt_count"]
            reasons = []
            if expires_at <= horizon:
                reasons.append("expiring")
            if usage_total > self.settings.usage_rotation_threshold:
                reasons.append("usage_threshold")
            if reasons:
                due.append(
                    {
                        "key_id": record["key_id"],
                        "owner_id": record["owner_id"],
                        "purpose": record["purpose"],
                        "expires_at": record["expires_at"],
                        "days_until_expiry": math.ceil(
                            (expires_at - now).total_seconds() / 86400
                        ),
                        "usage_total": usage_total,
                        "reasons": reasons,
                    }
                )
        return due

    def statistics(self) -> Dict[str, Any]:
        """Registry-wide counts by status and algorithm."""
        stats = {
            "total_keys": 0,
            "active_keys": 0,
            "rotated_keys": 0,
            "revoked_keys": 0,
            "by_algorithm": {},
            "symmetric_rotations": 0,
        }
        for _, raw in self.ledger.scan_prefix(KEY_PREFIX):
            record = json.loads(raw)
            stats["total_keys"] += 1
            stats[f"{record['status']}_keys"] += 1
            algorithm = record["algorithm"]
            stats["by_algorithm"][algorithm] = stats["by_algorithm"].get(algorithm, 0) + 1
            stats["symmetric_rotations"] += len(record.get("rotation_history", []))
        stats["generated_at"] = self.clock.now_iso()
        return stats

    # ------------------------------------------------------------------
    # Internal cryptographic call paths
    # ------------------------------------------------------------------

    def seal_with(
        self, key_id: str, plaintext: bytes, associated_data: Optional[str] = None
    ) -> Tuple[Dict[str, Any], int]:
        """
        Seal with the current version of an active symmetric key.

        Returns:
            (sealed payload, key version used)

        Raises:
            InvalidStateError: Key revoked, rotated or not symmetric
            ExpiredError: Key past its expiry (rotate first)
        """
        record = self._load(key_id)
        if record["key_type"] != "symmetric" or record["status"] != STATUS_ACTIVE:
            raise InvalidStateError(
                "Key cannot be used for encryption",
                {"key_id": key_id, "status": record["status"]},
            )
        if self._is_expired(record):
            raise ExpiredError("Key has expired", {"key_id": key_id})

        material = self._vault.reveal(record["private_material_handle"])
        sealed = self._engine.seal(plaintext, material, associated_data)
        self.record_usage(key_id, "encrypt")
        return sealed, record["version"]

    def open_with(
        self,
        key_id: str,
        version: int,
        sealed: Dict[str, Any],
        associated_data: Optional[str] = None,
    ) -> bytes:
        """
        Open a payload sealed with a given version of a symmetric key.

        Expired keys may still open what they sealed; revoked keys may not.
        """
        record = self._load(key_id)
        if record["key_type"] != "symmetric":
            raise InvalidStateError("Not a symmetric key", {"key_id": key_id})
        if record["status"] == STATUS_REVOKED:
            raise InvalidStateError("Key has been revoked", {"key_id": key_id})
        handle = record["material_handles"].get(str(version))
        if handle is None:
            raise NotFoundError("Key version not found", {"key_id": key_id, "version": version})

        plaintext = self._engine.open(sealed, self._vault.reveal(handle), associated_data)
        self.record_usage(key_id, "decrypt")
        return plaintext

    def seal_for_recipient(
        self, recipient_id: str, plaintext: bytes, associated_data: Optional[str] = None
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Envelope-encrypt for a principal: seal under a fresh one-time key and
        wrap that key with the recipient's active RSA public key.

        Returns:
            (sealed payload, wrapped key {key_id, wrapped_key, algorithm})
        """
        pair = self.get_active_key_pair(recipient_id)
        if pair is None:
            raise NotFoundError("Recipient has no active key pair", {"recipient_id": recipient_id})

        one_time_key = self._engine.generate_key()
        sealed = self._engine.seal(plaintext, one_time_key, associated_data)
        wrapped = {
            "key_id": pair["key_id"],
            "wrapped_key": self._engine.wrap_key(one_time_key, pair["public_material"]),
            "algorithm": KEY_WRAP_ALGORITHM,
        }
        self.record_usage(pair["key_id"], "encrypt")
        return sealed, wrapped

    def open_for_recipient(
        self,
        wrapped: Dict[str, Any],
        sealed: Dict[str, Any],
        associated_data: Optional[str] = None,
    ) -> bytes:
        """Unwrap with the recipient's private key (active or rotated) and open."""
        record = self._load(wrapped["key_id"])
        if record["key_type"] != "asymmetric":
            raise InvalidStateError("Not a key pair", {"key_id": record["key_id"]})
        if record["status"] == STATUS_REVOKED:
            raise InvalidStateError("Key pair has been revoked", {"key_id": record["key_id"]})

        private_pem = self._vault.reveal(record["private_material_handle"])
        one_time_key = self._engine.unwrap_key(wrapped["wrapped_key"], private_pem)
        plaintext = self._engine.open(sealed, one_time_key, associated_data)
        self.record_usage(record["key_id"], "decrypt")
        return plaintext
