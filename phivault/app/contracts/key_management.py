"""
Ledger-facing key management operations.

Generation, rotation, revocation and lookups are audited by the KeyManager
itself; the operations that only exist at this level (rotation checks,
statistics, usage updates) audit here.
"""

from typing import Any, Dict, Optional

from phivault.app.errors import AccessDeniedError, InvalidInputError
from phivault.app.services.access_control import AccessControlMatrix, Role
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.key_registry import USAGE_OPERATIONS, KeyManager


class KeyManagementContract:
    def __init__(self, keys: KeyManager, access_control: AccessControlMatrix, audit: AuditLog):
        self.keys = keys
        self.access_control = access_control
        self.audit = audit
        self.ledger = keys.ledger

    def generate_rsa_key_pair(
        self,
        user_id: str,
        user_type: str,
        key_size: Optional[int] = None,
        requester_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not user_type:
            raise InvalidInputError("User type is required")
        return self.keys.generate_asymmetric_key_pair(
            user_id, key_size=key_size, user_type=user_type, requester_id=requester_id
        )

    def generate_symmetric_key(self, data_owner_id: str, purpose: str, provider_id: str) -> Dict[str, Any]:
        return self.keys.generate_symmetric_key(data_owner_id, purpose, provider_id)

    def rotate_symmetric_key(self, key_id: str, requester_id: str) -> Dict[str, Any]:
        return self.keys.rotate_symmetric_key(key_id, requester_id)

    def revoke_key(self, key_id: str, requester_id: str, reason: str) -> Dict[str, Any]:
        return self.keys.revoke(key_id, requester_id, reason)

    def get_owner_keys(self, owner_id: str, requester_id: str) -> Dict[str, Any]:
        keys = self.keys.list_owner_keys(owner_id, requester_id)
        return {"owner_id": owner_id, "total_keys": len(keys), "keys": keys}

    def get_key_info(self, key_id: str, requester_id: str) -> Dict[str, Any]:
        return self.keys.get_key_info(key_id, requester_id)

    def check_key_rotation_needed(
        self, provider_id: str, horizon_days: Optional[int] = None
    ) -> Dict[str, Any]:
        """Active keys a custodian holds that expire within the horizon or exceed the usage threshold."""
        with self.audit.audited(provider_id or "", "KEY_ROTATION_CHECK", provider_id or "") as scope:
            if not provider_id:
                raise InvalidInputError("Provider id is required")
            due = self.keys.check_rotation_needed(provider_id, horizon_days)
            scope.details["keys_needing_rotation"] = len(due)
        return {
            "provider_id": provider_id,
            "keys_needing_rotation": len(due),
            "keys": due,
            "timestamp": self.keys.clock.now_iso(),
        }

    def get_key_statistics(self, requester_id: str) -> Dict[str, Any]:
        """Registry-wide statistics; administrators only."""
        with self.audit.audited(requester_id or "", "KEY_STATISTICS", "key-registry"):
            if not self.access_control.has_role(requester_id, Role.ADMIN):
                raise AccessDeniedError("Key statistics require the administrator role")
            stats = self.keys.statistics()
        return stats

    def update_key_usage(self, key_id: str, operation: str, user_id: str) -> Dict[str, Any]:
        """
        Record an encrypt or decrypt performed with a key outside the core.

        Raises:
            InvalidInputError: Missing parameter or unknown operation
            NotFoundError: Unknown key
            AccessDeniedError: User is neither owner nor custodian
        """
        with self.ledger.transaction(), self.audit.audited(
            user_id or "", "KEY_USAGE_UPDATE", key_id or "", details={"operation": operation}
        ):
            if not key_id or not user_id or operation not in USAGE_OPERATIONS:
                raise InvalidInputError("Key id, user id and an encrypt/decrypt operation are required")
            record = self.keys.get_key(key_id)
            if user_id not in (record["owner_id"], record["custodian_id"]):
                raise AccessDeniedError("Not allowed to update this key", {"key_id": key_id})
            usage = self.keys.record_usage(key_id, operation)
        return {"key_id": key_id, "operation": operation, "usage": usage, "timestamp": usage["last_used"]}
