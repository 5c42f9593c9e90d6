"""
Error taxonomy for PHI Vault.

Every failure raised by the core carries a stable tag (error_code) and a
human-readable reason. Details hold identifiers only (record ids, key ids,
indexes) so that no error ever carries plaintext, key material or another
principal's data. None of these errors is transient: the core performs no
network I/O, so identical inputs and state always fail the same way.
"""

from typing import Any, Dict, Optional


class PhiVaultError(Exception):
    """Base exception for all PHI Vault errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Error body returned to callers and written to audit details."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidInputError(PhiVaultError):
    """Malformed or malicious payload, or a missing required field."""

    error_code = "invalid_input"
    http_status = 400


class AccessDeniedError(PhiVaultError):
    """Role, consent or ownership check failed."""

    error_code = "access_denied"
    http_status = 403


class RoleMismatchError(AccessDeniedError):
    """A principal does not hold the role an operation requires of it."""

    error_code = "role_mismatch"


class IntegrityViolationError(PhiVaultError):
    """Hash or authentication tag mismatch."""

    error_code = "integrity_violation"
    http_status = 422


class DuplicateEntityError(PhiVaultError):
    error_code = "duplicate_entity"
    http_status = 409


class DuplicateKeyError(DuplicateEntityError):
    error_code = "duplicate_key"


class DuplicateConsentError(DuplicateEntityError):
    error_code = "duplicate_consent"


class ExpiredError(PhiVaultError):
    """Consent, emergency grant, share or approval request past its deadline."""

    error_code = "expired"
    http_status = 410


class InsufficientApprovalsError(PhiVaultError):
    error_code = "insufficient_approvals"
    http_status = 409


class AlreadyExecutedError(PhiVaultError):
    error_code = "already_executed"
    http_status = 409


class InvalidStateError(PhiVaultError):
    """The entity exists but its status does not allow the transition."""

    error_code = "invalid_state"
    http_status = 409


class NotFoundError(PhiVaultError):
    error_code = "not_found"
    http_status = 404
