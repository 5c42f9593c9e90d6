"""
Runtime configuration for PHI Vault.

Everything is read from the environment at import time, the same way the
database path and JWT settings are resolved elsewhere in the app. Secrets
fall back to development values only; production deployments MUST set
PHIVAULT_MASTER_KEY and PHIVAULT_AUDIT_HMAC_KEY.
"""

import base64
import hashlib
import os

from pydantic import BaseModel, Field

ENVIRONMENT = os.getenv("ENV", "dev")

LEDGER_BACKEND = os.getenv("PHIVAULT_LEDGER_BACKEND", "sqlite")

LOG_LEVEL = os.getenv("PHIVAULT_LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("PHIVAULT_LOG_FORMAT", "json")

# Development fallbacks. Never used when the env vars are set.
_DEV_MASTER_PASSPHRASE = "phivault-dev-master-key-change-in-production"
_DEV_AUDIT_KEY = "phivault-dev-audit-key-change-in-production"


def get_master_key() -> bytes:
    """
    Return the 32-byte master key that seals key material in the vault.

    PHIVAULT_MASTER_KEY must be base64 of exactly 32 bytes. Without it a key is
    derived from a fixed development passphrase.
    """
    encoded = os.getenv("PHIVAULT_MASTER_KEY")
    if encoded:
        key = base64.b64decode(encoded)
        if len(key) != 32:
            raise ValueError("PHIVAULT_MASTER_KEY must decode to 32 bytes")
        return key
    return hashlib.sha256(_DEV_MASTER_PASSPHRASE.encode("utf-8")).digest()


def get_audit_hmac_key() -> bytes:
    """Return the key used to bind audit entries (HMAC-SHA256)."""
    return os.getenv("PHIVAULT_AUDIT_HMAC_KEY", _DEV_AUDIT_KEY).encode("utf-8")


class ProtectionSettings(BaseModel):
    """Tunables for the protection and authorization engines."""

    compliance_level: str = "HIPAA"
    encryption_standard: str = "AES-256-GCM"

    symmetric_key_days: int = Field(default=30, gt=0)
    rsa_key_size: int = Field(default=2048, ge=2048)
    rsa_key_days: int = Field(default=365, gt=0)
    rotation_horizon_days: int = Field(default=7, ge=0)
    usage_rotation_threshold: int = Field(default=10_000, gt=0)

    spot_check_size: int = Field(default=3, gt=0)
    batch_chunk_size: int = Field(default=50, gt=0)
    max_batch_size: int = Field(default=1000, gt=0)

    max_failed_attempts: int = Field(default=5, gt=0)
    lockout_seconds: int = Field(default=15 * 60, gt=0)

    max_consent_seconds: int = Field(default=365 * 24 * 3600, gt=0)
    max_emergency_seconds: int = Field(default=24 * 3600, gt=0)

    @classmethod
    def from_env(cls) -> "ProtectionSettings":
        overrides = {}
        for field_name in cls.model_fields:
            value = os.getenv(f"PHIVAULT_{field_name.upper()}")
            if value is not None:
                overrides[field_name] = value
        return cls(**overrides)
