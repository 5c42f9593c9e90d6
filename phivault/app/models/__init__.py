"""
Pydantic models for the PHI Vault HTTP surface.
"""

from phivault.app.models.requests import (
    ApprovalCreateRequest,
    CleanupConsentsRequest,
    EmergencyAccessRequest,
    GenerateRSAKeyRequest,
    GenerateSymmetricKeyRequest,
    GrantConsentRequest,
    KeyUsageRequest,
    PermissionCheckRequest,
    RevokeKeyRequest,
    RoleChangeRequest,
    StoreRecordRequest,
    UpdateRecordRequest,
)

__all__ = [
    "ApprovalCreateRequest",
    "CleanupConsentsRequest",
    "EmergencyAccessRequest",
    "GenerateRSAKeyRequest",
    "GenerateSymmetricKeyRequest",
    "GrantConsentRequest",
    "KeyUsageRequest",
    "PermissionCheckRequest",
    "RevokeKeyRequest",
    "RoleChangeRequest",
    "StoreRecordRequest",
    "UpdateRecordRequest",
]
