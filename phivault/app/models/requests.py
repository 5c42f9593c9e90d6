"""
Request bodies for the PHI Vault HTTP surface.

The acting principal never appears in a body: it comes from the bearer token.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class StoreRecordRequest(BaseModel):
    record_id: str = Field(..., min_length=1, description="Caller-chosen record identifier")
    patient_id: str = Field(..., min_length=1, description="Patient the record is about")
    payload: Dict[str, Any] = Field(..., description="Record content (JSON object)")
    data_category: Union[int, str] = Field(default=0, description="Data category (0-5 or name)")


class UpdateRecordRequest(BaseModel):
    payload: Dict[str, Any] = Field(..., description="Replacement record content")


class GenerateRSAKeyRequest(BaseModel):
    user_type: str = Field(..., min_length=1, description="Principal type (patient, doctor, ...)")
    key_size: Optional[int] = Field(default=None, ge=2048, description="RSA modulus size")


class GenerateSymmetricKeyRequest(BaseModel):
    data_owner_id: str = Field(..., min_length=1)
    purpose: str = Field(..., min_length=1)


class RevokeKeyRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class KeyUsageRequest(BaseModel):
    operation: Literal["encrypt", "decrypt"]


class GrantConsentRequest(BaseModel):
    grantee_id: str = Field(..., min_length=1)
    data_category: Union[int, str] = Field(..., description="Data category (0-5 or name)")
    duration_seconds: float = Field(..., description="Consent lifetime, up to 365 days")
    purpose: str = Field(..., description="Why access is granted")
    allow_sub_access: bool = False


class CleanupConsentsRequest(BaseModel):
    consent_ids: Optional[List[str]] = Field(
        default=None, description="Consents to sweep; all consents when omitted"
    )


class EmergencyAccessRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)
    reason: str = Field(..., description="Emergency justification (required)")
    duration_seconds: Optional[float] = Field(default=None, description="Up to 24 hours")


class RoleChangeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: str


class PermissionCheckRequest(BaseModel):
    role: str
    permission: str
    resource_class: str = "MEDICAL_RECORD"


class ApprovalCreateRequest(BaseModel):
    role: str
    operation_hash: str = Field(..., min_length=1)
    deadline: datetime = Field(..., description="Timezone-aware ISO 8601 deadline")
