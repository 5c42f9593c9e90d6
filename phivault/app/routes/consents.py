"""
Consent and emergency access endpoints.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from phivault.app.models import CleanupConsentsRequest, EmergencyAccessRequest, GrantConsentRequest
from phivault.app.runtime import Runtime, get_runtime
from phivault.app.security.auth import Identity, get_current_identity

router = APIRouter(prefix="/v1", tags=["consents"])


@router.post("/consents", status_code=201)
async def grant_consent(
    body: GrantConsentRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """The token subject grants consent as the patient."""
    return runtime.consents.grant_consent(
        identity.sub,
        body.grantee_id,
        body.data_category,
        body.duration_seconds,
        body.purpose,
        body.allow_sub_access,
    )


@router.post("/consents/cleanup")
async def cleanup_consents(
    body: CleanupConsentsRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.consents.cleanup_expired_consents(body.consent_ids, identity.sub)


@router.get("/consents/access")
async def check_data_access(
    patient_id: str,
    data_category: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Whether the caller may read a category of a patient's data."""
    allowed = runtime.consents.has_data_access(patient_id, identity.sub, data_category)
    return {"patient_id": patient_id, "accessor_id": identity.sub, "has_access": allowed}


@router.post("/consents/{consent_id}/revoke")
async def revoke_consent(
    consent_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.consents.revoke_consent(consent_id, identity.sub)


@router.get("/patients/{patient_id}/consents")
async def patient_consents(
    patient_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    return runtime.consents.get_patient_consents(patient_id, identity.sub)


@router.get("/grantees/{grantee_id}/consents")
async def grantee_consents(
    grantee_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    return runtime.consents.get_grantee_consents(grantee_id, identity.sub)


@router.post("/emergency-access", status_code=201)
async def grant_emergency_access(
    body: EmergencyAccessRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.consents.grant_emergency_access(
        identity.sub, body.patient_id, body.reason, body.duration_seconds
    )
