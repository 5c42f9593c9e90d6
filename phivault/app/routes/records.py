"""
Medical record endpoints.

The acting principal is the token subject: provider for store and update,
requester for retrieval and listings, patient for revocation.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from phivault.app.models import StoreRecordRequest, UpdateRecordRequest
from phivault.app.runtime import Runtime, get_runtime
from phivault.app.security.auth import Identity, get_current_identity
from phivault.app.security.rate_limit import limiter

router = APIRouter(prefix="/v1", tags=["records"])


@router.post("/records", status_code=201)
@limiter.limit("30/minute")
async def store_record(
    request: Request,
    body: StoreRecordRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.records.store_protected_medical_data(
        body.record_id, body.payload, identity.sub, body.patient_id, body.data_category
    )


@router.get("/records/{record_id}")
@limiter.limit("100/minute")
async def retrieve_record(
    request: Request,
    record_id: str,
    x_access_token: Optional[str] = Header(default=None),
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Decrypt a record. X-Access-Token is only recorded (as a fingerprint) for correlation."""
    return runtime.records.retrieve_protected_medical_data(record_id, identity.sub, x_access_token)


@router.put("/records/{record_id}")
@limiter.limit("30/minute")
async def update_record(
    request: Request,
    record_id: str,
    body: UpdateRecordRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.records.update_medical_record(record_id, body.payload, identity.sub)


@router.get("/patients/{patient_id}/records")
async def patient_records(
    patient_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.records.get_patient_records(patient_id, identity.sub)


@router.post("/records/{record_id}/revoke")
async def revoke_record(
    record_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.records.revoke_record_access(record_id, identity.sub)


@router.get("/records/{record_id}/audit-trail")
async def record_audit_trail(
    record_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.records.get_record_audit_trail(record_id, identity.sub)
