"""
Key management endpoints.

Responses carry public key records only: material handles are stripped and
private material never leaves the key manager.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from phivault.app.models import (
    GenerateRSAKeyRequest,
    GenerateSymmetricKeyRequest,
    KeyUsageRequest,
    RevokeKeyRequest,
)
from phivault.app.runtime import Runtime, get_runtime
from phivault.app.security.auth import Identity, get_current_identity

router = APIRouter(prefix="/v1", tags=["keys"])


@router.post("/keys/rsa", status_code=201)
async def generate_rsa_key_pair(
    body: GenerateRSAKeyRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.generate_rsa_key_pair(identity.sub, body.user_type, body.key_size)


@router.post("/keys/symmetric", status_code=201)
async def generate_symmetric_key(
    body: GenerateSymmetricKeyRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """The calling provider becomes the key's custodian."""
    return runtime.key_contract.generate_symmetric_key(body.data_owner_id, body.purpose, identity.sub)


@router.get("/keys/rotation-check")
async def rotation_check(
    horizon_days: Optional[int] = None,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.check_key_rotation_needed(identity.sub, horizon_days)


@router.get("/keys/statistics")
async def key_statistics(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.get_key_statistics(identity.sub)


@router.get("/keys/{key_id}")
async def key_info(
    key_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.get_key_info(key_id, identity.sub)


@router.post("/keys/{key_id}/rotate")
async def rotate_key(
    key_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.rotate_symmetric_key(key_id, identity.sub)


@router.post("/keys/{key_id}/revoke")
async def revoke_key(
    key_id: str,
    body: RevokeKeyRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.revoke_key(key_id, identity.sub, body.reason)


@router.post("/keys/{key_id}/usage")
async def update_key_usage(
    key_id: str,
    body: KeyUsageRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.update_key_usage(key_id, body.operation, identity.sub)


@router.get("/owners/{owner_id}/keys")
async def owner_keys(
    owner_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.key_contract.get_owner_keys(owner_id, identity.sub)
