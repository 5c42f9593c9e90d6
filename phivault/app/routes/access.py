"""
Roles, permission checks and multi-signature approvals.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from phivault.app.models import ApprovalCreateRequest, PermissionCheckRequest, RoleChangeRequest
from phivault.app.runtime import Runtime, get_runtime
from phivault.app.security.auth import Identity, get_current_identity

router = APIRouter(prefix="/v1", tags=["access-control"])


@router.post("/admin/init", status_code=201)
async def init_ledger(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Make the caller the first administrator. Succeeds once per ledger."""
    return runtime.records.init_ledger(identity.sub)


@router.post("/roles/assign")
async def assign_role(
    body: RoleChangeRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    roles = runtime.access_control.assign_role(identity.sub, body.user_id, body.role)
    return {"user_id": body.user_id, "roles": roles}


@router.post("/roles/revoke")
async def revoke_role(
    body: RoleChangeRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    roles = runtime.access_control.revoke_role(identity.sub, body.user_id, body.role)
    return {"user_id": body.user_id, "roles": roles}


@router.get("/roles/me")
async def my_roles(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    primary = runtime.access_control.primary_role(identity.sub)
    return {
        "user_id": identity.sub,
        "roles": [r.value for r in runtime.access_control.get_roles(identity.sub)],
        "primary_role": primary.value if primary else None,
    }


@router.post("/permissions/check")
async def check_permission(
    body: PermissionCheckRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    allowed = runtime.access_control.has_permission(
        identity.sub, body.role, body.permission, body.resource_class
    )
    return {"user_id": identity.sub, "allowed": allowed}


@router.post("/approvals", status_code=201)
async def request_approval(
    body: ApprovalCreateRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.access_control.request_approval(
        identity.sub, body.role, body.operation_hash, body.deadline
    )


@router.get("/approvals")
async def my_approval_requests(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    return runtime.access_control.list_requests(identity.sub)


@router.get("/approvals/{request_id}")
async def get_approval_request(
    request_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.access_control.get_request(request_id)


@router.post("/approvals/{request_id}/approve")
async def approve(
    request_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.access_control.approve(request_id, identity.sub)


@router.post("/approvals/{request_id}/execute")
async def execute(
    request_id: str,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.access_control.execute(request_id, identity.sub)
