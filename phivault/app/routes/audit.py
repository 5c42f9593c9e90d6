"""
Audit log endpoints.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from phivault.app.errors import AccessDeniedError
from phivault.app.runtime import Runtime, get_runtime
from phivault.app.security.auth import Identity, get_current_identity
from phivault.app.services.access_control import Role

router = APIRouter(prefix="/v1/audit", tags=["audit"])


@router.get("/verify")
async def verify_audit_chain(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Recompute the audit hash chain. Administrators only."""
    if not runtime.access_control.has_role(identity.sub, Role.ADMIN):
        raise AccessDeniedError("Audit verification requires the administrator role")
    result = runtime.audit.verify_chain()
    return {
        "valid": result["valid"],
        "entries_checked": result["entries_checked"],
        "discrepancies": len(result["discrepancies"]),
    }


@router.get("/report")
async def audit_report(
    start: Optional[str] = None,
    end: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    return runtime.protection.audit_report(identity.sub, start, end)
