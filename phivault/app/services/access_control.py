"""
Role-based access control with lockout, overrides and multi-party approval.

Roles, permissions and resource classes are closed enums and the capability
table below covers every (role, resource class) pair; a missing pair fails at
import. Per-user overrides live in a separate sparse map keyed by
(user_id, permission) and can only add a permission, never remove one.

A principal may hold several roles. When a single role has to be picked for
a principal (record summaries, audit attribution), ROLE_PRECEDENCE decides,
never the order in which roles were assigned.

Every permission check, pass or fail, appends one audit entry. Failed checks
count towards a lockout: max_failed_attempts failures inside lockout_seconds
lock the principal out (every check fails closed) until the window passes or
an administrator resets it.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import (
    AccessDeniedError,
    AlreadyExecutedError,
    DuplicateEntityError,
    ExpiredError,
    InsufficientApprovalsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    RoleMismatchError,
)
from phivault.app.services import events
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.clock import format_utc, parse_utc
from phivault.app.services.hashing import hash_data
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    HOSPITAL = "HOSPITAL"
    DIAGNOSTIC_LAB = "DIAGNOSTIC_LAB"
    INSURER = "INSURER"
    RESEARCHER = "RESEARCHER"
    EMERGENCY_RESPONDER = "EMERGENCY_RESPONDER"
    ADMIN = "ADMIN"


class Permission(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    SHARE = "SHARE"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"


class ResourceClass(str, Enum):
    MEDICAL_RECORD = "MEDICAL_RECORD"
    CONSENT = "CONSENT"
    KEY = "KEY"
    AUDIT_LOG = "AUDIT_LOG"


_R, _W, _D, _S, _E = (
    Permission.READ,
    Permission.WRITE,
    Permission.DELETE,
    Permission.SHARE,
    Permission.EMERGENCY_ACCESS,
)

CAPABILITIES: Dict[Role, Dict[ResourceClass, FrozenSet[Permission]]] = {
    Role.PATIENT: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R, _S}),
        ResourceClass.CONSENT: frozenset({_R, _W, _D}),
        ResourceClass.KEY: frozenset({_R}),
        ResourceClass.AUDIT_LOG: frozenset({_R}),
    },
    Role.DOCTOR: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R, _W, _S}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset({_R}),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.NURSE: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset(),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.HOSPITAL: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R, _W, _S}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset({_R, _W}),
        ResourceClass.AUDIT_LOG: frozenset({_R}),
    },
    Role.DIAGNOSTIC_LAB: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R, _W}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset(),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.INSURER: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset(),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.RESEARCHER: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R}),
        ResourceClass.CONSENT: frozenset(),
        ResourceClass.KEY: frozenset(),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.EMERGENCY_RESPONDER: {
        ResourceClass.MEDICAL_RECORD: frozenset({_R, _E}),
        ResourceClass.CONSENT: frozenset(),
        ResourceClass.KEY: frozenset(),
        ResourceClass.AUDIT_LOG: frozenset(),
    },
    Role.ADMIN: {
        ResourceClass.MEDICAL_RECORD: frozenset({_D}),
        ResourceClass.CONSENT: frozenset({_R}),
        ResourceClass.KEY: frozenset({_R, _W, _D}),
        ResourceClass.AUDIT_LOG: frozenset({_R, _W}),
    },
}

for _role in Role:
    if set(CAPABILITIES.get(_role, {})) != set(ResourceClass):
        raise RuntimeError(f"Capability table incomplete for role {_role.value}")

# Roles that may receive patient consent.
HEALTHCARE_ROLES = frozenset(
    {
        Role.DOCTOR,
        Role.NURSE,
        Role.HOSPITAL,
        Role.DIAGNOSTIC_LAB,
        Role.INSURER,
        Role.RESEARCHER,
        Role.EMERGENCY_RESPONDER,
    }
)

# Approvals required before an operation requested under a role may execute.
MULTISIG_THRESHOLDS: Dict[Role, int] = {
    Role.DOCTOR: 2,
    Role.HOSPITAL: 3,
    Role.ADMIN: 1,
    Role.PATIENT: 0,
    Role.NURSE: 0,
    Role.DIAGNOSTIC_LAB: 0,
    Role.INSURER: 0,
    Role.RESEARCHER: 0,
    Role.EMERGENCY_RESPONDER: 0,
}

# Highest first.
ROLE_PRECEDENCE: List[Role] = [
    Role.ADMIN,
    Role.EMERGENCY_RESPONDER,
    Role.HOSPITAL,
    Role.DOCTOR,
    Role.NURSE,
    Role.DIAGNOSTIC_LAB,
    Role.RESEARCHER,
    Role.INSURER,
    Role.PATIENT,
]

ROLE_PREFIX = "ROLE~"
LOCKOUT_PREFIX = "LOCKOUT~"
OVERRIDE_PREFIX = "OVERRIDE~"
MULTISIG_PREFIX = "MULTISIG~"
BOOTSTRAP_KEY = "ACL~BOOTSTRAPPED"
ROLE_MEMBERS_INDEX = "role-members"
MULTISIG_REQUESTER_INDEX = "multisig-requester"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_EXECUTED = "executed"
STATUS_EXPIRED = "expired"


def parse_role(value: Union[Role, str]) -> Role:
    try:
        return Role(value.value if isinstance(value, Role) else str(value).upper())
    except ValueError:
        raise InvalidInputError("Unknown role", {"role": str(value)})


def parse_permission(value: Union[Permission, str]) -> Permission:
    try:
        return Permission(value.value if isinstance(value, Permission) else str(value).upper())
    except ValueError:
        raise InvalidInputError("Unknown permission", {"permission": str(value)})


def parse_resource_class(value: Union[ResourceClass, str]) -> ResourceClass:
    try:
        return ResourceClass(
            value.value if isinstance(value, ResourceClass) else str(value).upper()
        )
    except ValueError:
        raise InvalidInputError("Unknown resource class", {"resource_class": str(value)})


def role_allows(role: Role, permission: Permission, resource_class: ResourceClass) -> bool:
    return permission in CAPABILITIES[role][resource_class]


class AccessControlMatrix:
    """Role membership, permission checks and multi-signature approvals."""

    def __init__(
        self,
        ledger: Ledger,
        audit: AuditLog,
        settings: ProtectionSettings = None,
        clock=None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.settings = settings or ProtectionSettings()
        self.clock = clock or ledger.clock

    # ------------------------------------------------------------------
    # Role membership
    # ------------------------------------------------------------------

    def get_roles(self, user_id: str) -> List[Role]:
        record = self.ledger.get_json(ROLE_PREFIX + user_id) if user_id else None
        if not record:
            return []
        return [Role(r) for r in record["roles"]]

    def has_role(self, user_id: str, role: Union[Role, str]) -> bool:
        return parse_role(role) in self.get_roles(user_id)

    def primary_role(self, user_id: str) -> Optional[Role]:
        """Highest-precedence role a principal holds, or None."""
        held = set(self.get_roles(user_id))
        for role in ROLE_PRECEDENCE:
            if role in held:
                return role
        return None

    def members(self, role: Union[Role, str]) -> List[str]:
        role = parse_role(role)
        rows = self.ledger.get_state_by_partial_composite_key(ROLE_MEMBERS_INDEX, [role.value])
        return [user_id for _, user_id in rows]

    def _store_roles(self, user_id: str, roles: List[Role]) -> None:
        ordered = [r.value for r in ROLE_PRECEDENCE if r in roles]
        self.ledger.put_json(
            ROLE_PREFIX + user_id, {"roles": ordered, "updated_at": self.clock.now_iso()}
        )

    def _require_admin(self, admin_id: str) -> None:
        if Role.ADMIN not in self.get_roles(admin_id):
            raise AccessDeniedError("Administrator role required", {"principal": admin_id})

    def bootstrap_admin(self, admin_id: str) -> Dict[str, Any]:
        """
        Make the first administrator. Only possible once per ledger.

        Raises:
            InvalidInputError: Missing admin id
            InvalidStateError: Already bootstrapped
        """
        with self.ledger.transaction(), self.audit.audited(
            admin_id or "", "ADMIN_BOOTSTRAP", "access-control", role=Role.ADMIN.value
        ):
            if not admin_id:
                raise InvalidInputError("Administrator id is required")
            if self.ledger.get_state(BOOTSTRAP_KEY) is not None:
                raise InvalidStateError("Access control is already initialized")
            self.ledger.put_json(
                BOOTSTRAP_KEY, {"admin_id": admin_id, "at": self.clock.now_iso()}
            )
            self._add_role(admin_id, Role.ADMIN)
            events.emit(self.ledger, events.ROLE_ASSIGNED, user_id=admin_id, role=Role.ADMIN.value)
        return {"admin_id": admin_id, "roles": [Role.ADMIN.value]}

    def _add_role(self, user_id: str, role: Role) -> List[Role]:
        roles = self.get_roles(user_id)
        if role not in roles:
            roles.append(role)
            self._store_roles(user_id, roles)
            self.ledger.put_state(
                Ledger.create_composite_key(ROLE_MEMBERS_INDEX, [role.value, user_id]), user_id
            )
        return roles

    def assign_role(self, admin_id: str, user_id: str, role: Union[Role, str]) -> List[str]:
        """Grant a role to a principal (administrators only). Idempotent."""
        with self.ledger.transaction(), self.audit.audited(
            admin_id, "ROLE_ASSIGN", user_id or "", details={"role": str(getattr(role, "value", role))}
        ):
            if not user_id:
                raise InvalidInputError("User id is required")
            role = parse_role(role)
            self._require_admin(admin_id)
            roles = self._add_role(user_id, role)
            events.emit(
                self.ledger, events.ROLE_ASSIGNED, user_id=user_id, role=role.value, assigned_by=admin_id
            )
        return [r.value for r in roles]

    def revoke_role(self, admin_id: str, user_id: str, role: Union[Role, str]) -> List[str]:
        """Remove a role from a principal (administrators only)."""
        with self.ledger.transaction(), self.audit.audited(
            admin_id, "ROLE_REVOKE", user_id or "", details={"role": str(getattr(role, "value", role))}
        ):
            role = parse_role(role)
            self._require_admin(admin_id)
            roles = self.get_roles(user_id)
            if role not in roles:
                raise NotFoundError("Principal does not hold this role", {"role": role.value})
            if role == Role.ADMIN and len(self.members(Role.ADMIN)) == 1:
                raise InvalidStateError("Cannot remove the last administrator")
            roles.remove(role)
            self._store_roles(user_id, roles)
            self.ledger.delete_state(
                Ledger.create_composite_key(ROLE_MEMBERS_INDEX, [role.value, user_id])
            )
            events.emit(
                self.ledger, events.ROLE_REVOKED, user_id=user_id, role=role.value, revoked_by=admin_id
            )
        return [r.value for r in roles]

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def _override_key(self, user_id: str, permission: Permission) -> str:
        return f"{OVERRIDE_PREFIX}{user_id}~{permission.value}"

    def has_override(self, user_id: str, permission: Union[Permission, str]) -> bool:
        record = self.ledger.get_json(self._override_key(user_id, parse_permission(permission)))
        return bool(record and record.get("granted"))

    def set_override(
        self, admin_id: str, user_id: str, permission: Union[Permission, str]
    ) -> Dict[str, Any]:
        """Grant one permission to one user regardless of role (administrators only)."""
        with self.ledger.transaction(), self.audit.audited(
            admin_id, "OVERRIDE_SET", user_id or ""
        ) as scope:
            permission = parse_permission(permission)
            scope.details["permission"] = permission.value
            self._require_admin(admin_id)
            if not user_id:
                raise InvalidInputError("User id is required")
            record = {
                "user_id": user_id,
                "permission": permission.value,
                "granted": True,
                "granted_by": admin_id,
                "granted_at": self.clock.now_iso(),
            }
            self.ledger.put_json(self._override_key(user_id, permission), record)
            events.emit(
                self.ledger,
                events.PERMISSION_OVERRIDE_SET,
                user_id=user_id,
                permission=permission.value,
                granted=True,
            )
        return record

    def clear_override(self, admin_id: str, user_id: str, permission: Union[Permission, str]) -> None:
        with self.ledger.transaction(), self.audit.audited(
            admin_id, "OVERRIDE_CLEAR", user_id or ""
        ) as scope:
            permission = parse_permission(permission)
            scope.details["permission"] = permission.value
            self._require_admin(admin_id)
            key = self._override_key(user_id, permission)
            if self.ledger.get_state(key) is None:
                raise NotFoundError("No override to clear", {"permission": permission.value})
            self.ledger.delete_state(key)
            events.emit(
                self.ledger,
                events.PERMISSION_OVERRIDE_SET,
                user_id=user_id,
                permission=permission.value,
                granted=False,
            )

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def _lockout_state(self, user_id: str, now: datetime) -> Dict[str, Any]:
        state = self.ledger.get_json(LOCKOUT_PREFIX + user_id) or {
            "failures": [],
            "locked_until": None,
        }
        window_start = now - timedelta(seconds=self.settings.lockout_seconds)
        state["failures"] = [f for f in state["failures"] if parse_utc(f) > window_start]
        if state["locked_until"] and parse_utc(state["locked_until"]) <= now:
            state["locked_until"] = None
        return state

    def is_locked_out(self, user_id: str) -> bool:
        return self._lockout_state(user_id, self.clock.now())["locked_until"] is not None

    def _record_failure(self, user_id: str, state: Dict[str, Any], now: datetime) -> None:
        state["failures"].append(format_utc(now))
        if len(state["failures"]) >= self.settings.max_failed_attempts:
            state["locked_until"] = format_utc(
                now + timedelta(seconds=self.settings.lockout_seconds)
            )
            logger.warning("principal_locked_out", locked_until=state["locked_until"])
        self.ledger.put_json(LOCKOUT_PREFIX + user_id, state)

    def reset_lockout(self, admin_id: str, user_id: str) -> None:
        with self.ledger.transaction(), self.audit.audited(admin_id, "LOCKOUT_RESET", user_id or ""):
            self._require_admin(admin_id)
            self.ledger.put_json(LOCKOUT_PREFIX + user_id, {"failures": [], "locked_until": None})

    # ------------------------------------------------------------------
    # Permission check
    # ------------------------------------------------------------------

    def has_permission(
        self,
        user_id: str,
        role: Union[Role, str],
        permission: Union[Permission, str],
        resource_class: Union[ResourceClass, str] = ResourceClass.MEDICAL_RECORD,
    ) -> bool:
        """
        Decide whether a principal, acting under a role, holds a permission.

        Decision: not locked out AND holds the role AND (the role grants the
        permission on the resource class OR the user has an override for it).
        Failed checks count towards the lockout. Always audited.

        Raises:
            InvalidInputError: Unknown role, permission or resource class
        """
        now = self.clock.now()
        with self.ledger.transaction(), self.audit.audited(
            user_id or "", "PERMISSION_CHECK", "access-control"
        ) as scope:
            if not user_id:
                raise InvalidInputError("User id is required")
            role = parse_role(role)
            permission = parse_permission(permission)
            resource_class = parse_resource_class(resource_class)
            scope.role = role.value
            scope.target_resource = resource_class.value
            scope.details.update({"permission": permission.value})

            state = self._lockout_state(user_id, now)
            if state["locked_until"] is not None:
                allowed, reason = False, "locked_out"
            elif role not in self.get_roles(user_id):
                allowed, reason = False, "role_not_held"
            elif role_allows(role, permission, resource_class):
                allowed, reason = True, "role_permission"
            elif self.has_override(user_id, permission):
                allowed, reason = True, "user_override"
            else:
                allowed, reason = False, "permission_not_granted"

            if not allowed and reason != "locked_out":
                self._record_failure(user_id, state, now)
            scope.details["reason"] = reason
            if not allowed:
                scope.success = False
                scope.error_code = AccessDeniedError.error_code

        return allowed

    # ------------------------------------------------------------------
    # Multi-signature approvals
    # ------------------------------------------------------------------

    def _load_request(self, request_id: str) -> Dict[str, Any]:
        record = self.ledger.get_json(MULTISIG_PREFIX + request_id) if request_id else None
        if record is None:
            raise NotFoundError("Approval request not found", {"request_id": request_id})
        return record

    def _with_status(self, record: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(record)
        if not record["is_executed"] and parse_utc(record["deadline"]) < self.clock.now():
            view["status"] = STATUS_EXPIRED
        return view

    def get_request(self, request_id: str) -> Dict[str, Any]:
        return self._with_status(self._load_request(request_id))

    def list_requests(self, requester_id: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(
            MULTISIG_REQUESTER_INDEX, [requester_id]
        )
        return [self.get_request(request_id) for _, request_id in rows]

    def request_approval(
        self,
        requester_id: str,
        role: Union[Role, str],
        operation_hash: str,
        deadline: Union[datetime, str],
    ) -> Dict[str, Any]:
        """
        Open a multi-signature request for an operation.

        The number of required approvals comes from MULTISIG_THRESHOLDS for
        the role the requester acts under.

        Raises:
            InvalidInputError: Unknown role, role without a threshold, empty
                operation hash, or a deadline that is not in the future
            RoleMismatchError: Requester does not hold the role
            DuplicateEntityError: Identical request already open
        """
        with self.ledger.transaction(), self.audit.audited(
            requester_id, "APPROVAL_REQUEST", "multisig"
        ) as scope:
            role = parse_role(role)
            scope.role = role.value
            required = MULTISIG_THRESHOLDS[role]
            if required <= 0:
                raise InvalidInputError(
                    "Role does not use multi-signature approval", {"role": role.value}
                )
            if not operation_hash or not isinstance(operation_hash, str):
                raise InvalidInputError("Operation hash is required")
            if role not in self.get_roles(requester_id):
                raise RoleMismatchError("Requester does not hold the role", {"role": role.value})

            now = self.clock.now()
            if isinstance(deadline, str):
                try:
                    deadline = parse_utc(deadline)
                except ValueError:
                    raise InvalidInputError("Deadline is not an ISO 8601 timestamp")
            if deadline.tzinfo is None:
                raise InvalidInputError("Deadline must be timezone-aware")
            if deadline <= now:
                raise InvalidInputError("Deadline must be in the future")

            created_at = format_utc(now)
            request_id = "MSR_" + hash_data(
                {
                    "requester_id": requester_id,
                    "role": role.value,
                    "operation_hash": operation_hash,
                    "created_at": created_at,
                }
            )[:32]
            scope.target_resource = request_id
            if self.ledger.get_state(MULTISIG_PREFIX + request_id) is not None:
                raise DuplicateEntityError("Approval request already exists", {"request_id": request_id})

            record = {
                "request_id": request_id,
                "requester_id": requester_id,
                "role": role.value,
                "operation_hash": operation_hash,
                "required_signatures": required,
                "approvers": [],
                "is_executed": False,
                "status": STATUS_PENDING,
                "deadline": format_utc(deadline),
                "created_at": created_at,
                "executed_at": None,
                "executed_by": None,
            }
            self.ledger.put_json(MULTISIG_PREFIX + request_id, record)
            self.ledger.put_state(
                Ledger.create_composite_key(MULTISIG_REQUESTER_INDEX, [requester_id, request_id]),
                request_id,
            )
            scope.details["required_signatures"] = required
            events.emit(
                self.ledger,
                events.APPROVAL_REQUESTED,
                request_id=request_id,
                requester_id=requester_id,
                role=role.value,
                required_signatures=required,
                deadline=record["deadline"],
            )
        return record

    def approve(self, request_id: str, approver_id: str) -> Dict[str, Any]:
        """
        Record one approval.

        Raises:
            NotFoundError: Unknown request
            AlreadyExecutedError: Request already executed
            ExpiredError: Deadline passed
            AccessDeniedError: Requester approving their own request
            RoleMismatchError: Approver holds neither the request role nor ADMIN
            DuplicateEntityError: Approver already approved
        """
        with self.ledger.transaction(), self.audit.audited(
            approver_id, "APPROVAL_APPROVE", request_id or ""
        ) as scope:
            record = self._load_request(request_id)
            if record["is_executed"]:
                raise AlreadyExecutedError("Request already executed", {"request_id": request_id})
            if parse_utc(record["deadline"]) < self.clock.now():
                raise ExpiredError("Approval deadline has passed", {"request_id": request_id})
            if approver_id == record["requester_id"]:
                raise AccessDeniedError(
                    "Requesters cannot approve their own request", {"request_id": request_id}
                )
            if approver_id in record["approvers"]:
                raise DuplicateEntityError("Approver already approved", {"request_id": request_id})
            held = self.get_roles(approver_id)
            if Role(record["role"]) not in held and Role.ADMIN not in held:
                raise RoleMismatchError(
                    "Approver must hold the request role or be an administrator",
                    {"request_id": request_id},
                )

            record["approvers"].append(approver_id)
            if len(record["approvers"]) >= record["required_signatures"]:
                record["status"] = STATUS_APPROVED
            self.ledger.put_json(MULTISIG_PREFIX + request_id, record)
            scope.details["approvals"] = len(record["approvers"])
            events.emit(
                self.ledger,
                events.APPROVAL_RECORDED,
                request_id=request_id,
                approver_id=approver_id,
                approvals=len(record["approvers"]),
            )
        return record

    def execute(self, request_id: str, executor_id: str) -> Dict[str, Any]:
        """
        Execute once enough distinct approvers have signed, before the deadline.

        Raises:
            NotFoundError, AlreadyExecutedError, ExpiredError,
            AccessDeniedError (executor is neither requester nor ADMIN),
            InsufficientApprovalsError
        """
        with self.ledger.transaction(), self.audit.audited(
            executor_id, "APPROVAL_EXECUTE", request_id or ""
        ) as scope:
            record = self._load_request(request_id)
            if record["is_executed"]:
                raise AlreadyExecutedError("Request already executed", {"request_id": request_id})
            if parse_utc(record["deadline"]) < self.clock.now():
                raise ExpiredError("Approval deadline has passed", {"request_id": request_id})
            if executor_id != record["requester_id"] and Role.ADMIN not in self.get_roles(executor_id):
                raise AccessDeniedError(
                    "Only the requester or an administrator may execute", {"request_id": request_id}
                )
            if len(record["approvers"]) < record["required_signatures"]:
                raise InsufficientApprovalsError(
                    "Not enough approvals",
                    {
                        "request_id": request_id,
                        "approvals": len(record["approvers"]),
                        "required": record["required_signatures"],
                    },
                )

            now_iso = self.clock.now_iso()
            record["is_executed"] = True
            record["status"] = STATUS_EXECUTED
            record["executed_at"] = now_iso
            record["executed_by"] = executor_id
            self.ledger.put_json(MULTISIG_PREFIX + request_id, record)
            scope.details["operation_hash"] = record["operation_hash"]
            events.emit(
                self.ledger,
                events.APPROVAL_EXECUTED,
                request_id=request_id,
                executed_by=executor_id,
                operation_hash=record["operation_hash"],
            )
        return record
