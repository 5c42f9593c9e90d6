"""
Tests for role membership, permission checks, lockout, overrides and
multi-signature approvals.
"""

from datetime import timedelta

import pytest

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
from phivault.app.services.access_control import (
    CAPABILITIES,
    MULTISIG_THRESHOLDS,
    Permission,
    ResourceClass,
    Role,
    role_allows,
)
from phivault.tests.runtime_helpers import ADMIN, DOCTOR, HOSPITAL, NURSE, PATIENT, grant_roles

OTHER_DOCTOR = "doctor-002"
THIRD_DOCTOR = "doctor-003"


@pytest.fixture
def acl(staffed):
    grant_roles(staffed, {OTHER_DOCTOR: Role.DOCTOR, THIRD_DOCTOR: Role.DOCTOR})
    return staffed.access_control


def _deadline(clock, hours=1):
    return clock.now() + timedelta(hours=hours)


def test_capability_table_covers_every_role_and_resource():
    for role in Role:
        assert set(CAPABILITIES[role]) == set(ResourceClass)


@pytest.mark.parametrize(
    "role, permission, resource, expected",
    [
        (Role.DOCTOR, Permission.WRITE, ResourceClass.MEDICAL_RECORD, True),
        (Role.NURSE, Permission.WRITE, ResourceClass.MEDICAL_RECORD, False),
        (Role.PATIENT, Permission.SHARE, ResourceClass.MEDICAL_RECORD, True),
        (Role.EMERGENCY_RESPONDER, Permission.EMERGENCY_ACCESS, ResourceClass.MEDICAL_RECORD, True),
        (Role.ADMIN, Permission.READ, ResourceClass.MEDICAL_RECORD, False),
        (Role.ADMIN, Permission.WRITE, ResourceClass.AUDIT_LOG, True),
    ],
)
def test_role_allows(role, permission, resource, expected):
    assert role_allows(role, permission, resource) is expected


def test_permission_requires_holding_the_role(acl):
    assert acl.has_permission(DOCTOR, Role.DOCTOR, Permission.WRITE) is True
    assert acl.has_permission(NURSE, Role.DOCTOR, Permission.WRITE) is False


def test_permission_checks_are_audited(staffed):
    staffed.access_control.has_permission(NURSE, "NURSE", "WRITE", "MEDICAL_RECORD")

    entry = staffed.audit.entries()[-1]
    assert entry["action"] == "PERMISSION_CHECK"
    assert entry["success"] is False
    assert entry["role"] == "NURSE"
    assert entry["details"]["reason"] == "permission_not_granted"


def test_unknown_permission_rejected(acl):
    with pytest.raises(InvalidInputError):
        acl.has_permission(DOCTOR, Role.DOCTOR, "TELEPORT")


def test_lockout_after_repeated_failures(acl, clock):
    for _ in range(5):
        assert acl.has_permission(NURSE, Role.NURSE, Permission.WRITE) is False
    assert acl.is_locked_out(NURSE)

    # Locked out: even a permitted check fails closed.
    assert acl.has_permission(NURSE, Role.NURSE, Permission.READ) is False

    clock.advance(15 * 60 + 1)
    assert acl.has_permission(NURSE, Role.NURSE, Permission.READ) is True


def test_failures_outside_window_do_not_accumulate(acl, clock):
    for _ in range(4):
        acl.has_permission(NURSE, Role.NURSE, Permission.WRITE)
    clock.advance(15 * 60 + 1)
    acl.has_permission(NURSE, Role.NURSE, Permission.WRITE)
    assert not acl.is_locked_out(NURSE)


def test_admin_resets_lockout(acl):
    for _ in range(5):
        acl.has_permission(NURSE, Role.NURSE, Permission.WRITE)
    with pytest.raises(AccessDeniedError):
        acl.reset_lockout(DOCTOR, NURSE)
    acl.reset_lockout(ADMIN, NURSE)
    assert not acl.is_locked_out(NURSE)


def test_override_adds_a_permission(acl):
    assert acl.has_permission(NURSE, Role.NURSE, Permission.SHARE) is False
    acl.set_override(ADMIN, NURSE, Permission.SHARE)
    assert acl.has_permission(NURSE, Role.NURSE, Permission.SHARE) is True

    acl.clear_override(ADMIN, NURSE, Permission.SHARE)
    assert acl.has_permission(NURSE, Role.NURSE, Permission.SHARE) is False


def test_override_cannot_make_up_for_an_unheld_role(acl):
    acl.set_override(ADMIN, NURSE, Permission.WRITE)
    assert acl.has_permission(NURSE, Role.DOCTOR, Permission.WRITE) is False


def test_only_admins_manage_roles_and_overrides(acl):
    with pytest.raises(AccessDeniedError):
        acl.assign_role(DOCTOR, NURSE, Role.DOCTOR)
    with pytest.raises(AccessDeniedError):
        acl.set_override(DOCTOR, NURSE, Permission.WRITE)


def test_bootstrap_only_once(acl):
    with pytest.raises(InvalidStateError):
        acl.bootstrap_admin("admin-002")


def test_last_admin_cannot_be_removed(acl):
    with pytest.raises(InvalidStateError):
        acl.revoke_role(ADMIN, ADMIN, Role.ADMIN)


def test_revoke_role(acl):
    assert acl.revoke_role(ADMIN, NURSE, Role.NURSE) == []
    assert NURSE not in acl.members(Role.NURSE)
    with pytest.raises(NotFoundError):
        acl.revoke_role(ADMIN, NURSE, Role.NURSE)


def test_primary_role_follows_precedence_not_assignment_order(acl):
    acl.assign_role(ADMIN, NURSE, Role.HOSPITAL)
    assert acl.primary_role(NURSE) is Role.HOSPITAL
    assert acl.get_roles(NURSE) == [Role.HOSPITAL, Role.NURSE]
    assert acl.primary_role("nobody") is None


def test_doctor_request_needs_two_distinct_approvals(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-1", _deadline(clock))
    assert request["required_signatures"] == 2

    acl.approve(request["request_id"], OTHER_DOCTOR)
    with pytest.raises(InsufficientApprovalsError):
        acl.execute(request["request_id"], DOCTOR)

    approved = acl.approve(request["request_id"], THIRD_DOCTOR)
    assert approved["status"] == "approved"

    executed = acl.execute(request["request_id"], DOCTOR)
    assert executed["is_executed"] is True
    assert executed["executed_by"] == DOCTOR

    with pytest.raises(AlreadyExecutedError):
        acl.execute(request["request_id"], DOCTOR)


def test_same_approver_counts_once(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-2", _deadline(clock))
    acl.approve(request["request_id"], OTHER_DOCTOR)
    with pytest.raises(DuplicateEntityError):
        acl.approve(request["request_id"], OTHER_DOCTOR)


def test_requester_cannot_self_approve(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-3", _deadline(clock))
    with pytest.raises(AccessDeniedError):
        acl.approve(request["request_id"], DOCTOR)


def test_approver_needs_role_or_admin(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-4", _deadline(clock))
    with pytest.raises(RoleMismatchError):
        acl.approve(request["request_id"], NURSE)
    assert acl.approve(request["request_id"], ADMIN)["approvers"] == [ADMIN]


def test_expired_request_cannot_be_approved_or_executed(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-5", _deadline(clock))
    acl.approve(request["request_id"], OTHER_DOCTOR)
    acl.approve(request["request_id"], THIRD_DOCTOR)

    clock.advance(2 * 3600)
    assert acl.get_request(request["request_id"])["status"] == "expired"
    with pytest.raises(ExpiredError):
        acl.execute(request["request_id"], DOCTOR)


def test_request_validation(acl, clock):
    with pytest.raises(InvalidInputError):
        acl.request_approval(PATIENT, Role.PATIENT, "op", _deadline(clock))
    with pytest.raises(RoleMismatchError):
        acl.request_approval(NURSE, Role.DOCTOR, "op", _deadline(clock))
    with pytest.raises(InvalidInputError):
        acl.request_approval(DOCTOR, Role.DOCTOR, "op", clock.now() - timedelta(seconds=1))
    with pytest.raises(InvalidInputError):
        acl.request_approval(DOCTOR, Role.DOCTOR, "", _deadline(clock))


def test_hospital_threshold_and_listing(acl, clock):
    assert MULTISIG_THRESHOLDS[Role.HOSPITAL] == 3
    request = acl.request_approval(HOSPITAL, "HOSPITAL", "op-hash-6", _deadline(clock))
    assert request["required_signatures"] == 3
    assert [r["request_id"] for r in acl.list_requests(HOSPITAL)] == [request["request_id"]]


def test_only_requester_or_admin_executes(acl, clock):
    request = acl.request_approval(DOCTOR, Role.DOCTOR, "op-hash-7", _deadline(clock))
    acl.approve(request["request_id"], OTHER_DOCTOR)
    acl.approve(request["request_id"], THIRD_DOCTOR)
    with pytest.raises(AccessDeniedError):
        acl.execute(request["request_id"], OTHER_DOCTOR)
    assert acl.execute(request["request_id"], ADMIN)["executed_by"] == ADMIN
