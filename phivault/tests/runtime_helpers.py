"""
Shared principals and runtime builders for PHI Vault tests.
"""

import random

from phivault.app.runtime import Runtime
from phivault.app.services.access_control import Role
from phivault.app.settings import ProtectionSettings

TEST_MASTER_KEY = bytes(range(32))
TEST_AUDIT_KEY = b"phivault-test-audit-key"

ADMIN = "admin-001"
PATIENT = "patient-001"
DOCTOR = "doctor-001"
NURSE = "nurse-001"
HOSPITAL = "hospital-001"
RESPONDER = "responder-001"
RESEARCHER = "researcher-001"

STAFF = {
    PATIENT: Role.PATIENT,
    DOCTOR: Role.DOCTOR,
    NURSE: Role.NURSE,
    HOSPITAL: Role.HOSPITAL,
    RESPONDER: Role.EMERGENCY_RESPONDER,
    RESEARCHER: Role.RESEARCHER,
}


def make_runtime(ledger, **overrides) -> Runtime:
    """Runtime with fixed keys and a seeded spot-check sampler."""
    return Runtime(
        ledger,
        ProtectionSettings(**overrides),
        master_key=TEST_MASTER_KEY,
        audit_key=TEST_AUDIT_KEY,
        rng=random.Random(1234),
    )


def grant_roles(runtime, assignments, admin_id=ADMIN):
    """Bootstrap an administrator (once) and assign {user_id: role}."""
    if not runtime.access_control.has_role(admin_id, Role.ADMIN):
        runtime.access_control.bootstrap_admin(admin_id)
    for user_id, role in assignments.items():
        runtime.access_control.assign_role(admin_id, user_id, role)
