"""
Tests for the data protection orchestrator: protect/unprotect, batches with
Merkle spot checks, sharing and revocation.
"""

import base64
import json

import pytest

from phivault.app.errors import (
    AccessDeniedError,
    DuplicateEntityError,
    ExpiredError,
    IntegrityViolationError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from phivault.app.services import events
from phivault.app.services.consent_registry import DataCategory
from phivault.app.services.data_protection import PACKAGE_PREFIX
from phivault.app.services.merkle import verify_proof
from phivault.tests.runtime_helpers import (
    ADMIN,
    DOCTOR,
    NURSE,
    PATIENT,
    RESEARCHER,
    RESPONDER,
    make_runtime,
)

RECORD = {"patientId": PATIENT, "diagnosis": "x"}


@pytest.fixture
def protection(staffed):
    return staffed.protection


def test_owner_gets_original_payload_back(protection):
    package = protection.protect(RECORD, DOCTOR)

    assert package["protection_id"].startswith("prot_")
    assert package["patient_id"] == PATIENT
    assert package["key_reference"]["key_type"] == "symmetric"
    assert protection.unprotect(package, DOCTOR) == RECORD
    assert protection.unprotect(package["protection_id"], DOCTOR) == RECORD


def test_other_principal_without_grant_is_denied(protection):
    package = protection.protect(RECORD, DOCTOR)
    with pytest.raises(AccessDeniedError):
        protection.unprotect(package, "stranger-001")


def test_patient_may_open_their_own_record(protection):
    package = protection.protect(RECORD, DOCTOR)
    assert protection.unprotect(package, PATIENT) == RECORD


def test_consent_opens_matching_category_only(staffed, protection):
    package = protection.protect(RECORD, DOCTOR, {"data_category": DataCategory.LAB_RESULTS})
    with pytest.raises(AccessDeniedError):
        protection.unprotect(package, NURSE)

    staffed.consents.grant_consent(PATIENT, NURSE, DataCategory.LAB_RESULTS, 3600, "care")
    assert protection.unprotect(package, NURSE) == RECORD

    other = protection.protect(RECORD, DOCTOR, {"data_category": DataCategory.MENTAL_HEALTH})
    with pytest.raises(AccessDeniedError):
        protection.unprotect(other, NURSE)


def test_emergency_grant_opens_records(staffed, protection):
    package = protection.protect(RECORD, DOCTOR, {"data_category": DataCategory.MENTAL_HEALTH})
    with pytest.raises(AccessDeniedError):
        protection.unprotect(package, RESPONDER)

    staffed.consents.grant_emergency_access(RESPONDER, PATIENT, "unconscious on arrival")
    assert protection.unprotect(package, RESPONDER) == RECORD

    entry = staffed.audit.entries()[-1]
    assert entry["action"] == "UNPROTECT"
    assert entry["details"]["basis"] == "emergency"


def test_denied_reads_still_count_towards_lockout(staffed, protection):
    package = protection.protect(RECORD, DOCTOR)
    staffed.access_control.revoke_role(ADMIN, RESEARCHER, "RESEARCHER")
    staffed.access_control.assign_role(ADMIN, RESEARCHER, "PATIENT")

    # PATIENT may READ, but the consent check fails: lockout is not affected.
    for _ in range(2):
        with pytest.raises(AccessDeniedError):
            protection.unprotect(package, RESEARCHER)
    assert not staffed.access_control.is_locked_out(RESEARCHER)

    for _ in range(5):
        with pytest.raises(AccessDeniedError):
            protection.unprotect(package, RESEARCHER, role="DOCTOR")
    assert staffed.access_control.is_locked_out(RESEARCHER)


@pytest.mark.parametrize(
    "payload",
    [
        {"note": "<script>alert(1)</script>"},
        {"note": "x'; DROP  TABLE patients;--"},
        {"nested": {"html": "<IMG src=x>"}},
        {},
        ["not", "an", "object"],
        "plain string",
    ],
)
def test_invalid_payloads_fail_closed(staffed, protection, ledger, payload):
    with pytest.raises(InvalidInputError):
        protection.protect(payload, DOCTOR)

    assert ledger.scan_prefix(PACKAGE_PREFIX) == []
    entry = staffed.audit.entries()[-1]
    assert entry["action"] == "PROTECT"
    assert entry["success"] is False
    assert entry["error_code"] == "invalid_input"


def test_explicit_protection_id_must_be_unique(protection):
    protection.protect(RECORD, DOCTOR, {"protection_id": "prot_fixed"})
    with pytest.raises(DuplicateEntityError):
        protection.protect(RECORD, DOCTOR, {"protection_id": "prot_fixed"})


def test_tampered_ciphertext_is_an_integrity_violation(protection, ledger):
    package = protection.protect(RECORD, DOCTOR)
    stored = ledger.get_json(PACKAGE_PREFIX + package["protection_id"])
    raw = bytearray(base64.b64decode(stored["sealed_payload"]["ciphertext"]))
    raw[0] ^= 0x01
    stored["sealed_payload"]["ciphertext"] = base64.b64encode(bytes(raw)).decode("ascii")
    ledger.put_json(PACKAGE_PREFIX + package["protection_id"], stored)

    with pytest.raises(IntegrityViolationError):
        protection.unprotect(package["protection_id"], DOCTOR)


def test_ciphertext_moved_to_another_package_fails(protection):
    first = protection.protect(RECORD, DOCTOR)
    second = protection.protect({"patientId": PATIENT, "note": "other"}, DOCTOR)
    forged = dict(second, sealed_payload=first["sealed_payload"])

    with pytest.raises(IntegrityViolationError):
        protection.unprotect(forged, DOCTOR)


def test_relabelled_patient_on_held_package_is_ignored(protection):
    package = protection.protect(RECORD, DOCTOR)
    forged = {**package, "patient_id": "stranger-001"}

    with pytest.raises(AccessDeniedError):
        protection.unprotect(forged, "stranger-001")
    with pytest.raises(AccessDeniedError):
        protection.share(forged, "stranger-001", RESEARCHER)


def test_relabelled_category_on_held_package_is_ignored(staffed, protection):
    staffed.consents.grant_consent(PATIENT, NURSE, DataCategory.LAB_RESULTS, 3600, "care")
    package = protection.protect(RECORD, DOCTOR, {"data_category": DataCategory.MENTAL_HEALTH})
    forged = {**package, "data_category": DataCategory.LAB_RESULTS.value}

    with pytest.raises(AccessDeniedError):
        protection.unprotect(forged, NURSE)


def test_detached_package_cannot_be_relabelled(staffed, protection, ledger):
    staffed.consents.grant_consent(PATIENT, NURSE, DataCategory.LAB_RESULTS, 3600, "care")
    package = protection.protect(RECORD, DOCTOR, {"data_category": DataCategory.MENTAL_HEALTH})
    ledger.delete_state(PACKAGE_PREFIX + package["protection_id"])

    assert protection.unprotect(package, DOCTOR) == RECORD
    with pytest.raises(IntegrityViolationError):
        protection.unprotect({**package, "patient_id": "stranger-001"}, "stranger-001")
    with pytest.raises(IntegrityViolationError):
        protection.unprotect({**package, "data_category": DataCategory.LAB_RESULTS.value}, NURSE)


def test_unprotect_unknown_package(protection):
    with pytest.raises(NotFoundError):
        protection.unprotect("prot_missing", DOCTOR)


def test_package_view_hides_sealed_payload(protection):
    package = protection.protect(RECORD, DOCTOR)
    view = protection.get_package(package["protection_id"])
    assert "sealed_payload" not in view
    assert [p["protection_id"] for p in protection.list_owner_packages(DOCTOR)] == [
        package["protection_id"]
    ]
    assert len(protection.list_patient_packages(PATIENT)) == 1


def test_events_carry_identifiers_only(protection, ledger):
    protection.protect(RECORD, DOCTOR)
    for event in ledger.list_events():
        text = json.dumps(event["payload"])
        assert "diagnosis" not in text
        assert "ciphertext" not in text


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------

BATCH = [{"patientId": PATIENT, "reading": i} for i in range(7)]


def test_batch_protects_every_item_with_merkle_proofs(protection):
    batch = protection.protect_batch(BATCH, DOCTOR)

    assert batch["item_count"] == 7
    assert batch["merkle"]["leaf_count"] == 7
    for item in batch["items"]:
        assert verify_proof(BATCH[item["index"]], item["proof"], batch["merkle_root"])
        assert protection.unprotect(item["protection_id"], DOCTOR) == BATCH[item["index"]]
    assert protection.get_batch(batch["batch_id"])["merkle_root"] == batch["merkle_root"]


def test_batch_spot_check_samples_three_items(protection):
    batch = protection.protect_batch(BATCH, DOCTOR)
    result = protection.verify_batch_integrity(batch["batch_id"], DOCTOR)

    assert result["is_valid"] is True
    assert len(result["spot_check_results"]) == 3
    assert all(r["merkle_valid"] for r in result["spot_check_results"])


def test_batch_spot_check_reports_tampered_item(ledger, staffed):
    runtime = make_runtime(ledger, spot_check_size=7)
    batch = runtime.protection.protect_batch(BATCH, DOCTOR)

    victim = batch["items"][4]["protection_id"]
    stored = ledger.get_json(PACKAGE_PREFIX + victim)
    stored["integrity_hash"]["hash"] = "0" * 64
    ledger.put_json(PACKAGE_PREFIX + victim, stored)

    result = runtime.protection.verify_batch_integrity(batch, DOCTOR)
    assert result["is_valid"] is False
    bad = [r for r in result["spot_check_results"] if not r["valid"]]
    assert [(r["index"], r["error_code"]) for r in bad] == [(4, "integrity_violation")]


def test_batch_verification_is_owner_only(protection):
    batch = protection.protect_batch(BATCH[:2], DOCTOR)
    with pytest.raises(AccessDeniedError):
        protection.verify_batch_integrity(batch, NURSE)


def test_batch_rejects_any_invalid_item_before_sealing(protection, ledger):
    payloads = BATCH[:3] + [{"note": "<script>"}]
    with pytest.raises(InvalidInputError) as exc_info:
        protection.protect_batch(payloads, DOCTOR)
    assert exc_info.value.details["index"] == 3
    assert ledger.scan_prefix(PACKAGE_PREFIX) == []


def test_batch_size_limits(ledger, staffed):
    runtime = make_runtime(ledger, max_batch_size=3)
    with pytest.raises(InvalidInputError):
        runtime.protection.protect_batch(BATCH, DOCTOR)
    with pytest.raises(InvalidInputError):
        runtime.protection.protect_batch([], DOCTOR)


def test_batch_resumes_without_resealing(ledger, staffed):
    runtime = make_runtime(ledger, batch_chunk_size=2)
    first = runtime.protection.protect_batch(BATCH, DOCTOR)
    again = runtime.protection.protect_batch(BATCH, DOCTOR)

    assert again["batch_id"] == first["batch_id"]
    assert [i["protection_id"] for i in again["items"]] == [i["protection_id"] for i in first["items"]]
    assert len(ledger.scan_prefix(PACKAGE_PREFIX)) == len(BATCH)
    assert runtime.audit.entries()[-1]["details"]["sealed_items"] == 0


def test_batch_emits_one_batch_event(protection, ledger):
    protection.protect_batch(BATCH, DOCTOR)
    assert len(ledger.list_events(events.BATCH_PROTECTED)) == 1
    assert ledger.list_events(events.DATA_PROTECTED) == []


# ----------------------------------------------------------------------
# Sharing and revocation
# ----------------------------------------------------------------------


def test_share_reencrypts_for_recipient(protection):
    package = protection.protect(RECORD, DOCTOR)
    share = protection.share(package, DOCTOR, NURSE, {"purpose": "second_opinion"})

    assert "sealed_payload" not in share
    assert "wrapped_key" not in share
    assert share["target_key_id"].startswith("RSA_")
    assert share["compliance"]["data_sharing"] is True
    assert protection.access_shared(share["share_id"], NURSE) == RECORD


def test_share_is_for_the_recipient_only(protection):
    package = protection.protect(RECORD, DOCTOR)
    share = protection.share(package, DOCTOR, NURSE)
    with pytest.raises(AccessDeniedError):
        protection.access_shared(share["share_id"], RESEARCHER)


def test_patient_may_share_their_record(protection):
    package = protection.protect(RECORD, DOCTOR)
    share = protection.share(package["protection_id"], PATIENT, RESEARCHER)
    assert protection.access_shared(share, RESEARCHER) == RECORD


def test_share_validation(protection, clock):
    package = protection.protect(RECORD, DOCTOR)
    with pytest.raises(AccessDeniedError):
        protection.share(package, NURSE, RESEARCHER)
    with pytest.raises(InvalidInputError):
        protection.share(package, DOCTOR, DOCTOR)
    with pytest.raises(InvalidInputError):
        protection.share(package, DOCTOR, NURSE, {"expires_at": "2024-12-31T00:00:00Z"})


def test_share_expiry(protection, clock):
    package = protection.protect(RECORD, DOCTOR)
    share = protection.share(package, DOCTOR, NURSE, {"expires_in_seconds": 600})
    assert protection.access_shared(share, NURSE) == RECORD

    clock.advance(601)
    with pytest.raises(ExpiredError):
        protection.access_shared(share, NURSE)


def test_revoking_a_package_revokes_its_shares(protection):
    package = protection.protect(RECORD, DOCTOR)
    share = protection.share(package, DOCTOR, NURSE)

    revoked = protection.revoke_package(package["protection_id"], PATIENT, "patient request")
    assert revoked["status"] == "revoked"

    with pytest.raises(InvalidStateError):
        protection.unprotect(package, DOCTOR)
    with pytest.raises(InvalidStateError):
        protection.access_shared(share, NURSE)
    with pytest.raises(InvalidStateError):
        protection.share(package, DOCTOR, RESEARCHER)
    with pytest.raises(InvalidStateError):
        protection.revoke_package(package["protection_id"], DOCTOR)


def test_revoke_package_permissions(protection):
    package = protection.protect(RECORD, DOCTOR)
    with pytest.raises(AccessDeniedError):
        protection.revoke_package(package["protection_id"], NURSE)
    assert protection.revoke_package(package["protection_id"], ADMIN)["status"] == "revoked"


def test_audit_report_is_admin_only(protection):
    protection.protect(RECORD, DOCTOR)
    with pytest.raises(AccessDeniedError):
        protection.audit_report(DOCTOR)

    report = protection.audit_report(ADMIN)
    assert report["audit_chain_valid"] is True
    assert report["compliance_status"] == "COMPLIANT"
    assert report["data_protection"]["total_protected"] == 1
    assert report["audit_summary"]["by_action"]["PROTECT"]["success"] == 1
