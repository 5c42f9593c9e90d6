"""
Tests for the key manager: generation, rotation, revocation, usage
counters and the material-handling call paths.
"""

import pytest

from phivault.app.errors import (
    AccessDeniedError,
    DuplicateKeyError,
    ExpiredError,
    IntegrityViolationError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from phivault.app.services import events
from phivault.app.services.key_registry import STATUS_REVOKED, STATUS_ROTATED


@pytest.fixture
def keys(runtime):
    return runtime.keys


def test_symmetric_key_record_never_exposes_material(keys):
    record = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")

    assert record["key_id"].startswith("SYM_")
    assert record["status"] == "active"
    assert record["algorithm"] == "AES-256-GCM"
    assert record["key_size"] == 256
    assert "private_material_handle" not in record
    assert "material_handles" not in record


def test_symmetric_key_expires_after_thirty_days(keys, clock):
    record = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")
    assert record["created_at"] == "2025-01-01T00:00:00Z"
    assert record["expires_at"] == "2025-01-31T00:00:00Z"


def test_same_owner_purpose_and_instant_is_a_duplicate(keys):
    keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")
    with pytest.raises(DuplicateKeyError):
        keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")


def test_symmetric_key_requires_all_fields(keys):
    with pytest.raises(InvalidInputError):
        keys.generate_symmetric_key("patient-1", "", "doctor-1")


def test_rsa_key_pair_is_unique_per_owner(keys):
    record = keys.generate_asymmetric_key_pair("doctor-1", user_type="doctor")
    assert record["key_id"].startswith("RSA_")
    assert record["public_material"].startswith("-----BEGIN PUBLIC KEY-----")
    assert record["user_type"] == "doctor"

    with pytest.raises(DuplicateKeyError):
        keys.generate_asymmetric_key_pair("doctor-1")


def test_rsa_key_size_below_2048_rejected(keys):
    with pytest.raises(InvalidInputError):
        keys.generate_asymmetric_key_pair("doctor-1", key_size=1024)


def test_rsa_rotation_keeps_old_pair_for_unwrapping(keys, clock):
    first = keys.generate_asymmetric_key_pair("doctor-1")
    sealed, wrapped = keys.seal_for_recipient("doctor-1", b"payload", "share|doctor-1")

    clock.advance(60)
    second = keys.generate_asymmetric_key_pair("doctor-1", allow_rotation=True)

    assert second["version"] == 2
    assert keys.get_key(first["key_id"])["status"] == STATUS_ROTATED
    assert keys.get_active_key_pair("doctor-1")["key_id"] == second["key_id"]
    assert keys.open_for_recipient(wrapped, sealed, "share|doctor-1") == b"payload"


def test_rotation_keeps_key_id_and_old_packages_open(keys, clock):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, version = keys.seal_with(key["key_id"], b"before", "p1|doctor-1")

    clock.advance(3600)
    rotated = keys.rotate_symmetric_key(key["key_id"], "doctor-1")

    assert rotated["key_id"] == key["key_id"]
    assert rotated["version"] == 2
    assert rotated["key_hash"] != key["key_hash"]
    assert rotated["rotation_history"][0]["version"] == 1
    assert "material_handle" not in rotated["rotation_history"][0]
    assert keys.open_with(key["key_id"], version, sealed, "p1|doctor-1") == b"before"

    sealed_after, version_after = keys.seal_with(key["key_id"], b"after", "p2|doctor-1")
    assert version_after == 2
    assert keys.open_with(key["key_id"], 2, sealed_after, "p2|doctor-1") == b"after"


def test_rotation_by_stranger_denied(keys):
    key = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")
    with pytest.raises(AccessDeniedError):
        keys.rotate_symmetric_key(key["key_id"], "someone-else")


def test_revoked_key_can_neither_seal_nor_open(keys):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, version = keys.seal_with(key["key_id"], b"data")

    revoked = keys.revoke(key["key_id"], "doctor-1", "compromised")
    assert revoked["status"] == STATUS_REVOKED
    assert revoked["revocation_reason"] == "compromised"

    with pytest.raises(InvalidStateError):
        keys.seal_with(key["key_id"], b"more")
    with pytest.raises(InvalidStateError):
        keys.open_with(key["key_id"], version, sealed)
    with pytest.raises(InvalidStateError):
        keys.revoke(key["key_id"], "doctor-1", "again")
    with pytest.raises(InvalidStateError):
        keys.rotate_symmetric_key(key["key_id"], "doctor-1")


def test_revoke_requires_reason(keys):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    with pytest.raises(InvalidInputError):
        keys.revoke(key["key_id"], "doctor-1", "")


def test_expired_key_opens_but_does_not_seal(keys, clock):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, version = keys.seal_with(key["key_id"], b"old")

    clock.advance(31 * 86400)
    with pytest.raises(ExpiredError):
        keys.seal_with(key["key_id"], b"new")
    assert keys.open_with(key["key_id"], version, sealed) == b"old"


def test_get_or_create_rotates_expired_key(keys, clock):
    first = keys.get_or_create_symmetric_key("doctor-1", "medical-data", "doctor-1")
    assert keys.get_or_create_symmetric_key("doctor-1", "medical-data", "doctor-1")["version"] == 1

    clock.advance(31 * 86400)
    renewed = keys.get_or_create_symmetric_key("doctor-1", "medical-data", "doctor-1")
    assert renewed["key_id"] == first["key_id"]
    assert renewed["version"] == 2
    assert renewed["rotation_history"][0]["reason"] == "expired_rotation"


def test_usage_counters_only_grow(keys):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, version = keys.seal_with(key["key_id"], b"x")
    keys.open_with(key["key_id"], version, sealed)
    keys.open_with(key["key_id"], version, sealed)

    usage = keys.get_key(key["key_id"])["usage"]
    assert usage["encrypt_count"] == 1
    assert usage["decrypt_count"] == 2
    assert usage["last_used"] is not None

    with pytest.raises(InvalidInputError):
        keys.record_usage(key["key_id"], "sign")


def test_open_with_unknown_version(keys):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, _ = keys.seal_with(key["key_id"], b"x")
    with pytest.raises(NotFoundError):
        keys.open_with(key["key_id"], 7, sealed)


def test_open_with_tampered_ciphertext(keys):
    key = keys.generate_symmetric_key("doctor-1", "medical-data", "doctor-1")
    sealed, version = keys.seal_with(key["key_id"], b"x", "p|doctor-1")
    with pytest.raises(IntegrityViolationError):
        keys.open_with(key["key_id"], version, sealed, "p|someone-else")


def test_seal_for_recipient_without_pair(keys):
    with pytest.raises(NotFoundError):
        keys.seal_for_recipient("nobody", b"x")


def test_key_info_and_listing_are_owner_scoped(keys):
    key = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")

    assert keys.get_key_info(key["key_id"], "doctor-1")["key_id"] == key["key_id"]
    assert keys.get_key_info(key["key_id"], "patient-1")["owner_id"] == "patient-1"
    with pytest.raises(AccessDeniedError):
        keys.get_key_info(key["key_id"], "intruder")

    assert [k["key_id"] for k in keys.list_owner_keys("patient-1", "patient-1")] == [key["key_id"]]
    with pytest.raises(AccessDeniedError):
        keys.list_owner_keys("patient-1", "doctor-1")


def test_rotation_check_flags_expiring_and_heavily_used_keys(runtime, clock):
    keys = runtime.keys
    soon = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")
    clock.advance(25 * 86400)
    fresh = keys.generate_symmetric_key("patient-2", "medical-data", "doctor-1")

    due = keys.check_rotation_needed("doctor-1")
    assert [d["key_id"] for d in due] == [soon["key_id"]]
    assert due[0]["reasons"] == ["expiring"]
    assert due[0]["days_until_expiry"] == 5

    runtime.settings.usage_rotation_threshold = 1
    keys.record_usage(fresh["key_id"], "encrypt")
    keys.record_usage(fresh["key_id"], "decrypt")
    flagged = {d["key_id"]: d["reasons"] for d in keys.check_rotation_needed("doctor-1")}
    assert flagged[fresh["key_id"]] == ["usage_threshold"]


def test_statistics_count_by_status_and_algorithm(keys):
    key = keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")
    keys.generate_symmetric_key("patient-2", "medical-data", "doctor-1")
    keys.revoke(key["key_id"], "doctor-1", "retired")

    stats = keys.statistics()
    assert stats["total_keys"] == 2
    assert stats["active_keys"] == 1
    assert stats["revoked_keys"] == 1
    assert stats["by_algorithm"] == {"AES-256-GCM": 2}


def test_key_events_carry_no_material(runtime, ledger):
    keys = runtime.keys
    keys.generate_symmetric_key("patient-1", "medical-data", "doctor-1")

    generated = ledger.list_events(events.SYMMETRIC_KEY_GENERATED)
    assert len(generated) == 1
    payload = generated[0]["payload"]
    assert set(payload) == {"key_id", "owner_id", "custodian_id", "purpose", "expires_at", "timestamp"}


def test_failed_key_operations_are_audited(runtime):
    with pytest.raises(NotFoundError):
        runtime.keys.revoke("SYM_missing", "doctor-1", "reason")

    entry = runtime.audit.entries()[-1]
    assert entry["action"] == "KEY_REVOKE"
    assert entry["success"] is False
    assert entry["error_code"] == "not_found"
