"""
Tests for canonical hashing, salted integrity hashes, batch hashes, hash
chains and proof records.
"""

import pytest

from phivault.app.errors import InvalidInputError
from phivault.app.services.hashing import (
    batch_hash,
    build_hash_chain,
    canonical_bytes,
    fingerprint,
    generate_proof_record,
    hash_data,
    hmac_tag,
    salted_hash,
    verify_batch_hash,
    verify_hash_chain,
    verify_hmac,
    verify_integrity,
    verify_proof_record,
)


def test_canonical_bytes_sorts_keys_and_drops_whitespace():
    assert canonical_bytes({"b": 2, "a": [1, None, True]}) == b'{"a":[1,null,true],"b":2}'


def test_hash_is_key_order_independent():
    assert hash_data({"a": 1, "b": {"c": 2, "d": 3}}) == hash_data({"b": {"d": 3, "c": 2}, "a": 1})


def test_hash_is_lowercase_hex_sha256():
    digest = hash_data("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_unicode_is_hashed_as_utf8():
    assert canonical_bytes({"name": "Zoë"}) == '{"name":"Zoë"}'.encode("utf-8")


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), {1: "int key"}, {"x": object()}])
def test_unhashable_values_rejected(bad):
    with pytest.raises(InvalidInputError):
        hash_data(bad)


def test_fingerprint_is_prefixed():
    assert fingerprint("token-123") == "sha256:" + hash_data("token-123")


def test_salted_hash_verifies_and_detects_changes():
    record = salted_hash({"patientId": "P1", "value": 5})
    assert record["algorithm"] == "sha256"
    assert len(record["salt"]) == 64
    assert verify_integrity({"value": 5, "patientId": "P1"}, record)
    assert not verify_integrity({"patientId": "P1", "value": 6}, record)


def test_salted_hash_uses_fresh_salt():
    first = salted_hash("same")
    second = salted_hash("same")
    assert first["salt"] != second["salt"]
    assert first["hash"] != second["hash"]


@pytest.mark.parametrize("record", [None, {}, {"hash": "abc"}, {"hash": "abc", "salt": ""}])
def test_malformed_hash_records_verify_false(record):
    assert verify_integrity("data", record) is False


@pytest.mark.parametrize("data", [{"a", "b"}, float("nan"), {"value": float("inf")}, {1: "x"}])
def test_unhashable_data_verifies_false(data):
    record = salted_hash("data")
    assert verify_integrity(data, record) is False


def test_hmac_roundtrip_and_wrong_key():
    tag = hmac_tag({"a": 1}, "key-one")
    assert verify_hmac({"a": 1}, "key-one", tag)
    assert not verify_hmac({"a": 1}, "key-two", tag)
    with pytest.raises(InvalidInputError):
        hmac_tag("x", "")


def test_batch_hash_is_order_independent_and_spots_bad_items():
    items = [{"i": 0}, {"i": 1}, {"i": 2}]
    record = batch_hash(items, "batch-1")
    assert batch_hash(list(reversed(items)))["batch_hash"] == record["batch_hash"]

    tampered = [{"i": 0}, {"i": 99}, {"i": 2}]
    result = verify_batch_hash(tampered, record)
    assert result["valid"] is False
    assert [bad["index"] for bad in result["invalid_items"]] == [1]
    assert result["valid_items"] == 2


def test_batch_hash_rejects_empty_batch():
    with pytest.raises(InvalidInputError):
        batch_hash([])


def test_hash_chain_detects_modification():
    items = ["a", "b", "c", "d"]
    chain = build_hash_chain(items)
    assert verify_hash_chain(items, chain)["valid"]

    result = verify_hash_chain(["a", "B", "c", "d"], chain)
    assert result["valid"] is False
    assert {d["index"] for d in result["discrepancies"]} == {1}


def test_hash_chain_detects_length_change():
    chain = build_hash_chain(["a", "b"])
    result = verify_hash_chain(["a"], chain)
    assert result["valid"] is False
    assert result["discrepancies"][0]["field"] == "chain_length"


def test_proof_record_binds_data_and_metadata():
    proof = generate_proof_record({"x": 1}, {"owner_id": "D1"}, "2025-01-01T00:00:00Z")
    assert verify_proof_record({"x": 1}, proof)["valid"]

    assert verify_proof_record({"x": 2}, proof)["data_integrity_valid"] is False

    forged = dict(proof, metadata={"owner_id": "D2"})
    result = verify_proof_record({"x": 1}, forged)
    assert result["valid"] is False
    assert result["proof_integrity_valid"] is False


def test_proof_record_missing_fields_is_invalid():
    assert verify_proof_record({"x": 1}, {"data_hash": "abc"})["valid"] is False
