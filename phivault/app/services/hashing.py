"""
Hashing utilities for PHI Vault.

Everything that is hashed goes through one canonical serialization first, so
the same logical record always produces the same bytes regardless of dict
insertion order.

Canonicalization rules (v1):
1. bytes are hashed as-is, str as UTF-8
2. everything else is JSON: sorted keys, no whitespace, UTF-8, no NaN/Infinity
3. None serializes as "null"

Supported JSON types: dict (str keys), list, tuple, str, int, float, bool,
None. Anything else raises InvalidInputError.

Any change to these rules changes every stored integrity hash; that is a
new canonicalization version, not an edit.
"""

import hashlib
import hmac
import json
import math
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from phivault.app.errors import InvalidInputError
from phivault.app.services.clock import format_utc

HASH_ALGORITHM = "sha256"
HASH_VERSION = "1.0"
SALT_BYTES = 32

KeyLike = Union[str, bytes]


def _validate_object(obj: Any) -> None:
    if obj is None or isinstance(obj, bool):
        # bool before int: bool is an int subclass
        return
    if isinstance(obj, (int, str)):
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise InvalidInputError("Non-finite numbers cannot be hashed")
        return
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise InvalidInputError(
                    f"Object keys must be strings, got {type(key).__name__}"
                )
            _validate_object(value)
        return
    if isinstance(obj, (list, tuple)):
        for item in obj:
            _validate_object(item)
        return
    raise InvalidInputError(f"Unsupported type for hashing: {type(obj).__name__}")


def canonical_bytes(data: Any) -> bytes:
    """
    Serialize data into its canonical byte form.

    Examples:
        >>> canonical_bytes({"b": 2, "a": 1})
        b'{"a":1,"b":2}'
        >>> canonical_bytes("x")
        b'x'
    """
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")
    _validate_object(data)
    return json.dumps(
        data,
        separators=(",", ":"),
        ensure_ascii=False,
        sort_keys=True,
        allow_nan=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_data(data: Any) -> str:
    """
    Deterministic content hash.

    Structurally equal objects hash identically whatever their key order.

    Args:
        data: bytes, str or JSON-compatible object

    Returns:
        64-character lowercase hex digest
    """
    return sha256_hex(canonical_bytes(data))


def fingerprint(data: Any) -> str:
    """Prefixed content hash ('sha256:...') used as a non-reversible identifier."""
    return f"{HASH_ALGORITHM}:{hash_data(data)}"


def _now_iso() -> str:
    return format_utc(datetime.now(timezone.utc))


# ============================================================================
# Salted integrity hashes
# ============================================================================


def salted_hash(data: Any, salt: Optional[str] = None) -> Dict[str, Any]:
    """
    Produce a salted integrity hash for later re-verification.

    hash = SHA-256(canonical(data) || salt)

    Args:
        data: Payload to hash
        salt: Hex salt; a fresh 32-byte salt is generated when omitted

    Returns:
        Dictionary with:
            - hash: hex digest
            - algorithm: 'sha256'
            - salt: the salt used (persist it with the hash)
            - data_size: canonical byte length
            - version: hash record version
    """
    if salt is None:
        salt = secrets.token_hex(SALT_BYTES)
    if not isinstance(salt, str) or not salt:
        raise InvalidInputError("Salt must be a non-empty string")

    canonical = canonical_bytes(data)
    digest = hashlib.sha256(canonical + salt.encode("utf-8")).hexdigest()
    return {
        "hash": digest,
        "algorithm": HASH_ALGORITHM,
        "salt": salt,
        "data_size": len(canonical),
        "version": HASH_VERSION,
    }


def verify_integrity(data: Any, hash_record: Dict[str, Any]) -> bool:
    """
    Recompute a salted hash and compare in constant time.

    Malformed hash records and data that cannot be canonicalized verify as
    False rather than raising.
    """
    if not isinstance(hash_record, dict):
        return False
    expected = hash_record.get("hash")
    salt = hash_record.get("salt")
    if not isinstance(expected, str) or not isinstance(salt, str) or not salt:
        return False
    if hash_record.get("algorithm", HASH_ALGORITHM) != HASH_ALGORITHM:
        return False
    try:
        computed = salted_hash(data, salt)["hash"]
    except InvalidInputError:
        return False
    return hmac.compare_digest(computed, expected)


# ============================================================================
# HMAC
# ============================================================================


def _key_bytes(key: KeyLike) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not key:
        raise InvalidInputError("HMAC key is required")
    return key


def hmac_tag(data: Any, key: KeyLike) -> str:
    """Keyed integrity tag (HMAC-SHA256, hex)."""
    return hmac.new(_key_bytes(key), canonical_bytes(data), hashlib.sha256).hexdigest()


def verify_hmac(data: Any, key: KeyLike, tag: str) -> bool:
    if not isinstance(tag, str) or not tag:
        return False
    return hmac.compare_digest(hmac_tag(data, key), tag)


# ============================================================================
# Batch hashes
# ============================================================================


def batch_hash(items: Sequence[Any], batch_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Order-independent identity for a batch of items.

    The batch hash is the hash of the sorted individual item hashes joined
    together, so reordering the batch does not change it while
    `individual_hashes` still allows per-item spot checks.

    Raises:
        InvalidInputError: If the batch is empty
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise InvalidInputError("Batch hashing requires a non-empty list")

    individual = []
    total_size = 0
    for index, item in enumerate(items):
        canonical = canonical_bytes(item)
        total_size += len(canonical)
        individual.append({"index": index, "hash": sha256_hex(canonical)})

    joined = "".join(sorted(entry["hash"] for entry in individual))
    return {
        "batch_id": batch_id,
        "batch_hash": hash_data(joined),
        "item_count": len(individual),
        "individual_hashes": individual,
        "algorithm": HASH_ALGORITHM,
        "total_data_size": total_size,
    }


def verify_batch_hash(items: Sequence[Any], batch_record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Re-verify a batch, reporting which item indexes no longer match.

    Returns:
        Dictionary with valid, computed_batch_hash, valid_items (count) and
        invalid_items [{index, expected, actual}]
    """
    computed = batch_hash(items, batch_record.get("batch_id"))
    batch_valid = hmac.compare_digest(
        computed["batch_hash"], str(batch_record.get("batch_hash", ""))
    )

    expected_by_index = {
        entry.get("index"): entry.get("hash")
        for entry in batch_record.get("individual_hashes", [])
        if isinstance(entry, dict)
    }
    invalid_items = []
    for entry in computed["individual_hashes"]:
        expected = expected_by_index.get(entry["index"])
        if expected != entry["hash"]:
            invalid_items.append(
                {"index": entry["index"], "expected": expected, "actual": entry["hash"]}
            )

    if len(items) != batch_record.get("item_count"):
        batch_valid = False

    return {
        "valid": batch_valid and not invalid_items,
        "batch_id": batch_record.get("batch_id"),
        "computed_batch_hash": computed["batch_hash"],
        "valid_items": computed["item_count"] - len(invalid_items),
        "invalid_items": invalid_items,
    }


# ============================================================================
# Hash chains
# ============================================================================


def _chain_entry_hash(entry: Dict[str, Any]) -> str:
    return hash_data(
        {
            "index": entry["index"],
            "data_hash": entry["data_hash"],
            "previous_hash": entry["previous_hash"],
        }
    )


def build_hash_chain(
    items: Sequence[Any], previous_hash: Optional[str] = None
) -> Dict[str, Any]:
    """
    Link items into a hash chain.

    Each entry's chain_hash covers its index, its data hash and the previous
    entry's chain_hash, so changing or reordering any item breaks every link
    after it.
    """
    entries: List[Dict[str, Any]] = []
    current = previous_hash
    for index, item in enumerate(items):
        entry = {
            "index": index,
            "data_hash": hash_data(item),
            "previous_hash": current,
        }
        entry["chain_hash"] = _chain_entry_hash(entry)
        entries.append(entry)
        current = entry["chain_hash"]

    return {
        "entries": entries,
        "chain_length": len(entries),
        "start_hash": previous_hash,
        "final_hash": current,
        "algorithm": HASH_ALGORITHM,
    }


def verify_hash_chain(items: Sequence[Any], chain: Dict[str, Any]) -> Dict[str, Any]:
    """
    Verify items against a chain built by build_hash_chain().

    Returns:
        {"valid": bool, "discrepancies": [{index, field, expected, actual}]}
    """
    discrepancies = []
    entries = chain.get("entries", [])

    if len(items) != len(entries):
        return {
            "valid": False,
            "discrepancies": [
                {
                    "index": None,
                    "field": "chain_length",
                    "expected": len(entries),
                    "actual": len(items),
                }
            ],
        }

    previous = chain.get("start_hash")
    for index, (item, entry) in enumerate(zip(items, entries)):
        actual_data_hash = hash_data(item)
        if entry.get("data_hash") != actual_data_hash:
            discrepancies.append(
                {
                    "index": index,
                    "field": "data_hash",
                    "expected": entry.get("data_hash"),
                    "actual": actual_data_hash,
                }
            )
        if entry.get("previous_hash") != previous:
            discrepancies.append(
                {
                    "index": index,
                    "field": "previous_hash",
                    "expected": previous,
                    "actual": entry.get("previous_hash"),
                }
            )
        expected_chain_hash = _chain_entry_hash(
            {"index": index, "data_hash": actual_data_hash, "previous_hash": previous}
        )
        if entry.get("chain_hash") != expected_chain_hash:
            discrepancies.append(
                {
                    "index": index,
                    "field": "chain_hash",
                    "expected": expected_chain_hash,
                    "actual": entry.get("chain_hash"),
                }
            )
        previous = entry.get("chain_hash")

    return {"valid": not discrepancies, "discrepancies": discrepancies}


# ============================================================================
# Proof records
# ============================================================================


def _proof_hash(proof: Dict[str, Any]) -> str:
    return hash_data(
        {
            "data_hash": proof["data_hash"],
            "data_salt": proof["data_salt"],
            "algorithm": proof["algorithm"],
            "timestamp": proof["timestamp"],
            "metadata": proof["metadata"],
            "version": proof["version"],
        }
    )


def generate_proof_record(
    data: Any,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Tamper-evident proof that data existed in this form at `timestamp`.

    The proof holds a salted data hash plus a proof_hash over the proof
    fields (metadata included), so neither the data nor the metadata can be
    changed without detection.
    """
    integrity = salted_hash(data)
    proof = {
        "data_hash": integrity["hash"],
        "data_salt": integrity["salt"],
        "algorithm": integrity["algorithm"],
        "timestamp": timestamp or _now_iso(),
        "metadata": metadata or {},
        "version": HASH_VERSION,
    }
    proof["proof_hash"] = _proof_hash(proof)
    return proof


def verify_proof_record(data: Any, proof: Dict[str, Any]) -> Dict[str, Any]:
    """Check both the data hash and the proof hash of a proof record."""
    try:
        computed_proof_hash = _proof_hash(proof)
    except (KeyError, TypeError):
        return {"valid": False, "data_integrity_valid": False, "proof_integrity_valid": False}

    data_valid = verify_integrity(
        data,
        {"hash": proof.get("data_hash"), "salt": proof.get("data_salt"), "algorithm": proof.get("algorithm")},
    )
    proof_valid = hmac.compare_digest(computed_proof_hash, str(proof.get("proof_hash", "")))
    return {
        "valid": data_valid and proof_valid,
        "data_integrity_valid": data_valid,
        "proof_integrity_valid": proof_valid,
    }
