"""
Append-only, hash-chained audit log.

Every state-changing or access-checking operation appends exactly one entry,
on success and on failure. Entries are persisted through the ledger's audit
channel, so they survive the rollback of the operation that produced them.

Hash policy
-----------
  body       = canonical JSON of the entry without prev_hash/entry_hash/signature
  entry_hash = SHA-256((prev_hash or '') || body)
  signature  = HMAC-SHA256(audit_key, entry_hash)

compute_entry_hash() is the single implementation used both when writing
and when verifying; do not duplicate it.
"""

import json
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import structlog

from phivault.app.db.ledger import Ledger
from phivault.app.errors import PhiVaultError
from phivault.app.services.hashing import canonical_bytes, hmac_tag, sha256_hex, verify_hmac
from phivault.app.services.uuid7 import generate_uuid7

logger = structlog.get_logger(__name__)

HEAD_KEY = "AUDIT~HEAD"
ENTRY_PREFIX = "AUDIT~ENTRY~"
RESOURCE_INDEX = "audit-resource"
PRINCIPAL_INDEX = "audit-principal"

HASH_POLICY = "SHA-256(prev_hash||canonical(entry_body)); signature=HMAC-SHA256(entry_hash)"

_CHAIN_FIELDS = ("prev_hash", "entry_hash", "signature")


def entry_key(sequence: int) -> str:
    return f"{ENTRY_PREFIX}{sequence:012d}"


def compute_entry_hash(prev_hash: Optional[str], body: Dict[str, Any]) -> str:
    """Canonical hash of one audit entry body chained to its predecessor."""
    return sha256_hex((prev_hash or "").encode("utf-8") + canonical_bytes(body))


def _body(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in _CHAIN_FIELDS}


class AuditScope:
    """Mutable outcome of an audited operation; filled in by the operation."""

    def __init__(self, target_resource: str, role: Optional[str], details: Dict[str, Any]):
        self.target_resource = target_resource
        self.role = role
        self.details = details
        self.success = True
        self.error_code = None


class AuditLog:
    """Audit trail shared by every engine of the core."""

    def __init__(self, ledger: Ledger, hmac_key: bytes, clock=None):
        self.ledger = ledger
        self.clock = clock or ledger.clock
        self._hmac_key = hmac_key

    def append(
        self,
        principal: str,
        action: str,
        target_resource: str,
        success: bool,
        role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Append one entry to the chain.

        Args:
            principal: Who performed the action
            action: Action name (e.g. PROTECT, CONSENT_GRANT)
            target_resource: Identifier of the entity acted on
            success: Outcome
            role: Role the principal acted under, if any
            details: Identifiers only (never plaintext or key material)
            error_code: Taxonomy tag when success is False

        Returns:
            The stored entry
        """
        with self.ledger.transaction():
            head = self.ledger.get_json(HEAD_KEY) or {"sequence": 0, "entry_hash": None}
            sequence = head["sequence"] + 1

            entry = {
                "id": generate_uuid7(),
                "sequence": sequence,
                "tx_id": self.ledger.tx_id,
                "principal": principal,
                "role": role,
                "action": action,
                "target_resource": target_resource,
                "success": bool(success),
                "timestamp": self.clock.now_iso(),
                "details": details or {},
                "error_code": error_code,
            }
            entry["prev_hash"] = head["entry_hash"]
            entry["entry_hash"] = compute_entry_hash(head["entry_hash"], _body(entry))
            entry["signature"] = hmac_tag(entry["entry_hash"], self._hmac_key)

            self.ledger.put_audit_json(entry_key(sequence), entry)
            self.ledger.put_audit_json(
                HEAD_KEY, {"sequence": sequence, "entry_hash": entry["entry_hash"]}
            )
            seq = str(sequence).zfill(12)
            self.ledger.put_audit_state(
                Ledger.create_composite_key(RESOURCE_INDEX, [target_resource, seq]), seq
            )
            self.ledger.put_audit_state(
                Ledger.create_composite_key(PRINCIPAL_INDEX, [principal, seq]), seq
            )

        logger.info(
            "audit_entry_appended",
            sequence=sequence,
            action=action,
            success=entry["success"],
            error_code=error_code,
        )
        return entry

    @contextmanager
    def audited(
        self,
        principal: str,
        action: str,
        target_resource: str,
        role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Iterator[AuditScope]:
        """
        Wrap one operation so it appends exactly one entry, whatever the outcome.

        The operation may refine scope.target_resource, scope.role and
        scope.details while it runs. Failures are recorded with the error's
        taxonomy tag and its identifier details, then re-raised.

        Usage:
            with ledger.transaction(), audit.audited(user, "KEY_ROTATE", key_id) as scope:
                ...
        """
        scope = AuditScope(target_resource, role, dict(details or {}))
        try:
            yield scope
        except PhiVaultError as e:
            self.append(
                principal,
                action,
                scope.target_resource,
                False,
                role=scope.role,
                details={**scope.details, **e.details},
                error_code=e.error_code,
            )
            raise
        except Exception:
            self.append(
                principal,
                action,
                scope.target_resource,
                False,
                role=scope.role,
                details=scope.details,
                error_code=PhiVaultError.error_code,
            )
            raise
        self.append(
            principal,
            action,
            scope.target_resource,
            scope.success,
            role=scope.role,
            details=scope.details,
            error_code=scope.error_code,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entry(self, sequence: int) -> Optional[Dict[str, Any]]:
        return self.ledger.get_json(entry_key(sequence))

    def entries(self) -> List[Dict[str, Any]]:
        return [json.loads(value) for _, value in self.ledger.scan_prefix(ENTRY_PREFIX)]

    def _by_index(self, index: str, attribute: str) -> List[Dict[str, Any]]:
        rows = self.ledger.get_state_by_partial_composite_key(index, [attribute])
        return [self.get_entry(int(seq)) for _, seq in rows]

    def for_resource(self, target_resource: str) -> List[Dict[str, Any]]:
        return self._by_index(RESOURCE_INDEX, target_resource)

    def for_principal(self, principal: str) -> List[Dict[str, Any]]:
        return self._by_index(PRINCIPAL_INDEX, principal)

    def in_range(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries with start <= timestamp <= end (ISO strings compare in order)."""
        return [
            e
            for e in self.entries()
            if (start is None or e["timestamp"] >= start)
            and (end is None or e["timestamp"] <= end)
        ]

    def summarize(self, start: Optional[str] = None, end: Optional[str] = None) -> Dict[str, Any]:
        """Audit report: totals and per-action counts for a time window."""
        selected = self.in_range(start, end)
        by_action: Dict[str, Dict[str, int]] = {}
        for entry in selected:
            counts = by_action.setdefault(entry["action"], {"success": 0, "failure": 0})
            counts["success" if entry["success"] else "failure"] += 1

        successes = sum(1 for e in selected if e["success"])
        return {
            "from": start,
            "to": end,
            "total": len(selected),
            "successes": successes,
            "failures": len(selected) - successes,
            "by_action": by_action,
            "principals": len({e["principal"] for e in selected}),
        }

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self) -> Dict[str, Any]:
        """
        Recompute every link, hash and signature.

        Returns:
            {"valid": bool, "entries_checked": int,
             "discrepancies": [{sequence, field, expected, actual}]}
        """
        discrepancies = []
        previous_hash = None
        entries = self.entries()

        for position, entry in enumerate(entries, start=1):
            sequence = entry.get("sequence")
            if sequence != position:
                discrepancies.append(
                    {"sequence": sequence, "field": "sequence", "expected": position, "actual": sequence}
                )
            if entry.get("prev_hash") != previous_hash:
                discrepancies.append(
                    {
                        "sequence": sequence,
                        "field": "prev_hash",
                        "expected": previous_hash,
                        "actual": entry.get("prev_hash"),
                    }
                )
            expected_hash = compute_entry_hash(entry.get("prev_hash"), _body(entry))
            if entry.get("entry_hash") != expected_hash:
                discrepancies.append(
                    {
                        "sequence": sequence,
                        "field": "entry_hash",
                        "expected": expected_hash,
                        "actual": entry.get("entry_hash"),
                    }
                )
            if not verify_hmac(entry.get("entry_hash", ""), self._hmac_key, entry.get("signature")):
                discrepancies.append(
                    {"sequence": sequence, "field": "signature", "expected": None, "actual": None}
                )
            previous_hash = entry.get("entry_hash")

        head = self.ledger.get_json(HEAD_KEY)
        if head and head.get("entry_hash") != previous_hash:
            discrepancies.append(
                {
                    "sequence": head.get("sequence"),
                    "field": "head",
                    "expected": previous_hash,
                    "actual": head.get("entry_hash"),
                }
            )

        return {
            "valid": not discrepancies,
            "entries_checked": len(entries),
            "discrepancies": discrepancies,
        }
