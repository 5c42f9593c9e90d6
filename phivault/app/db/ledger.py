"""
Key-value ledger the core persists into.

The execution environment is modelled as a ledger offering three things:
key-value put/get, composite-key range queries and event emission. Every
public operation runs inside one `transaction()`:

- writes are buffered and visible to reads in the same transaction
- on success, writes and emitted events commit together
- on exception, data writes and events are discarded

Audit entries are written with `put_audit_state()` and are kept even when the
surrounding transaction rolls back, so failure paths still leave a trail
while protected data is never partially written.

Composite keys follow the `\\x00index\\x00attr1\\x00attr2\\x00` pattern, so an
index like ("owner-keys", owner_id, key_id) supports a per-owner prefix scan.
"""

import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from phivault.app.db.migrate import ensure_schema, get_connection
from phivault.app.services.clock import SystemClock
from phivault.app.services.uuid7 import generate_uuid7

logger = structlog.get_logger(__name__)

COMPOSITE_SEPARATOR = "\x00"
MAX_UNICODE = "\U0010FFFF"

# Field names that may never appear in an event payload. Events carry
# correlation fields only.
SENSITIVE_EVENT_FIELDS = frozenset(
    {
        "plaintext",
        "payload",
        "data",
        "payload_json",
        "ciphertext",
        "key_material",
        "private_key",
        "private_material",
        "symmetric_key",
        "wrapped_key",
        "secret",
        "access_token",
        "diagnosis",
    }
)

EventRecord = Dict[str, Any]


def _check_event_payload(payload: Any, path: str = "") -> None:
    if isinstance(payload, dict):
        for key, value in payload.items():
            if key.lower() in SENSITIVE_EVENT_FIELDS:
                raise ValueError(f"Event payload field not allowed: {path}{key}")
            _check_event_payload(value, f"{path}{key}.")
    elif isinstance(payload, list):
        for item in payload:
            _check_event_payload(item, path)


class Ledger:
    """
    Base ledger with transaction buffering.

    Backends implement `_load`, `_scan`, `_apply` and `_load_events`.
    """

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._depth = 0
        self._tx_id: Optional[str] = None
        self._writes: Dict[str, Optional[str]] = {}
        self._audit_writes: Dict[str, str] = {}
        self._pending_events: List[EventRecord] = []
        self._subscribers: List[Callable[[EventRecord], None]] = []

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    def _load(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        raise NotImplementedError

    def _apply(
        self, writes: Dict[str, Optional[str]], events: List[EventRecord], tx_id: str
    ) -> None:
        raise NotImplementedError

    def _load_events(self) -> List[EventRecord]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def tx_id(self) -> Optional[str]:
        """Identifier of the open transaction, or None outside one."""
        return self._tx_id

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        """
        Run a block as one atomic, serialized invocation.

        Re-entrant: nested blocks join the outermost transaction, and only the
        outermost block commits or rolls back.
        """
        with self._lock:
            if self._depth == 0:
                self._tx_id = generate_uuid7()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._finish(commit=False)
                raise
            self._depth -= 1
            if self._depth == 0:
                self._finish(commit=True)

    def _finish(self, commit: bool) -> None:
        tx_id = self._tx_id
        if commit:
            writes = dict(self._writes)
            writes.update(self._audit_writes)
            events = list(self._pending_events)
        else:
            writes = dict(self._audit_writes)
            events = []
            if self._writes or self._pending_events:
                logger.info(
                    "ledger_transaction_rolled_back",
                    tx_id=tx_id,
                    discarded_writes=len(self._writes),
                    discarded_events=len(self._pending_events),
                )

        self._writes = {}
        self._audit_writes = {}
        self._pending_events = []
        self._tx_id = None

        if writes or events:
            self._apply(writes, events, tx_id)

        for event in events:
            self._deliver(event)

    def _deliver(self, event: EventRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # Subscribers are external; the transaction is already durable.
                logger.error(
                    "event_subscriber_failed",
                    event_name=event["name"],
                    event_id=event["event_id"],
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def get_state(self, key: str) -> Optional[str]:
        with self._lock:
            if key in self._writes:
                return self._writes[key]
            if key in self._audit_writes:
                return self._audit_writes[key]
            return self._load(key)

    def put_state(self, key: str, value: str) -> None:
        if not key:
            raise ValueError("Ledger key must not be empty")
        with self.transaction():
            self._writes[key] = value

    def delete_state(self, key: str) -> None:
        with self.transaction():
            self._writes[key] = None

    def put_audit_state(self, key: str, value: str) -> None:
        """Write that survives rollback of the surrounding transaction."""
        with self.transaction():
            self._audit_writes[key] = value

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get_state(key)
        if raw is None:
            return None
        return json.loads(raw)

    def put_json(self, key: str, value: Any) -> None:
        self.put_state(key, json.dumps(value, sort_keys=True, separators=(",", ":")))

    def put_audit_json(self, key: str, value: Any) -> None:
        self.put_audit_state(
            key, json.dumps(value, sort_keys=True, separators=(",", ":"))
        )

    # ------------------------------------------------------------------
    # Composite keys
    # ------------------------------------------------------------------

    @staticmethod
    def create_composite_key(index_name: str, attributes: List[str]) -> str:
        parts = [index_name] + list(attributes)
        for part in parts:
            if not isinstance(part, str):
                raise ValueError("Composite key parts must be strings")
            if COMPOSITE_SEPARATOR in part:
                raise ValueError("Composite key parts must not contain NUL")
        return COMPOSITE_SEPARATOR + "".join(p + COMPOSITE_SEPARATOR for p in parts)

    @staticmethod
    def split_composite_key(key: str) -> Tuple[str, List[str]]:
        if not key.startswith(COMPOSITE_SEPARATOR):
            raise ValueError("Not a composite key")
        parts = key[1:].split(COMPOSITE_SEPARATOR)[:-1]
        return parts[0], parts[1:]

    def get_state_by_partial_composite_key(
        self, index_name: str, attributes: List[str]
    ) -> List[Tuple[str, str]]:
        """
        Range scan over every composite key starting with (index, *attributes).

        Returns (key, value) pairs in key order, including this transaction's
        uncommitted writes.
        """
        prefix = self.create_composite_key(index_name, attributes)
        return self._range(prefix, prefix + MAX_UNICODE)

    def scan_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        """Range scan over plain (non-composite) keys sharing a prefix."""
        return self._range(prefix, prefix + MAX_UNICODE)

    def _range(self, start: str, end: str) -> List[Tuple[str, str]]:
        with self._lock:
            merged = dict(self._scan(start, end))
            for pending in (self._audit_writes, self._writes):
                for key, value in pending.items():
                    if start <= key < end:
                        if value is None:
                            merged.pop(key, None)
                        else:
                            merged[key] = value
            return sorted(merged.items())

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def set_event(self, name: str, payload: Dict[str, Any]) -> EventRecord:
        """Queue a domain event; delivered only if the transaction commits."""
        _check_event_payload(payload)
        with self.transaction():
            event = {
                "event_id": generate_uuid7(),
                "tx_id": self._tx_id,
                "name": name,
                "payload": payload,
                "emitted_at": self.clock.now_iso(),
            }
            self._pending_events.append(event)
        return event

    def subscribe(self, callback: Callable[[EventRecord], None]) -> None:
        self._subscribers.append(callback)

    def list_events(self, name: Optional[str] = None) -> List[EventRecord]:
        events = self._load_events()
        if name is not None:
            events = [e for e in events if e["name"] == name]
        return events


class InMemoryLedger(Ledger):
    """Process-local ledger for tests and embedded use."""

    def __init__(self, clock=None):
        super().__init__(clock)
        self._state: Dict[str, str] = {}
        self._events: List[EventRecord] = []

    def _load(self, key: str) -> Optional[str]:
        return self._state.get(key)

    def _scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        return [(k, v) for k, v in self._state.items() if start <= k < end]

    def _apply(self, writes, events, tx_id) -> None:
        for key, value in writes.items():
            if value is None:
                self._state.pop(key, None)
            else:
                self._state[key] = value
        self._events.extend(events)

    def _load_events(self) -> List[EventRecord]:
        return list(self._events)


class SqliteLedger(Ledger):
    """
    Durable ledger backed by SQLite.

    Each commit is a single BEGIN IMMEDIATE ... COMMIT, so state and events
    land together or not at all.
    """

    def __init__(self, db_path: Optional[Path] = None, clock=None, migrate: bool = True):
        super().__init__(clock)
        self.db_path = db_path
        if migrate:
            ensure_schema(db_path)

    def _load(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT state_value FROM ledger_state WHERE state_key = ?", (key,)
            ).fetchone()
            return row["state_value"] if row else None
        finally:
            conn.close()

    def _scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT state_key, state_value FROM ledger_state
                WHERE state_key >= ? AND state_key < ?
                ORDER BY state_key
                """,
                (start, end),
            )
            return [(row["state_key"], row["state_value"]) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _apply(self, writes, events, tx_id) -> None:
        now = self.clock.now_iso()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for key, value in writes.items():
                    if value is None:
                        conn.execute(
                            "DELETE FROM ledger_state WHERE state_key = ?", (key,)
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO ledger_state (state_key, state_value, tx_id, updated_at_utc)
                            VALUES (?, ?, ?, ?)
                            ON CONFLICT(state_key) DO UPDATE SET
                                state_value = excluded.state_value,
                                tx_id = excluded.tx_id,
                                updated_at_utc = excluded.updated_at_utc
                            """,
                            (key, value, tx_id, now),
                        )
                for event in events:
                    conn.execute(
                        """
                        INSERT INTO ledger_events (event_id, tx_id, name, payload_json, emitted_at_utc)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            event["event_id"],
                            event["tx_id"],
                            event["name"],
                            json.dumps(event["payload"], sort_keys=True),
                            event["emitted_at"],
                        ),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _load_events(self) -> List[EventRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT event_id, tx_id, name, payload_json, emitted_at_utc
                FROM ledger_events ORDER BY seq
                """
            )
            return [
                {
                    "event_id": row["event_id"],
                    "tx_id": row["tx_id"],
                    "name": row["name"],
                    "payload": json.loads(row["payload_json"]),
                    "emitted_at": row["emitted_at_utc"],
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
