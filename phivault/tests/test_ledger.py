"""
Tests for the key-value ledger: transactions, composite keys, events and
the SQLite backend.
"""

import pytest

from phivault.app.db.ledger import InMemoryLedger, Ledger
from phivault.app.db.migrate import check_db_security
from phivault.tests.runtime_helpers import DOCTOR, PATIENT, make_runtime


class Boom(Exception):
    pass


def test_writes_are_visible_inside_and_committed_after(ledger):
    with ledger.transaction():
        ledger.put_state("a", "1")
        assert ledger.get_state("a") == "1"
    assert ledger.get_state("a") == "1"


def test_exception_rolls_back_data_but_keeps_audit_writes(ledger):
    with pytest.raises(Boom):
        with ledger.transaction():
            ledger.put_state("data", "x")
            ledger.put_audit_state("audit", "y")
            raise Boom()

    assert ledger.get_state("data") is None
    assert ledger.get_state("audit") == "y"


def test_nested_transactions_commit_once(ledger):
    delivered = []
    ledger.subscribe(delivered.append)

    with ledger.transaction():
        outer_tx = ledger.tx_id
        with ledger.transaction():
            assert ledger.tx_id == outer_tx
            ledger.set_event("Inner", {"id": "1"})
        assert delivered == []
    assert [e["name"] for e in delivered] == ["Inner"]
    assert ledger.tx_id is None


def test_inner_failure_rolls_back_the_whole_transaction(ledger):
    with pytest.raises(Boom):
        with ledger.transaction():
            ledger.put_state("outer", "1")
            with ledger.transaction():
                raise Boom()
    assert ledger.get_state("outer") is None


def test_events_delivered_only_after_commit(ledger):
    delivered = []
    ledger.subscribe(delivered.append)

    with pytest.raises(Boom):
        with ledger.transaction():
            ledger.set_event("Dropped", {"id": "1"})
            raise Boom()
    assert delivered == []
    assert ledger.list_events() == []

    ledger.set_event("Kept", {"id": "2"})
    assert [e["name"] for e in delivered] == ["Kept"]
    assert ledger.list_events("Kept")[0]["payload"]["id"] == "2"


@pytest.mark.parametrize(
    "payload",
    [{"plaintext": "x"}, {"nested": {"ciphertext": "x"}}, {"items": [{"Diagnosis": "x"}]}],
)
def test_sensitive_event_fields_rejected(ledger, payload):
    with pytest.raises(ValueError):
        ledger.set_event("Leaky", payload)


def test_failing_subscriber_does_not_undo_commit(ledger):
    def broken(event):
        raise RuntimeError("subscriber down")

    ledger.subscribe(broken)
    ledger.put_state("k", "v")
    ledger.set_event("Ping", {"id": "1"})
    assert ledger.get_state("k") == "v"
    assert len(ledger.list_events("Ping")) == 1


def test_composite_key_range_scan(ledger):
    for owner, item in [("o1", "a"), ("o1", "b"), ("o2", "c"), ("o10", "d")]:
        ledger.put_state(Ledger.create_composite_key("owner-items", [owner, item]), item)

    rows = ledger.get_state_by_partial_composite_key("owner-items", ["o1"])
    assert [value for _, value in rows] == ["a", "b"]
    assert Ledger.split_composite_key(rows[0][0]) == ("owner-items", ["o1", "a"])


def test_composite_key_rejects_nul(ledger):
    with pytest.raises(ValueError):
        Ledger.create_composite_key("idx", ["bad\x00part"])


def test_range_scan_sees_uncommitted_writes_and_deletes(ledger):
    ledger.put_state("p~1", "one")
    with ledger.transaction():
        ledger.put_state("p~2", "two")
        ledger.delete_state("p~1")
        assert ledger.scan_prefix("p~") == [("p~2", "two")]


def test_sqlite_ledger_persists_state_and_events(tmp_path, clock):
    from phivault.app.db.ledger import SqliteLedger

    db_path = tmp_path / "ledger.db"
    first = SqliteLedger(db_path, clock=clock)
    with first.transaction():
        first.put_json("RECORD~1", {"id": 1})
        first.put_state(Ledger.create_composite_key("idx", ["a", "1"]), "1")
        first.set_event("Stored", {"record_id": "1"})

    reopened = SqliteLedger(db_path, clock=clock, migrate=False)
    assert reopened.get_json("RECORD~1") == {"id": 1}
    assert len(reopened.get_state_by_partial_composite_key("idx", ["a"])) == 1
    assert reopened.list_events("Stored")[0]["payload"] == {"record_id": "1"}


def test_sqlite_rollback_keeps_audit_only(sqlite_ledger):
    with pytest.raises(Boom):
        with sqlite_ledger.transaction():
            sqlite_ledger.put_state("data", "x")
            sqlite_ledger.put_audit_state("audit", "y")
            raise Boom()
    assert sqlite_ledger.get_state("data") is None
    assert sqlite_ledger.get_state("audit") == "y"


def test_sqlite_database_is_wal_and_owner_only(tmp_path, sqlite_ledger):
    status = check_db_security(tmp_path / "ledger.db")
    assert status["wal_enabled"] is True
    assert status["permissions_secure"] is True


def test_end_to_end_on_sqlite(sqlite_ledger):
    runtime = make_runtime(sqlite_ledger)
    package = runtime.protection.protect({"patientId": PATIENT, "note": "stable"}, DOCTOR)
    assert runtime.protection.unprotect(package["protection_id"], DOCTOR)["note"] == "stable"
    assert runtime.audit.verify_chain()["valid"] is True


def test_in_memory_ledgers_are_isolated():
    first, second = InMemoryLedger(), InMemoryLedger()
    first.put_state("k", "v")
    assert second.get_state("k") is None
