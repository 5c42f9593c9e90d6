"""
Pytest configuration for PHI Vault tests.

Sets test-mode environment variables before any app import so the rate
limiter is built disabled and the process-wide runtime uses the in-memory
ledger.
"""

import os

# Set test environment variables BEFORE importing the app
os.environ["ENV"] = "TEST"
os.environ["DISABLE_RATE_LIMITS"] = "1"
os.environ["PHIVAULT_LEDGER_BACKEND"] = "memory"

import pytest

from phivault.app.db.ledger import InMemoryLedger, SqliteLedger
from phivault.app.services.clock import ManualClock
from phivault.tests.runtime_helpers import STAFF, grant_roles, make_runtime


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(clock=clock)


@pytest.fixture
def sqlite_ledger(tmp_path, clock):
    """SQLite ledger migrated into a temporary file."""
    return SqliteLedger(tmp_path / "ledger.db", clock=clock)


@pytest.fixture
def runtime(ledger):
    return make_runtime(ledger)


@pytest.fixture
def staffed(runtime):
    """Runtime with an administrator and one principal per common role."""
    grant_roles(runtime, STAFF)
    return runtime
