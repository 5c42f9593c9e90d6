"""
Wiring for the PHI Vault core.

One Runtime holds a ledger and every engine built on it, sharing a single
audit log and clock. The HTTP app uses the process-wide runtime from
get_runtime(); tests build their own with build_runtime().
"""

from pathlib import Path
from typing import Optional

import structlog

from phivault.app import settings as app_settings
from phivault.app.contracts.key_management import KeyManagementContract
from phivault.app.contracts.medical_data import MedicalDataContract
from phivault.app.db.ledger import InMemoryLedger, Ledger, SqliteLedger
from phivault.app.services.access_control import AccessControlMatrix
from phivault.app.services.audit_log import AuditLog
from phivault.app.services.clock import SystemClock
from phivault.app.services.consent_registry import ConsentRegistry
from phivault.app.services.data_protection import DataProtectionOrchestrator
from phivault.app.services.encryption import EncryptionEngine
from phivault.app.services.key_registry import KeyManager
from phivault.app.services.key_vault import KeyVault
from phivault.app.settings import ProtectionSettings

logger = structlog.get_logger(__name__)


class Runtime:
    def __init__(
        self,
        ledger: Ledger,
        settings: Optional[ProtectionSettings] = None,
        master_key: Optional[bytes] = None,
        audit_key: Optional[bytes] = None,
        rng=None,
    ):
        self.ledger = ledger
        self.clock = ledger.clock
        self.settings = settings or ProtectionSettings()
        self.engine = EncryptionEngine()

        self.audit = AuditLog(ledger, audit_key or app_settings.get_audit_hmac_key(), self.clock)
        self.vault = KeyVault(ledger, master_key or app_settings.get_master_key(), self.engine)
        self.keys = KeyManager(ledger, self.vault, self.audit, self.settings, self.engine, self.clock)
        self.access_control = AccessControlMatrix(ledger, self.audit, self.settings, self.clock)
        self.consents = ConsentRegistry(ledger, self.audit, self.access_control, self.settings, self.clock)
        self.protection = DataProtectionOrchestrator(
            ledger,
            self.audit,
            self.keys,
            self.access_control,
            self.consents,
            self.settings,
            self.clock,
            rng=rng,
        )

        self.records = MedicalDataContract(
            ledger, self.audit, self.protection, self.access_control, self.settings
        )
        self.key_contract = KeyManagementContract(self.keys, self.access_control, self.audit)


def build_runtime(
    backend: Optional[str] = None,
    db_path: Optional[Path] = None,
    clock=None,
    settings: Optional[ProtectionSettings] = None,
    **kwargs,
) -> Runtime:
    """
    Build a runtime on a fresh ledger.

    Args:
        backend: 'sqlite' or 'memory' (default PHIVAULT_LEDGER_BACKEND)
        db_path: SQLite path (default PHIVAULT_DB_PATH)
        clock: Clock shared by every engine (default SystemClock)
        settings: Tunables (default from PHIVAULT_* environment variables)
    """
    backend = backend or app_settings.LEDGER_BACKEND
    clock = clock or SystemClock()
    if backend == "memory":
        ledger = InMemoryLedger(clock=clock)
    elif backend == "sqlite":
        ledger = SqliteLedger(db_path, clock=clock)
    else:
        raise ValueError(f"Unknown ledger backend: {backend}")

    logger.info("runtime_built", backend=backend)
    return Runtime(ledger, settings or ProtectionSettings.from_env(), **kwargs)


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Process-wide runtime, built on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Replace (or with None, reset) the process-wide runtime."""
    global _runtime
    _runtime = runtime
