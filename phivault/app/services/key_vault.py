"""
Secure storage for raw key material.

Key material never sits in the ledger in cleartext: each secret is sealed
under the master key with its handle as associated data, so a sealed blob
copied to another handle fails to open. Only the KeyManager holds a vault.

In production the master key would live in an HSM or a cloud KMS; here it
comes from PHIVAULT_MASTER_KEY.
"""

import json

from phivault.app.db.ledger import Ledger
from phivault.app.errors import NotFoundError
from phivault.app.services.encryption import EncryptionEngine
from phivault.app.services.uuid7 import generate_uuid7

VAULT_PREFIX = "VAULT~"


class KeyVault:
    def __init__(self, ledger: Ledger, master_key: bytes, engine: EncryptionEngine = None):
        self._ledger = ledger
        self._master_key = master_key
        self._engine = engine or EncryptionEngine()

    def store(self, material: bytes) -> str:
        """Seal material and return the opaque handle that refers to it."""
        handle = f"vh-{generate_uuid7()}"
        sealed = self._engine.seal(material, self._master_key, associated_data=handle)
        self._ledger.put_state(VAULT_PREFIX + handle, json.dumps(sealed, sort_keys=True))
        return handle

    def reveal(self, handle: str) -> bytes:
        """
        Open material for a handle.

        Raises:
            NotFoundError: Unknown handle
            IntegrityViolationError: Sealed blob was altered or moved
        """
        raw = self._ledger.get_state(VAULT_PREFIX + handle)
        if raw is None:
            raise NotFoundError("Key material not found", {"handle": handle})
        return self._engine.open(json.loads(raw), self._master_key, associated_data=handle)
