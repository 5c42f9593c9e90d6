"""
Authenticated encryption and key wrapping.

Payloads are sealed with AES-256-GCM. Associated data (for record payloads,
the owner and protection id) is bound into the authentication tag, so a
ciphertext moved to another owner's package fails to open.

Symmetric keys are handed between principals by wrapping them with the
recipient's RSA public key (RSA-OAEP, SHA-256).

Sealed payloads are self-describing: they carry the algorithm version plus
nonce and tag lengths, so a future algorithm can be introduced without
reinterpreting stored packages.
"""

import base64
import binascii
import os
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from phivault.app.errors import IntegrityViolationError, InvalidInputError
from phivault.app.services.redaction import mask_pii

# Algorithm versions. A version fixes algorithm, key, nonce and tag sizes.
ALGORITHM_VERSIONS = {
    "v1": {"algorithm": "AES-256-GCM", "key_length": 32, "nonce_length": 12, "tag_length": 16},
}
CURRENT_VERSION = "v1"

KEY_WRAP_ALGORITHM = "RSA-OAEP-SHA256"

BytesLike = Union[bytes, str]


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError) as e:
        raise IntegrityViolationError("Sealed payload field is not valid base64") from e


def _to_bytes(value: Optional[BytesLike]) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class EncryptionEngine:
    """Stateless sealing, opening and key wrapping."""

    def __init__(self, version: str = CURRENT_VERSION):
        if version not in ALGORITHM_VERSIONS:
            raise InvalidInputError(f"Unknown algorithm version: {version}")
        self.version = version
        self.spec = ALGORITHM_VERSIONS[version]

    # ------------------------------------------------------------------
    # Symmetric
    # ------------------------------------------------------------------

    def generate_key(self) -> bytes:
        return AESGCM.generate_key(bit_length=self.spec["key_length"] * 8)

    def seal(
        self,
        plaintext: BytesLike,
        key: bytes,
        associated_data: Optional[BytesLike] = None,
    ) -> Dict[str, Any]:
        """
        Encrypt and authenticate a payload.

        Args:
            plaintext: bytes, or str (encoded as UTF-8)
            key: 32-byte symmetric key
            associated_data: optional context bound into the tag

        Returns:
            Sealed payload dict: version, algorithm, ciphertext, nonce,
            auth_tag (base64) plus nonce_length and tag_length
        """
        if len(key) != self.spec["key_length"]:
            raise InvalidInputError("Symmetric key has the wrong length")

        nonce = os.urandom(self.spec["nonce_length"])
        sealed = AESGCM(key).encrypt(nonce, _to_bytes(plaintext), _to_bytes(associated_data))
        tag_length = self.spec["tag_length"]

        return {
            "version": self.version,
            "algorithm": self.spec["algorithm"],
            "ciphertext": b64encode(sealed[:-tag_length]),
            "nonce": b64encode(nonce),
            "auth_tag": b64encode(sealed[-tag_length:]),
            "nonce_length": self.spec["nonce_length"],
            "tag_length": tag_length,
        }

    def open(
        self,
        sealed: Dict[str, Any],
        key: bytes,
        associated_data: Optional[BytesLike] = None,
    ) -> bytes:
        """
        Verify and decrypt a sealed payload.

        Raises:
            IntegrityViolationError: On a tampered ciphertext, nonce or tag, a
                wrong key, mismatched associated data or a malformed envelope.
                No plaintext is returned on failure.
        """
        if not isinstance(sealed, dict):
            raise IntegrityViolationError("Sealed payload is malformed")

        spec = ALGORITHM_VERSIONS.get(sealed.get("version"))
        if spec is None:
            raise IntegrityViolationError("Sealed payload has an unknown algorithm version")

        nonce = b64decode(sealed.get("nonce"))
        tag = b64decode(sealed.get("auth_tag"))
        ciphertext = b64decode(sealed.get("ciphertext"))

        if len(nonce) != spec["nonce_length"] or len(tag) != spec["tag_length"]:
            raise IntegrityViolationError("Sealed payload has invalid nonce or tag length")
        if len(key) != spec["key_length"]:
            raise IntegrityViolationError("Authentication failed")

        try:
            return AESGCM(key).decrypt(nonce, ciphertext + tag, _to_bytes(associated_data))
        except InvalidTag as e:
            raise IntegrityViolationError("Authentication failed") from e

    # ------------------------------------------------------------------
    # Asymmetric
    # ------------------------------------------------------------------

    @staticmethod
    def generate_rsa_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
        return rsa.generate_private_key(
            public_exponent=65537, key_size=key_size, backend=default_backend()
        )

    @staticmethod
    def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> bytes:
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @staticmethod
    def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
        return public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    @staticmethod
    def load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
        return serialization.load_pem_private_key(pem, password=None, backend=default_backend())

    @staticmethod
    def load_public_key(pem: BytesLike) -> rsa.RSAPublicKey:
        return serialization.load_pem_public_key(_to_bytes(pem), backend=default_backend())

    def wrap_key(self, symmetric_key: bytes, recipient_public_key: BytesLike) -> str:
        """Encrypt a symmetric key for a recipient (RSA-OAEP). Returns base64."""
        public_key = recipient_public_key
        if isinstance(public_key, (bytes, str)):
            public_key = self.load_public_key(public_key)
        return b64encode(public_key.encrypt(symmetric_key, _oaep()))

    def unwrap_key(self, wrapped_key: str, recipient_private_key) -> bytes:
        """
        Recover a wrapped symmetric key.

        Raises:
            IntegrityViolationError: If the key was not wrapped for this
                recipient or has been altered
        """
        private_key = recipient_private_key
        if isinstance(private_key, bytes):
            private_key = self.load_private_key(private_key)
        try:
            return private_key.decrypt(b64decode(wrapped_key), _oaep())
        except ValueError as e:
            raise IntegrityViolationError("Wrapped key could not be unwrapped") from e

    # Exposed here so callers preparing summaries use the same masking rules
    # as log redaction.
    mask_pii = staticmethod(mask_pii)
