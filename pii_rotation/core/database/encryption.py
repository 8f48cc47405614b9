"""
Cipher Capability

The engine never implements encryption itself. It calls a CipherCapability:

    encrypt(plaintext, key) -> ciphertext bytes
    decrypt(ciphertext, key) -> plaintext str     (raises RowCryptoError)

Backends:
- PgcryptoCipher: PostgreSQL pgcrypto (pgp_sym_encrypt / pgp_sym_decrypt),
  the primitive the application itself uses for its PII columns.
- FernetCipher: cryptography's Fernet (AES-128 CBC + HMAC-SHA256) with the
  operator key stretched through SHA-256. For datastores without pgcrypto.

Keys only ever appear in logs as hash_key() prefixes.
"""
import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Union

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from pii_rotation.core.errors import ConfigurationError, RowCryptoError

logger = logging.getLogger(__name__)

KEY_HASH_PREFIX_LENGTH = 16

Ciphertext = Union[bytes, bytearray, memoryview]


def hash_key(key: str) -> str:
    """
    One-way fingerprint of a key, safe to log and persist.

    Returns:
        First KEY_HASH_PREFIX_LENGTH hex chars of SHA-256(key)
    """
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:KEY_HASH_PREFIX_LENGTH]


def is_ciphertext(value) -> bool:
    """True for non-empty binary column values; text and NULL are not ciphertext."""
    return isinstance(value, (bytes, bytearray, memoryview)) and len(value) > 0


def as_bytes(value: Ciphertext) -> bytes:
    """
    Normalise driver-specific binary types (memoryview from psycopg2) to bytes.

    Raises:
        RowCryptoError: If value is not binary
    """
    if isinstance(value, memoryview):
        return value.tobytes()
    if not isinstance(value, (bytes, bytearray)):
        raise RowCryptoError(f"Expected binary ciphertext, got {type(value).__name__}")
    return bytes(value)


class CipherCapability(ABC):
    """Symmetric encrypt/decrypt with an explicit key per call."""

    name = "abstract"

    @abstractmethod
    def encrypt(self, plaintext: str, key: str) -> bytes:
        """Encrypt plaintext under key."""

    @abstractmethod
    def decrypt(self, ciphertext: Ciphertext, key: str) -> str:
        """Decrypt ciphertext with key; raise RowCryptoError on wrong key or corruption."""


class PgcryptoCipher(CipherCapability):
    """
    pgcrypto-backed cipher.

    Each call checks out its own pooled connection. A failed pgp_sym_decrypt
    raises inside PostgreSQL and would abort the surrounding transaction, so it
    must never run on the batch connection.
    """

    name = "pgcrypto"

    def __init__(self, engine: Engine):
        self.engine = engine

    def encrypt(self, plaintext: str, key: str) -> bytes:
        try:
            with self.engine.connect() as conn:
                encrypted = conn.execute(
                    text("SELECT pgp_sym_encrypt(:value, :key) AS encrypted"),
                    {"value": plaintext, "key": key}
                ).scalar()
        except DBAPIError as e:
            raise RowCryptoError(f"Encryption failed ({type(e.orig).__name__})") from None
        if encrypted is None:
            raise RowCryptoError("Encryption returned no value")
        return as_bytes(encrypted)

    def decrypt(self, ciphertext: Ciphertext, key: str) -> str:
        try:
            with self.engine.connect() as conn:
                decrypted = conn.execute(
                    text("SELECT pgp_sym_decrypt(:value, :key) AS decrypted"),
                    {"value": as_bytes(ciphertext), "key": key}
                ).scalar()
        except DBAPIError as e:
            # Wrong key / corrupt data surfaces as a driver error
            raise RowCryptoError(f"Decryption failed ({type(e.orig).__name__})") from None
        if decrypted is None:
            raise RowCryptoError("Decryption returned no value")
        return decrypted


class FernetCipher(CipherCapability):
    """Fernet cipher keyed by an arbitrary-length operator passphrase."""

    name = "fernet"

    @staticmethod
    def derive_key(key: str) -> bytes:
        """Stretch an operator key to a urlsafe-base64 32-byte Fernet key."""
        return base64.urlsafe_b64encode(hashlib.sha256(key.encode('utf-8')).digest())

    def _fernet(self, key: str) -> Fernet:
        return Fernet(self.derive_key(key))

    def encrypt(self, plaintext: str, key: str) -> bytes:
        if plaintext is None:
            raise RowCryptoError("Cannot encrypt an empty value")
        return self._fernet(key).encrypt(plaintext.encode('utf-8'))

    def decrypt(self, ciphertext: Ciphertext, key: str) -> str:
        try:
            decrypted = self._fernet(key).decrypt(as_bytes(ciphertext))
        except InvalidToken:
            raise RowCryptoError("Decryption failed (invalid token)") from None
        try:
            return decrypted.decode('utf-8')
        except UnicodeDecodeError:
            raise RowCryptoError("Decrypted value is not valid UTF-8") from None


def build_cipher(backend: str, engine: Engine = None) -> CipherCapability:
    """
    Construct the configured cipher backend.

    Raises:
        ConfigurationError: For unknown backends, or pgcrypto without an engine
    """
    backend = (backend or "").lower()
    if backend == PgcryptoCipher.name:
        if engine is None:
            raise ConfigurationError("pgcrypto backend requires a database engine")
        return PgcryptoCipher(engine)
    if backend == FernetCipher.name:
        return FernetCipher()
    raise ConfigurationError(f"Unknown cipher backend: {backend!r} (expected pgcrypto or fernet)")
