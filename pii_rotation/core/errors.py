"""
Rotation error taxonomy.

Only RowCryptoError is absorbed by the engine (recorded in the progress
error log and counted as a failed row). Everything else terminates the run.
"""


class RotationError(Exception):
    """Base class for all key rotation errors."""


class ConfigurationError(RotationError):
    """Missing, too short or identical keys, or other invalid operator input."""


class ConnectivityError(RotationError):
    """Datastore unreachable or authentication failed."""


class RowCryptoError(RotationError):
    """
    A single field of a single row could not be decrypted or encrypted.

    Messages must never contain ciphertext, plaintext or key material.
    """

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class BatchTransactionError(RotationError):
    """Unexpected datastore error while executing or committing a batch."""


class RotationAbortedError(RotationError):
    """A strict pass (e.g. emergency rollback) hit a row it could not process."""
