"""
Re-encryption Processor

Per-row decrypt-then-encrypt pipeline with row-level failure isolation:

1. Every non-empty ciphertext field is decrypted with the old key. Any failure
   marks the whole row failed and stages nothing for it.
2. Live runs re-encrypt the plaintext with the new key and stage the result.
3. Dry runs only log the intent; the encrypt side is never called.

Rows without any ciphertext still count as processed (no-op). Non-binary
values are not ciphertext and are left alone.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pii_rotation.core.database.encryption import CipherCapability, is_ciphertext
from pii_rotation.core.errors import RowCryptoError
from pii_rotation.core.rotation.fetcher import BatchWorkItem

logger = logging.getLogger(__name__)


def json_safe_id(record_id: Any) -> Any:
    """Primary keys as stored in JSON columns (UUIDs become strings)."""
    if isinstance(record_id, (int, str)) and not isinstance(record_id, bool):
        return record_id
    return str(record_id)


@dataclass
class BatchResult:
    """Outcome of one batch."""

    processed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    # record_id -> {column: new ciphertext}; only rows with staged fields
    updates: Dict[Any, Dict[str, bytes]] = field(default_factory=dict)

    @property
    def failed_ids(self) -> List[Any]:
        return [entry["record_id"] for entry in self.errors]

    def summary(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "staged_rows": len(self.updates),
        }


class ReEncryptionProcessor:
    """
    Re-encrypts rows from old_key to new_key.

    Args:
        cipher: Cipher capability
        old_key: Key the ciphertext is currently under
        new_key: Target key
        dry_run: Decrypt only, never encrypt or stage updates
        accept_new_key: When decryption with old_key fails, try new_key and
            leave the field untouched if it succeeds (a half-finished rotation
            leaves both keys in the table)
    """

    def __init__(self, cipher: CipherCapability, old_key: str, new_key: str,
                 dry_run: bool = False, accept_new_key: bool = False):
        self.cipher = cipher
        self._old_key = old_key
        self._new_key = new_key
        self.dry_run = dry_run
        self.accept_new_key = accept_new_key

    def __repr__(self) -> str:
        return f"ReEncryptionProcessor(cipher={self.cipher.name}, dry_run={self.dry_run})"

    def _recover(self, item: BatchWorkItem, name: str, ciphertext: bytes) -> Optional[str]:
        """Plaintext under the old key, or None if the field is already under the new key."""
        try:
            return self.cipher.decrypt(ciphertext, self._old_key)
        except RowCryptoError:
            if not self.accept_new_key:
                raise RowCryptoError(f"Decryption failed for field {name}", field=name) from None
        try:
            self.cipher.decrypt(ciphertext, self._new_key)
        except RowCryptoError:
            raise RowCryptoError(f"Cannot decrypt field {name} with either key", field=name) from None
        logger.debug(f"Record {item.record_id} field {name} already under target key")
        return None

    def process_row(self, item: BatchWorkItem, table: str = "") -> Dict[str, bytes]:
        """
        Run the protocol for one row.

        Returns:
            Staged column updates (empty for dry runs and no-op rows)

        Raises:
            RowCryptoError: If any field cannot be decrypted or re-encrypted
        """
        staged: Dict[str, bytes] = {}
        for name, ciphertext in item.values.items():
            if not ciphertext:
                continue
            if not is_ciphertext(ciphertext):
                # Text columns hold legacy plaintext or tokens, never binary ciphertext
                logger.debug(f"Record {item.record_id} field {name} is not binary, skipping")
                continue

            plaintext = self._recover(item, name, ciphertext)
            if plaintext is None:
                continue

            if self.dry_run:
                logger.debug(f"[DRY RUN] Would re-encrypt {table}.{name} for record {item.record_id}")
                continue

            try:
                staged[name] = self.cipher.encrypt(plaintext, self._new_key)
            except RowCryptoError as e:
                raise RowCryptoError(f"Encryption failed for field {name}", field=name) from e
        return staged

    def process_batch(self, batch: List[BatchWorkItem], table: str = "") -> BatchResult:
        """
        Process every row in a batch, isolating row-level crypto failures.

        Only RowCryptoError is absorbed; anything else propagates.
        """
        result = BatchResult()
        for item in batch:
            try:
                staged = self.process_row(item, table)
            except RowCryptoError as e:
                result.failed += 1
                result.errors.append({
                    "record_id": json_safe_id(item.record_id),
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat(),
                })
                logger.error(f"Failed to process record {item.record_id} in {table}: {e}")
                continue

            if staged:
                result.updates[item.record_id] = staged
            result.processed += 1
        return result
