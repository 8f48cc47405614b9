"""
Transaction Coordinator

Applies one batch's staged updates (one UPDATE per row) inside a single
transaction. Live runs commit; dry runs always roll back. Rows that failed
decryption have nothing staged, so a commit leaves them under the old key.

Unexpected datastore errors roll the batch back and surface as
BatchTransactionError, which aborts the table.
"""
import logging
from typing import Any, Dict

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pii_rotation.core.errors import BatchTransactionError
from pii_rotation.core.rotation.registry import TableSpec

logger = logging.getLogger(__name__)


class TransactionCoordinator:
    """Commits or rolls back a batch of column updates atomically."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def apply(self, spec: TableSpec, updates: Dict[Any, Dict[str, bytes]], dry_run: bool = False) -> int:
        """
        Execute the UPDATEs for one batch.

        Args:
            spec: Table being rotated
            updates: record_id -> {column: new ciphertext}
            dry_run: Roll back instead of committing

        Returns:
            Number of rows updated (0 for dry runs)

        Raises:
            BatchTransactionError: On any datastore error; the batch is rolled back
        """
        clause = spec.to_clause()
        id_col = clause.c[spec.id_field]
        updated = 0

        try:
            with self.engine.connect() as conn:
                trans = conn.begin()
                try:
                    for record_id, columns in updates.items():
                        unknown = set(columns) - set(spec.fields)
                        if unknown:
                            # Only registry columns may ever be written
                            raise BatchTransactionError(
                                f"Refusing to write non-PII columns {sorted(unknown)} on {spec.table}"
                            )
                        result = conn.execute(
                            update(clause).where(id_col == record_id).values(**columns)
                        )
                        updated += result.rowcount or 0

                    if dry_run:
                        trans.rollback()
                        logger.debug(f"[DRY RUN] Rolled back batch on {spec.table} ({len(updates)} staged rows)")
                        return 0

                    trans.commit()
                except BaseException:
                    if trans.is_active:
                        trans.rollback()
                    raise
        except BatchTransactionError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Batch transaction on {spec.table} rolled back: {type(e).__name__}")
            raise BatchTransactionError(
                f"Batch transaction failed on {spec.table}: {type(e).__name__}"
            ) from e

        return updated
