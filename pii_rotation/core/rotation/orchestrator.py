"""
Rotation Orchestrator

Drives registry -> fetch -> process -> commit -> checkpoint for each table,
strictly one table after another and one batch after another. A table already
completed for the rotation id is skipped, so re-running with the same keys
(or the same --rotation-id) resumes where the last run stopped.

Also hosts the operator passes built on the same components:
- retry_failed: remediation over each table's queue of failed row ids
- verify: read-only check that every value decrypts with a given key
- rollback: move a half-finished rotation back to the previous key
- status: progress rows of a rotation
"""
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pii_rotation.core.config import RotationConfig, validate_batch_size, validate_key_pair
from pii_rotation.core.database.encryption import CipherCapability, hash_key, is_ciphertext
from pii_rotation.core.database.models import ProgressStatus, RotationProgress
from pii_rotation.core.errors import ConfigurationError, RotationAbortedError, RowCryptoError
from pii_rotation.core.rotation.audit import AuditLogger
from pii_rotation.core.rotation.fetcher import BatchFetcher
from pii_rotation.core.rotation.processor import ReEncryptionProcessor, json_safe_id
from pii_rotation.core.rotation.progress import ProgressTracker
from pii_rotation.core.rotation.registry import TableSpec, all_table_specs
from pii_rotation.core.rotation.transaction import TransactionCoordinator

logger = logging.getLogger(__name__)

DRY_RUN_SUFFIX = "dry-run"
VERIFY_SAMPLE_SIZE = 10


def derive_rotation_id(old_key_hash: str, new_key_hash: str) -> str:
    """Stable rotation id for a key pair, so reruns find their progress rows."""
    digest = hashlib.sha256(f"{old_key_hash}:{new_key_hash}".encode('utf-8')).hexdigest()
    return f"rotation-{digest[:16]}"


@dataclass(frozen=True)
class RotationRun:
    """One operator-initiated rotation attempt. Never mutated after creation."""

    rotation_id: str
    old_key_hash: str
    new_key_hash: str
    started_at: datetime
    dry_run: bool
    batch_size: int

    @classmethod
    def from_config(cls, config: RotationConfig, now: Optional[datetime] = None) -> "RotationRun":
        """
        Build the run identity for a validated config.

        Live runs use the explicit rotation id or one derived from the key
        hashes. Dry runs get a unique id of their own so they never mark the
        live rotation's tables as completed.
        """
        started_at = now or datetime.utcnow()
        old_hash = hash_key(config.old_key)
        new_hash = hash_key(config.new_key)
        rotation_id = config.rotation_id or derive_rotation_id(old_hash, new_hash)
        if config.dry_run:
            rotation_id = f"{rotation_id}-{DRY_RUN_SUFFIX}-{started_at.strftime('%Y%m%d%H%M%S%f')}"
        return cls(
            rotation_id=rotation_id,
            old_key_hash=old_hash,
            new_key_hash=new_hash,
            started_at=started_at,
            dry_run=config.dry_run,
            batch_size=config.batch_size,
        )


@dataclass
class TableOutcome:
    """What happened to one table in one pass."""

    table: str
    status: str
    total: int = 0
    processed: int = 0
    failed: int = 0
    batches: int = 0
    last_checkpoint_id: Optional[str] = None
    batch_sizes: List[int] = field(default_factory=list)


@dataclass
class VerificationReport:
    """Result of a verification pass."""

    key_hash: str
    checked: Dict[str, int] = field(default_factory=dict)
    undecryptable: Dict[str, int] = field(default_factory=dict)
    samples: List[str] = field(default_factory=list)

    @property
    def total_checked(self) -> int:
        return sum(self.checked.values())

    @property
    def total_undecryptable(self) -> int:
        return sum(self.undecryptable.values())

    @property
    def passed(self) -> bool:
        return self.total_undecryptable == 0


class RotationOrchestrator:
    """
    Sequential rotation driver.

    Args:
        engine: Engine for the PII tables (fetch and batch transactions)
        db: Session for progress rows
        cipher: Cipher capability
        audit: Audit logger for this run
        tables: Tables to rotate (defaults to the full registry)
    """

    def __init__(self, engine: Engine, db: Session, cipher: CipherCapability, audit: AuditLogger,
                 tables: Optional[Sequence[TableSpec]] = None):
        self.fetcher = BatchFetcher(engine)
        self.coordinator = TransactionCoordinator(engine)
        self.tracker = ProgressTracker(db)
        self.cipher = cipher
        self.audit = audit
        self.tables = tuple(tables) if tables is not None else all_table_specs()

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, config: RotationConfig, run: Optional[RotationRun] = None) -> Dict[str, TableOutcome]:
        """
        Rotate every table from config.old_key to config.new_key.

        Returns:
            Outcome per table name

        Raises:
            BatchTransactionError: A batch could not be committed (table aborted)
            Any datastore error raised while checkpointing
        """
        run = run or RotationRun.from_config(config)
        start = time.time()
        self.audit.run_started(run, [spec.table for spec in self.tables])

        # Rows committed after the last checkpoint are already under the new key on resume
        processor = ReEncryptionProcessor(self.cipher, config.old_key, config.new_key,
                                          dry_run=run.dry_run, accept_new_key=True)
        outcomes: Dict[str, TableOutcome] = {}
        try:
            for spec in self.tables:
                outcomes[spec.table] = self.rotate_table(run, spec, processor)
        except Exception as e:
            self.audit.run_failed(e, duration_ms=int((time.time() - start) * 1000))
            raise

        self.audit.run_completed(
            duration_ms=int((time.time() - start) * 1000),
            dry_run=run.dry_run,
            rotation_id=run.rotation_id,
            processed=sum(o.processed for o in outcomes.values()),
            failed=sum(o.failed for o in outcomes.values()),
        )
        return outcomes

    def rotate_table(self, run: RotationRun, spec: TableSpec,
                     processor: ReEncryptionProcessor) -> TableOutcome:
        """Rotate one table to completion, resuming from its checkpoint."""
        progress = self.tracker.get_or_create(run.rotation_id, spec.table, run.old_key_hash, run.new_key_hash)

        if progress.status == ProgressStatus.COMPLETED.value:
            logger.info(f"Table {spec.table} already completed, skipping")
            self.audit.table_skipped(spec.table, "already completed")
            return self._outcome(progress, status="skipped")
        if progress.status == ProgressStatus.ROLLED_BACK.value:
            raise ConfigurationError(
                f"Rotation {run.rotation_id} was rolled back; start a new rotation with a fresh --rotation-id"
            )
        if progress.old_key_hash != run.old_key_hash or progress.new_key_hash != run.new_key_hash:
            raise ConfigurationError(
                f"Rotation {run.rotation_id} was started with different keys for {spec.table}"
            )

        total = self.fetcher.count(spec)
        if total == 0:
            logger.info(f"No records to rotate in {spec.table}")
            progress = self.tracker.update(
                progress.id,
                status=ProgressStatus.COMPLETED.value,
                total_records=0,
                completed_at=datetime.utcnow(),
            )
            self.audit.table_completed(spec.table, total=0, processed=0, failed=0)
            return self._outcome(progress)

        self.tracker.update(progress.id, total_records=total, status=ProgressStatus.IN_PROGRESS.value)
        processed = progress.processed_records or 0
        failed = progress.failed_records or 0
        checkpoint = progress.last_checkpoint_id
        retry_queue = list(progress.failed_ids or [])

        logger.info(f"Found {total} records with encrypted fields in {spec.table}")
        self.audit.table_started(spec.table, total, resumed_from=checkpoint)

        batch_sizes: List[int] = []
        while processed + failed < total:
            batch = self.fetcher.fetch(spec, checkpoint, run.batch_size)
            if not batch:
                break

            logger.info(f"Processing batch on {spec.table}: {len(batch)} rows ({processed + failed}/{total})")
            result = processor.process_batch(batch, spec.table)
            self.coordinator.apply(spec, result.updates, dry_run=run.dry_run)

            processed += result.processed
            failed += result.failed
            checkpoint = batch[-1].record_id
            retry_queue.extend(result.failed_ids)
            batch_sizes.append(len(batch))

            # Durable before the next batch starts
            self.tracker.update(
                progress.id,
                processed_records=processed,
                failed_records=failed,
                last_checkpoint_id=str(checkpoint),
                error_log=result.errors,
                failed_ids=retry_queue,
            )

            for error in result.errors:
                self.audit.row_failed(spec.table, error["record_id"], error["error"])
            self.audit.batch_completed(
                spec.table, len(batch_sizes), len(batch), result.processed, result.failed,
                checkpoint=str(checkpoint), dry_run=run.dry_run,
            )

        progress = self.tracker.update(
            progress.id,
            status=ProgressStatus.COMPLETED.value,
            completed_at=datetime.utcnow(),
        )
        self.audit.table_completed(spec.table, total=total, processed=processed, failed=failed)
        outcome = self._outcome(progress)
        outcome.batches = len(batch_sizes)
        outcome.batch_sizes = batch_sizes
        return outcome

    @staticmethod
    def _outcome(progress: RotationProgress, status: Optional[str] = None) -> TableOutcome:
        return TableOutcome(
            table=progress.table_name,
            status=status or progress.status,
            total=progress.total_records or 0,
            processed=progress.processed_records or 0,
            failed=progress.failed_records or 0,
            last_checkpoint_id=progress.last_checkpoint_id,
        )

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def retry_failed(self, config: RotationConfig) -> Dict[str, TableOutcome]:
        """
        Re-run the row protocol over each table's queue of failed ids.

        Recovered rows move from failed_records to processed_records and leave
        the queue; rows that fail again stay queued and are appended to the
        error log. Rows deleted since the failure only leave the queue. Dry runs
        report without touching progress rows.
        """
        old_hash, new_hash = hash_key(config.old_key), hash_key(config.new_key)
        rotation_id = config.rotation_id or derive_rotation_id(old_hash, new_hash)
        processor = ReEncryptionProcessor(self.cipher, config.old_key, config.new_key,
                                          dry_run=config.dry_run, accept_new_key=True)
        self.audit.event("retry_started", rotation_id=rotation_id, dry_run=config.dry_run,
                         old_key_hash=old_hash, new_key_hash=new_hash)

        outcomes: Dict[str, TableOutcome] = {}
        for spec in self.tables:
            progress = self.tracker.get(rotation_id, spec.table)
            if progress is None or not progress.failed_ids:
                continue
            if progress.old_key_hash != old_hash or progress.new_key_hash != new_hash:
                raise ConfigurationError(f"Rotation {rotation_id} was started with different keys")

            queue = [json_safe_id(i) for i in progress.failed_ids]
            recovered_total = 0
            missing_total = 0
            still_failing = 0
            for start in range(0, len(queue), config.batch_size):
                chunk = queue[start:start + config.batch_size]
                items = self.fetcher.fetch_by_ids(spec, chunk)
                found = {json_safe_id(item.record_id) for item in items}
                missing = {i for i in chunk if i not in found}
                missing_total += len(missing)
                for record_id in missing:
                    logger.warning(f"Queued record {record_id} no longer exists in {spec.table}")

                result = processor.process_batch(items, spec.table)
                self.coordinator.apply(spec, result.updates, dry_run=config.dry_run)
                still_failing += result.failed

                if config.dry_run:
                    continue

                failing_now = {json_safe_id(i) for i in result.failed_ids}
                # Deleted rows leave the queue without counting as processed
                recovered_ids = found - failing_now
                dropped = recovered_ids | missing
                recovered = len(recovered_ids)
                recovered_total += recovered
                current = self.tracker.get(rotation_id, spec.table)
                self.tracker.update(
                    current.id,
                    processed_records=(current.processed_records or 0) + recovered,
                    failed_records=max((current.failed_records or 0) - recovered, 0),
                    failed_ids=[i for i in (current.failed_ids or []) if json_safe_id(i) not in dropped],
                    error_log=result.errors,
                )
                for error in result.errors:
                    self.audit.row_failed(spec.table, error["record_id"], error["error"])

            progress = self.tracker.get(rotation_id, spec.table)
            outcome = self._outcome(progress)
            outcomes[spec.table] = outcome
            self.audit.event(
                "retry_table_completed", table=spec.table, queued=len(queue),
                recovered=recovered_total, missing=missing_total, still_failing=still_failing,
                dry_run=config.dry_run,
            )
        return outcomes

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, key: str, batch_size: int = 100) -> VerificationReport:
        """
        Check that every non-empty ciphertext value decrypts with key.

        Read-only; also catches rows the forward cursor never visited.
        """
        validate_batch_size(batch_size)
        report = VerificationReport(key_hash=hash_key(key))
        self.audit.event("verify_started", key_hash=report.key_hash, batch_size=batch_size)

        for spec in self.tables:
            checked = 0
            bad = 0
            for batch in self.fetcher.iterate(spec, batch_size):
                for item in batch:
                    for name, ciphertext in item.values.items():
                        if not is_ciphertext(ciphertext):
                            continue
                        checked += 1
                        try:
                            self.cipher.decrypt(ciphertext, key)
                        except RowCryptoError:
                            bad += 1
                            if len(report.samples) < VERIFY_SAMPLE_SIZE:
                                report.samples.append(f"{spec.table}.{item.record_id}.{name}")
            report.checked[spec.table] = checked
            report.undecryptable[spec.table] = bad
            self.audit.event("verify_table", level=logging.WARNING if bad else logging.INFO,
                             table=spec.table, checked=checked, undecryptable=bad)

        self.audit.event("verify_completed", checked=report.total_checked,
                         undecryptable=report.total_undecryptable, passed=report.passed)
        return report

    # ------------------------------------------------------------------
    # Emergency rollback
    # ------------------------------------------------------------------

    def rollback(self, failed_key: str, restore_key: str, batch_size: int = 50,
                 rotation_id: Optional[str] = None, dry_run: bool = False,
                 rollback_id: Optional[str] = None) -> Dict[str, TableOutcome]:
        """
        Re-encrypt everything readable with failed_key back under restore_key.

        Values already under restore_key are left alone. The first row that
        neither key can read aborts the rollback; its batch is not committed.

        Raises:
            RotationAbortedError: A row could not be decrypted with either key
        """
        validate_key_pair(failed_key, restore_key, "--failed-key", "--restore-key")
        validate_batch_size(batch_size)
        rollback_id = rollback_id or f"rollback-{uuid.uuid4().hex[:12]}"
        processor = ReEncryptionProcessor(self.cipher, failed_key, restore_key,
                                          dry_run=dry_run, accept_new_key=True)

        if rotation_id:
            rows = self.tracker.list_for_rotation(rotation_id)
            self.audit.event("rollback_target", rotation_id=rotation_id,
                             tables={p.table_name: p.status for p in rows} or "not_found")

        outcomes: Dict[str, TableOutcome] = {}
        for spec in self.tables:
            total = self.fetcher.count(spec)
            outcome = TableOutcome(table=spec.table, status="rolled_back", total=total)
            self.audit.table_started(spec.table, total)
            after_id = None
            while True:
                batch = self.fetcher.fetch(spec, after_id, batch_size)
                if not batch:
                    break
                result = processor.process_batch(batch, spec.table)
                if result.failed:
                    for error in result.errors:
                        self.audit.row_failed(spec.table, error["record_id"], error["error"])
                    raise RotationAbortedError(
                        f"Rollback failed for {result.failed} records in {spec.table}"
                    )
                self.coordinator.apply(spec, result.updates, dry_run=dry_run)
                after_id = batch[-1].record_id
                outcome.processed += result.processed
                outcome.batches += 1
                outcome.batch_sizes.append(len(batch))
                outcome.last_checkpoint_id = str(after_id)
                self.audit.batch_completed(spec.table, outcome.batches, len(batch), result.processed,
                                           0, checkpoint=str(after_id), dry_run=dry_run)
            self.audit.table_completed(spec.table, total=total, processed=outcome.processed, failed=0)
            outcomes[spec.table] = outcome

        if rotation_id and not dry_run:
            marked = self.tracker.mark_rolled_back(rotation_id, rollback_id)
            self.audit.event("rotation_marked_rolled_back", rotation_id=rotation_id,
                             rollback_id=rollback_id, tables=marked)
        return outcomes

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, rotation_id: str) -> List[Dict[str, Any]]:
        """Progress rows of a rotation as plain dicts."""
        return [
            {
                "table": p.table_name,
                "status": p.status,
                "total": p.total_records,
                "processed": p.processed_records,
                "failed": p.failed_records,
                "last_checkpoint_id": p.last_checkpoint_id,
                "queued_for_retry": len(p.failed_ids or []),
                "started_at": p.started_at.isoformat() if p.started_at else None,
                "completed_at": p.completed_at.isoformat() if p.completed_at else None,
            }
            for p in self.tracker.list_for_rotation(rotation_id)
        ]
