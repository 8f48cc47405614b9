"""
Progress Tracker

Durable per-(rotation_id, table_name) checkpoint records. Every update is
committed immediately, so a batch boundary is on disk before the next batch
starts. Datastore errors are not caught here: losing the checkpoint is fatal
for the run.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pii_rotation.core.database.models import RotationProgress, ProgressStatus

logger = logging.getLogger(__name__)

# Fields merged by append instead of overwrite
APPEND_FIELDS = ("error_log",)

UPDATABLE_FIELDS = (
    "status", "total_records", "processed_records", "failed_records",
    "last_checkpoint_id", "error_log", "failed_ids", "run_metadata",
    "started_at", "completed_at",
)


class ProgressTracker:
    """Reads and writes RotationProgress rows through one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, rotation_id: str, table_name: str) -> Optional[RotationProgress]:
        return self.db.query(RotationProgress).filter(
            RotationProgress.rotation_id == rotation_id,
            RotationProgress.table_name == table_name,
        ).first()

    def get_or_create(self, rotation_id: str, table_name: str,
                      old_key_hash: str, new_key_hash: str) -> RotationProgress:
        """
        Return the progress row for (rotation_id, table_name), inserting an
        in_progress row on first touch.

        Args:
            rotation_id: Stable rotation identifier
            table_name: Physical table name
            old_key_hash: Truncated hash of the old key
            new_key_hash: Truncated hash of the new key

        Returns:
            RotationProgress row (persisted)
        """
        progress = self.get(rotation_id, table_name)
        if progress is not None:
            logger.debug(f"Resuming progress for {rotation_id}/{table_name} at {progress.last_checkpoint_id}")
            return progress

        try:
            progress = RotationProgress(
                rotation_id=rotation_id,
                table_name=table_name,
                old_key_hash=old_key_hash,
                new_key_hash=new_key_hash,
                status=ProgressStatus.IN_PROGRESS.value,
                total_records=0,
                processed_records=0,
                failed_records=0,
                error_log=[],
                failed_ids=[],
                run_metadata={},
                started_at=datetime.utcnow(),
            )
            self.db.add(progress)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"Error creating progress record for {rotation_id}/{table_name}")
            raise

        logger.debug(f"Created progress record {progress.id} for {rotation_id}/{table_name}")
        return progress

    def update(self, progress_id: int, **fields: Any) -> RotationProgress:
        """
        Merge fields into a progress row and commit.

        Scalar fields are overwritten. error_log entries are appended to the
        existing log, never replacing it.

        Raises:
            ValueError: Unknown field or missing progress row
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")

        progress = self.db.get(RotationProgress, progress_id)
        if progress is None:
            raise ValueError(f"Progress record {progress_id} not found")

        try:
            for name, value in fields.items():
                if name in APPEND_FIELDS:
                    if not value:
                        continue
                    # Reassign a new list so the JSON column is flagged dirty
                    setattr(progress, name, list(getattr(progress, name) or []) + list(value))
                elif name in ("failed_ids", "run_metadata"):
                    setattr(progress, name, value.copy() if value is not None else value)
                else:
                    setattr(progress, name, value)
            progress.updated_at = datetime.utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return progress

    def list_for_rotation(self, rotation_id: str) -> List[RotationProgress]:
        return self.db.query(RotationProgress).filter(
            RotationProgress.rotation_id == rotation_id
        ).order_by(RotationProgress.id).all()

    def mark_rolled_back(self, rotation_id: str, rollback_id: str) -> int:
        """
        Mark every progress row of a rotation as rolled_back.

        Returns:
            Number of rows marked
        """
        rows = self.list_for_rotation(rotation_id)
        now = datetime.utcnow()
        for progress in rows:
            metadata: Dict[str, Any] = dict(progress.run_metadata or {})
            metadata.update({"rollback_id": rollback_id, "rolled_back_at": now.isoformat()})
            self.update(progress.id, status=ProgressStatus.ROLLED_BACK.value, run_metadata=metadata)
        return len(rows)
