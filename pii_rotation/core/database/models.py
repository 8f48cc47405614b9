"""
SQLAlchemy Database Models

Stores:
- Rotation progress, one row per (rotation_id, table_name)

The PII tables themselves (users, contacts, companies) belong to the owning
application and are not modelled here. The engine only touches the columns
listed in pii_rotation.core.rotation.registry.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, String, Integer, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProgressStatus(str, enum.Enum):
    """Lifecycle of a table within one rotation."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RotationProgress(Base):
    """
    Durable checkpoint for one table within one rotation.

    last_checkpoint_id holds the string form of the highest primary key scanned.
    error_log is append-only; failed_ids is the retry queue consumed by the
    remediation pass.
    """
    __tablename__ = "rotation_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rotation_id = Column(String(100), nullable=False, index=True)
    table_name = Column(String(100), nullable=False)

    # Truncated SHA-256 prefixes, never raw keys
    old_key_hash = Column(String(64), nullable=False)
    new_key_hash = Column(String(64), nullable=False)

    status = Column(String(20), nullable=False, default=ProgressStatus.PENDING.value)
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)
    last_checkpoint_id = Column(String(100))

    error_log = Column(JSON, nullable=False, default=list)
    failed_ids = Column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    run_metadata = Column("metadata", JSON, nullable=False, default=dict)

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('rotation_id', 'table_name', name='uq_rotation_progress_table'),
    )

    def __repr__(self) -> str:
        return (
            f"<RotationProgress {self.rotation_id}/{self.table_name} {self.status} "
            f"{self.processed_records}+{self.failed_records}/{self.total_records}>"
        )
