"""Rotation engine: registry, progress, fetch, re-encrypt, commit, audit."""
from .registry import PiiTable, TableSpec, TABLE_REGISTRY, get_table_spec, all_table_specs
from .progress import ProgressTracker
from .fetcher import BatchFetcher, BatchWorkItem
from .processor import ReEncryptionProcessor, BatchResult
from .transaction import TransactionCoordinator
from .audit import AuditLogger
from .orchestrator import (
    RotationOrchestrator, RotationRun, TableOutcome, VerificationReport, derive_rotation_id,
)

__all__ = [
    'PiiTable',
    'TableSpec',
    'TABLE_REGISTRY',
    'get_table_spec',
    'all_table_specs',
    'ProgressTracker',
    'BatchFetcher',
    'BatchWorkItem',
    'ReEncryptionProcessor',
    'BatchResult',
    'TransactionCoordinator',
    'AuditLogger',
    'RotationOrchestrator',
    'RotationRun',
    'TableOutcome',
    'VerificationReport',
    'derive_rotation_id',
]
