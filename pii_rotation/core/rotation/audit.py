"""
Rotation Audit Logger

Structured (JSON) audit events for a rotation run, written to an append-only
per-run log file and mirrored to the console. Payloads never carry plaintext
or key material: keys appear only as hash_key() prefixes, and any field with a
forbidden name is dropped before serialisation.
"""
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "pii_rotation.audit"
AUDIT_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

FORBIDDEN_FIELDS = frozenset({"old_key", "new_key", "key", "failed_key", "restore_key", "plaintext", "value"})


def redact(payload: Any) -> Any:
    """Drop forbidden fields from (nested) dicts and lists."""
    if isinstance(payload, dict):
        return {k: redact(v) for k, v in payload.items() if str(k).lower() not in FORBIDDEN_FIELDS}
    if isinstance(payload, (list, tuple)):
        return [redact(v) for v in payload]
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return f"<{len(payload)} bytes>"
    return payload


class AuditLogger:
    """
    Audit event stream for one run.

    Args:
        run_id: Rotation (or rollback) identifier, used in the file name
        log_dir: Directory for the log file; None disables the file handler
        console: Mirror events to stderr
        prefix: File name prefix
    """

    def __init__(self, run_id: str, log_dir: Optional[str] = "logs", console: bool = True,
                 prefix: str = "key-rotation"):
        self.run_id = run_id
        self.log_file: Optional[str] = None
        self._logger = logging.getLogger(f"{AUDIT_LOGGER_NAME}.{run_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handlers = []

        formatter = logging.Formatter(AUDIT_FORMAT)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            self.log_file = os.path.join(log_dir, f"{prefix}-{run_id}.log")
            file_handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
            file_handler.setFormatter(formatter)
            self._add_handler(file_handler)
        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)
            self._add_handler(console_handler)

    def _add_handler(self, handler: logging.Handler):
        self._logger.addHandler(handler)
        self._handlers.append(handler)

    def event(self, event: str, level: int = logging.INFO, **details: Any) -> Dict[str, Any]:
        """
        Emit one audit event.

        Returns:
            The redacted entry that was written
        """
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event": event,
            "run_id": self.run_id,
            "details": redact(details),
        }
        self._logger.log(level, json.dumps(entry, default=str))
        return entry

    def run_started(self, run, tables) -> Dict[str, Any]:
        return self.event(
            "run_started",
            rotation_id=run.rotation_id,
            dry_run=run.dry_run,
            batch_size=run.batch_size,
            old_key_hash=run.old_key_hash,
            new_key_hash=run.new_key_hash,
            tables=list(tables),
        )

    def table_started(self, table: str, total: int, resumed_from: Any = None) -> Dict[str, Any]:
        return self.event("table_started", table=table, total=total, resumed_from=resumed_from)

    def table_skipped(self, table: str, reason: str) -> Dict[str, Any]:
        return self.event("table_skipped", table=table, reason=reason)

    def batch_completed(self, table: str, batch_number: int, size: int, processed: int, failed: int,
                        checkpoint: Any, dry_run: bool) -> Dict[str, Any]:
        return self.event(
            "batch_completed",
            level=logging.WARNING if failed else logging.INFO,
            table=table,
            batch=batch_number,
            size=size,
            processed=processed,
            failed=failed,
            checkpoint=checkpoint,
            dry_run=dry_run,
        )

    def row_failed(self, table: str, record_id: Any, error: str) -> Dict[str, Any]:
        return self.event("row_failed", level=logging.ERROR, table=table, record_id=record_id, error=error)

    def table_completed(self, table: str, total: int, processed: int, failed: int) -> Dict[str, Any]:
        return self.event("table_completed", table=table, total=total, processed=processed, failed=failed)

    def run_completed(self, duration_ms: int, dry_run: bool, **details: Any) -> Dict[str, Any]:
        return self.event("run_completed", duration_ms=duration_ms, dry_run=dry_run, exit_code=0, **details)

    def run_failed(self, error: Exception, duration_ms: Optional[int] = None) -> Dict[str, Any]:
        return self.event(
            "run_failed",
            level=logging.ERROR,
            error=str(error),
            error_type=type(error).__name__,
            duration_ms=duration_ms,
            exit_code=1,
        )

    def close(self):
        """Flush and detach this run's handlers."""
        for handler in self._handlers:
            handler.flush()
            handler.close()
            self._logger.removeHandler(handler)
        self._handlers = []
