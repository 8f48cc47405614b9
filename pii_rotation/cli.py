"""
PII Encryption Key Rotation CLI

Re-encrypts every PII column listed in the table registry from --old-key to
--new-key, one batch per transaction, with durable checkpoints.

Usage:
    python rotate_keys.py --old-key OLD --new-key NEW --dry-run
    python rotate_keys.py --old-key OLD --new-key NEW --batch-size 100

Exit codes: 0 on success, 1 on any fatal error.
"""
import argparse
import logging
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from pii_rotation.core.config import (
    DEFAULT_BATCH_SIZE, RotationConfig, get_settings, validate_batch_size, validate_key_pair,
)
from pii_rotation.core.database.connection import create_tables, dispose_db, get_db, init_db
from pii_rotation.core.database.encryption import build_cipher, hash_key
from pii_rotation.core.errors import ConfigurationError, RotationError
from pii_rotation.core.rotation.audit import AuditLogger
from pii_rotation.core.rotation.orchestrator import RotationOrchestrator, RotationRun

logger = logging.getLogger(__name__)

EPILOG = """
FULL KEY ROTATION WORKFLOW:
===========================

1. DRY RUN (no data changes):
   python rotate_keys.py --old-key OLD --new-key NEW --dry-run

2. ROTATE (resumable - rerun the same command after a crash):
   python rotate_keys.py --old-key OLD --new-key NEW --batch-size 100

3. RETRY rows that failed during the scan:
   python rotate_keys.py --old-key OLD --new-key NEW --retry-failed

4. VERIFY all data uses the new key:
   python rotate_keys.py --new-key NEW --verify

5. UPDATE the application's ENCRYPTION_KEY and keep the old key stored
   securely until verification has passed.

EMERGENCY ROLLBACK:
   python rotate_keys.py --rollback --failed-key NEW --restore-key OLD \\
       --rotation-id ROTATION_ID --confirm-rollback
"""


class RotationArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports bad input as ConfigurationError (exit 1)."""

    def error(self, message):
        raise ConfigurationError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = RotationArgumentParser(
        prog="rotate_keys.py",
        description="PII encryption key rotation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument('--old-key', metavar='KEY',
                        help='Current encryption key (required, min 32 chars)')
    parser.add_argument('--new-key', metavar='KEY',
                        help='New encryption key (required, min 32 chars, must differ)')
    parser.add_argument('--batch-size', type=int, default=DEFAULT_BATCH_SIZE,
                        help=f'Records per batch / transaction (default: {DEFAULT_BATCH_SIZE})')
    parser.add_argument('--dry-run', action='store_true',
                        help='Test mode - decrypt and report, never write')
    parser.add_argument('--rotation-id', metavar='ID',
                        help='Explicit rotation id (default: derived from the key hashes)')

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--retry-failed', action='store_true',
                       help='Remediation pass over rows that failed in an earlier run')
    modes.add_argument('--verify', action='store_true',
                       help='Check every value decrypts with --new-key (read-only)')
    modes.add_argument('--status', action='store_true',
                       help='Show progress rows for --rotation-id')
    modes.add_argument('--rollback', action='store_true',
                       help='Emergency rollback from --failed-key to --restore-key')

    parser.add_argument('--failed-key', metavar='KEY', help='For --rollback: key of the failed rotation')
    parser.add_argument('--restore-key', metavar='KEY', help='For --rollback: key to restore')
    parser.add_argument('--confirm-rollback', action='store_true',
                        help='Required for --rollback')

    parser.add_argument('--create-progress-table', action='store_true',
                        help='Create the rotation_progress table if missing (prefer Alembic)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--quiet', '-q', action='store_true', help='Warnings only')
    return parser


def setup_logging(verbose: bool = False, quiet: bool = False):
    """Configure logging based on verbosity."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print_outcomes(title: str, outcomes):
    print("=" * 60)
    print(title)
    print("=" * 60)
    for outcome in outcomes.values():
        print(f"  {outcome.table:<12} {outcome.status:<12} processed={outcome.processed} "
              f"failed={outcome.failed} total={outcome.total}")


class _Session:
    """Engine, progress session, cipher and audit stream for one command."""

    def __init__(self, run_id: str, prefix: str = "key-rotation"):
        self.settings = get_settings()
        self.engine = init_db(self.settings)
        self._db_gen = get_db()
        self.db = next(self._db_gen)
        self.cipher = build_cipher(self.settings.rotation_cipher_backend, self.engine)
        self.audit = AuditLogger(run_id, self.settings.rotation_log_dir, prefix=prefix)

    def orchestrator(self) -> RotationOrchestrator:
        return RotationOrchestrator(self.engine, self.db, self.cipher, self.audit)

    def close(self):
        self.audit.close()
        self._db_gen.close()


def _open(args, run_id: str, prefix: str = "key-rotation") -> _Session:
    session = _Session(run_id, prefix)
    if args.create_progress_table:
        create_tables()
    return session


def cmd_rotate(args) -> int:
    config = RotationConfig(
        old_key=args.old_key,
        new_key=args.new_key,
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        rotation_id=args.rotation_id,
    )
    run = RotationRun.from_config(config)
    session = _open(args, run.rotation_id)
    try:
        outcomes = session.orchestrator().rotate(config, run)
    finally:
        session.close()

    _print_outcomes(f"ROTATION {'SIMULATION ' if run.dry_run else ''}COMPLETE ({run.rotation_id})", outcomes)
    if run.dry_run:
        print("\nThis was a DRY RUN. No changes were made.")
    else:
        print("\nIMPORTANT: Update ENCRYPTION_KEY to the new key.")
        print("IMPORTANT: Keep the old key securely stored for 90 days as backup.")
        if any(o.failed for o in outcomes.values()):
            print("Some rows failed; run again with --retry-failed after investigating.")
    return 0


def cmd_retry(args) -> int:
    config = RotationConfig(
        old_key=args.old_key,
        new_key=args.new_key,
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        rotation_id=args.rotation_id,
    )
    session = _open(args, f"retry-{int(time.time())}")
    try:
        outcomes = session.orchestrator().retry_failed(config)
    finally:
        session.close()
    _print_outcomes("RETRY COMPLETE", outcomes)
    return 0


def cmd_verify(args) -> int:
    if not args.new_key or len(args.new_key) < 32:
        raise ConfigurationError("--verify requires --new-key (min 32 chars)")
    validate_batch_size(args.batch_size)
    session = _open(args, f"verify-{hash_key(args.new_key)}-{int(time.time())}", prefix="key-verify")
    try:
        report = session.orchestrator().verify(args.new_key, args.batch_size)
    finally:
        session.close()

    print("=" * 60)
    print("VERIFICATION RESULTS")
    print("=" * 60)
    print(f"Total values checked: {report.total_checked}")
    print(f"Not decryptable with new key: {report.total_undecryptable}")
    for sample in report.samples[:5]:
        print(f"  - {sample}")
    print("VERIFICATION PASSED" if report.passed else "VERIFICATION FAILED")
    return 0 if report.passed else 1


def cmd_status(args) -> int:
    if not args.rotation_id:
        raise ConfigurationError("--status requires --rotation-id")
    session = _open(args, f"status-{int(time.time())}")
    try:
        rows = session.orchestrator().status(args.rotation_id)
    finally:
        session.close()
    if not rows:
        print(f"No progress recorded for {args.rotation_id}")
        return 1
    for row in rows:
        print(f"  {row['table']:<12} {row['status']:<12} {row['processed']}+{row['failed']}/{row['total']} "
              f"checkpoint={row['last_checkpoint_id']} retry_queue={row['queued_for_retry']}")
    return 0


def cmd_rollback(args) -> int:
    if not args.confirm_rollback:
        raise ConfigurationError("Rollback requires explicit confirmation: add --confirm-rollback")
    validate_key_pair(args.failed_key, args.restore_key, "--failed-key", "--restore-key")
    validate_batch_size(args.batch_size)
    rollback_id = f"rollback-{int(time.time())}"
    session = _open(args, rollback_id, prefix="emergency-rollback")
    try:
        session.audit.event("rollback_started", level=logging.WARNING, rotation_id=args.rotation_id,
                            failed_key_hash=hash_key(args.failed_key),
                            restore_key_hash=hash_key(args.restore_key), dry_run=args.dry_run)
        outcomes = session.orchestrator().rollback(
            args.failed_key, args.restore_key, batch_size=args.batch_size,
            rotation_id=args.rotation_id, dry_run=args.dry_run, rollback_id=rollback_id,
        )
    except Exception as e:
        session.audit.run_failed(e)
        raise
    finally:
        session.close()
    _print_outcomes("EMERGENCY ROLLBACK COMPLETE", outcomes)
    print("\nNEXT STEPS: verify the application with the restored key and investigate the failure.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the CLI.

    Returns:
        Process exit code (0 success, 1 fatal error). --help exits 0 via SystemExit.
    """
    load_dotenv()
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(args.verbose, args.quiet)

    if args.retry_failed:
        command = cmd_retry
    elif args.verify:
        command = cmd_verify
    elif args.status:
        command = cmd_status
    elif args.rollback:
        command = cmd_rollback
    else:
        command = cmd_rotate

    try:
        return command(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except RotationError as e:
        logger.error(f"Key rotation failed: {type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.error(f"Key rotation failed with unexpected error: {type(e).__name__}: {e}")
        return 1
    finally:
        dispose_db()


def run():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
