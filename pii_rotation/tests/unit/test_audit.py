"""
Tests for the structured audit stream.
"""
import logging
from datetime import datetime

from pii_rotation.core.rotation.audit import AuditLogger, redact
from pii_rotation.core.rotation.orchestrator import RotationRun
from pii_rotation.tests.factories import NEW_KEY, OLD_KEY, audit_entries


class TestRedact:

    def test_drops_key_material(self):
        payload = {"old_key": OLD_KEY, "new_key": NEW_KEY, "table": "users"}
        assert redact(payload) == {"table": "users"}

    def test_nested(self):
        payload = {"rows": [{"record_id": 1, "plaintext": "a@example.com"}], "meta": {"Key": "x"}}
        assert redact(payload) == {"rows": [{"record_id": 1}], "meta": {}}

    def test_bytes_summarised(self):
        assert redact({"ciphertext": b"\x00\x01\x02"}) == {"ciphertext": "<3 bytes>"}


class TestAuditLogger:

    def test_writes_json_lines(self, tmp_path):
        audit = AuditLogger("run-1", str(tmp_path), console=False)
        audit.table_started("users", 250)
        audit.batch_completed("users", 1, 100, 99, 1, checkpoint="100", dry_run=False)
        audit.close()

        entries = audit_entries(audit.log_file)
        assert [e["event"] for e in entries] == ["table_started", "batch_completed"]
        assert entries[0]["run_id"] == "run-1"
        assert entries[1]["details"]["failed"] == 1
        assert audit.log_file.endswith("key-rotation-run-1.log")

    def test_failed_batch_logged_as_warning(self, tmp_path):
        audit = AuditLogger("run-2", str(tmp_path), console=False)
        audit.batch_completed("users", 1, 10, 9, 1, checkpoint="10", dry_run=False)
        audit.close()
        with open(audit.log_file, encoding="utf-8") as f:
            assert " - WARNING - " in f.read()

    def test_run_started_carries_only_hashes(self, tmp_path):
        audit = AuditLogger("run-3", str(tmp_path), console=False)
        run = RotationRun(
            rotation_id="rotation-x", old_key_hash="1111222233334444", new_key_hash="5555666677778888",
            started_at=datetime(2024, 1, 1), dry_run=False, batch_size=100,
        )
        audit.run_started(run, ["users"])
        audit.event("custom", old_key=OLD_KEY, new_key=NEW_KEY)
        audit.close()

        with open(audit.log_file, encoding="utf-8") as f:
            content = f.read()
        assert OLD_KEY not in content
        assert NEW_KEY not in content
        assert "1111222233334444" in content

    def test_run_failed_exit_code(self, tmp_path):
        audit = AuditLogger("run-4", str(tmp_path), console=False)
        entry = audit.run_failed(RuntimeError("db gone"), duration_ms=5)
        audit.close()
        assert entry["details"]["exit_code"] == 1
        assert entry["details"]["error_type"] == "RuntimeError"

    def test_does_not_propagate_to_root(self, tmp_path, caplog):
        audit = AuditLogger("run-5", str(tmp_path), console=False)
        with caplog.at_level(logging.INFO):
            audit.table_skipped("users", "already completed")
        audit.close()
        assert "table_skipped" not in caplog.text

    def test_no_file_without_log_dir(self):
        audit = AuditLogger("run-6", None, console=False)
        entry = audit.table_skipped("users", "already completed")
        audit.close()
        assert audit.log_file is None
        assert entry["event"] == "table_skipped"

    def test_appends_across_instances(self, tmp_path):
        first = AuditLogger("run-7", str(tmp_path), console=False)
        first.table_started("users", 1)
        first.close()
        second = AuditLogger("run-7", str(tmp_path), console=False)
        second.table_started("users", 1)
        second.close()
        assert len(audit_entries(second.log_file)) == 2
