"""
Tests for durable progress records.
"""
import pytest

from pii_rotation.core.database.models import ProgressStatus, RotationProgress
from pii_rotation.core.rotation.progress import ProgressTracker


@pytest.fixture
def tracker(db):
    return ProgressTracker(db)


@pytest.fixture
def progress(tracker):
    return tracker.get_or_create("rotation-abc", "users", "aaaa", "bbbb")


class TestGetOrCreate:

    def test_first_touch_creates_in_progress_row(self, progress):
        assert progress.id is not None
        assert progress.status == ProgressStatus.IN_PROGRESS.value
        assert progress.processed_records == 0
        assert progress.failed_records == 0
        assert progress.last_checkpoint_id is None
        assert progress.error_log == []
        assert progress.started_at is not None

    def test_second_touch_returns_same_row(self, tracker, progress, db):
        again = tracker.get_or_create("rotation-abc", "users", "aaaa", "bbbb")
        assert again.id == progress.id
        assert db.query(RotationProgress).count() == 1

    def test_rows_are_per_table(self, tracker, progress):
        other = tracker.get_or_create("rotation-abc", "contacts", "aaaa", "bbbb")
        assert other.id != progress.id
        assert [p.table_name for p in tracker.list_for_rotation("rotation-abc")] == ["users", "contacts"]

    def test_get_missing(self, tracker):
        assert tracker.get("rotation-none", "users") is None


class TestUpdate:

    def test_scalars_overwritten(self, tracker, progress):
        tracker.update(progress.id, processed_records=100, failed_records=2, last_checkpoint_id="100")
        tracker.update(progress.id, processed_records=198, last_checkpoint_id="200")
        row = tracker.get("rotation-abc", "users")
        assert row.processed_records == 198
        assert row.failed_records == 2
        assert row.last_checkpoint_id == "200"
        assert row.updated_at is not None

    def test_error_log_appends(self, tracker, progress):
        tracker.update(progress.id, error_log=[{"record_id": 3, "error": "a"}])
        tracker.update(progress.id, error_log=[])
        tracker.update(progress.id, error_log=[{"record_id": 7, "error": "b"}])
        row = tracker.get("rotation-abc", "users")
        assert [e["record_id"] for e in row.error_log] == [3, 7]

    def test_failed_ids_replaced(self, tracker, progress):
        tracker.update(progress.id, failed_ids=[3, 7])
        tracker.update(progress.id, failed_ids=[7])
        assert tracker.get("rotation-abc", "users").failed_ids == [7]

    def test_unknown_field_rejected(self, tracker, progress):
        with pytest.raises(ValueError, match="Unknown progress fields"):
            tracker.update(progress.id, old_key_hash="cccc")

    def test_missing_row_rejected(self, tracker):
        with pytest.raises(ValueError, match="not found"):
            tracker.update(999, status=ProgressStatus.COMPLETED.value)


class TestMarkRolledBack:

    def test_marks_every_table(self, tracker, progress):
        tracker.get_or_create("rotation-abc", "contacts", "aaaa", "bbbb")
        tracker.update(progress.id, run_metadata={"operator": "ops"})

        assert tracker.mark_rolled_back("rotation-abc", "rollback-1") == 2

        rows = tracker.list_for_rotation("rotation-abc")
        assert {p.status for p in rows} == {ProgressStatus.ROLLED_BACK.value}
        users = tracker.get("rotation-abc", "users")
        assert users.run_metadata["rollback_id"] == "rollback-1"
        assert users.run_metadata["operator"] == "ops"
        assert "rolled_back_at" in users.run_metadata

    def test_unknown_rotation(self, tracker):
        assert tracker.mark_rolled_back("rotation-none", "rollback-1") == 0
