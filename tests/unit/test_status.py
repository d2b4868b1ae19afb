"""
Unit tests for backup status tracking (backvault/backup/status.py).

Tests the per-container status table and derived staleness.
"""

from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from backvault.backup.status import BackupStatusTracker, is_stale
from backvault.models import BackupStatus


class TestIsStale:
    """Test staleness derivation."""

    NOW = datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)

    def test_recent_success_not_stale(self):
        assert is_stale(True, self.NOW - timedelta(hours=1), self.NOW) is False

    def test_exactly_24h_not_stale(self):
        assert is_stale(True, self.NOW - timedelta(hours=24), self.NOW) is False

    def test_old_success_stale(self):
        assert is_stale(True, self.NOW - timedelta(hours=24, seconds=1), self.NOW) is True

    def test_failure_stale(self):
        assert is_stale(False, self.NOW - timedelta(minutes=5), self.NOW) is True

    def test_never_succeeded_stale(self):
        assert is_stale(True, None, self.NOW) is True

    def test_naive_timestamp_treated_as_utc(self):
        naive = (self.NOW - timedelta(hours=2)).replace(tzinfo=None)
        assert is_stale(True, naive, self.NOW) is False


class TestBackupStatusTracker:
    """Test BackupStatusTracker against the status table."""

    @freeze_time("2026-02-13 03:10:00")
    def test_record_success_creates_row(self, db):
        tracker = BackupStatusTracker()

        tracker.record_success('tenant_a', 'node-1', 12.5, 'nightly/node-1/tenant_a/tenant_a_20260213.tar.gz')

        entry = tracker.get('tenant_a')
        assert entry.node_id == 'node-1'
        assert entry.last_backup_success is True
        assert entry.last_backup_size_mb == 12.5
        assert entry.last_backup_path == 'nightly/node-1/tenant_a/tenant_a_20260213.tar.gz'
        assert entry.last_backup_error is None
        assert entry.total_backups == 1
        assert entry.last_backup_at == datetime(2026, 2, 13, 3, 10)
        assert entry.is_stale is False

    def test_success_increments_counter(self, db):
        tracker = BackupStatusTracker()

        tracker.record_success('tenant_a', 'node-1', 1.0, 'p1')
        tracker.record_success('tenant_a', 'node-1', 2.0, 'p2')
        tracker.record_success('tenant_a', 'node-1', 3.0, 'p3')

        entry = tracker.get('tenant_a')
        assert entry.total_backups == 3
        assert entry.last_backup_path == 'p3'
        assert tracker.count() == 1

    def test_failure_preserves_last_success(self, db):
        """Test a failure keeps the last good backup's time, path and counter."""
        with freeze_time("2026-02-12 03:00:00"):
            tracker = BackupStatusTracker()
            tracker.record_success('tenant_a', 'node-1', 5.0, 'nightly/node-1/tenant_a/tenant_a_20260212.tar.gz')

        with freeze_time("2026-02-13 03:00:00"):
            tracker.record_failure('tenant_a', 'node-1', 'export failed')
            entry = tracker.get('tenant_a')

        assert entry.last_backup_success is False
        assert entry.last_backup_error == 'export failed'
        assert entry.last_backup_at == datetime(2026, 2, 12, 3, 0)
        assert entry.last_backup_path == 'nightly/node-1/tenant_a/tenant_a_20260212.tar.gz'
        assert entry.total_backups == 1
        assert entry.updated_at == datetime(2026, 2, 13, 3, 0)
        assert entry.is_stale is True

    def test_failure_for_new_container(self, db):
        tracker = BackupStatusTracker()

        tracker.record_failure('tenant_new', 'node-1', 'docker export failed')

        entry = tracker.get('tenant_new')
        assert entry.last_backup_at is None
        assert entry.total_backups == 0
        assert entry.is_stale is True

    def test_success_after_failure_clears_error(self, db):
        tracker = BackupStatusTracker()

        tracker.record_failure('tenant_a', 'node-1', 'boom')
        tracker.record_success('tenant_a', 'node-1', 1.0, 'p')

        entry = tracker.get('tenant_a')
        assert entry.last_backup_error is None
        assert entry.last_backup_success is True

    def test_get_unknown_container(self, db):
        assert BackupStatusTracker().get('missing') is None

    def test_list_all_sorted(self, db):
        tracker = BackupStatusTracker()
        for name in ('tenant_c', 'tenant_a', 'tenant_b'):
            tracker.record_success(name, 'node-1', 1.0, f'p/{name}')

        assert [e.container_id for e in tracker.list_all()] == ['tenant_a', 'tenant_b', 'tenant_c']
        assert tracker.count() == 3

    def test_list_stale(self, db):
        with freeze_time("2026-02-11 03:00:00"):
            tracker = BackupStatusTracker()
            tracker.record_success('tenant_old', 'node-1', 1.0, 'p/old')

        with freeze_time("2026-02-13 03:00:00"):
            tracker.record_success('tenant_fresh', 'node-1', 1.0, 'p/fresh')
            tracker.record_failure('tenant_failed', 'node-1', 'boom')
            stale = [e.container_id for e in tracker.list_stale()]

        assert stale == ['tenant_failed', 'tenant_old']

    def test_staleness_follows_clock(self, db):
        current = [datetime(2026, 2, 13, 3, 0, tzinfo=timezone.utc)]
        tracker = BackupStatusTracker(clock=lambda: current[0])
        tracker.record_success('tenant_a', 'node-1', 1.0, 'p')

        assert tracker.get('tenant_a').is_stale is False

        current[0] += timedelta(hours=25)
        assert tracker.get('tenant_a').is_stale is True

    def test_entry_to_dict(self, db):
        tracker = BackupStatusTracker(clock=lambda: datetime(2026, 2, 13, 3, 0, tzinfo=timezone.utc))
        tracker.record_success('tenant_a', 'node-1', 1.25, 'p')

        data = tracker.get('tenant_a').to_dict()

        assert data['container_id'] == 'tenant_a'
        assert data['last_backup_at'] == '2026-02-13T03:00:00+00:00'
        assert data['last_backup_size_mb'] == 1.25
        assert data['total_backups'] == 1
        assert data['is_stale'] is False

    def test_failed_write_does_not_poison_session(self, db):
        """Test a commit error on one container leaves later writes working."""
        def reject_tenant_a(mapper, connection, target):
            if target.container_id == 'tenant_a':
                raise OperationalError("INSERT INTO backup_status", {}, Exception("database is locked"))

        event.listen(BackupStatus, 'before_insert', reject_tenant_a)
        try:
            tracker = BackupStatusTracker()

            with pytest.raises(OperationalError):
                tracker.record_success('tenant_a', 'node-1', 1.0, 'nightly/node-1/tenant_a/a.tar.gz')

            tracker.record_success('tenant_b', 'node-1', 2.0, 'nightly/node-1/tenant_b/b.tar.gz')
            tracker.record_failure('tenant_c', 'node-1', 'export failed for tenant_c')
        finally:
            event.remove(BackupStatus, 'before_insert', reject_tenant_a)

        assert tracker.get('tenant_a') is None
        assert tracker.get('tenant_b').total_backups == 1
        assert tracker.get('tenant_c').last_backup_error == 'export failed for tenant_c'


class TestBackupStatusModel:
    """Test the BackupStatus model directly."""

    def test_defaults(self, db):
        row = BackupStatus(container_id='tenant_a', node_id='node-1')
        db.session.add(row)
        db.session.commit()

        assert row.total_backups == 0
        assert row.last_backup_success is False
        assert row.last_backup_at is None
        assert row.created_at is not None

    def test_container_id_unique(self, db):
        db.session.add(BackupStatus(container_id='tenant_a', node_id='node-1'))
        db.session.commit()

        db.session.add(BackupStatus(container_id='tenant_a', node_id='node-2'))
        with pytest.raises(Exception):  # IntegrityError
            db.session.commit()

    def test_repr(self, db):
        row = BackupStatus(container_id='tenant_a', node_id='node-1', last_backup_success=True)

        assert repr(row) == '<BackupStatus tenant_a node=node-1 success=True>'
