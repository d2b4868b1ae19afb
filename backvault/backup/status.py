"""
Latest backup status per container.

One row per container, updated exactly once per container per nightly run.
Staleness is derived at read time and never stored.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, List

from sqlalchemy.exc import SQLAlchemyError

from backvault import db
from backvault.models import BackupStatus


STALE_AFTER = timedelta(hours=24)


@dataclass(frozen=True)
class BackupStatusEntry:
    container_id: str
    node_id: str
    last_backup_at: Optional[datetime]
    last_backup_size_mb: Optional[float]
    last_backup_path: Optional[str]
    last_backup_success: bool
    last_backup_error: Optional[str]
    total_backups: int
    created_at: datetime
    updated_at: datetime
    is_stale: bool

    def to_dict(self) -> dict:
        return {
            'container_id': self.container_id,
            'node_id': self.node_id,
            'last_backup_at': _iso(self.last_backup_at),
            'last_backup_size_mb': self.last_backup_size_mb,
            'last_backup_path': self.last_backup_path,
            'last_backup_success': self.last_backup_success,
            'last_backup_error': self.last_backup_error,
            'total_backups': self.total_backups,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'is_stale': self.is_stale,
        }


def is_stale(last_backup_success: bool, last_backup_at: Optional[datetime], now: datetime) -> bool:
    """
    A container is stale when its last attempt failed, it has never been
    backed up successfully, or its last success is older than 24h.
    """
    if not last_backup_success or last_backup_at is None:
        return True
    return _as_utc(now) - _as_utc(last_backup_at) > STALE_AFTER


class BackupStatusTracker:
    """
    Records the latest backup outcome per container in the backup_status table.

    Must be used inside a Flask application context.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            clock: Returns the current UTC time (injectable for tests)
        """
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def record_success(self, container_id: str, node_id: str, size_mb: float, remote_path: str):
        """Upsert a successful backup and increment the success counter."""
        now = self._now()
        row = db.session.get(BackupStatus, container_id)

        if row is None:
            row = BackupStatus(container_id=container_id, created_at=now, total_backups=0)
            db.session.add(row)

        row.node_id = node_id
        row.last_backup_at = now
        row.last_backup_size_mb = size_mb
        row.last_backup_path = remote_path
        row.last_backup_success = True
        row.last_backup_error = None
        row.total_backups = (row.total_backups or 0) + 1
        row.updated_at = now

        self._commit()

    def record_failure(self, container_id: str, node_id: str, error: str):
        """
        Upsert a failed backup.

        last_backup_at, size, path and total_backups from the last good
        backup are left untouched.
        """
        now = self._now()
        row = db.session.get(BackupStatus, container_id)

        if row is None:
            row = BackupStatus(container_id=container_id, created_at=now, total_backups=0)
            db.session.add(row)

        row.node_id = node_id
        row.last_backup_success = False
        row.last_backup_error = error
        row.updated_at = now

        self._commit()

    def get(self, container_id: str) -> Optional[BackupStatusEntry]:
        row = db.session.get(BackupStatus, container_id)
        if row is None:
            return None
        return self._to_entry(row, self.clock())

    def list_all(self) -> List[BackupStatusEntry]:
        now = self.clock()
        rows = BackupStatus.query.order_by(BackupStatus.container_id).all()
        return [self._to_entry(row, now) for row in rows]

    def list_stale(self) -> List[BackupStatusEntry]:
        return [entry for entry in self.list_all() if entry.is_stale]

    def count(self) -> int:
        return BackupStatus.query.count()

    @staticmethod
    def _commit():
        # A failed flush leaves the session unusable until it is rolled back
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def _now(self) -> datetime:
        # Stored as naive UTC, like every other timestamp column
        return _as_utc(self.clock()).replace(tzinfo=None)

    @staticmethod
    def _to_entry(row: BackupStatus, now: datetime) -> BackupStatusEntry:
        return BackupStatusEntry(
            container_id=row.container_id,
            node_id=row.node_id,
            last_backup_at=row.last_backup_at,
            last_backup_size_mb=row.last_backup_size_mb,
            last_backup_path=row.last_backup_path,
            last_backup_success=bool(row.last_backup_success),
            last_backup_error=row.last_backup_error,
            total_backups=row.total_backups or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
            is_stale=is_stale(bool(row.last_backup_success), row.last_backup_at, now)
        )


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _as_utc(dt).isoformat()
