"""
Value types shared by the backup lifecycle jobs.

Results and reports are created fresh per run and handed to the caller;
only BackupStatusTracker persists anything.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union


def parse_iso_datetime(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z'. Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso_datetime(dt: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with milliseconds and 'Z'."""
    dt = parse_iso_datetime(dt)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class BackupResult:
    """Outcome of one container's backup attempt within a run."""
    container: str
    success: bool
    size_mb: Optional[float] = None
    remote_path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'container': self.container, 'success': self.success}
        if self.size_mb is not None:
            data['sizeMb'] = self.size_mb
        if self.remote_path is not None:
            data['remotePath'] = self.remote_path
        if self.error is not None:
            data['error'] = self.error
        return data


@dataclass(frozen=True)
class NightlyBackupReport:
    """
    One orchestrator run.

    exported/failed are projections of results and are never stored separately.
    """
    node_id: str
    date: str
    started_at: datetime
    completed_at: datetime
    results: List[BackupResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def exported(self) -> List[str]:
        return [r.container for r in self.results if r.success]

    @property
    def failed(self) -> List[str]:
        return [r.container for r in self.results if not r.success]

    def to_dict(self) -> dict:
        data = {
            'nodeId': self.node_id,
            'date': self.date,
            'startedAt': format_iso_datetime(self.started_at),
            'completedAt': format_iso_datetime(self.completed_at),
            'results': [r.to_dict() for r in self.results],
            'exported': self.exported,
            'failed': self.failed,
        }
        if self.cancelled:
            data['cancelled'] = True
        return data


@dataclass(frozen=True)
class SpacesObject:
    """
    Remote object descriptor.

    date is the logical backup date (ISO-8601), not necessarily the upload time.
    """
    path: str
    size: int
    date: str


@dataclass(frozen=True)
class RetentionConfig:
    daily_count: int = 7
    weekly_count: int = 4

    def __post_init__(self):
        if self.daily_count < 0 or self.weekly_count < 0:
            raise ValueError(
                f"Retention counts must be non-negative "
                f"(daily={self.daily_count}, weekly={self.weekly_count})"
            )


DEFAULT_RETENTION = RetentionConfig()


@dataclass
class RetentionResult:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {'kept': list(self.kept), 'deleted': list(self.deleted), 'errors': list(self.errors)}


@dataclass(frozen=True)
class VerificationResult:
    path: str
    valid: bool
    size_mb: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'path': self.path, 'valid': self.valid}
        if self.size_mb is not None:
            data['sizeMb'] = self.size_mb
        if self.error is not None:
            data['error'] = self.error
        return data


@dataclass(frozen=True)
class VerificationReport:
    verified_at: datetime
    results: List[VerificationResult] = field(default_factory=list)

    @property
    def total_checked(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.valid)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.valid)

    def to_dict(self) -> dict:
        return {
            'verifiedAt': format_iso_datetime(self.verified_at),
            'totalChecked': self.total_checked,
            'passed': self.passed,
            'failed': self.failed,
            'results': [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class PlaintextUpload:
    """Archive uploaded as exported."""
    local_path: str
    remote_path: str


@dataclass(frozen=True)
class EncryptedUpload:
    """Archive encrypted to source_path + '.enc' and uploaded under remote '.enc' key."""
    source_path: str
    local_path: str
    remote_path: str


UploadPlan = Union[PlaintextUpload, EncryptedUpload]


@dataclass(frozen=True)
class CleanupResult:
    path: str
    removed: bool
    error: Optional[str] = None
