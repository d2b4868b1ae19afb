"""
Nightly backup orchestrator.

For each tenant container on this node:
1. Export the container (without stopping it)
2. Rename the export to {name}_{YYYYMMDD}.tar.gz
3. Encrypt it (if a key is configured) and delete the plaintext
4. Upload to the object store
5. Remove the local upload artifact

Containers are processed one at a time. A failure in one container is
recorded in its BackupResult and never aborts the run.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Callable, List

from .types import (
    BackupResult,
    NightlyBackupReport,
    PlaintextUpload,
    EncryptedUpload,
    UploadPlan,
    CleanupResult,
)
from .storage import nightly_remote_path, format_backup_date


logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class BackupCancelledError(Exception):
    """Raised by a cancellation check to stop a run between containers."""
    pass


@dataclass(frozen=True, repr=False)
class OrchestratorConfig:
    node_id: str
    backup_dir: str
    encryption_key: Optional[bytes] = None

    def __repr__(self):
        # Keep the key out of logs and tracebacks
        return (
            f"OrchestratorConfig(node_id={self.node_id!r}, backup_dir={self.backup_dir!r}, "
            f"encrypted={self.encryption_key is not None})"
        )


def cleanup(path: str) -> CleanupResult:
    """
    Best-effort removal of a local file.

    Never raises; the outcome is logged and returned separately from the
    operation that produced the file.
    """
    try:
        os.remove(path)
        return CleanupResult(path=path, removed=True)
    except FileNotFoundError:
        return CleanupResult(path=path, removed=False)
    except OSError as e:
        logger.warning(f"Cleanup failed for {path}: {e}")
        return CleanupResult(path=path, removed=False, error=str(e))


class NightlyBackupOrchestrator:
    """
    Drives export -> encrypt -> upload -> cleanup for every tenant container.
    """

    def __init__(self, exporter, encryptor, store, config: OrchestratorConfig,
                 status_tracker=None, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            exporter: ContainerExporter listing and exporting tenant containers
            encryptor: ArchiveEncryptor used when config.encryption_key is set
            store: Object store client (SpacesClient interface)
            config: Node id, scratch directory and optional encryption key
            status_tracker: Optional BackupStatusTracker updated once per container
            clock: Returns the current UTC time (injectable for tests)
        """
        self.exporter = exporter
        self.encryptor = encryptor
        self.store = store
        self.config = config
        self.status_tracker = status_tracker
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logs: List[str] = []

    def run(self, cancellation_check: Optional[Callable[[], None]] = None) -> NightlyBackupReport:
        """
        Run the nightly backup for all tenant containers on this node.

        Args:
            cancellation_check: Called before each container; raising
                BackupCancelledError stops the run after the current container.

        Returns:
            NightlyBackupReport for this run

        Raises:
            ExportError: If tenant containers cannot be enumerated
        """
        started_at = self.clock()
        date = format_backup_date(started_at)

        os.makedirs(self.config.backup_dir, exist_ok=True)

        self._log(f"Starting nightly backup on node {self.config.node_id} for {date}")
        containers = self.exporter.list_tenant_containers()
        self._log(f"Found {len(containers)} tenant containers")

        results: List[BackupResult] = []
        cancelled = False

        for name in containers:
            if cancellation_check:
                try:
                    cancellation_check()
                except BackupCancelledError as e:
                    cancelled = True
                    self._log(f"Nightly backup cancelled before {name}: {e}", level=logging.WARNING)
                    break

            result = self.backup_container(name, date)
            results.append(result)
            self._record_status(result)

        report = NightlyBackupReport(
            node_id=self.config.node_id,
            date=date,
            started_at=started_at,
            completed_at=self.clock(),
            results=results,
            cancelled=cancelled
        )

        self._log(
            f"Nightly backup complete: {len(report.exported)} exported, "
            f"{len(report.failed)} failed"
        )
        return report

    def plan_upload(self, local_path: str, remote_path: str) -> UploadPlan:
        """Decide once per container whether the archive is uploaded encrypted."""
        if self.config.encryption_key:
            return EncryptedUpload(
                source_path=local_path,
                local_path=f"{local_path}.enc",
                remote_path=f"{remote_path}.enc"
            )
        return PlaintextUpload(local_path=local_path, remote_path=remote_path)

    def backup_container(self, name: str, date: str) -> BackupResult:
        """
        Back up a single container.

        Args:
            name: Container name
            date: Run date as YYYYMMDD (UTC)

        Returns:
            BackupResult; failures are returned, never raised
        """
        backup_dir = self.config.backup_dir
        exported_path = os.path.join(backup_dir, f"{name}.tar.gz")
        local_path = os.path.join(backup_dir, f"{name}_{date}.tar.gz")
        remote_path = nightly_remote_path(self.config.node_id, name, date)
        plan = None

        try:
            self._log(f"Backing up container: {name}")

            self.exporter.export(name, backup_dir)
            os.rename(exported_path, local_path)

            plan = self.plan_upload(local_path, remote_path)

            if isinstance(plan, EncryptedUpload):
                self.encryptor.encrypt_file(plan.source_path, plan.local_path, self.config.encryption_key)
                # Plaintext must not outlive a successful encryption
                os.remove(plan.source_path)

            size_mb = round(os.path.getsize(plan.local_path) / BYTES_PER_MB, 2)

            self.store.upload(plan.local_path, plan.remote_path)

            cleanup(plan.local_path)

            self._log(f"Backup complete: {name} ({size_mb}MB) -> {plan.remote_path}")
            return BackupResult(
                container=name,
                success=True,
                size_mb=size_mb,
                remote_path=plan.remote_path
            )

        except Exception as e:
            message = str(e) or e.__class__.__name__
            self._log(f"Backup failed: {name}: {message}", level=logging.ERROR)

            cleanup(exported_path)
            cleanup(local_path)
            if isinstance(plan, EncryptedUpload):
                cleanup(plan.local_path)

            return BackupResult(container=name, success=False, error=message)

    def _record_status(self, result: BackupResult):
        if self.status_tracker is None:
            return

        try:
            if result.success:
                self.status_tracker.record_success(
                    result.container, self.config.node_id, result.size_mb, result.remote_path
                )
            else:
                self.status_tracker.record_failure(
                    result.container, self.config.node_id, result.error
                )
        except Exception as e:
            self._log(f"Failed to record backup status for {result.container}: {e}", level=logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a timestamped log line to this run and emit it.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = self.clock().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
