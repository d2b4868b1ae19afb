"""
Entry points for the three scheduled backup jobs.

Each function builds its collaborators from the Flask app config and runs
one pass. They must be called inside an application context.
"""

import logging
from typing import Dict, Optional, Callable

from flask import current_app

from backvault.config import load_encryption_key
from backvault.backup.encryption import ArchiveEncryptor
from backvault.backup.exporter import create_exporter
from backvault.backup.orchestrator import NightlyBackupOrchestrator, OrchestratorConfig
from backvault.backup.retention import RetentionPolicyEngine
from backvault.backup.status import BackupStatusTracker
from backvault.backup.storage import create_spaces_client, node_prefix
from backvault.backup.types import (
    NightlyBackupReport,
    RetentionConfig,
    RetentionResult,
    VerificationReport,
)
from backvault.backup.verifier import BackupVerifier


logger = logging.getLogger(__name__)


def run_nightly_backup(cancellation_check: Optional[Callable[[], None]] = None) -> NightlyBackupReport:
    """
    Back up every tenant container on this node.

    Returns:
        NightlyBackupReport for the run
    """
    cfg = current_app.config

    orchestrator = NightlyBackupOrchestrator(
        exporter=create_exporter('docker', cfg),
        encryptor=ArchiveEncryptor(),
        store=create_spaces_client(cfg),
        config=OrchestratorConfig(
            node_id=cfg['NODE_ID'],
            backup_dir=cfg['BACKUP_DIR'],
            encryption_key=load_encryption_key(cfg.get('BACKUP_ENCRYPTION_KEY'))
        ),
        status_tracker=BackupStatusTracker()
    )

    report = orchestrator.run(cancellation_check=cancellation_check)

    for name in report.failed:
        logger.error(f"Nightly backup failed for container {name} on node {report.node_id}")

    return report


def run_retention() -> Dict[str, RetentionResult]:
    """
    Enforce the retention policy for every container prefix of this node.

    Returns:
        Dict mapping container prefix to RetentionResult
    """
    cfg = current_app.config

    engine = RetentionPolicyEngine(create_spaces_client(cfg))
    retention_config = RetentionConfig(
        daily_count=cfg['RETENTION_DAILY_COUNT'],
        weekly_count=cfg['RETENTION_WEEKLY_COUNT']
    )

    summary = engine.enforce_node(cfg['NODE_ID'], retention_config)

    deleted = sum(len(r.deleted) for r in summary.values())
    errors = sum(len(r.errors) for r in summary.values())
    logger.info(
        f"Retention complete for node {cfg['NODE_ID']}: "
        f"containers={len(summary)}, deleted={deleted}, errors={errors}"
    )
    return summary


def run_verification(limit: Optional[int] = None) -> VerificationReport:
    """
    Verify a sample of this node's stored backups.

    Args:
        limit: Sample size (default: VERIFY_SAMPLE_LIMIT)
    """
    cfg = current_app.config

    verifier = BackupVerifier(
        store=create_spaces_client(cfg),
        temp_dir=cfg['VERIFY_TEMP_DIR'],
        encryptor=ArchiveEncryptor(),
        encryption_key=load_encryption_key(cfg.get('BACKUP_ENCRYPTION_KEY'))
    )

    if limit is None:
        limit = cfg['VERIFY_SAMPLE_LIMIT']

    return verifier.verify(node_prefix(cfg['NODE_ID']), limit=limit)
