"""
Backup lifecycle for tenant containers.

This module handles:
- Nightly export, encryption and upload of every tenant container
- Client-side archive encryption
- Daily + weekly retention in the object store
- Integrity verification of stored archives
- Latest backup status per container
"""

from .orchestrator import NightlyBackupOrchestrator, OrchestratorConfig, BackupCancelledError
from .encryption import ArchiveEncryptor
from .retention import RetentionPolicyEngine
from .verifier import BackupVerifier
from .status import BackupStatusTracker
from .storage import SpacesClient, LocalSpacesClient, StorageError
from .exporter import DockerExporter

__all__ = [
    'NightlyBackupOrchestrator',
    'OrchestratorConfig',
    'BackupCancelledError',
    'ArchiveEncryptor',
    'RetentionPolicyEngine',
    'BackupVerifier',
    'BackupStatusTracker',
    'SpacesClient',
    'LocalSpacesClient',
    'StorageError',
    'DockerExporter'
]
