"""
Backup module for hostguard.

This module handles the backup-set lifecycle:
- Section capture (volumes, config, databases, user data)
- Sealing and compression
- Cloud replication (S3 and S3-compatible stores)
- Restore
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupResult, run_backup
from .sources import VolumeSource, PathSource, DatabaseSource, discover_sources
from .compression import create_archive, extract_archive
from .storage import S3Storage, LocalStorage
from .replicator import CloudReplicator, sync_pending_archives
from .restore import RestoreExecutor
from .retention import RetentionManager, enforce_retention

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'run_backup',
    'VolumeSource',
    'PathSource',
    'DatabaseSource',
    'discover_sources',
    'create_archive',
    'extract_archive',
    'S3Storage',
    'LocalStorage',
    'CloudReplicator',
    'sync_pending_archives',
    'RestoreExecutor',
    'RetentionManager',
    'enforce_retention'
]
