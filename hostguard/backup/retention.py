"""
Retention policy enforcement for local backup archives.

Deletes archives older than the retention window, except the single most
recent successful archive, which is always kept regardless of age.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from hostguard import Session
from .backupset import BackupStatus, SetState
from .catalog import register_archive
from .storage import LocalStorage, StorageError

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention for the local backup directory.
    """

    def __init__(self, backup_dir: str, retention_days: int, now: Optional[datetime] = None):
        """
        Initialize retention manager.

        Args:
            backup_dir: Local backup directory
            retention_days: Age threshold in days (0 prunes everything but the floor)
            now: Reference time (defaults to now)
        """
        if retention_days < 0:
            raise ValueError(f"Retention days must be >= 0, got {retention_days}")
        self.storage = LocalStorage(backup_dir)
        self.retention_days = retention_days
        self.now = now
        self.logs = []

    def select_floor(self, archives: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        The archive that must survive pruning.

        Args:
            archives: Archive dicts, newest first, each with a 'record'

        Returns:
            The newest archive with status complete; when none completed
            cleanly, the newest archive of any status
        """
        for archive in archives:
            if archive['record'].status == BackupStatus.COMPLETE.value:
                return archive
        return archives[0] if archives else None

    def prune(self) -> Dict[str, Any]:
        """
        Delete archives older than the retention window.

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': List[str],
                'kept': Optional[str],
                'errors': List[str],
                'logs': List[str]
            }
        """
        now = self.now or datetime.now()
        cutoff = now - timedelta(days=self.retention_days)
        self._log(f"Enforcing retention: {self.retention_days} days (cutoff {cutoff.isoformat(timespec='seconds')})")

        summary = {'deleted': [], 'kept': None, 'errors': []}

        archives = self.storage.list_archives()
        for archive in archives:
            archive['record'] = register_archive(archive['path'])

        floor = self.select_floor(archives)
        if floor:
            summary['kept'] = floor['path']
            self._log(f"Always retained: {floor['name']} ({floor['record'].status})")

        for archive in archives:
            if archive is floor or archive['modified'] >= cutoff:
                continue
            try:
                self.storage.delete(archive['path'])
            except StorageError as e:
                error_msg = f"Failed to delete {archive['path']}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)
                continue

            record = archive['record']
            record.state = SetState.PRUNED.value
            record.pruned_at = datetime.utcnow()
            record.archive_path = None
            summary['deleted'].append(archive['path'])
            self._log(f"Deleted local archive: {archive['name']}")

        Session.commit()

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )
        summary['logs'] = self.logs
        return summary

    def _log(self, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def enforce_retention(config, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Enforce the configured retention window.

    Returns:
        Summary dict from RetentionManager.prune()
    """
    manager = RetentionManager(
        config.get('BACKUP_DIR', '/opt/backups'),
        config.get_int('BACKUP_RETENTION_DAYS', 7),
        now=now
    )
    return manager.prune()
