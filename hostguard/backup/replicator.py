"""
Cloud replication of sealed archives.

Uploads run on a bounded thread pool with per-file retries. A failed upload
never touches the local archive; catalog updates happen on the calling
thread only.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from hostguard import Session
from .backupset import SetState
from .catalog import pending_uploads
from .storage import S3Storage, StorageError

logger = logging.getLogger(__name__)


class UploadFailure(Exception):
    """Raised (or reported) when an archive exhausted its upload retries."""

    def __init__(self, path: str, attempts: int, message: str):
        self.path = path
        self.attempts = attempts
        super().__init__(f"{os.path.basename(path)}: upload failed after {attempts} attempt(s): {message}")


@dataclass
class UploadOutcome:
    path: str
    key: Optional[str] = None
    attempts: int = 0
    error: Optional[UploadFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReplicationResult:
    skipped: bool = False
    reason: str = ''
    outcomes: List[UploadOutcome] = field(default_factory=list)

    @property
    def uploaded(self) -> List[UploadOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[UploadOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def summary(self) -> str:
        if self.skipped:
            return f"Cloud sync skipped: {self.reason}"
        lines = [f"Uploaded {len(self.uploaded)}/{len(self.outcomes)} archive(s)"]
        for outcome in self.uploaded:
            lines.append(f"  {os.path.basename(outcome.path)} -> {outcome.key}")
        for outcome in self.failures:
            lines.append(f"  FAILED {outcome.error}")
        return '\n'.join(lines)


class CloudReplicator:
    """
    Ships archives to the configured remote store.
    """

    def __init__(
        self,
        storage: S3Storage,
        prefix: str = '',
        retries: int = 3,
        concurrency: int = 4,
        backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize replicator.

        Args:
            storage: Remote store handler
            prefix: Remote key prefix
            retries: Attempts per file (at least one)
            concurrency: Maximum parallel uploads
            backoff: Base delay in seconds, doubled after each failed attempt
            sleep: Sleep function (injectable for tests)
        """
        self.storage = storage
        self.prefix = prefix
        self.retries = max(1, retries)
        self.concurrency = max(1, concurrency)
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, **kwargs) -> Optional['CloudReplicator']:
        """
        Build a replicator from settings, or None when no remote is configured.
        """
        bucket = config.get('BACKUP_BUCKET')
        if not bucket:
            return None

        storage = S3Storage(
            bucket_name=bucket,
            region=config.get('BACKUP_REGION') or 'us-east-1',
            access_key=config.get('BACKUP_ACCESS_KEY_ID') or None,
            secret_key=config.get('BACKUP_SECRET_ACCESS_KEY') or None,
            endpoint_url=config.get('BACKUP_ENDPOINT_URL') or None
        )
        return cls(
            storage,
            prefix=config.get('BACKUP_PREFIX', ''),
            retries=config.get_int('UPLOAD_RETRIES', 3),
            concurrency=config.get_int('UPLOAD_CONCURRENCY', 4),
            **kwargs
        )

    def upload_one(self, path: str) -> UploadOutcome:
        outcome = UploadOutcome(path=path)
        delay = self.backoff
        last_error = ''

        for attempt in range(1, self.retries + 1):
            outcome.attempts = attempt
            try:
                outcome.key = self.storage.upload(path, self.prefix)
                logger.info(f"Uploaded {path} -> {outcome.key} (attempt {attempt})")
                return outcome
            except StorageError as e:
                last_error = str(e)
                logger.warning(f"Upload attempt {attempt}/{self.retries} for {path} failed: {e}")
                if attempt < self.retries:
                    self.sleep(delay)
                    delay *= 2

        outcome.error = UploadFailure(path, outcome.attempts, last_error)
        logger.error(str(outcome.error))
        return outcome

    def upload(self, archive_paths: List[str]) -> ReplicationResult:
        """
        Upload archives with bounded concurrency.

        Returns:
            ReplicationResult with one outcome per path, in input order
        """
        result = ReplicationResult()
        if not archive_paths:
            return result

        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(archive_paths))) as pool:
            result.outcomes = list(pool.map(self.upload_one, archive_paths))

        return result


def sync_pending_archives(config, replicator: Optional[CloudReplicator] = None) -> ReplicationResult:
    """
    Upload every archive in the backup directory not yet uploaded.

    Absence of a configured remote is a skip, not a failure.
    """
    if replicator is None:
        replicator = CloudReplicator.from_config(config)
    if replicator is None:
        logger.info("No remote configured (BACKUP_BUCKET unset), skipping cloud sync")
        return ReplicationResult(skipped=True, reason='no remote configured')

    records = {record.archive_path: record for record in pending_uploads(config.get('BACKUP_DIR', '/opt/backups'))}
    if not records:
        logger.info("No archives pending upload")
        return ReplicationResult()

    result = replicator.upload(list(records))

    for outcome in result.uploaded:
        record = records[outcome.path]
        record.remote_key = outcome.key
        record.uploaded_at = datetime.utcnow()
        record.state = SetState.UPLOADED.value
    Session.commit()

    return result
