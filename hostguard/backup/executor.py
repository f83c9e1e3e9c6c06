"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create the BackupSet directory and its catalog record (status: running)
2. Capture every Section (volumes, config, databases, user data)
3. Seal the set (write the manifest)
4. Compress the sealed set into one archive in the backup directory
5. Remove the uncompressed set directory
6. Update the catalog record (status: complete/completed_with_warnings/failed)
"""

import os
import shutil
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from hostguard import Session
from hostguard.models import BackupRecord
from hostguard.utils.containers import ContainerRuntime
from .backupset import BackupSet, BackupStatus, Section, SectionStatus, SetState
from .catalog import add_section_records
from .compression import create_archive, get_archive_size
from .sources import SectionCaptureFailure, discover_sources

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup cannot even be started."""
    pass


@dataclass
class BackupResult:
    name: str
    status: BackupStatus
    archive_path: Optional[str] = None
    size: Optional[int] = None
    sections: List[Section] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != BackupStatus.FAILED

    @property
    def problems(self) -> List[Section]:
        return [s for s in self.sections if s.status != SectionStatus.OK]

    def summary(self) -> str:
        lines = [f"Backup {self.name}: {self.status.value}"]
        if self.archive_path:
            size_mb = (self.size or 0) / 1024 / 1024
            lines.append(f"Archive: {self.archive_path} ({size_mb:.2f} MB)")
        ok_count = len(self.sections) - len(self.problems)
        lines.append(f"Sections: {ok_count}/{len(self.sections)} ok")
        for section in self.problems:
            lines.append(f"  [{section.status.value}] {section.section_id}: {section.message}")
        if self.error:
            lines.append(f"Error: {self.error}")
        return '\n'.join(lines)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for this host.
    """

    def __init__(
        self,
        config,
        runtime: Optional[ContainerRuntime] = None,
        sources: Optional[List[Any]] = None,
        root: str = '/',
        now: Optional[datetime] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: ConfigSnapshot
            runtime: Container runtime (probed from the host when omitted)
            sources: Explicit sources (discovered from the host when omitted)
            root: Filesystem root sources are read under
            now: Set creation time (defaults to now)
        """
        self.config = config
        self.runtime = runtime
        self.sources = sources
        self.root = root
        self.now = now
        self.backup_dir = config.get('BACKUP_DIR', '/opt/backups')
        self.compression_format = config.get('BACKUP_FORMAT', 'tar.gz')
        self.strict = config.flag('BACKUP_STRICT')
        self.backup_set = None
        self.record = None
        self.archive_path = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Section failures never abort the run; they are recorded and the
        result is downgraded. Anything else that goes wrong marks the run
        failed and leaves the uncompressed set directory in place.

        Returns:
            BackupResult with the archive path, size and per-section outcome

        Raises:
            BackupError: If the backup directory cannot be used at all
        """
        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            os.chmod(self.backup_dir, 0o700)
            self.backup_set = BackupSet.create(self.backup_dir, self.now)
        except OSError as e:
            raise BackupError(f"Cannot create backup set in {self.backup_dir}: {e}")

        self.record = BackupRecord(
            name=self.backup_set.name,
            status=BackupStatus.RUNNING.value,
            state=SetState.CAPTURING.value,
            started_at=datetime.utcnow()
        )
        Session.add(self.record)
        Session.commit()

        self._log(f"Starting backup: {self.backup_set.name}")
        result = BackupResult(name=self.backup_set.name, status=BackupStatus.RUNNING)

        try:
            self._execute_workflow()

            result.status = self.backup_set.status
            if self.strict and result.status != BackupStatus.COMPLETE:
                result.status = BackupStatus.FAILED
                result.error = (
                    f"{len([s for s in self.backup_set.sections if s.status != SectionStatus.OK])} "
                    f"section(s) not ok and BACKUP_STRICT is enabled"
                )
                self.record.error_message = result.error

            self.record.status = result.status.value
            self._log(f"Backup finished with status: {result.status.value}")

        except KeyboardInterrupt:
            result.status = BackupStatus.FAILED
            result.error = 'interrupted by operator'
            self.record.status = BackupStatus.FAILED.value
            self.record.error_message = result.error
            self._log(f"Backup interrupted; set directory kept at {self.backup_set.path}")
            raise

        except Exception as e:
            logger.exception("Backup failed")
            result.status = BackupStatus.FAILED
            result.error = str(e)
            self.record.status = BackupStatus.FAILED.value
            self.record.error_message = str(e)
            self._log(f"Backup failed: {e}")
            if self.backup_set.path.exists():
                self._log(f"Uncompressed set kept at {self.backup_set.path}")

        finally:
            self.record.completed_at = datetime.utcnow()
            self.record.logs = '\n'.join(self.logs)
            Session.commit()

        result.sections = list(self.backup_set.sections)
        result.archive_path = self.archive_path
        result.size = self.record.file_size_bytes
        return result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        sources = self._resolve_sources()
        self._log(f"Capturing {len(sources)} sections")
        self._flush_logs_to_db()

        # Every section is attempted regardless of earlier outcomes
        for source in sources:
            section = self.capture(source)
            self.backup_set.add(section)
            if section.status == SectionStatus.OK:
                self._log(f"Captured {section.section_id} -> {section.artifact}")
            else:
                self._log(f"Section {section.section_id} {section.status.value}: {section.message}")

        manifest = self.backup_set.seal()
        add_section_records(self.record, manifest['sections'])
        self._log(f"Set sealed with {len(manifest['artifacts'])} artifacts")
        self._flush_logs_to_db()

        self._log(f"Creating archive (format: {self.compression_format})")
        self.archive_path = create_archive(
            [str(self.backup_set.path)],
            os.path.join(self.backup_dir, self.backup_set.name),
            self.compression_format
        )
        os.chmod(self.archive_path, 0o600)
        file_size = get_archive_size(self.archive_path)
        self.record.archive_path = self.archive_path
        self.record.file_size_bytes = file_size
        self.record.state = SetState.SEALED.value
        self._log(f"Archive created: {os.path.basename(self.archive_path)} ({file_size / 1024 / 1024:.2f} MB)")

        # Only now that the archive exists
        shutil.rmtree(self.backup_set.path)
        self._log("Removed uncompressed set directory")

    def _resolve_sources(self) -> List[Any]:
        if self.sources is not None:
            return list(self.sources)

        runtime = self.runtime
        if runtime is None:
            candidate = ContainerRuntime(helper_image=self.config.get('BACKUP_HELPER_IMAGE', 'alpine'))
            runtime = candidate if candidate.available() else None
        return discover_sources(self.config, runtime, self.root)

    def capture(self, source) -> Section:
        """
        Capture one section; a failure becomes a ``failed`` Section.

        Args:
            source: VolumeSource, PathSource or DatabaseSource

        Returns:
            The captured (or failed) Section
        """
        try:
            return source.capture(self.backup_set)
        except SectionCaptureFailure as e:
            message = e.message
        except Exception as e:
            logger.exception(f"Unexpected error capturing {source.section_id}")
            message = f"unexpected error: {e}"

        return Section(
            kind=source.kind,
            name=source.name,
            source=source.source,
            status=SectionStatus.FAILED,
            message=message,
        )

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to the catalog."""
        if self.record:
            self.record.logs = '\n'.join(self.logs)
            Session.commit()
            self._log_flush_counter = 0


def run_backup(config, **kwargs) -> BackupResult:
    """
    Run one backup with the given configuration.

    Returns:
        BackupResult from BackupExecutor.execute()
    """
    executor = BackupExecutor(config, **kwargs)
    return executor.execute()
