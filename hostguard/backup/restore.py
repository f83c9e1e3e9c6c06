"""
Restore executor - replays a sealed archive onto the live system.

Workflow:
1. Extract the archive into a private scratch directory
2. Validate its structure (manifest, at least one section directory)
3. Stop here for a dry run
4. Ask the operator for confirmation
5. Replay each ok Section by kind; skip warn/failed ones
6. Restart dependent services (best effort)
7. Remove the scratch directory (always)
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from hostguard.utils.command import CommandRunner
from hostguard.utils.containers import ContainerRuntime, detect_engine
from .backupset import BackupSetError, Section, SectionKind, SectionStatus, load_manifest
from .compression import CompressionError, extract_archive, strip_archive_extension
from .sources import DATABASE_ENGINES, host_path

logger = logging.getLogger(__name__)


# Restarted after a restore, in order; alternatives are tried until one works
RESTART_SERVICES = (
    ('docker',),
    ('ssh', 'sshd'),
    ('fail2ban',),
)


class RestoreError(Exception):
    """Raised when an archive cannot be restored at all."""
    pass


class RestoreSectionFailure(Exception):
    """Raised when one section cannot be replayed. Never fatal to the restore."""

    def __init__(self, section_id: str, message: str):
        self.section_id = section_id
        self.message = message
        super().__init__(f"{section_id}: {message}")


@dataclass
class RestoreResult:
    archive: str
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    services: Dict[str, bool] = field(default_factory=dict)
    cancelled: bool = False
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def summary(self) -> str:
        if self.cancelled:
            return f"Restore of {self.archive} cancelled; nothing changed"
        if self.dry_run:
            lines = [f"Dry run: {self.archive} is structurally valid"]
            lines.append(f"Would restore {len(self.planned)} section(s), skip {len(self.skipped)}")
            lines.extend(f"  {section_id}" for section_id in self.planned)
            return '\n'.join(lines)

        lines = [
            f"Restored {len(self.restored)} section(s) from {self.archive}",
            f"Skipped: {len(self.skipped)}  Failed: {len(self.failed)}",
        ]
        lines.extend(f"  skipped {section_id}" for section_id in self.skipped)
        lines.extend(f"  FAILED {section_id}: {message}" for section_id, message in self.failed)
        for service, restarted in self.services.items():
            lines.append(f"  service {service}: {'restarted' if restarted else 'restart failed'}")
        return '\n'.join(lines)


class RestoreExecutor:
    """
    Restores one archive.
    """

    def __init__(
        self,
        archive_path: str,
        runtime: Optional[ContainerRuntime] = None,
        runner: Optional[CommandRunner] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        dry_run: bool = False,
        target_root: str = '/',
        restart_services: bool = True
    ):
        """
        Initialize restore executor.

        Args:
            archive_path: Archive produced by a backup
            runtime: Container runtime for volume and database sections
            runner: Command runner for service restarts
            confirm: Called with a description before anything live changes;
                returning False cancels. None means already confirmed.
            dry_run: Validate structure only
            target_root: Filesystem root file sections are overlaid onto
            restart_services: Restart dependent services afterwards
        """
        self.archive_path = archive_path
        self.runner = runner or CommandRunner()
        self._runtime = runtime
        self.confirm = confirm
        self.dry_run = dry_run
        self.target_root = target_root
        self.restart_services = restart_services
        self.scratch_dir = None

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = ContainerRuntime(self.runner)
        return self._runtime

    def execute(self) -> RestoreResult:
        """
        Run the restore.

        Returns:
            RestoreResult with restored, skipped and failed section ids

        Raises:
            RestoreError: If the archive is missing, unreadable or malformed
        """
        if not os.path.isfile(self.archive_path):
            raise RestoreError(f"Archive not found: {self.archive_path}")

        result = RestoreResult(archive=self.archive_path, dry_run=self.dry_run)
        self.scratch_dir = tempfile.mkdtemp(prefix='hostguard_restore_')
        logger.info(f"Extracting {self.archive_path} into {self.scratch_dir}")

        try:
            set_dir = self._extract()
            sections = self._validate(set_dir)

            for section in sections:
                if section.status != SectionStatus.OK:
                    result.skipped.append(section.section_id)
                else:
                    result.planned.append(section.section_id)

            if self.dry_run:
                logger.info(f"Dry run complete for {self.archive_path}")
                return result

            if self.confirm is not None and not self.confirm(self._describe(result)):
                logger.info("Restore cancelled by operator")
                result.cancelled = True
                return result

            for section in sections:
                if section.status != SectionStatus.OK:
                    logger.warning(f"Skipping {section.section_id}: recorded as {section.status.value} at capture")
                    continue
                try:
                    self.restore_section(section, set_dir)
                    result.restored.append(section.section_id)
                    logger.info(f"Restored {section.section_id}")
                except RestoreSectionFailure as e:
                    logger.error(f"Restore of {e.section_id} failed: {e.message}")
                    result.failed.append((e.section_id, e.message))
                except Exception as e:
                    logger.exception(f"Unexpected error restoring {section.section_id}")
                    result.failed.append((section.section_id, f"unexpected error: {e}"))

            if self.restart_services:
                result.services = self._restart_services()

            return result

        finally:
            shutil.rmtree(self.scratch_dir, ignore_errors=True)
            logger.info("Removed restore scratch directory")
            self.scratch_dir = None

    def _extract(self) -> Path:
        try:
            extract_archive(self.archive_path, self.scratch_dir)
        except CompressionError as e:
            raise RestoreError(str(e))

        expected = Path(self.scratch_dir) / strip_archive_extension(os.path.basename(self.archive_path))
        if expected.is_dir():
            return expected

        # Archive was renamed; accept a single top-level directory
        entries = [p for p in Path(self.scratch_dir).iterdir() if p.is_dir()]
        if len(entries) != 1:
            raise RestoreError("Archive does not contain a single backup set directory")
        return entries[0]

    def _validate(self, set_dir: Path) -> List[Section]:
        try:
            manifest = load_manifest(set_dir)
            sections = [Section.from_dict(data) for data in manifest['sections']]
        except (BackupSetError, KeyError, ValueError) as e:
            raise RestoreError(f"Invalid backup set: {e}")

        if not any((set_dir / kind.directory).is_dir() for kind in SectionKind):
            raise RestoreError("Backup set contains no section directories")
        return sections

    def _describe(self, result: RestoreResult) -> str:
        return (
            f"Restore {len(result.planned)} section(s) from {os.path.basename(self.archive_path)} "
            f"onto this host, overwriting current data? ({len(result.skipped)} will be skipped)"
        )

    def restore_section(self, section: Section, set_dir: Path):
        """
        Replay one section.

        Raises:
            RestoreSectionFailure: If the section cannot be replayed
        """
        if not section.artifact:
            raise RestoreSectionFailure(section.section_id, "manifest lists no artifact")
        artifact = set_dir / section.artifact
        if not artifact.is_file():
            raise RestoreSectionFailure(section.section_id, f"artifact missing from archive: {section.artifact}")

        if section.kind in (SectionKind.CONFIG, SectionKind.USERDATA):
            self._restore_files(section, artifact)
        elif section.kind == SectionKind.VOLUME:
            self._restore_volume(section, artifact)
        else:
            self._restore_database(section, artifact)

    def _restore_files(self, section: Section, artifact: Path):
        base = section.extra.get('base') or os.path.dirname(section.source.rstrip('/')) or '/'
        target = host_path(self.target_root, base)
        try:
            extract_archive(str(artifact), str(target), overlay=True)
        except CompressionError as e:
            raise RestoreSectionFailure(section.section_id, str(e))

    def _restore_volume(self, section: Section, artifact: Path):
        result = self.runtime.restore_volume(section.name, str(artifact))
        if not result.ok:
            raise RestoreSectionFailure(section.section_id, f"volume copy-in failed ({result.describe()})")

    def _restore_database(self, section: Section, artifact: Path):
        container = section.source or section.name
        if not self.runtime.is_running(container):
            raise RestoreSectionFailure(section.section_id, f"container {container} is not running")

        engine = section.extra.get('engine') or detect_engine(self.runtime.container_env(container))
        if engine not in DATABASE_ENGINES:
            raise RestoreSectionFailure(section.section_id, "no known database engine for replay")

        result = self.runtime.exec_from_file(container, DATABASE_ENGINES[engine]['restore'], str(artifact))
        if not result.ok:
            raise RestoreSectionFailure(section.section_id, f"{engine} replay failed ({result.describe()})")

    def _restart_services(self) -> Dict[str, bool]:
        services = {}
        for alternatives in RESTART_SERVICES:
            restarted = False
            for service in alternatives:
                if self.runner.run(['systemctl', 'restart', service]).ok:
                    restarted = True
                    break
            services['/'.join(alternatives)] = restarted
            if not restarted:
                logger.warning(f"Could not restart {'/'.join(alternatives)}")
        return services
