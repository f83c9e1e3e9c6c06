"""
Section sources for backup operations.

Supports:
- VolumeSource: Docker volume snapshot via a helper container
- PathSource: Config directories and user data, archived from the filesystem
- DatabaseSource: Engine-specific dump from a running database container
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from hostguard.utils.command import CommandError
from hostguard.utils.containers import ContainerRuntime, DATABASE_HINTS, detect_engine
from .backupset import BackupSet, Section, SectionKind, SectionStatus
from .compression import CompressionError, create_tarball

logger = logging.getLogger(__name__)


CONFIG_PATHS = (
    '/etc/ssh',
    '/etc/nginx',
    '/etc/fail2ban',
    '/etc/audit',
    '/etc/docker',
    '/opt/traefik',
)

COMPOSE_SEARCH_ROOT = '/opt'
COMPOSE_FILENAMES = ('docker-compose.yml', 'docker-compose.yaml', 'compose.yml', 'compose.yaml')

ROOT_SELECTIVE_MEMBERS = ['.ssh', '.bashrc', '.profile']

DEFAULT_EXCLUDE_PATTERNS = ['*.sock', '*.pid', '*.swp']

# engine -> dump file extension, dump command, replay command (run inside the container)
DATABASE_ENGINES: Dict[str, Dict[str, str]] = {
    'mysql': {
        'extension': 'sql',
        'dump': 'exec mysqldump --all-databases --single-transaction -u root '
                '-p"${MYSQL_ROOT_PASSWORD:-$MARIADB_ROOT_PASSWORD}"',
        'restore': 'exec mysql -u root -p"${MYSQL_ROOT_PASSWORD:-$MARIADB_ROOT_PASSWORD}"',
    },
    'postgres': {
        'extension': 'sql',
        'dump': 'exec pg_dumpall -U "${POSTGRES_USER:-postgres}"',
        'restore': 'exec psql -U "${POSTGRES_USER:-postgres}" -d postgres',
    },
    'mongo': {
        'extension': 'archive',
        'dump': 'if [ -n "$MONGO_INITDB_ROOT_USERNAME" ]; then '
                'exec mongodump --archive -u "$MONGO_INITDB_ROOT_USERNAME" '
                '-p "$MONGO_INITDB_ROOT_PASSWORD" --authenticationDatabase admin; '
                'else exec mongodump --archive; fi',
        'restore': 'if [ -n "$MONGO_INITDB_ROOT_USERNAME" ]; then '
                   'exec mongorestore --archive --drop -u "$MONGO_INITDB_ROOT_USERNAME" '
                   '-p "$MONGO_INITDB_ROOT_PASSWORD" --authenticationDatabase admin; '
                   'else exec mongorestore --archive --drop; fi',
    },
}


class SectionCaptureFailure(Exception):
    """Raised when one section cannot be captured. Never fatal to the backup."""

    def __init__(self, section_id: str, message: str):
        self.section_id = section_id
        self.message = message
        super().__init__(f"{section_id}: {message}")


def safe_name(name: str) -> str:
    """Filesystem-safe member name derived from a source identifier."""
    return "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in name
    ).lstrip('.') or '_'


def host_path(root: str, path: str) -> Path:
    """Live path ``path`` as seen under ``root`` ('/' on a real host)."""
    return Path(root) / path.lstrip('/')


class VolumeSource:
    """
    Snapshot of one Docker volume.
    """

    kind = SectionKind.VOLUME

    def __init__(self, volume: str, runtime: ContainerRuntime):
        self.volume = volume
        self.runtime = runtime
        self.name = volume
        self.source = volume

    @property
    def section_id(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def capture(self, backup_set: BackupSet) -> Section:
        """
        Copy the volume out through a read-only helper container.

        Raises:
            SectionCaptureFailure: If the volume is gone or the copy fails
        """
        if not self.runtime.volume_exists(self.volume):
            raise SectionCaptureFailure(self.section_id, "volume not found (removed or detached)")

        dest_dir = backup_set.section_dir(self.kind)
        filename = f"{safe_name(self.volume)}.tar.gz"
        artifact = dest_dir / filename

        result = self.runtime.snapshot_volume(self.volume, str(dest_dir), filename)
        if not result.ok or not artifact.exists():
            if artifact.exists():
                artifact.unlink()
            raise SectionCaptureFailure(self.section_id, f"volume copy failed ({result.describe()})")

        return Section(
            kind=self.kind,
            name=self.name,
            source=self.source,
            artifact=f"{self.kind.directory}/{filename}",
        )


class PathSource:
    """
    Archive of a directory (or selected members of it) from the filesystem.
    """

    def __init__(
        self,
        kind: SectionKind,
        path: str,
        name: Optional[str] = None,
        members: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        root: str = '/'
    ):
        """
        Initialize path source.

        Args:
            kind: SectionKind.CONFIG or SectionKind.USERDATA
            path: Live absolute path, e.g. /etc/ssh
            name: Section name (defaults to the path basename)
            members: Archive only these names inside ``path``
            exclude_patterns: Glob patterns to leave out (sockets, pid files)
            root: Filesystem root the live path is read under
        """
        self.kind = kind
        self.path = path.rstrip('/') or '/'
        self.name = name or os.path.basename(self.path)
        self.members = members
        self.exclude_patterns = DEFAULT_EXCLUDE_PATTERNS if exclude_patterns is None else exclude_patterns
        self.root = root
        self.source = self.path

    @property
    def section_id(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def _base_and_members(self) -> Tuple[str, List[str]]:
        if self.members is None:
            return os.path.dirname(self.path) or '/', [os.path.basename(self.path)]
        return self.path, list(self.members)

    def capture(self, backup_set: BackupSet) -> Section:
        """
        Raises:
            SectionCaptureFailure: If the path is unreadable or empty
        """
        base, members = self._base_and_members()
        filename = f"{safe_name(self.name)}.tar.gz"
        artifact = backup_set.section_dir(self.kind) / filename

        try:
            archived = create_tarball(
                str(host_path(self.root, base)),
                members,
                str(artifact),
                self.exclude_patterns
            )
        except CompressionError as e:
            raise SectionCaptureFailure(self.section_id, str(e))

        missing = sorted(set(members) - set(archived))
        return Section(
            kind=self.kind,
            name=self.name,
            source=self.source,
            artifact=f"{self.kind.directory}/{filename}",
            message=f"not present: {', '.join(missing)}" if missing else '',
            extra={'base': base, 'members': archived},
        )


class DatabaseSource:
    """
    Logical dump of a running database container.
    """

    kind = SectionKind.DATABASE

    def __init__(self, container: str, runtime: ContainerRuntime):
        self.container = container
        self.runtime = runtime
        self.name = container
        self.source = container

    @property
    def section_id(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def capture(self, backup_set: BackupSet) -> Section:
        """
        Dump the container's databases with the tool matching its engine.

        A container whose environment declares no known engine yields a
        ``warn`` section instead of a failure.

        Raises:
            SectionCaptureFailure: If inspection or the dump fails
        """
        try:
            env = self.runtime.container_env(self.container)
        except CommandError as e:
            raise SectionCaptureFailure(self.section_id, f"cannot inspect container ({e.result.describe()})")

        engine = detect_engine(env)
        if engine is None:
            return Section(
                kind=self.kind,
                name=self.name,
                source=self.source,
                status=SectionStatus.WARN,
                message="no known database engine declared in container environment; skipped",
            )

        spec = DATABASE_ENGINES[engine]
        filename = f"{safe_name(self.container)}.{spec['extension']}"
        artifact = backup_set.section_dir(self.kind) / filename

        result = self.runtime.exec_to_file(self.container, spec['dump'], str(artifact))
        if not result.ok or not artifact.exists() or artifact.stat().st_size == 0:
            if artifact.exists():
                artifact.unlink()
            raise SectionCaptureFailure(self.section_id, f"{engine} dump failed ({result.describe()})")

        return Section(
            kind=self.kind,
            name=self.name,
            source=self.source,
            artifact=f"{self.kind.directory}/{filename}",
            extra={'engine': engine},
        )


class UnlistedSource:
    """
    Stands in for the sections of one kind when Docker could not list them.

    Capturing it always fails, so the manifest records the gap instead of
    the backup losing every other section.
    """

    name = '*'

    def __init__(self, kind: SectionKind, listing: str, message: str):
        self.kind = kind
        self.source = listing
        self.message = message

    @property
    def section_id(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def capture(self, backup_set: BackupSet) -> Section:
        raise SectionCaptureFailure(self.section_id, self.message)


def _find_compose_files(root: str, skip_dirs: List[str]) -> List[str]:
    search_root = host_path(root, COMPOSE_SEARCH_ROOT)
    if not search_root.is_dir():
        return []

    skipped = [host_path(root, d).resolve() for d in skip_dirs if d]
    found = []
    for dirpath, dirnames, filenames in os.walk(search_root):
        current = Path(dirpath).resolve()
        dirnames[:] = [d for d in dirnames if (current / d).resolve() not in skipped]
        for filename in filenames:
            if filename in COMPOSE_FILENAMES:
                found.append(str(Path(dirpath, filename).relative_to(search_root)))
    return sorted(found)


def discover_sources(config, runtime: Optional[ContainerRuntime], root: str = '/') -> List[Any]:
    """
    Enumerate the sections to capture on this host.

    Args:
        config: ConfigSnapshot
        runtime: Container runtime, or None when Docker is unavailable
        root: Filesystem root (tests point this at a scratch tree)

    Returns:
        Ordered list of sources: volumes, config, databases, user data
    """
    sources: List[Any] = []

    if runtime is not None:
        try:
            volumes = runtime.list_volumes()
        except CommandError as e:
            logger.error(f"Could not list Docker volumes: {e.result.describe()}")
            sources.append(UnlistedSource(SectionKind.VOLUME, 'docker volume ls',
                                          f"could not list volumes ({e.result.describe()})"))
        else:
            sources.extend(create_source('volume', volume, runtime) for volume in volumes)
    else:
        logger.warning("Docker not available, skipping volume and database sections")

    for path in CONFIG_PATHS:
        if host_path(root, path).is_dir():
            sources.append(create_source('config', path, root=root))
        else:
            logger.debug(f"Config path not present, not backed up: {path}")

    compose_files = _find_compose_files(root, [config.get('BACKUP_DIR', '')])
    if compose_files:
        sources.append(create_source(
            'config',
            COMPOSE_SEARCH_ROOT,
            name='compose-files',
            members=compose_files,
            root=root
        ))

    if runtime is not None:
        try:
            containers = runtime.list_running_containers()
        except CommandError as e:
            logger.error(f"Could not list running containers: {e.result.describe()}")
            sources.append(UnlistedSource(SectionKind.DATABASE, 'docker ps',
                                          f"could not list containers ({e.result.describe()})"))
        else:
            for name, image in containers:
                haystack = f"{name} {image}".lower()
                if any(hint in haystack for hint in DATABASE_HINTS):
                    sources.append(create_source('database', name, runtime))

    admin = config.get('ADMIN_USERNAME')
    if admin and host_path(root, f'/home/{admin}').is_dir():
        sources.append(create_source('userdata', f'/home/{admin}', name=admin, root=root))

    if host_path(root, '/root').is_dir():
        sources.append(create_source(
            'userdata',
            '/root',
            name='root-selective',
            members=ROOT_SELECTIVE_MEMBERS,
            root=root
        ))

    return sources


def create_source(kind: str, locator: str, runtime: Optional[ContainerRuntime] = None, **options):
    """
    Factory function to create the source handler for a section kind.

    Args:
        kind: 'volume', 'config', 'database' or 'userdata'
        locator: Volume name, container name or live path
        runtime: Container runtime (volume and database kinds)

    Raises:
        ValueError: If kind is invalid or a runtime is missing
    """
    section_kind = SectionKind(kind)
    if section_kind in (SectionKind.VOLUME, SectionKind.DATABASE) and runtime is None:
        raise ValueError(f"A container runtime is required for {kind} sections")

    if section_kind == SectionKind.VOLUME:
        return VolumeSource(locator, runtime)
    if section_kind == SectionKind.DATABASE:
        return DatabaseSource(locator, runtime)
    return PathSource(section_kind, locator, **options)
