"""
BackupSet and Section: the in-flight representation of one backup attempt.

A BackupSet is a working directory under the backup dir with one
subdirectory per Section kind. It is mutated once per Section while
``capturing``, sealed exactly once (manifest written), and only a sealed set
may be compressed.
"""

import json
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


MANIFEST_NAME = 'manifest.json'
BACKUP_NAME_PREFIX = 'backup-'
TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


class SectionKind(str, Enum):
    VOLUME = 'volume'
    CONFIG = 'config'
    DATABASE = 'database'
    USERDATA = 'userdata'

    @property
    def directory(self) -> str:
        return {
            SectionKind.VOLUME: 'volumes',
            SectionKind.CONFIG: 'config',
            SectionKind.DATABASE: 'databases',
            SectionKind.USERDATA: 'userdata',
        }[self]


class SectionStatus(str, Enum):
    OK = 'ok'
    WARN = 'warn'
    FAILED = 'failed'


class BackupStatus(str, Enum):
    RUNNING = 'running'
    COMPLETE = 'complete'
    COMPLETED_WITH_WARNINGS = 'completed_with_warnings'
    FAILED = 'failed'


class SetState(str, Enum):
    CAPTURING = 'capturing'
    SEALED = 'sealed'
    UPLOADED = 'uploaded'
    PRUNED = 'pruned'


class BackupSetError(Exception):
    """Raised on an illegal BackupSet lifecycle transition."""
    pass


@dataclass
class Section:
    """One captured category of host state."""

    kind: SectionKind
    name: str
    source: str
    status: SectionStatus = SectionStatus.OK
    artifact: Optional[str] = None  # relative to the BackupSet directory
    size: Optional[int] = None
    message: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def section_id(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.section_id,
            'kind': self.kind.value,
            'name': self.name,
            'source': self.source,
            'status': self.status.value,
            'artifact': self.artifact,
            'size': self.size,
            'message': self.message,
            'extra': self.extra,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Section':
        return cls(
            kind=SectionKind(data['kind']),
            name=data['name'],
            source=data.get('source', ''),
            status=SectionStatus(data.get('status', 'ok')),
            artifact=data.get('artifact'),
            size=data.get('size'),
            message=data.get('message') or '',
            extra=dict(data.get('extra') or {}),
        )


def overall_status(sections: List[Section]) -> BackupStatus:
    """
    Complete only when every section is ok. Any warn/failed section, or an
    empty set, downgrades to completed_with_warnings.
    """
    if sections and all(s.status == SectionStatus.OK for s in sections):
        return BackupStatus.COMPLETE
    return BackupStatus.COMPLETED_WITH_WARNINGS


class BackupSet:
    """
    Working directory for one backup attempt.
    """

    def __init__(self, name: str, path: Path, created_at: datetime):
        self.name = name
        self.path = Path(path)
        self.created_at = created_at
        self.sections: List[Section] = []
        self.state = SetState.CAPTURING
        self.manifest: Optional[Dict[str, Any]] = None

    @classmethod
    def create(cls, backup_dir: str, now: Optional[datetime] = None) -> 'BackupSet':
        """
        Create a new, empty set directory named after its creation time.

        Args:
            backup_dir: Local backup directory
            now: Creation timestamp (defaults to current local time)
        """
        created_at = now or datetime.now()
        base_name = f"{BACKUP_NAME_PREFIX}{created_at.strftime(TIMESTAMP_FORMAT)}"
        name = base_name
        suffix = 1
        while (Path(backup_dir) / name).exists() or any(Path(backup_dir).glob(f"{name}.*")):
            name = f"{base_name}-{suffix}"
            suffix += 1

        path = Path(backup_dir) / name
        path.mkdir(parents=True)
        os.chmod(path, 0o700)
        return cls(name, path, created_at)

    def section_dir(self, kind: SectionKind) -> Path:
        directory = self.path / kind.directory
        directory.mkdir(exist_ok=True)
        return directory

    def add(self, section: Section):
        if self.state != SetState.CAPTURING:
            raise BackupSetError(f"Cannot add section to {self.state.value} set {self.name}")
        self.sections.append(section)

    @property
    def status(self) -> BackupStatus:
        return overall_status(self.sections)

    def seal(self) -> Dict[str, Any]:
        """
        Record artifact sizes and write the manifest. Allowed exactly once.

        Returns:
            The manifest written to disk
        """
        if self.state != SetState.CAPTURING:
            raise BackupSetError(f"Set {self.name} is already {self.state.value}")

        artifacts = {}
        for section in self.sections:
            if section.artifact:
                artifact_path = self.path / section.artifact
                section.size = artifact_path.stat().st_size
                artifacts[section.artifact] = section.size

        self.manifest = {
            'name': self.name,
            'created_at': self.created_at.isoformat(),
            'hostname': socket.gethostname(),
            'status': self.status.value,
            'sections': [section.to_dict() for section in self.sections],
            'artifacts': artifacts,
        }

        (self.path / MANIFEST_NAME).write_text(json.dumps(self.manifest, indent=2) + '\n', encoding='utf-8')
        self.state = SetState.SEALED
        return self.manifest


def load_manifest(set_dir: Path) -> Dict[str, Any]:
    """
    Read and minimally validate a sealed set's manifest.

    Raises:
        BackupSetError: If the manifest is missing or malformed
    """
    manifest_path = Path(set_dir) / MANIFEST_NAME
    if not manifest_path.is_file():
        raise BackupSetError(f"Manifest not found in {set_dir}")
    try:
        manifest = json.loads(manifest_path.read_text(encoding='utf-8'))
    except ValueError as e:
        raise BackupSetError(f"Manifest is not valid JSON: {e}")
    if not isinstance(manifest, dict) or not isinstance(manifest.get('sections'), list):
        raise BackupSetError("Manifest has no sections list")
    return manifest


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    """Creation time encoded in a set or archive name, if any."""
    if not name.startswith(BACKUP_NAME_PREFIX):
        return None
    stamp = name[len(BACKUP_NAME_PREFIX):len(BACKUP_NAME_PREFIX) + 15]
    try:
        return datetime.strptime(stamp, TIMESTAMP_FORMAT)
    except ValueError:
        return None
