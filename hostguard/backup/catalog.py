"""
Catalog helpers: keep BackupRecord rows in step with archives on disk.
"""

import json
import logging
import os
import tarfile
import zipfile
from datetime import datetime
from typing import Any, Dict, List, Optional

from hostguard import Session
from hostguard.models import BackupRecord, SectionRecord
from .backupset import MANIFEST_NAME, BackupSetError, BackupStatus, SetState, parse_backup_timestamp
from .compression import strip_archive_extension
from .storage import LocalStorage

logger = logging.getLogger(__name__)


def read_archive_manifest(archive_path: str) -> Dict[str, Any]:
    """
    Read ``<set>/manifest.json`` straight out of an archive.

    Raises:
        BackupSetError: If the archive has no readable manifest
    """
    set_name = strip_archive_extension(os.path.basename(archive_path))
    member = f"{set_name}/{MANIFEST_NAME}"

    try:
        if archive_path.endswith('.zip'):
            with zipfile.ZipFile(archive_path) as zipf:
                raw = zipf.read(member)
        else:
            with tarfile.open(archive_path, 'r:*') as tar:
                handle = tar.extractfile(member)
                if handle is None:
                    raise BackupSetError(f"Manifest is not a regular file in {archive_path}")
                raw = handle.read()
    except KeyError:
        raise BackupSetError(f"No manifest in {archive_path}")
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        raise BackupSetError(f"Cannot read {archive_path}: {e}")

    try:
        return json.loads(raw.decode('utf-8'))
    except ValueError as e:
        raise BackupSetError(f"Manifest in {archive_path} is not valid JSON: {e}")


def get_record(name: str) -> Optional[BackupRecord]:
    return Session.query(BackupRecord).filter_by(name=name).first()


def add_section_records(record: BackupRecord, sections: List[Dict[str, Any]]):
    """Attach manifest-style section dicts to a record (not committed)."""
    for position, section in enumerate(sections):
        record.sections.append(SectionRecord(
            position=position,
            kind=section['kind'],
            name=section['name'],
            source=section.get('source') or '',
            status=section.get('status', 'ok'),
            artifact=section.get('artifact'),
            size_bytes=section.get('size'),
            message=section.get('message') or None,
        ))


def register_archive(archive_path: str) -> BackupRecord:
    """
    Return the catalog record for an archive, creating it from the embedded
    manifest when the archive predates the catalog.
    """
    name = strip_archive_extension(os.path.basename(archive_path))
    record = get_record(name)
    if record is not None:
        if record.archive_path != archive_path:
            record.archive_path = archive_path
            Session.commit()
        return record

    try:
        manifest = read_archive_manifest(archive_path)
        status = manifest.get('status', BackupStatus.COMPLETED_WITH_WARNINGS.value)
        sections = manifest.get('sections') or []
    except BackupSetError as e:
        logger.warning(f"Registering {archive_path} without manifest: {e}")
        status = BackupStatus.FAILED.value
        sections = []

    stat = os.stat(archive_path)
    started_at = parse_backup_timestamp(name) or datetime.fromtimestamp(stat.st_mtime)
    record = BackupRecord(
        name=name,
        archive_path=archive_path,
        status=status,
        state=SetState.SEALED.value,
        started_at=started_at,
        completed_at=datetime.fromtimestamp(stat.st_mtime),
        file_size_bytes=stat.st_size,
    )
    add_section_records(record, sections)
    Session.add(record)
    Session.commit()
    logger.info(f"Registered archive {name} in catalog (status: {status})")
    return record


def sync_catalog(backup_dir: str) -> List[BackupRecord]:
    """Register every archive in backup_dir; returns their records newest first."""
    return [register_archive(archive['path']) for archive in LocalStorage(backup_dir).list_archives()]


def pending_uploads(backup_dir: str) -> List[BackupRecord]:
    """Sealed archives still on disk that were never uploaded."""
    return [
        record for record in sync_catalog(backup_dir)
        if record.state == SetState.SEALED.value
        and record.archive_path and os.path.exists(record.archive_path)
    ]
