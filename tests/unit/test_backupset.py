"""
Unit tests for the BackupSet lifecycle (hostguard/backup/backupset.py).
"""

import json
from datetime import datetime

import pytest

from hostguard.backup.backupset import (
    BackupSet,
    BackupSetError,
    BackupStatus,
    Section,
    SectionKind,
    SectionStatus,
    SetState,
    load_manifest,
    overall_status,
    parse_backup_timestamp,
)


class TestBackupSetLifecycle:
    """Test create -> add -> seal."""

    def test_create_names_after_timestamp(self, tmp_path):
        backup_set = BackupSet.create(str(tmp_path), now=datetime(2024, 1, 15, 2, 0, 0))

        assert backup_set.name == 'backup-20240115-020000'
        assert backup_set.path.is_dir()
        assert backup_set.state == SetState.CAPTURING

    def test_create_avoids_collisions(self, tmp_path):
        now = datetime(2024, 1, 15, 2, 0, 0)
        (tmp_path / 'backup-20240115-020000.tar.gz').write_bytes(b'')

        backup_set = BackupSet.create(str(tmp_path), now=now)

        assert backup_set.name == 'backup-20240115-020000-1'

    def test_seal_records_artifact_sizes(self, tmp_path):
        backup_set = BackupSet.create(str(tmp_path))
        (backup_set.section_dir(SectionKind.VOLUME) / 'app.tar.gz').write_bytes(b'x' * 42)
        backup_set.add(Section(SectionKind.VOLUME, 'app', 'app', artifact='volumes/app.tar.gz'))

        manifest = backup_set.seal()

        assert manifest['artifacts'] == {'volumes/app.tar.gz': 42}
        assert manifest['status'] == 'complete'
        assert backup_set.state == SetState.SEALED
        assert json.loads((backup_set.path / 'manifest.json').read_text()) == manifest

    def test_seal_only_once(self, tmp_path):
        backup_set = BackupSet.create(str(tmp_path))
        backup_set.seal()

        with pytest.raises(BackupSetError, match='already sealed'):
            backup_set.seal()

    def test_no_sections_after_seal(self, tmp_path):
        backup_set = BackupSet.create(str(tmp_path))
        backup_set.seal()

        with pytest.raises(BackupSetError):
            backup_set.add(Section(SectionKind.CONFIG, 'ssh', '/etc/ssh'))


class TestOverallStatus:
    """Test aggregation of section statuses."""

    def test_all_ok_is_complete(self):
        sections = [Section(SectionKind.CONFIG, 'ssh', '/etc/ssh')]

        assert overall_status(sections) == BackupStatus.COMPLETE

    @pytest.mark.parametrize('status', [SectionStatus.WARN, SectionStatus.FAILED])
    def test_any_problem_downgrades(self, status):
        sections = [
            Section(SectionKind.CONFIG, 'ssh', '/etc/ssh'),
            Section(SectionKind.VOLUME, 'db', 'db', status=status),
        ]

        assert overall_status(sections) == BackupStatus.COMPLETED_WITH_WARNINGS

    def test_empty_set_is_not_complete(self):
        assert overall_status([]) == BackupStatus.COMPLETED_WITH_WARNINGS


class TestManifest:
    """Test manifest loading and section serialization."""

    def test_section_dict_round_trip(self):
        section = Section(SectionKind.DATABASE, 'db', 'db', artifact='databases/db.sql',
                          size=10, message='m', extra={'engine': 'postgres'})

        assert Section.from_dict(section.to_dict()) == section

    def test_load_manifest_missing(self, tmp_path):
        with pytest.raises(BackupSetError, match='Manifest not found'):
            load_manifest(tmp_path)

    def test_load_manifest_invalid_json(self, tmp_path):
        (tmp_path / 'manifest.json').write_text('{not json')

        with pytest.raises(BackupSetError, match='not valid JSON'):
            load_manifest(tmp_path)

    def test_load_manifest_without_sections(self, tmp_path):
        (tmp_path / 'manifest.json').write_text('{"name": "x"}')

        with pytest.raises(BackupSetError, match='no sections'):
            load_manifest(tmp_path)


class TestParseBackupTimestamp:

    def test_parses_archive_name(self):
        assert parse_backup_timestamp('backup-20240115-020000.tar.gz') == datetime(2024, 1, 15, 2, 0, 0)

    def test_rejects_foreign_names(self):
        assert parse_backup_timestamp('notes.tar.gz') is None
        assert parse_backup_timestamp('backup-garbage.tar.gz') is None
