"""
Unit tests for the command-line interface (hostguard/cli.py).
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from hostguard import cli as cli_module
from hostguard.backup.backupset import BackupStatus
from hostguard.backup.executor import BackupResult
from hostguard.setup.orchestrator import CheckResult
from hostguard.utils.runlock import RunLock


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point every path setting at tmp_path and keep logging off the root logger."""
    values = {
        'ADMIN_USERNAME': 'admin',
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'INSTALL_DIR': str(tmp_path / 'install'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'RUN_LOCK': str(tmp_path / 'hostguard.lock'),
        'CATALOG_URL': f"sqlite:///{tmp_path / 'catalog.db'}",
        'REPORT_PATH': str(tmp_path / 'setup-report.txt'),
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(cli_module, 'configure_logging', lambda *args, **kwargs: str(tmp_path / 'hostguard.log'))
    monkeypatch.setattr(cli_module, 'console', Console(width=200))
    return values


@pytest.fixture
def invoke(tmp_path, env):
    runner = CliRunner()
    state_file = str(tmp_path / 'state.json')

    def _invoke(*args):
        return runner.invoke(cli_module.cli, ['--non-interactive', '--state-file', state_file, *args])

    return _invoke


class TestGroup:

    def test_version(self):
        result = CliRunner().invoke(cli_module.cli, ['--version'])

        assert result.exit_code == 0
        assert 'hostguard' in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli_module.cli, ['--help'])

        for command in ('setup', 'verify', 'backup', 'restore', 'list', 'sync', 'prune', 'cycle', 'schedule'):
            assert command in result.output


class TestBackupCommands:
    """Test backup lifecycle commands."""

    def test_backup_success(self, invoke):
        with patch.object(cli_module, 'run_backup',
                          return_value=BackupResult(name='backup-20240115-020000', status=BackupStatus.COMPLETE)):
            result = invoke('backup')

        assert result.exit_code == 0
        assert 'Backup complete' in result.output

    def test_backup_failure_exit_code(self, invoke):
        with patch.object(cli_module, 'run_backup',
                          return_value=BackupResult(name='backup-20240115-020000', status=BackupStatus.FAILED,
                                                    error='disk full')):
            result = invoke('backup')

        assert result.exit_code == 1
        assert 'disk full' in result.output

    def test_backup_refused_while_locked(self, invoke, env):
        with RunLock(env['RUN_LOCK']):
            result = invoke('backup')

        assert result.exit_code == 1
        assert 'Another run is in progress' in result.output

    def test_list_shows_archives(self, invoke, env, make_archive):
        make_archive('backup-20240115-020000', [], {'config/ssh.tar.gz': b'x'}, directory=env['BACKUP_DIR'])

        result = invoke('list')

        assert result.exit_code == 0
        assert 'backup-20240115-020000' in result.output

    def test_restore_dry_run_by_name(self, invoke, env, make_archive):
        section = {'kind': 'config', 'name': 'ssh', 'source': '/etc/ssh', 'status': 'ok',
                   'artifact': 'config/ssh.tar.gz'}
        make_archive('backup-20240115-020000', [section], {'config/ssh.tar.gz': b'x'},
                     directory=env['BACKUP_DIR'])

        result = invoke('restore', 'backup-20240115-020000', '--dry-run')

        assert result.exit_code == 0
        assert 'structurally valid' in result.output
        assert 'config:ssh' in result.output

    def test_restore_missing_archive(self, invoke):
        result = invoke('restore', 'backup-19990101-000000')

        assert result.exit_code == 1
        assert 'Archive not found' in result.output

    def test_restore_without_argument_lists(self, invoke):
        result = invoke('restore')

        assert result.exit_code == 0
        assert 'Usage: hostguard restore ARCHIVE' in result.output

    def test_sync_without_remote_skips(self, invoke):
        result = invoke('sync')

        assert result.exit_code == 0
        assert 'skipped' in result.output

    def test_prune(self, invoke):
        result = invoke('prune')

        assert result.exit_code == 0
        assert 'Deleted 0 archive(s)' in result.output


class TestSetupCommands:
    """Test installation commands."""

    def test_setup_requires_admin_non_interactive(self, invoke, monkeypatch):
        monkeypatch.delenv('ADMIN_USERNAME')

        result = invoke('setup')

        assert result.exit_code == 1
        assert 'Missing required configuration: ADMIN_USERNAME' in result.output

    def test_verify_reports_failures(self, invoke):
        checks = [CheckResult('firewall', True), CheckResult('ssh-hardening', False)]
        with patch.object(cli_module, 'PhaseOrchestrator') as orchestrator_cls:
            orchestrator_cls.return_value.verify.return_value = checks
            result = invoke('verify')

        assert result.exit_code == 1
        assert 'ssh-hardening' in result.output
        assert 'FAIL' in result.output

    def test_verify_all_pass(self, invoke):
        with patch.object(cli_module, 'PhaseOrchestrator') as orchestrator_cls:
            orchestrator_cls.return_value.verify.return_value = [CheckResult('firewall', True)]
            result = invoke('verify')

        assert result.exit_code == 0
