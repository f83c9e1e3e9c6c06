"""
Shared pytest fixtures for hostguard tests.

This module provides fixtures for:
- Catalog database on a temporary SQLite file
- Configuration snapshots rooted in a temporary directory
- A scripted command runner standing in for the host's external tools
- A fake host filesystem and Docker volumes
- Mock fixtures for external services (S3)
"""

import io
import os
import tarfile
from pathlib import Path
from typing import List, Optional

import pytest
import boto3
from moto import mock_aws

from hostguard import init_db, close_db, Session
from hostguard.config import ConfigSnapshot
from hostguard.utils.command import CommandError, CommandResult
from hostguard.utils.containers import ContainerRuntime


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Responses are matched on argv prefix; the most recently registered
    matching rule wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.rules = []
        self.available = {'docker', 'gpg', 'bash', 'systemctl'}
        self.dry_run = False

    def which(self, name: str) -> Optional[str]:
        return f'/usr/bin/{name}' if name in self.available else None

    def respond(self, *prefix, returncode=0, stdout='', stderr='', action=None):
        self.rules.insert(0, (list(prefix), returncode, stdout, stderr, action))

    def run(self, argv, *, check=False, env=None, cwd=None, input_text=None,
            stdout_path=None, stdin_path=None, timeout=None):
        argv = list(argv)
        self.calls.append(argv)

        result = CommandResult(argv=argv, returncode=0, stdout='', stderr='')
        for prefix, returncode, stdout, stderr, action in self.rules:
            if argv[:len(prefix)] == prefix:
                if action is not None:
                    override = action(argv, stdout_path=stdout_path, stdin_path=stdin_path, env=env)
                    if isinstance(override, int):
                        returncode = override
                result = CommandResult(argv=argv, returncode=returncode, stdout=stdout, stderr=stderr)
                break

        if check and not result.ok:
            raise CommandError(result)
        return result

    def ran(self, *prefix) -> List[List[str]]:
        return [call for call in self.calls if call[:len(prefix)] == list(prefix)]


def write_tar_gz(path, files):
    """Write a tar.gz holding {name: bytes} at path."""
    with tarfile.open(path, 'w:gz') as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


def fake_volume_snapshot(argv, **kwargs):
    """Action for `docker run ... tar czf /backup/<file>`: writes a small archive."""
    if 'czf' not in argv:
        return None
    mount = next(arg for arg in argv if arg.endswith(':/backup'))
    dest_dir = mount[:-len(':/backup')]
    target = next(arg for arg in argv if arg.startswith('/backup/'))
    volume = next(arg for arg in argv if arg.endswith(':/volume:ro')).split(':')[0]
    write_tar_gz(os.path.join(dest_dir, target[len('/backup/'):]), {f'./{volume}.txt': volume.encode()})


def fake_dump(argv, stdout_path=None, **kwargs):
    """Action for `docker exec <db> sh -c <dump>`: writes a fake dump."""
    with open(stdout_path, 'wb') as f:
        f.write(b'-- dump of ' + argv[2].encode() + b'\n')


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def docker_host(fake_runner):
    """
    A ContainerRuntime over the fake runner with three volumes and no
    running containers. Volume snapshots produce real archives.
    """
    fake_runner.respond('docker', 'volume', 'ls', stdout='app_data\ndb_data\nuploads\n')
    fake_runner.respond('docker', 'ps', stdout='')
    fake_runner.respond('docker', 'run', action=fake_volume_snapshot)
    return ContainerRuntime(fake_runner)


@pytest.fixture(scope='function')
def db(tmp_path):
    """
    Catalog database with all tables.

    Each test gets a fresh database.
    """
    init_db(f"sqlite:///{tmp_path / 'catalog.db'}")
    yield Session
    close_db()


@pytest.fixture
def config_factory(tmp_path):
    """Build a ConfigSnapshot rooted in tmp_path, with overrides."""

    def factory(**overrides):
        values = {
            'ADMIN_USERNAME': 'admin',
            'PROXY_TYPE': 'traefik',
            'INSTALL_PORTAINER': 'yes',
            'ENABLE_BACKUPS': 'yes',
            'BACKUP_DIR': str(tmp_path / 'backups'),
            'BACKUP_FORMAT': 'tar.gz',
            'BACKUP_RETENTION_DAYS': '7',
            'BACKUP_SCHEDULE': '0 2 * * *',
            'BACKUP_STRICT': 'no',
            'BACKUP_BUCKET': '',
            'BACKUP_PREFIX': 'server-backups',
            'BACKUP_REGION': 'us-east-1',
            'UPLOAD_RETRIES': '3',
            'UPLOAD_CONCURRENCY': '4',
            'UPLOAD_STRICT': 'no',
            'INSTALL_DIR': str(tmp_path / 'install'),
            'LOG_DIR': str(tmp_path / 'logs'),
            'SETUP_BACKUP_DIR': str(tmp_path / 'setup-backup'),
            'REPORT_PATH': str(tmp_path / 'setup-report.txt'),
            'RUN_LOCK': str(tmp_path / 'hostguard.lock'),
            'CATALOG_URL': f"sqlite:///{tmp_path / 'catalog.db'}",
        }
        values.update(overrides)
        return ConfigSnapshot(values)

    return factory


@pytest.fixture
def config(config_factory):
    return config_factory()


@pytest.fixture
def host_root(tmp_path):
    """
    A fake host filesystem:
    - /etc/ssh/sshd_config, /etc/fail2ban/jail.local
    - /home/admin/notes.txt
    - /root/.ssh/authorized_keys, /root/.bashrc (no .profile)
    - /opt/app/docker-compose.yml
    """
    root = tmp_path / 'host'
    (root / 'etc' / 'ssh').mkdir(parents=True)
    (root / 'etc' / 'ssh' / 'sshd_config').write_text('PermitRootLogin no\n')
    (root / 'etc' / 'fail2ban').mkdir(parents=True)
    (root / 'etc' / 'fail2ban' / 'jail.local').write_text('[sshd]\nenabled = true\n')
    (root / 'home' / 'admin').mkdir(parents=True)
    (root / 'home' / 'admin' / 'notes.txt').write_text('admin notes')
    (root / 'root' / '.ssh').mkdir(parents=True)
    (root / 'root' / '.ssh' / 'authorized_keys').write_text('ssh-ed25519 AAAA test\n')
    (root / 'root' / '.bashrc').write_text('alias ll="ls -l"\n')
    (root / 'opt' / 'app').mkdir(parents=True)
    (root / 'opt' / 'app' / 'docker-compose.yml').write_text('services: {}\n')
    return root


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pid (excluded by default patterns)
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (data / 'test_file.pid').write_text('1234')

    return data


@pytest.fixture
def mock_s3():
    """
    Mock S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def make_archive(tmp_path):
    """
    Build a sealed-set archive directly: {set_name}/manifest.json plus the
    given {relative artifact path: bytes}.
    """
    import json

    def factory(set_name, sections, artifacts, directory=None, status='complete'):
        directory = Path(directory or tmp_path / 'archives')
        directory.mkdir(parents=True, exist_ok=True)
        manifest = {
            'name': set_name,
            'created_at': '2024-01-15T02:00:00',
            'hostname': 'test-host',
            'status': status,
            'sections': sections,
            'artifacts': {path: len(data) for path, data in artifacts.items()},
        }
        files = {f'{set_name}/manifest.json': json.dumps(manifest).encode()}
        for path, data in artifacts.items():
            files[f'{set_name}/{path}'] = data
        archive_path = directory / f'{set_name}.tar.gz'
        write_tar_gz(archive_path, files)
        return archive_path

    return factory


@pytest.fixture
def write_tar():
    """The write_tar_gz helper, for tests that build archives by hand."""
    return write_tar_gz


@pytest.fixture
def dump_action():
    """The fake database dump action, for `docker exec` rules."""
    return fake_dump
