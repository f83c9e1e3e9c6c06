"""
Docker CLI wrapper used by backup and restore.

Volume data is moved with a throwaway helper container so nothing needs to
know where the Docker data root lives on the host.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Tuple

from .command import CommandError, CommandResult, CommandRunner

logger = logging.getLogger(__name__)


# Environment variable prefixes declared by the official database images
ENGINE_ENV_PREFIXES = (
    ('mysql', ('MYSQL_', 'MARIADB_')),
    ('postgres', ('POSTGRES_', 'PGDATA')),
    ('mongo', ('MONGO_INITDB_',)),
)

# Name/image fragments marking a container as a database candidate
DATABASE_HINTS = ('mysql', 'mariadb', 'postgres', 'mongo')


def detect_engine(env: Dict[str, str]) -> Optional[str]:
    """
    Infer the database engine from a container's declared environment.

    Args:
        env: Container environment (name -> value)

    Returns:
        'mysql', 'postgres', 'mongo' or None when no known engine is declared
    """
    for engine, prefixes in ENGINE_ENV_PREFIXES:
        if any(name.startswith(prefix) for name in env for prefix in prefixes):
            return engine
    return None


class ContainerRuntime:
    """
    Thin typed wrapper around the docker CLI.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, helper_image: str = 'alpine'):
        """
        Initialize container runtime wrapper.

        Args:
            runner: Command runner (capability interface)
            helper_image: Image used for volume copy-out/copy-in
        """
        self.runner = runner or CommandRunner()
        self.helper_image = helper_image

    def available(self) -> bool:
        if not self.runner.which('docker'):
            return False
        return self.runner.run(['docker', 'info', '--format', '{{.ServerVersion}}']).ok

    def list_volumes(self) -> List[str]:
        result = self.runner.run(['docker', 'volume', 'ls', '-q'], check=True)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def volume_exists(self, volume: str) -> bool:
        return self.runner.run(['docker', 'volume', 'inspect', volume]).ok

    def list_running_containers(self) -> List[Tuple[str, str]]:
        """Return (name, image) for every running container."""
        result = self.runner.run(['docker', 'ps', '--format', '{{.Names}}\t{{.Image}}'], check=True)
        containers = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name, _, image = line.partition('\t')
            containers.append((name.strip(), image.strip()))
        return containers

    def is_running(self, container: str) -> bool:
        result = self.runner.run(['docker', 'inspect', '--format', '{{.State.Running}}', container])
        return result.ok and result.stdout.strip() == 'true'

    def container_env(self, container: str) -> Dict[str, str]:
        """
        Read the declared environment of a container.

        Raises:
            CommandError: If the container cannot be inspected
        """
        result = self.runner.run(
            ['docker', 'inspect', '--format', '{{json .Config.Env}}', container],
            check=True
        )
        env = {}
        for item in json.loads(result.stdout or 'null') or []:
            name, _, value = item.partition('=')
            env[name] = value
        return env

    def snapshot_volume(self, volume: str, dest_dir: str, filename: str) -> CommandResult:
        """Write a tar.gz of a volume's contents to dest_dir/filename."""
        return self.runner.run([
            'docker', 'run', '--rm',
            '-v', f'{volume}:/volume:ro',
            '-v', f'{os.path.abspath(dest_dir)}:/backup',
            self.helper_image,
            'tar', 'czf', f'/backup/{filename}', '-C', '/volume', '.',
        ])

    def restore_volume(self, volume: str, archive_path: str) -> CommandResult:
        """Replace a volume's contents with an archive, creating the volume if needed."""
        created = self.runner.run(['docker', 'volume', 'create', volume])
        if not created.ok:
            return created

        archive_dir, archive_name = os.path.split(os.path.abspath(archive_path))
        return self.runner.run([
            'docker', 'run', '--rm',
            '-v', f'{volume}:/volume',
            '-v', f'{archive_dir}:/backup:ro',
            self.helper_image,
            'sh', '-c',
            f'find /volume -mindepth 1 -delete && tar xzf /backup/{archive_name} -C /volume',
        ])

    def exec_to_file(self, container: str, shell_command: str, out_path: str) -> CommandResult:
        return self.runner.run(['docker', 'exec', container, 'sh', '-c', shell_command], stdout_path=out_path)

    def exec_from_file(self, container: str, shell_command: str, in_path: str) -> CommandResult:
        return self.runner.run(['docker', 'exec', '-i', container, 'sh', '-c', shell_command], stdin_path=in_path)


__all__ = ['ContainerRuntime', 'CommandError', 'DATABASE_HINTS', 'detect_engine']
