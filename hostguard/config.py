"""
Configuration resolution for hostguard.

Every setting is resolved once per invocation into an immutable
``ConfigSnapshot`` with the precedence:

    environment variable > persisted state file > interactive prompt > default

The snapshot is persisted back into the state file so a later re-invocation
resolves the same values without prompting again.
"""

import os
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import click

from hostguard.state_store import load_state, update_state

logger = logging.getLogger(__name__)

TRUE_VALUES = ('yes', 'y', 'true', '1', 'on')
FALSE_VALUES = ('no', 'n', 'false', '0', 'off', '')


class ConfigurationError(Exception):
    """Raised when the configuration cannot be resolved into a usable snapshot."""
    pass


class MissingConfiguration(ConfigurationError):
    """Raised when required settings are unresolved in non-interactive mode."""

    def __init__(self, keys: Iterable[str]):
        self.keys = list(keys)
        super().__init__(
            f"Missing required configuration: {', '.join(self.keys)}. "
            f"Set them in the environment or the state file, or run interactively."
        )


def truthy(value: Optional[str]) -> bool:
    """
    Interpret a yes/no style setting.

    Raises:
        ConfigurationError: If the value is not a recognised boolean
    """
    normalized = (value or '').strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ConfigurationError(f"Expected yes/no, got: {value!r}")


@dataclass(frozen=True)
class ConfigKey:
    """Declaration of one setting: its default, prompt and applicability."""

    name: str
    default: Optional[str] = None
    prompt: Optional[str] = None
    required: bool = False
    choices: Tuple[str, ...] = ()
    suggestion: Optional[str] = None  # offered in the prompt, never applied silently
    when: Optional[Callable[[Mapping[str, str]], bool]] = None

    def applies(self, resolved: Mapping[str, str]) -> bool:
        return self.when is None or bool(self.when(resolved))


def _proxy_enabled(values: Mapping[str, str]) -> bool:
    return values.get('PROXY_TYPE', 'none') != 'none'


def _backups_enabled(values: Mapping[str, str]) -> bool:
    return values.get('ENABLE_BACKUPS', 'yes') in TRUE_VALUES


YES_NO = ('yes', 'no')

CONFIG_KEYS: Tuple[ConfigKey, ...] = (
    # Installation
    ConfigKey('ADMIN_USERNAME', prompt='Admin username', required=True, suggestion='admin'),
    ConfigKey('ADMIN_SSH_KEY', default='', prompt='SSH public key for the admin user'),
    ConfigKey('DISABLE_ROOT_LOGIN', default='yes', prompt='Disable SSH root login after setup?', choices=YES_NO),
    ConfigKey('SSH_PORT', default='22', prompt='SSH port'),
    ConfigKey('PROXY_TYPE', default='traefik', prompt='Reverse proxy', choices=('traefik', 'nginx', 'none')),
    ConfigKey('DOMAIN', default='', prompt='Primary domain name', when=_proxy_enabled),
    ConfigKey('LETSENCRYPT_EMAIL', default='', prompt="Email for Let's Encrypt notifications", when=_proxy_enabled),
    ConfigKey('INSTALL_PORTAINER', default='yes', prompt='Install Portainer for Docker management?', choices=YES_NO),
    ConfigKey('ENABLE_AUTO_UPDATES', default='yes', prompt='Enable automatic security updates?', choices=YES_NO),
    ConfigKey('ENABLE_BACKUPS', default='yes', prompt='Configure automated backups?', choices=YES_NO),
    ConfigKey('BACKUP_PROVIDER', default='s3', prompt='Backup provider',
              choices=('s3', 'b2', 'spaces', 's3-compatible'), when=_backups_enabled),

    # Backups
    ConfigKey('BACKUP_DIR', default='/opt/backups'),
    ConfigKey('BACKUP_FORMAT', default='tar.gz'),
    ConfigKey('BACKUP_RETENTION_DAYS', default='7'),
    ConfigKey('BACKUP_SCHEDULE', default='0 2 * * *'),
    ConfigKey('BACKUP_STRICT', default='no'),
    ConfigKey('BACKUP_HELPER_IMAGE', default='alpine'),

    # Cloud replication
    ConfigKey('BACKUP_BUCKET', default=''),
    ConfigKey('BACKUP_PREFIX', default='server-backups'),
    ConfigKey('BACKUP_REGION', default='us-east-1'),
    ConfigKey('BACKUP_ENDPOINT_URL', default=''),
    ConfigKey('BACKUP_ACCESS_KEY_ID', default=''),
    ConfigKey('BACKUP_SECRET_ACCESS_KEY', default=''),
    ConfigKey('UPLOAD_RETRIES', default='3'),
    ConfigKey('UPLOAD_CONCURRENCY', default='4'),
    ConfigKey('UPLOAD_STRICT', default='no'),

    # Paths
    ConfigKey('REPO_BASE_URL', default='https://raw.githubusercontent.com/USERNAME/REPO/main'),
    ConfigKey('INSTALL_DIR', default='/opt/server-setup'),
    ConfigKey('LOG_DIR', default='/var/log/server-setup'),
    ConfigKey('SETUP_BACKUP_DIR', default='/root/server-setup-backup'),
    ConfigKey('REPORT_PATH', default='/root/setup-report.txt'),
    ConfigKey('CATALOG_URL', default=''),
    ConfigKey('RUN_LOCK', default='/run/hostguard.lock'),
)

SECRET_KEYS = ('BACKUP_SECRET_ACCESS_KEY',)


class Config:
    """Process-level defaults read before any snapshot exists"""

    INSTALL_DIR = os.environ.get('INSTALL_DIR') or '/opt/server-setup'
    STATE_FILE = os.environ.get('STATE_FILE') or os.path.join(INSTALL_DIR, 'state.json')
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/server-setup'
    NON_INTERACTIVE = (os.environ.get('NON_INTERACTIVE') or 'false').lower() in TRUE_VALUES


class ConfigSnapshot(Mapping[str, str]):
    """
    Immutable key -> value map resolved once per invocation.

    Passed explicitly into every step and section call; nothing reads
    settings from the process environment after resolution.
    """

    __slots__ = ('_values',)

    def __init__(self, values: Mapping[str, str]):
        object.__setattr__(self, '_values', MappingProxyType(dict(values)))

    def __setattr__(self, name, value):
        raise AttributeError('ConfigSnapshot is immutable')

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self):
        shown = {k: ('***' if k in SECRET_KEYS and v else v) for k, v in self._values.items()}
        return f'<ConfigSnapshot {shown}>'

    def flag(self, key: str) -> bool:
        return truthy(self.get(key, 'no'))

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value in (None, ''):
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be an integer, got: {value!r}")

    def as_env(self) -> Dict[str, str]:
        """Settings as environment variables for external step scripts."""
        return {k: str(v) for k, v in self._values.items()}

    @property
    def catalog_url(self) -> str:
        return self.get('CATALOG_URL') or f"sqlite:///{os.path.join(self.get('INSTALL_DIR', Config.INSTALL_DIR), 'catalog.db')}"


def _click_prompt(key: ConfigKey, default: Optional[str]) -> str:
    value_type = click.Choice(key.choices) if key.choices else str
    if default is None:
        return click.prompt(key.prompt, type=value_type)
    return click.prompt(key.prompt, default=default, type=value_type, show_default=bool(default))


class ConfigurationResolver:
    """
    Merges environment, persisted state and prompts into a ConfigSnapshot.
    """

    def __init__(
        self,
        state_path: str,
        environ: Optional[Mapping[str, str]] = None,
        interactive: bool = True,
        prompt: Optional[Callable[[ConfigKey, Optional[str]], str]] = None,
        keys: Iterable[ConfigKey] = CONFIG_KEYS
    ):
        """
        Initialize configuration resolver.

        Args:
            state_path: Path to the persisted JSON state file
            environ: Environment mapping (defaults to os.environ)
            interactive: Whether prompting the operator is allowed
            prompt: Prompt callable (key, default) -> answer
            keys: Setting declarations, in prompt order
        """
        self.state_path = state_path
        self.environ = os.environ if environ is None else environ
        self.interactive = interactive
        self.prompt = prompt or _click_prompt
        self.keys: Dict[str, ConfigKey] = {key.name: key for key in keys}
        self._persisted: Dict[str, str] = dict(load_state(state_path).get('config') or {})
        self._resolved: Dict[str, str] = {}

    def resolve(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Resolve a single setting.

        Args:
            key: Setting name
            default: Default overriding the documented one

        Returns:
            Resolved value, or None when nothing supplies one
        """
        declaration = self.keys.get(key, ConfigKey(key))
        fallback = default if default is not None else declaration.default

        value = self.environ.get(key)
        if value in (None, ''):
            value = self._persisted.get(key)
        if value in (None, '') and self.interactive and declaration.prompt:
            suggested = fallback if fallback not in (None, '') else declaration.suggestion
            if suggested is None and not declaration.required:
                suggested = ''
            value = self.prompt(declaration, suggested)
        if value in (None, ''):
            value = fallback

        if value is not None and declaration.choices == YES_NO:
            value = 'yes' if truthy(value) else 'no'
        if value is not None and declaration.choices and value not in declaration.choices:
            raise ConfigurationError(
                f"Invalid value for {key}: {value!r}. Valid options: {list(declaration.choices)}"
            )

        if value is not None:
            self._resolved[key] = str(value)
        return value

    def resolve_all(self) -> ConfigSnapshot:
        """Resolve every applicable declared setting into a snapshot."""
        for declaration in self.keys.values():
            if not declaration.applies(self._resolved):
                continue
            self.resolve(declaration.name)
        return ConfigSnapshot(self._resolved)

    def required_keys(self, snapshot: Optional[Mapping[str, str]] = None) -> List[str]:
        values = snapshot if snapshot is not None else self._resolved
        return [k.name for k in self.keys.values() if k.required and k.applies(values)]

    def validate_required(self, snapshot: Mapping[str, str], keys: Optional[Iterable[str]] = None):
        """
        Check that every required setting is resolved.

        Raises:
            MissingConfiguration: If any required key has no value
        """
        wanted = list(keys) if keys is not None else self.required_keys(snapshot)
        missing = [key for key in wanted if not snapshot.get(key)]
        if missing:
            raise MissingConfiguration(missing)

    def persist(self, snapshot: ConfigSnapshot):
        """Store the snapshot in the state file for later invocations."""
        update_state(self.state_path, 'config', dict(snapshot))
        logger.info(f"Configuration saved to {self.state_path}")


def load_snapshot(state_path: str, environ: Optional[Mapping[str, str]] = None) -> ConfigSnapshot:
    """Resolve a snapshot without prompting (backup, restore and sync commands)."""
    return ConfigurationResolver(state_path, environ=environ, interactive=False).resolve_all()
