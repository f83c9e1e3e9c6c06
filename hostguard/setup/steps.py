"""
Installation step declarations.

Each step is a small object with an id, an ordering category, a dependency
set, a failure policy and a run predicate. Script steps delegate the actual
host changes to the verified shell scripts under ``INSTALL_DIR/scripts``;
``backup-schedule`` is implemented here.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from apscheduler.triggers.cron import CronTrigger

from hostguard.utils.command import CommandRunner

logger = logging.getLogger(__name__)

ArgvBuilder = Callable[[Mapping[str, str]], Optional[List[str]]]

CRON_PATH = "/etc/cron.d/hostguard-backup"


class StepCategory(str, Enum):
    NORMAL = "normal"
    MUST_RUN_LAST = "must-run-last"


class FailurePolicy(str, Enum):
    ABORT_RUN = "abort-run"
    WARN_CONTINUE = "warn-continue"


@dataclass(frozen=True)
class StepResult:
    step_id: str
    success: bool
    message: str = ""

    @classmethod
    def ok(cls, step_id: str, message: str = "") -> "StepResult":
        return cls(step_id=step_id, success=True, message=message)

    @classmethod
    def failure(cls, step_id: str, message: str) -> "StepResult":
        return cls(step_id=step_id, success=False, message=message)


class InstallationStep:
    """Base step: never satisfied up front, nothing to verify."""

    step_id: str = ""
    description: str = ""
    category: StepCategory = StepCategory.NORMAL
    depends_on: Tuple[str, ...] = ()
    policy: FailurePolicy = FailurePolicy.ABORT_RUN

    def applies(self, config: Mapping[str, str]) -> bool:
        return True

    def is_satisfied(self, config: Mapping[str, str]) -> bool:
        """Read-only probe: True when the target state already holds."""
        return False

    def verify(self, config: Mapping[str, str]) -> Optional[bool]:
        """Read-only end-state check; None when the step declares none."""
        return None

    def run(self, config: Mapping[str, str]) -> StepResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.step_id} {self.category.value}>"


class ScriptStep(InstallationStep):
    """A step carried out by one verified shell script."""

    def __init__(
        self,
        step_id: str,
        script: str,
        description: str = "",
        *,
        category: StepCategory = StepCategory.NORMAL,
        depends_on: Sequence[str] = (),
        policy: FailurePolicy = FailurePolicy.ABORT_RUN,
        predicate: Optional[Callable[[Mapping[str, str]], bool]] = None,
        probe: Optional[ArgvBuilder] = None,
        check: Optional[ArgvBuilder] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.step_id = step_id
        self.script = script
        self.description = description or step_id
        self.category = category
        self.depends_on = tuple(depends_on)
        self.policy = policy
        self.predicate = predicate
        self.probe = probe
        self.check = check
        self.runner = runner or CommandRunner()

    def applies(self, config: Mapping[str, str]) -> bool:
        return self.predicate is None or bool(self.predicate(config))

    def script_path(self, config: Mapping[str, str]) -> str:
        return os.path.join(config.get("INSTALL_DIR", "/opt/server-setup"), self.script)

    def _env(self, config: Mapping[str, str]) -> dict:
        env = config.as_env() if hasattr(config, "as_env") else {k: str(v) for k, v in config.items()}
        env["NON_INTERACTIVE"] = "true"
        return env

    def _read_only(self, builder: Optional[ArgvBuilder], config: Mapping[str, str]) -> Optional[bool]:
        argv = builder(config) if builder else None
        if not argv:
            return None
        return self.runner.run(argv).ok

    def is_satisfied(self, config: Mapping[str, str]) -> bool:
        return bool(self._read_only(self.probe, config))

    def verify(self, config: Mapping[str, str]) -> Optional[bool]:
        return self._read_only(self.check, config)

    def run(self, config: Mapping[str, str]) -> StepResult:
        path = self.script_path(config)
        if not os.path.isfile(path):
            return StepResult.failure(self.step_id, f"script not found: {path}")

        result = self.runner.run(["bash", path], env=self._env(config), cwd=os.path.dirname(path))
        if not result.ok:
            return StepResult.failure(self.step_id, f"{self.script} failed ({result.describe()})")
        return StepResult.ok(self.step_id)


class BackupScheduleStep(InstallationStep):
    """Prepare the backup directory and install the nightly backup cron entry."""

    step_id = "backup-schedule"
    description = "Schedule automated backups"
    depends_on = ("preflight",)

    def __init__(self, cron_path: str = CRON_PATH, executable: Optional[str] = None):
        self.cron_path = Path(cron_path)
        self.executable = executable

    def applies(self, config: Mapping[str, str]) -> bool:
        return config.get("ENABLE_BACKUPS", "yes") == "yes"

    def render(self, config: Mapping[str, str]) -> str:
        """
        Cron file content.

        Raises:
            ValueError: If BACKUP_SCHEDULE is not a valid crontab expression
        """
        schedule = config.get("BACKUP_SCHEDULE", "0 2 * * *")
        CronTrigger.from_crontab(schedule)

        exe = self.executable or shutil.which("hostguard") or "hostguard"
        log_file = os.path.join(config.get("LOG_DIR", "/var/log/server-setup"), "backup-cron.log")
        return (
            "# Managed by hostguard setup; edit BACKUP_SCHEDULE and re-run setup instead\n"
            "SHELL=/bin/sh\n"
            "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin\n"
            f"{schedule} root {exe} --non-interactive cycle >> {log_file} 2>&1\n"
        )

    def is_satisfied(self, config: Mapping[str, str]) -> bool:
        try:
            expected = self.render(config)
        except ValueError:
            return False
        backup_dir = Path(config.get("BACKUP_DIR", "/opt/backups"))
        return (
            backup_dir.is_dir()
            and self.cron_path.is_file()
            and self.cron_path.read_text(encoding="utf-8") == expected
        )

    def verify(self, config: Mapping[str, str]) -> Optional[bool]:
        return self.is_satisfied(config)

    def _backup_existing(self, config: Mapping[str, str], content: str):
        if not self.cron_path.is_file() or self.cron_path.read_text(encoding="utf-8") == content:
            return
        backup_dir = Path(config.get("SETUP_BACKUP_DIR", "/root/server-setup-backup"))
        backup_dir.mkdir(parents=True, exist_ok=True)
        target = backup_dir / f"{self.cron_path.name}.{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        shutil.copy2(self.cron_path, target)
        logger.info("Saved previous %s to %s", self.cron_path, target)

    def run(self, config: Mapping[str, str]) -> StepResult:
        try:
            content = self.render(config)
        except ValueError as e:
            return StepResult.failure(self.step_id, f"invalid BACKUP_SCHEDULE: {e}")

        try:
            backup_dir = config.get("BACKUP_DIR", "/opt/backups")
            os.makedirs(backup_dir, exist_ok=True)
            os.chmod(backup_dir, 0o700)

            self._backup_existing(config, content)
            self.cron_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.cron_path.with_name(f".{self.cron_path.name}.tmp")
            tmp.write_text(content, encoding="utf-8")
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.cron_path)
        except OSError as e:
            return StepResult.failure(self.step_id, f"cannot install schedule: {e}")

        logger.info("Backup schedule installed at %s", self.cron_path)
        return StepResult.ok(self.step_id)


def _is(key: str, value: str) -> Callable[[Mapping[str, str]], bool]:
    return lambda config: config.get(key) == value


def _active(service: str) -> ArgvBuilder:
    return lambda config: ["systemctl", "is-active", "--quiet", service]


def _container(name: str) -> ArgvBuilder:
    # docker inspect exits 0 for a stopped container too; require State.Running
    test = "[ \"$(docker inspect --format '{{.State.Running}}' " + shlex.quote(name) + " 2>/dev/null)\" = true ]"
    return lambda config: ["sh", "-c", test]


def default_steps(runner: Optional[CommandRunner] = None, cron_path: str = CRON_PATH) -> List[InstallationStep]:
    """
    The installation plan, in declaration order.

    Ordering is resolved from ``depends_on`` and the category; declaration
    order only breaks ties.
    """
    runner = runner or CommandRunner()
    backups = _is("ENABLE_BACKUPS", "yes")

    return [
        ScriptStep(
            "preflight", "scripts/01-preflight.sh", "Pre-flight system checks",
            runner=runner,
        ),
        ScriptStep(
            "users", "scripts/03-users.sh", "Admin user and sudo setup",
            depends_on=["preflight"],
            check=lambda config: ["id", "-u", config.get("ADMIN_USERNAME", "admin")],
            runner=runner,
        ),
        ScriptStep(
            "firewall", "scripts/04-firewall.sh", "Firewall (UFW)",
            depends_on=["preflight"],
            check=lambda config: ["sh", "-c", "ufw status | grep -q 'Status: active'"],
            runner=runner,
        ),
        ScriptStep(
            "fail2ban", "scripts/10-fail2ban.sh", "Intrusion prevention (fail2ban)",
            depends_on=["firewall"],
            check=_active("fail2ban"),
            runner=runner,
        ),
        ScriptStep(
            "auditd", "scripts/11-auditd.sh", "Audit logging (auditd)",
            depends_on=["preflight"],
            check=_active("auditd"),
            runner=runner,
        ),
        ScriptStep(
            "docker-install", "scripts/05-docker-install.sh", "Docker engine",
            depends_on=["firewall"],
            probe=lambda config: ["docker", "info", "--format", "{{.ServerVersion}}"],
            check=_active("docker"),
            runner=runner,
        ),
        ScriptStep(
            "docker-hardening", "scripts/06-docker-hardening.sh", "Docker daemon hardening",
            depends_on=["docker-install"],
            check=lambda config: ["test", "-f", "/etc/docker/daemon.json"],
            runner=runner,
        ),
        ScriptStep(
            "proxy-traefik", "scripts/07-proxy-install-traefik.sh", "Reverse proxy (Traefik)",
            depends_on=["docker-hardening"],
            predicate=_is("PROXY_TYPE", "traefik"),
            check=_container("traefik"),
            runner=runner,
        ),
        ScriptStep(
            "proxy-nginx", "scripts/08-proxy-install-nginx.sh", "Reverse proxy (Nginx)",
            depends_on=["docker-hardening"],
            predicate=_is("PROXY_TYPE", "nginx"),
            check=_active("nginx"),
            runner=runner,
        ),
        ScriptStep(
            "portainer", "scripts/09-portainer.sh", "Portainer",
            depends_on=["docker-hardening"],
            policy=FailurePolicy.WARN_CONTINUE,
            predicate=_is("INSTALL_PORTAINER", "yes"),
            probe=_container("portainer"),
            check=_container("portainer"),
            runner=runner,
        ),
        BackupScheduleStep(cron_path=cron_path),
        ScriptStep(
            "cloud-storage", "scripts/13-cloud-storage.sh", "Cloud storage tooling",
            depends_on=["backup-schedule"],
            policy=FailurePolicy.WARN_CONTINUE,
            predicate=backups,
            runner=runner,
        ),
        ScriptStep(
            "ssh-hardening", "scripts/02-ssh-hardening.sh", "SSH hardening",
            category=StepCategory.MUST_RUN_LAST,
            depends_on=["users"],
            check=lambda config: ["sshd", "-t"],
            runner=runner,
        ),
        ScriptStep(
            "postinstall-tests", "scripts/14-postinstall-tests.sh", "Post-install tests",
            category=StepCategory.MUST_RUN_LAST,
            depends_on=["ssh-hardening"],
            policy=FailurePolicy.WARN_CONTINUE,
            runner=runner,
        ),
    ]
