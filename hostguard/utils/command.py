"""
Capability interface for external tools.

Every shell script, Docker CLI call, systemctl invocation and gpg check goes
through ``CommandRunner.run`` and comes back as a typed ``CommandResult``, so
orchestration and backup/restore logic can be exercised without a live host.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = (self.stderr or self.stdout or "").strip().splitlines()
        tail = detail[-1] if detail else "no output"
        return f"exit {self.returncode}: {tail}"


class CommandError(RuntimeError):
    """Raised by ``CommandRunner.run(check=True)`` on a non-zero exit."""

    def __init__(self, result: CommandResult):
        self.result = result
        super().__init__(f"Command failed ({result.returncode}): {format_argv(result.argv)}\n{result.stderr}")


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


class CommandRunner:
    """Runs external commands with consistent logging."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = False,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        input_text: Optional[str] = None,
        stdout_path: Optional[str] = None,
        stdin_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command.

        - Always logs the command.
        - ``stdout_path``/``stdin_path`` stream binary data to/from a file
          (database dumps and replays).
        - A missing executable is reported as exit status 127, never raised.
        - dry_run logs but does not execute.
        """

        argv_list = list(argv)
        logger.info("CMD %s", format_argv(argv_list))

        if self.dry_run:
            return CommandResult(argv=argv_list, returncode=0, stdout="", stderr="")

        run_env = dict(os.environ, **(env or {}))

        try:
            if stdout_path is not None or stdin_path is not None:
                result = self._run_with_files(argv_list, run_env, cwd, stdout_path, stdin_path, timeout)
            else:
                p = subprocess.run(
                    argv_list,
                    input=input_text,
                    text=True,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=cwd,
                    env=run_env,
                    timeout=timeout,
                )
                result = CommandResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
        except FileNotFoundError as e:
            result = CommandResult(argv=argv_list, returncode=127, stdout="", stderr=str(e))
        except subprocess.TimeoutExpired as e:
            result = CommandResult(argv=argv_list, returncode=124, stdout="", stderr=f"timed out after {e.timeout}s")

        if result.stdout:
            logger.debug("STDOUT %s", result.stdout.strip())
        if result.stderr:
            logger.debug("STDERR %s", result.stderr.strip())

        if check and not result.ok:
            raise CommandError(result)

        return result

    def _run_with_files(self, argv, env, cwd, stdout_path, stdin_path, timeout) -> CommandResult:
        stdin_f = open(stdin_path, "rb") if stdin_path else None
        stdout_f = open(stdout_path, "wb") if stdout_path else None
        try:
            p = subprocess.run(
                argv,
                stdin=stdin_f,
                stdout=stdout_f if stdout_f else subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                timeout=timeout,
            )
        finally:
            if stdin_f:
                stdin_f.close()
            if stdout_f:
                stdout_f.close()

        stdout = "" if stdout_f else (p.stdout or b"").decode("utf-8", "replace")
        stderr = (p.stderr or b"").decode("utf-8", "replace")
        return CommandResult(argv=list(argv), returncode=p.returncode, stdout=stdout, stderr=stderr)
