"""
Installation entry point: fetch and verify, orchestrate, verify end state,
write the setup report.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

from hostguard.config import SECRET_KEYS
from hostguard.utils.command import CommandRunner
from .fetcher import ArtifactFetcher, FetchResult
from .orchestrator import OrchestrationResult, PhaseOrchestrator, build_plan
from .steps import InstallationStep, ScriptStep, default_steps

logger = logging.getLogger(__name__)

# Fetched alongside the planned step scripts for later manual use
EXTRA_ARTIFACTS = ("scripts/15-healthcheck.sh",)


@dataclass
class InstallationReport:
    fetch: FetchResult
    orchestration: OrchestrationResult
    started_at: datetime
    finished_at: Optional[datetime] = None
    report_path: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.orchestration.failed_checks


def required_artifacts(plan: Sequence[InstallationStep]) -> List[str]:
    artifacts = [step.script for step in plan if isinstance(step, ScriptStep)]
    artifacts.extend(a for a in EXTRA_ARTIFACTS if a not in artifacts)
    return artifacts


def run_installation(
    config: Mapping[str, str],
    *,
    steps: Optional[Sequence[InstallationStep]] = None,
    runner: Optional[CommandRunner] = None,
    fetcher: Optional[ArtifactFetcher] = None,
    state_path: Optional[str] = None,
    log_path: Optional[str] = None,
) -> InstallationReport:
    """
    Run the full installation.

    The plan is resolved and every artifact verified before the first step
    runs; any error up to that point leaves the host untouched.

    Raises:
        PlanError: Invalid step declarations
        IntegrityError: An artifact failed verification
        StepFailure: An abort-run step failed
    """
    started_at = datetime.now()
    runner = runner or CommandRunner()
    steps = list(steps) if steps is not None else default_steps(runner)

    plan = build_plan(steps, config)
    logger.info("Installation plan: %s", ", ".join(s.step_id for s in plan))

    if fetcher is None:
        fetcher = ArtifactFetcher(
            config.get("REPO_BASE_URL", ""),
            config.get("INSTALL_DIR", "/opt/server-setup"),
            required_artifacts(plan),
            runner=runner,
        )
    fetch_result = fetcher.fetch_and_verify()

    orchestrator = PhaseOrchestrator(steps, config, state_path=state_path, log_path=log_path)
    orchestration = orchestrator.run()
    orchestrator.verify(orchestration)

    report = InstallationReport(fetch=fetch_result, orchestration=orchestration, started_at=started_at)
    report.finished_at = datetime.now()
    if fetch_result.signature == "invalid":
        report.notes.append("GPG signature over checksums.txt did not verify")
    return report


def render_report(config: Mapping[str, str], report: InstallationReport) -> str:
    orchestration = report.orchestration
    lines = [
        "=" * 60,
        "Server Setup Report",
        "=" * 60,
        f"Host: {socket.gethostname()}",
        f"Started: {report.started_at.isoformat(timespec='seconds')}",
        f"Finished: {(report.finished_at or datetime.now()).isoformat(timespec='seconds')}",
        "",
        "Configuration:",
    ]
    for key in sorted(config):
        value = config[key]
        if key in SECRET_KEYS and value:
            value = "***"
        lines.append(f"  {key}={value}")

    lines += ["", f"Artifacts verified: {len(report.fetch.verified)} (signature: {report.fetch.signature})", ""]
    lines.append("Steps:")
    for record in orchestration.records:
        detail = f" - {record.message}" if record.message else ""
        lines.append(f"  [{record.outcome}] {record.step_id}{detail}")

    lines += ["", "Verification:"]
    lines.extend(f"  [{c.label}] {c.step_id}" for c in orchestration.checks)

    if orchestration.warnings or report.notes:
        lines += ["", "Warnings:"]
        lines.extend(f"  {w.step_id}: {w.message}" for w in orchestration.warnings)
        lines.extend(f"  {note}" for note in report.notes)

    lines += [
        "",
        "Next steps:",
        f"  - Log in as {config.get('ADMIN_USERNAME', 'admin')} on SSH port {config.get('SSH_PORT', '22')}",
        f"  - Run a health check: {os.path.join(config.get('INSTALL_DIR', '/opt/server-setup'), 'scripts/15-healthcheck.sh')}",
        "  - Test a backup: hostguard backup",
    ]
    if orchestration.log_path:
        lines.append(f"  - Full log: {orchestration.log_path}")
    return "\n".join(lines) + "\n"


def write_setup_report(path: str, config: Mapping[str, str], report: InstallationReport) -> str:
    """Write the plain-text setup report (mode 0600) and return its path."""

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_report(config, report))
    os.chmod(path, 0o600)
    report.report_path = path
    logger.info("Setup report written to %s", path)
    return path
