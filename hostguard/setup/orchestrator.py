"""
Phase orchestrator: runs installation steps sequentially with resume and
idempotency semantics.

The plan is fully resolved before anything runs. A failing ``abort-run``
step stops the sequence; a failing ``warn-continue`` step is recorded and
the sequence goes on. Nothing already applied is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from hostguard.state_store import load_state, mark_step_completed, record_error, save_state
from .steps import FailurePolicy, InstallationStep, StepCategory, StepResult

logger = logging.getLogger(__name__)


class PlanError(Exception):
    """Raised when the step declarations cannot be ordered."""


class StepFailure(Exception):
    """Raised when an ``abort-run`` step fails."""

    def __init__(self, step_id: str, log_path: Optional[str], message: str, result: "OrchestrationResult"):
        self.step_id = step_id
        self.log_path = log_path
        self.message = message
        self.result = result
        where = f"; see {log_path}" if log_path else ""
        super().__init__(f"Step {step_id} failed: {message}{where}")


@dataclass(frozen=True)
class StepRecord:
    step_id: str
    outcome: str  # applied, satisfied, warning, failed, interrupted
    message: str = ""


@dataclass(frozen=True)
class CheckResult:
    step_id: str
    passed: Optional[bool]  # None: the step declares no check

    @property
    def label(self) -> str:
        return {True: "PASS", False: "FAIL", None: "n/a"}[self.passed]


@dataclass
class OrchestrationResult:
    plan: List[str]
    records: List[StepRecord] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)
    log_path: Optional[str] = None

    def _with(self, outcome: str) -> List[str]:
        return [r.step_id for r in self.records if r.outcome == outcome]

    @property
    def applied(self) -> List[str]:
        return self._with("applied")

    @property
    def satisfied(self) -> List[str]:
        return self._with("satisfied")

    @property
    def warnings(self) -> List[StepRecord]:
        return [r for r in self.records if r.outcome == "warning"]

    @property
    def executed(self) -> List[str]:
        return [r.step_id for r in self.records if r.outcome in ("applied", "satisfied", "warning")]

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if c.passed is False]

    def summary(self) -> str:
        lines = [f"Plan: {' -> '.join(self.plan)}"]
        for record in self.records:
            detail = f" ({record.message})" if record.message else ""
            lines.append(f"  [{record.outcome}] {record.step_id}{detail}")
        if self.checks:
            lines.append("Verification:")
            lines.extend(f"  [{c.label}] {c.step_id}" for c in self.checks)
        if self.log_path:
            lines.append(f"Log: {self.log_path}")
        return "\n".join(lines)


def _order_partition(
    steps: List[InstallationStep],
    index: Dict[str, int],
    placed: set,
) -> List[InstallationStep]:
    """Stable topological sort: ready steps go in declaration order."""

    pending = sorted(steps, key=lambda s: index[s.step_id])
    ordered: List[InstallationStep] = []
    members = {s.step_id for s in pending}

    while pending:
        for step in pending:
            waiting = [d for d in step.depends_on if d in members and d not in placed]
            if not waiting:
                ordered.append(step)
                placed.add(step.step_id)
                pending.remove(step)
                break
        else:
            cycle = ", ".join(s.step_id for s in pending)
            raise PlanError(f"Dependency cycle among steps: {cycle}")

    return ordered


def build_plan(steps: Sequence[InstallationStep], config: Mapping[str, str]) -> List[InstallationStep]:
    """
    Resolve the execution order.

    Steps whose predicate rejects the configuration are dropped; dependencies
    on them are ignored. Must-run-last steps come strictly after every other
    step.

    Raises:
        PlanError: On duplicate or unknown ids, a normal step depending on a
            must-run-last step, or a dependency cycle
    """
    index: Dict[str, int] = {}
    for position, step in enumerate(steps):
        if step.step_id in index:
            raise PlanError(f"Duplicate step id: {step.step_id}")
        index[step.step_id] = position

    for step in steps:
        for dep in step.depends_on:
            if dep not in index:
                raise PlanError(f"Step {step.step_id} depends on unknown step {dep}")
            if step.category == StepCategory.NORMAL and steps[index[dep]].category == StepCategory.MUST_RUN_LAST:
                raise PlanError(f"Step {step.step_id} cannot depend on must-run-last step {dep}")

    active = [s for s in steps if s.applies(config)]
    placed: set = set()
    normal = _order_partition([s for s in active if s.category == StepCategory.NORMAL], index, placed)
    last = _order_partition([s for s in active if s.category == StepCategory.MUST_RUN_LAST], index, placed)
    return normal + last


class PhaseOrchestrator:
    """Runs a resolved plan and records progress in the state file."""

    def __init__(
        self,
        steps: Sequence[InstallationStep],
        config: Mapping[str, str],
        *,
        state_path: Optional[str] = None,
        log_path: Optional[str] = None,
    ):
        self.steps = list(steps)
        self.config = config
        self.state_path = state_path
        self.log_path = log_path
        self._plan: Optional[List[InstallationStep]] = None

    def plan(self) -> List[InstallationStep]:
        if self._plan is None:
            self._plan = build_plan(self.steps, self.config)
        return self._plan

    def _load(self) -> Dict[str, Any]:
        return load_state(self.state_path) if self.state_path else {}

    def _save(self, state: Dict[str, Any]) -> None:
        if self.state_path:
            save_state(self.state_path, state)

    def run(self) -> OrchestrationResult:
        """
        Run every planned step in order.

        Raises:
            PlanError: Before anything runs, if the plan is invalid
            StepFailure: When an ``abort-run`` step fails
            KeyboardInterrupt: Re-raised after being recorded
        """
        plan = self.plan()
        result = OrchestrationResult(plan=[s.step_id for s in plan], log_path=self.log_path)

        state = self._load()
        exe = state.setdefault("execution", {})
        exe["errors"] = []
        exe["warnings"] = []
        exe["status"] = "running"
        exe["plan"] = result.plan

        for step in plan:
            exe["current_step"] = step.step_id
            self._save(state)

            try:
                if step.is_satisfied(self.config):
                    logger.info("Skipping step %s (target state already holds)", step.step_id)
                    result.records.append(StepRecord(step.step_id, "satisfied"))
                    mark_step_completed(state, step.step_id)
                    continue

                logger.info("Running step %s: %s", step.step_id, step.description)
                outcome = step.run(self.config)
            except KeyboardInterrupt:
                result.records.append(StepRecord(step.step_id, "interrupted", "interrupted by operator"))
                record_error(state, step.step_id, "interrupted by operator")
                exe["status"] = "interrupted"
                self._save(state)
                logger.error("Step %s interrupted by operator", step.step_id)
                raise
            except Exception as e:
                logger.exception("Step %s raised", step.step_id)
                outcome = StepResult.failure(step.step_id, str(e))

            if outcome.success:
                logger.info("Step %s applied", step.step_id)
                result.records.append(StepRecord(step.step_id, "applied", outcome.message))
                mark_step_completed(state, step.step_id)
            elif step.policy == FailurePolicy.WARN_CONTINUE:
                logger.warning("Step %s failed, continuing: %s", step.step_id, outcome.message)
                result.records.append(StepRecord(step.step_id, "warning", outcome.message))
                exe["warnings"].append({"step": step.step_id, "error": outcome.message})
            else:
                logger.error("Step %s failed, aborting run: %s", step.step_id, outcome.message)
                result.records.append(StepRecord(step.step_id, "failed", outcome.message))
                record_error(state, step.step_id, outcome.message)
                exe["status"] = "failed"
                self._save(state)
                raise StepFailure(step.step_id, self.log_path, outcome.message, result)

        exe["current_step"] = None
        exe["status"] = "complete"
        self._save(state)
        return result

    def verify(self, result: Optional[OrchestrationResult] = None) -> List[CheckResult]:
        """
        Read-only check of every executed step's end state.

        Without a result, every planned step is checked (standalone verify).
        """
        by_id = {s.step_id: s for s in self.plan()}
        step_ids = result.executed if result is not None else list(by_id)
        checks = []
        for step_id in step_ids:
            try:
                passed = by_id[step_id].verify(self.config)
            except Exception as e:
                logger.warning("Verification of %s raised: %s", step_id, e)
                passed = False
            checks.append(CheckResult(step_id, passed))
            if passed is False:
                logger.warning("Verification failed for %s", step_id)

        if result is not None:
            result.checks = checks
        return checks
