"""
Unit tests for the phase orchestrator (hostguard/setup/orchestrator.py).

Tests plan resolution, failure policies, resume state and verification.
"""

import json

import pytest

from hostguard.setup.orchestrator import (
    PhaseOrchestrator,
    PlanError,
    StepFailure,
    build_plan,
)
from hostguard.setup.steps import FailurePolicy, InstallationStep, StepCategory, StepResult


class FakeStep(InstallationStep):
    """Step that records its runs into a shared journal."""

    def __init__(self, step_id, journal, depends_on=(), category=StepCategory.NORMAL,
                 policy=FailurePolicy.ABORT_RUN, succeed=True, satisfied=False,
                 check=None, applies=True, raises=None):
        self.step_id = step_id
        self.description = step_id
        self.journal = journal
        self.depends_on = tuple(depends_on)
        self.category = category
        self.policy = policy
        self.succeed = succeed
        self.satisfied = satisfied
        self.check = check
        self._applies = applies
        self.raises = raises

    def applies(self, config):
        return self._applies

    def is_satisfied(self, config):
        return self.satisfied

    def verify(self, config):
        return self.check

    def run(self, config):
        self.journal.append(self.step_id)
        if self.raises is not None:
            raise self.raises
        if self.succeed:
            # Running makes the target state hold, as a real idempotent step would
            self.satisfied = True
            return StepResult.ok(self.step_id)
        return StepResult.failure(self.step_id, f"{self.step_id} exploded")


@pytest.fixture
def journal():
    return []


def ids(plan):
    return [step.step_id for step in plan]


class TestBuildPlan:
    """Test ordering and plan validation."""

    def test_dependencies_before_dependents(self, journal):
        steps = [
            FakeStep('proxy', journal, depends_on=['docker']),
            FakeStep('docker', journal, depends_on=['preflight']),
            FakeStep('preflight', journal),
        ]

        assert ids(build_plan(steps, {})) == ['preflight', 'docker', 'proxy']

    def test_declaration_order_breaks_ties(self, journal):
        steps = [
            FakeStep('preflight', journal),
            FakeStep('firewall', journal, depends_on=['preflight']),
            FakeStep('users', journal, depends_on=['preflight']),
            FakeStep('auditd', journal, depends_on=['preflight']),
        ]

        assert ids(build_plan(steps, {})) == ['preflight', 'firewall', 'users', 'auditd']

    def test_must_run_last_after_everything(self, journal):
        steps = [
            FakeStep('ssh-hardening', journal, category=StepCategory.MUST_RUN_LAST, depends_on=['users']),
            FakeStep('users', journal),
            FakeStep('portainer', journal),
            FakeStep('tests', journal, category=StepCategory.MUST_RUN_LAST, depends_on=['ssh-hardening']),
        ]

        assert ids(build_plan(steps, {})) == ['users', 'portainer', 'ssh-hardening', 'tests']

    def test_normal_step_cannot_depend_on_must_run_last(self, journal):
        steps = [
            FakeStep('ssh-hardening', journal, category=StepCategory.MUST_RUN_LAST),
            FakeStep('docker', journal, depends_on=['ssh-hardening']),
        ]

        with pytest.raises(PlanError, match='cannot depend on must-run-last'):
            build_plan(steps, {})

    def test_unknown_dependency(self, journal):
        with pytest.raises(PlanError, match='unknown step nope'):
            build_plan([FakeStep('a', journal, depends_on=['nope'])], {})

    def test_duplicate_ids(self, journal):
        with pytest.raises(PlanError, match='Duplicate step id'):
            build_plan([FakeStep('a', journal), FakeStep('a', journal)], {})

    def test_cycle(self, journal):
        steps = [FakeStep('a', journal, depends_on=['b']), FakeStep('b', journal, depends_on=['a'])]

        with pytest.raises(PlanError, match='cycle'):
            build_plan(steps, {})

    def test_predicate_drops_step_and_its_edges(self, journal):
        steps = [
            FakeStep('docker', journal),
            FakeStep('proxy-nginx', journal, depends_on=['docker'], applies=False),
            FakeStep('portainer', journal, depends_on=['docker']),
        ]

        assert ids(build_plan(steps, {})) == ['docker', 'portainer']

    def test_invalid_plan_runs_nothing(self, journal, tmp_path):
        steps = [FakeStep('a', journal), FakeStep('b', journal, depends_on=['missing'])]

        with pytest.raises(PlanError):
            PhaseOrchestrator(steps, {}, state_path=str(tmp_path / 'state.json')).run()

        assert journal == []
        assert not (tmp_path / 'state.json').exists()


class TestRun:
    """Test sequential execution and failure policies."""

    def test_runs_in_plan_order(self, journal):
        steps = [FakeStep('b', journal, depends_on=['a']), FakeStep('a', journal)]

        result = PhaseOrchestrator(steps, {}).run()

        assert journal == ['a', 'b']
        assert result.applied == ['a', 'b']

    def test_abort_run_stops_sequence(self, journal, tmp_path):
        state_path = tmp_path / 'state.json'
        steps = [
            FakeStep('a', journal),
            FakeStep('b', journal, succeed=False),
            FakeStep('c', journal),
        ]

        with pytest.raises(StepFailure) as exc_info:
            PhaseOrchestrator(steps, {}, state_path=str(state_path), log_path='/var/log/x.log').run()

        assert journal == ['a', 'b']
        assert exc_info.value.step_id == 'b'
        assert 'see /var/log/x.log' in str(exc_info.value)
        assert exc_info.value.result.applied == ['a']

        state = json.loads(state_path.read_text())
        assert state['execution']['status'] == 'failed'
        assert state['execution']['completed_steps'] == ['a']
        assert state['execution']['errors'] == [{'step': 'b', 'error': 'b exploded'}]

    def test_warn_continue_goes_on(self, journal, tmp_path):
        steps = [
            FakeStep('a', journal),
            FakeStep('portainer', journal, policy=FailurePolicy.WARN_CONTINUE, succeed=False),
            FakeStep('c', journal),
        ]

        result = PhaseOrchestrator(steps, {}, state_path=str(tmp_path / 'state.json')).run()

        assert journal == ['a', 'portainer', 'c']
        assert [w.step_id for w in result.warnings] == ['portainer']
        assert 'portainer' not in result.applied
        state = json.loads((tmp_path / 'state.json').read_text())
        assert state['execution']['warnings'] == [{'step': 'portainer', 'error': 'portainer exploded'}]
        assert state['execution']['status'] == 'complete'

    def test_exception_treated_as_failure(self, journal):
        steps = [FakeStep('a', journal, raises=RuntimeError('boom'))]

        with pytest.raises(StepFailure, match='boom'):
            PhaseOrchestrator(steps, {}).run()

    def test_satisfied_step_skipped(self, journal):
        steps = [FakeStep('docker-install', journal, satisfied=True), FakeStep('b', journal)]

        result = PhaseOrchestrator(steps, {}).run()

        assert journal == ['b']
        assert result.satisfied == ['docker-install']
        assert 'docker-install' in result.executed

    def test_rerun_is_idempotent(self, journal, tmp_path):
        state_path = tmp_path / 'state.json'
        steps = [FakeStep('a', journal), FakeStep('b', journal, depends_on=['a'])]

        PhaseOrchestrator(steps, {}, state_path=str(state_path)).run()
        first_state = state_path.read_text()
        second = PhaseOrchestrator(steps, {}, state_path=str(state_path)).run()

        assert journal == ['a', 'b']
        assert second.satisfied == ['a', 'b']
        assert state_path.read_text() == first_state

    def test_resume_after_failure(self, journal, tmp_path):
        state_path = tmp_path / 'state.json'
        broken = FakeStep('b', journal, succeed=False)
        steps = [FakeStep('a', journal), broken, FakeStep('c', journal)]

        with pytest.raises(StepFailure):
            PhaseOrchestrator(steps, {}, state_path=str(state_path)).run()

        broken.succeed = True
        result = PhaseOrchestrator(steps, {}, state_path=str(state_path)).run()

        assert journal == ['a', 'b', 'b', 'c']
        assert result.satisfied == ['a']
        state = json.loads(state_path.read_text())
        assert state['execution']['errors'] == []
        assert state['execution']['completed_steps'] == ['a', 'b', 'c']

    def test_interrupt_recorded_and_reraised(self, journal, tmp_path):
        state_path = tmp_path / 'state.json'
        steps = [FakeStep('a', journal), FakeStep('b', journal, raises=KeyboardInterrupt())]

        with pytest.raises(KeyboardInterrupt):
            PhaseOrchestrator(steps, {}, state_path=str(state_path)).run()

        state = json.loads(state_path.read_text())
        assert state['execution']['status'] == 'interrupted'
        assert state['execution']['current_step'] == 'b'


class TestVerify:
    """Test read-only end-state verification."""

    def test_checks_executed_steps_only(self, journal):
        steps = [
            FakeStep('a', journal, check=True),
            FakeStep('b', journal, check=False, policy=FailurePolicy.WARN_CONTINUE, succeed=False),
            FakeStep('c', journal, check=None),
        ]
        orchestrator = PhaseOrchestrator(steps, {})
        result = orchestrator.run()

        checks = orchestrator.verify(result)

        assert [(c.step_id, c.label) for c in checks] == [('a', 'PASS'), ('b', 'FAIL'), ('c', 'n/a')]
        assert [c.step_id for c in result.failed_checks] == ['b']
        assert 'Verification:' in result.summary()

    def test_standalone_verify_checks_whole_plan(self, journal):
        steps = [FakeStep('a', journal, check=True), FakeStep('b', journal, check=False)]

        checks = PhaseOrchestrator(steps, {}).verify()

        assert [c.label for c in checks] == ['PASS', 'FAIL']
        assert journal == []

    def test_raising_check_is_failure(self, journal):
        class Broken(FakeStep):
            def verify(self, config):
                raise OSError('no such file')

        checks = PhaseOrchestrator([Broken('a', journal)], {}).verify()

        assert checks[0].passed is False
