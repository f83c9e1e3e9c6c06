"""
Installation phase: verified artifact fetch and step orchestration.
"""

from .fetcher import ArtifactFetcher, ArtifactFetchError, IntegrityError
from .orchestrator import PhaseOrchestrator, PlanError, StepFailure, build_plan
from .steps import FailurePolicy, InstallationStep, ScriptStep, StepCategory, StepResult, default_steps
from .installer import run_installation, write_setup_report

__all__ = [
    'ArtifactFetcher',
    'ArtifactFetchError',
    'IntegrityError',
    'PhaseOrchestrator',
    'PlanError',
    'StepFailure',
    'build_plan',
    'FailurePolicy',
    'InstallationStep',
    'ScriptStep',
    'StepCategory',
    'StepResult',
    'default_steps',
    'run_installation',
    'write_setup_report',
]
