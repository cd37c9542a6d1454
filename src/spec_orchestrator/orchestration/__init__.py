"""Orchestration components for the spec orchestrator.

- WorkflowDriver: executes the state machine's effects against agents, VCS and storage
- RecoveryManager: handles stop signals and resuming halted runs
"""

from .driver import RunOutcome, WorkflowDriver
from .recovery import RecoveryManager, resume_state

__all__ = [
    "RunOutcome",
    "WorkflowDriver",
    "RecoveryManager",
    "resume_state",
]
