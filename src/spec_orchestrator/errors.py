"""Exception types raised outside the state machine.

The machine itself never raises for agent or version-control trouble;
those become reports and human gates. These cover process-level faults.
"""


class OrchestratorError(Exception):
    """Base class for spec-orchestrator errors."""


class ConfigError(OrchestratorError):
    """Configuration or input files are missing or invalid."""


class AgentUnavailableError(OrchestratorError):
    """The requested agent backend cannot be used (binary or SDK missing)."""


class StateStoreError(OrchestratorError):
    """Persisted workflow state could not be read."""


class ResumeError(OrchestratorError):
    """A halted run cannot be resumed (pause still active or nothing to resume)."""
