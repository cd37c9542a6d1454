"""Protocol definitions for dependency injection.

These protocols define the boundaries to external collaborators:
- VersionControl: the working copy the agents edit
- AgentBackend: the process that turns a prompt into output

Both are mocked in tests with small hand-written implementations.
"""

from typing import Protocol, runtime_checkable

from .vcs import VcsResult
from .agents import AgentOptions, AgentResult


@runtime_checkable
class VersionControl(Protocol):
    """Protocol for version-control operations used by the committer."""

    name: str

    def has_pending_changes(self) -> bool:
        """True if the working copy has uncommitted changes."""
        ...

    def describe(self, message: str) -> VcsResult:
        """Set the message on the pending change (commit it)."""
        ...

    def push_branch(self, branch: str) -> VcsResult:
        """Push the named branch/bookmark to the remote."""
        ...

    def track_remote_branch(self, branch: str) -> VcsResult:
        """Start tracking the branch on the remote so it can be created."""
        ...

    def is_missing_remote_branch(self, output: str) -> bool:
        """True if a push failed only because the remote branch doesn't exist."""
        ...


@runtime_checkable
class AgentBackend(Protocol):
    """Protocol for agent invocation: prompt in, free-text output out."""

    name: str

    async def run(self, prompt: str, options: AgentOptions) -> AgentResult:
        """Run the agent once and return its output."""
        ...
