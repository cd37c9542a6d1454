"""Stop requests and resuming halted runs.

Handles:
- Signal handlers for graceful shutdown (SIGINT, SIGTERM)
- File-based stop signal detection
- Resuming a run that halted on a rate limit or another blocking gate
"""

import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from ..artifacts import ArtifactStore
from ..errors import ResumeError
from ..models import Phase, WorkflowState
from ..rate_limit import pause_expired
from ..state_store import StateStore
from ..workspace import WorkspaceManager


console = Console()


def resume_state(state: WorkflowState, now: datetime) -> WorkflowState:
    """Reopen a halted run at the phase it stopped in.

    An expired pause is cleared first. The rate-limit attempt counter is kept
    so the next hit backs off further. Resuming into the review phase starts
    a fresh review clock.

    Raises:
        ResumeError: If the run is not halted, finished normally, or its
            rate-limit pause has not expired yet.
    """
    if not state.done:
        raise ResumeError("Run is not halted; nothing to resume.")
    if not (state.blocked or state.failed):
        raise ResumeError(
            f"Run finished ({state.gate_reason or 'done'}); start a new run instead of resuming."
        )

    until = state.rate_limit_until
    if until is not None and not pause_expired(until, now):
        raise ResumeError(f"Rate limit pause is active until {until.isoformat()}.")

    phase = state.halted_phase or Phase.TASKS
    if phase == Phase.DONE:
        phase = Phase.TASKS
    return state.model_copy(
        update={
            "phase": phase,
            "done": False,
            "blocked": False,
            "failed": False,
            "gate_reason": None,
            "halted_phase": None,
            "rate_limit_until": None,
            "review_started_at": None,
        },
        deep=True,
    )


class RecoveryManager:
    """Handles shutdown signals, the stop file and resuming halted runs.

    A stop request is only honoured between ticks; an agent call that is
    already running finishes first.
    """

    def __init__(self, workspace: WorkspaceManager):
        self.workspace = workspace
        self._shutdown_requested = False
        self._previous_handlers: dict[int, Any] = {}

    @property
    def stop_file(self) -> Path:
        return self.workspace.stop_file

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        On Windows, only SIGINT (Ctrl+C) is supported.
        """
        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_shutdown_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        console.print(f"\n[yellow]Shutdown signal received ({signal_name}) - stopping after the current step...[/yellow]")
        self._shutdown_requested = True

    def is_stop_requested(self) -> bool:
        """True if a signal arrived or the stop request file exists."""
        if self._shutdown_requested:
            return True
        if self.stop_file.exists():
            console.print("[yellow]Stop request file detected...[/yellow]")
            self._shutdown_requested = True
            return True
        return False

    def request_stop(self, reason: str = "User requested stop") -> Path:
        """Create the stop request file.

        Returns:
            Path to the created stop file
        """
        self.stop_file.parent.mkdir(parents=True, exist_ok=True)
        self.stop_file.write_text(f"{datetime.now().isoformat()}\n{reason}")
        return self.stop_file

    def clear_stop_request(self) -> None:
        """Remove the stop request file after the run has stopped."""
        self._shutdown_requested = False
        if self.stop_file.exists():
            try:
                self.stop_file.unlink()
                console.print("[dim]Cleared stop request file[/dim]")
            except OSError:
                pass  # File may have been removed already

    def resume(
        self,
        store: StateStore,
        artifacts: Optional[ArtifactStore] = None,
        now: Optional[datetime] = None
    ) -> WorkflowState:
        """Reopen the persisted run and remove its stale human gate.

        Raises:
            ResumeError: See ``resume_state``.
        """
        now = now or datetime.now()
        state = store.load()

        if pause_expired(state.rate_limit_until, now):
            state = store.save(state.model_copy(update={"rate_limit_until": None}), "rate_limit_clear")

        resumed = resume_state(state, now)
        saved = store.save(resumed, "resume")
        if artifacts is not None:
            artifacts.clear_human_gate()
        console.print(f"[green]Resumed run at phase {saved.phase.value}[/green]")
        return saved
