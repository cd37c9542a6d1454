"""Durable storage for workflow state.

The state file is rewritten atomically (write to a temp file, then rename) so
a crash never leaves a half-written snapshot. Every save also appends a line
to the transition log with the reason for the write, giving operators a
readable history of how the run got where it is.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import StateStoreError
from .models import RunRecord, StateTransition, WorkflowState
from .workspace import WorkspaceManager


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except OSError:
            pass  # Some filesystems don't support fsync
    os.replace(tmp, path)


class StateStore:
    """Single-writer store for one spec's WorkflowState."""

    def __init__(self, workspace: WorkspaceManager, spec_id: str):
        self.workspace = workspace
        self.spec_id = spec_id
        workspace.ensure_structure()
        self.state_file = workspace.state_file(spec_id)
        self.transitions_file = workspace.transitions_file(spec_id)
        self.runs_file = workspace.runs_file(spec_id)

    # =========================================================================
    # Workflow state
    # =========================================================================

    def exists(self) -> bool:
        return self.state_file.exists()

    def load(self) -> WorkflowState:
        """Load persisted state, or a fresh state if none exists.

        Raises:
            StateStoreError: If the state file exists but cannot be parsed.
                Silently starting over would re-run completed tasks.
        """
        if not self.state_file.exists():
            return WorkflowState()
        try:
            return WorkflowState.model_validate_json(
                self.state_file.read_text(encoding="utf-8")
            )
        except (ValidationError, ValueError) as e:
            raise StateStoreError(
                f"Could not read workflow state {self.state_file}: {e}"
            ) from e

    def save(self, state: WorkflowState, reason: str) -> WorkflowState:
        """Persist state and record why it changed.

        Returns:
            The saved state (with ``updated_at`` refreshed).
        """
        state = state.model_copy(update={"updated_at": datetime.now()})
        _atomic_write(self.state_file, state.model_dump_json(indent=2))

        transition = StateTransition(
            reason=reason,
            phase=state.phase,
            task_index=state.task_index,
            review_round=state.review_round,
            review_task_index=state.review_task_index,
            done=state.done,
        )
        with open(self.transitions_file, "a", encoding="utf-8") as handle:
            handle.write(transition.model_dump_json() + "\n")
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass
        return state

    def transitions(self, limit: Optional[int] = None) -> list[StateTransition]:
        """Read the transition log, oldest first. Corrupt lines are skipped."""
        if not self.transitions_file.exists():
            return []
        entries: list[StateTransition] = []
        for line in self.transitions_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(StateTransition.model_validate_json(line))
            except (ValidationError, ValueError):
                continue
        if limit is not None:
            entries = entries[-limit:]
        return entries

    # =========================================================================
    # Run execution records
    # =========================================================================

    def runs(self) -> list[RunRecord]:
        if not self.runs_file.exists():
            return []
        try:
            data = json.loads(self.runs_file.read_text(encoding="utf-8"))
            return [RunRecord.model_validate(item) for item in data]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            print(f"[StateStore] Warning: Could not load run records: {e}")
            return []

    def _save_runs(self, records: list[RunRecord]) -> None:
        data = [r.model_dump(mode="json") for r in records]
        _atomic_write(self.runs_file, json.dumps(data, indent=2))

    def start_run(self, record: RunRecord) -> RunRecord:
        records = self.runs()
        records.append(record)
        self._save_runs(records)
        return record

    def finish_run(
        self,
        run_id: str,
        status: str,
        summary: Optional[str] = None,
        iterations: int = 0
    ) -> Optional[RunRecord]:
        """Mark the most recent record for ``run_id`` as finished."""
        records = self.runs()
        for record in reversed(records):
            if record.run_id == run_id and record.ended_at is None:
                record.status = status
                record.summary = summary
                record.iterations = iterations
                record.ended_at = datetime.now()
                self._save_runs(records)
                return record
        return None
