"""Workspace management for the .spec-orch/ directory structure.

Handles creation of the orchestrator's private directory, which holds
everything that is not a human-facing artifact:
- Workflow state and its transition log
- Run execution records
- JSONL run logs
- The stop request file
"""

import re
from pathlib import Path


def _safe_name(value: str) -> str:
    """Make an identifier usable as a file name component."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    return cleaned or "default"


class WorkspaceManager:
    """Manages the .spec-orch/ workspace directory structure.

    Directory structure:
        .spec-orch/
        ├── state/
        │   ├── {spec}.state.json         # WorkflowState
        │   ├── {spec}.transitions.jsonl  # One line per persisted transition
        │   └── {spec}.runs.json          # Run execution records
        ├── logs/
        │   └── {spec}_{run}.jsonl        # Run event log
        └── stop-requested                # Present = stop between ticks
    """

    DEFAULT_DIR_NAME = ".spec-orch"

    def __init__(self, project_path: Path, dir_name: str = DEFAULT_DIR_NAME):
        """Initialize workspace manager.

        Args:
            project_path: Directory the workspace lives in
            dir_name: Name (or absolute path) of the workspace directory
        """
        self.project_path = Path(project_path).resolve()
        root = Path(dir_name)
        self.root = root if root.is_absolute() else self.project_path / root
        self.state_dir = self.root / "state"
        self.logs_dir = self.root / "logs"
        self.stop_file = self.root / "stop-requested"

    def ensure_structure(self) -> None:
        """Create the workspace directories if they don't exist."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        """Check if the workspace exists."""
        return self.root.exists()

    def state_file(self, spec_id: str) -> Path:
        return self.state_dir / f"{_safe_name(spec_id)}.state.json"

    def transitions_file(self, spec_id: str) -> Path:
        return self.state_dir / f"{_safe_name(spec_id)}.transitions.jsonl"

    def runs_file(self, spec_id: str) -> Path:
        return self.state_dir / f"{_safe_name(spec_id)}.runs.json"

    def run_log_path(self, spec_id: str, run_id: str) -> Path:
        return self.logs_dir / f"{_safe_name(spec_id)}_{_safe_name(run_id)}.jsonl"
