"""JSONL run logging.

One file per run under ``.spec-orch/logs/``. Every line is a complete JSON
object with a timestamp and a type. Lines are flushed and fsynced as they are
written so the log can be tailed while a run is in progress.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import LogEntryType
from .workspace import WorkspaceManager


class RunLogger:
    """JSONL logger for one orchestrator run.

    Example output:
        {"type": "run_start", "timestamp": "...", "run_id": "...", "spec_id": "..."}
        {"type": "prompt", "timestamp": "...", "label": "t1", "prompt_length": 2312, ...}
        {"type": "agent_result", "timestamp": "...", "label": "t1", "timed_out": false, ...}
        {"type": "transition", "timestamp": "...", "reason": "advance", ...}
        {"type": "run_end", "timestamp": "...", "outcome": "halted", ...}

    Agent output is truncated at ``output_truncation_limit`` characters
    (0 disables truncation).
    """

    DEFAULT_TRUNCATION_LIMIT = 50000

    def __init__(
        self,
        workspace: WorkspaceManager,
        spec_id: str,
        run_id: str,
        output_truncation_limit: int = DEFAULT_TRUNCATION_LIMIT
    ):
        self.spec_id = spec_id
        self.run_id = run_id
        self.output_truncation_limit = output_truncation_limit

        workspace.ensure_structure()
        self.log_file = workspace.run_log_path(spec_id, run_id)

        self._started_at = datetime.now()
        self._agent_calls = 0
        self._file_handle: Optional[Any] = None

    def _write_entry(self, entry: dict) -> None:
        if "timestamp" not in entry:
            entry["timestamp"] = datetime.now().isoformat()

        if self._file_handle is None:
            self._file_handle = open(self.log_file, "a", encoding="utf-8")

        self._file_handle.write(json.dumps(entry, default=str) + "\n")
        self._file_handle.flush()
        try:
            os.fsync(self._file_handle.fileno())
        except (OSError, AttributeError):
            pass  # Some systems don't support fsync

    def _truncate(self, text: str) -> tuple[str, bool]:
        limit = self.output_truncation_limit
        if limit > 0 and len(text) > limit:
            return text[:limit], True
        return text, False

    def log_run_start(self, config: Optional[dict] = None, resumed_phase: Optional[str] = None) -> None:
        self._write_entry({
            "type": LogEntryType.RUN_START.value,
            "run_id": self.run_id,
            "spec_id": self.spec_id,
            "phase": resumed_phase,
            "config": config or {},
        })

    def log_prompt(self, label: str, kind: str, prompt_text: str, model: str = "") -> None:
        """Log a prompt about to be sent to an agent.

        Args:
            label: Task or reviewer id
            kind: "todo", "remediation" or "review"
            prompt_text: Full prompt text
            model: Model the prompt is sent to
        """
        self._write_entry({
            "type": LogEntryType.PROMPT.value,
            "label": label,
            "kind": kind,
            "model": model,
            "prompt_length": len(prompt_text),
            "prompt_text": prompt_text,
        })

    def log_agent_result(
        self,
        label: str,
        output: str,
        timed_out: bool = False,
        error: Optional[str] = None,
        error_category: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        duration_seconds: Optional[float] = None
    ) -> None:
        self._agent_calls += 1
        logged, truncated = self._truncate(output)
        self._write_entry({
            "type": LogEntryType.AGENT_RESULT.value,
            "label": label,
            "output": logged,
            "output_length": len(output),
            "truncated": truncated,
            "timed_out": timed_out,
            "error": error,
            "error_category": error_category,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "duration_seconds": duration_seconds,
        })

    def log_transition(self, reason: str, phase: str, done: bool, effects: list[str]) -> None:
        self._write_entry({
            "type": LogEntryType.TRANSITION.value,
            "reason": reason,
            "phase": phase,
            "done": done,
            "effects": effects,
        })

    def log_commit(self, task_id: str, status: str, pushed: bool, warnings: list[str]) -> None:
        self._write_entry({
            "type": LogEntryType.COMMIT.value,
            "task_id": task_id,
            "status": status,
            "pushed": pushed,
            "warnings": warnings,
        })

    def log_human_gate(self, reason: str) -> None:
        self._write_entry({
            "type": LogEntryType.HUMAN_GATE.value,
            "reason": reason,
        })

    def log_error(self, category: str, message: str, raw_error: Optional[str] = None) -> None:
        """Log an error event.

        Args:
            category: Error category (rate_limit, timeout, auth, etc.)
            message: Error message
            raw_error: Raw error string
        """
        self._write_entry({
            "type": LogEntryType.ERROR.value,
            "category": category,
            "message": message,
            "raw_error": raw_error,
        })

    def log_run_end(self, outcome: str, reason: Optional[str] = None, iterations: int = 0) -> None:
        """Log the end of the run and close the file."""
        duration_seconds = (datetime.now() - self._started_at).total_seconds()
        self._write_entry({
            "type": LogEntryType.RUN_END.value,
            "run_id": self.run_id,
            "outcome": outcome,
            "reason": reason,
            "iterations": iterations,
            "agent_calls": self._agent_calls,
            "duration_seconds": round(duration_seconds, 2),
        })
        self.close()

    def close(self) -> None:
        """Close the log file handle."""
        if self._file_handle:
            try:
                self._file_handle.close()
            except OSError:
                pass
            self._file_handle = None

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def read_run_log(log_path: Path) -> list[dict]:
    """Read all entries from a run log file. Corrupt lines are skipped."""
    entries: list[dict] = []
    if not log_path.exists():
        return entries

    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    return entries
