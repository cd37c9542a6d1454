"""Human-facing artifacts in the report directory.

Layout:
    reports/
    ├── {taskId}.report.json    # TaskReport, one per task / remediation task
    ├── review-{reviewer}.json  # ReviewResult of the reviewer's latest round
    ├── review.json             # ReviewSummary of the last aggregated round
    ├── review-todo.json        # Remediation tasks of the current round
    └── human-gate.json         # Why the run stopped

Readers are forgiving: an unreadable artifact is treated as missing.
"""

import json
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, ValidationError

from .models import (
    ARTIFACT_VERSION, HumanGate, Reviewer, ReviewResult, ReviewSummary,
    TaskReport, TodoTask
)


REPORT_SUFFIX = ".report.json"
REVIEW_SUMMARY_FILE = "review.json"
REVIEW_TODO_FILE = "review-todo.json"
HUMAN_GATE_FILE = "human-gate.json"


class ArtifactStore:
    """Reads and writes artifacts under a report directory."""

    # Reports inlined into reviewer prompts
    DIGEST_LIMIT = 20

    def __init__(self, report_dir: Path):
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, name: str, model: BaseModel) -> Path:
        path = self.report_dir / name
        payload = model.model_dump(mode="json", by_alias=True)
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return path

    def _read(self, name: str, model_type: type[BaseModel]) -> Optional[BaseModel]:
        path = self.report_dir / name
        if not path.exists():
            return None
        try:
            return model_type.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError):
            return None

    # =========================================================================
    # Task reports
    # =========================================================================

    def report_path(self, task_id: str) -> Path:
        return self.report_dir / f"{task_id}{REPORT_SUFFIX}"

    def write_report(self, report: TaskReport) -> Path:
        return self._write(f"{report.task_id}{REPORT_SUFFIX}", report)

    def read_report(self, task_id: str) -> Optional[TaskReport]:
        return self._read(f"{task_id}{REPORT_SUFFIX}", TaskReport)

    def reports_digest(self, limit: int = DIGEST_LIMIT) -> str:
        """Concatenate report files for inclusion in a reviewer prompt."""
        files = sorted(self.report_dir.glob(f"*{REPORT_SUFFIX}"))[:limit]
        if not files:
            return "No reports found."
        return "\n\n".join(
            f"{f.name}:\n{f.read_text(encoding='utf-8').strip()}" for f in files
        )

    # =========================================================================
    # Reviews
    # =========================================================================

    def reviewer_path(self, reviewer_id: str) -> Path:
        return self.report_dir / f"review-{reviewer_id}.json"

    def write_reviewer_result(self, result: ReviewResult) -> Path:
        return self._write(f"review-{result.reviewer}.json", result)

    def read_reviewer_result(self, reviewer_id: str) -> Optional[ReviewResult]:
        result = self._read(f"review-{reviewer_id}.json", ReviewResult)
        if result is not None and not result.reviewer:
            result.reviewer = reviewer_id
        return result

    def current_round_results(
        self,
        reviewers: Iterable[Reviewer],
        round_number: int
    ) -> dict[str, ReviewResult]:
        """Reviewer artifacts that belong to ``round_number``.

        Artifacts from earlier rounds are superseded and left out.
        """
        results: dict[str, ReviewResult] = {}
        for reviewer in reviewers:
            result = self.read_reviewer_result(reviewer.id)
            if result is not None and result.round == round_number:
                results[reviewer.id] = result
        return results

    def write_review_summary(self, summary: ReviewSummary) -> Path:
        return self._write(REVIEW_SUMMARY_FILE, summary)

    def read_review_summary(self) -> Optional[ReviewSummary]:
        return self._read(REVIEW_SUMMARY_FILE, ReviewSummary)

    def write_review_todo(self, tasks: list[TodoTask]) -> Path:
        path = self.report_dir / REVIEW_TODO_FILE
        payload = {
            "v": ARTIFACT_VERSION,
            "tasks": [t.model_dump(mode="json", by_alias=True) for t in tasks],
        }
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return path

    def read_review_todo(self) -> list[TodoTask]:
        path = self.report_dir / REVIEW_TODO_FILE
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [TodoTask.model_validate(t) for t in data.get("tasks", [])]
        except (json.JSONDecodeError, ValidationError, AttributeError):
            return []

    # =========================================================================
    # Human gate
    # =========================================================================

    def write_human_gate(self, reason: str) -> Path:
        return self._write(HUMAN_GATE_FILE, HumanGate(reason=reason))

    def read_human_gate(self) -> Optional[HumanGate]:
        return self._read(HUMAN_GATE_FILE, HumanGate)

    def clear_human_gate(self) -> None:
        path = self.report_dir / HUMAN_GATE_FILE
        if path.exists():
            path.unlink()
