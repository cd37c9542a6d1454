"""Tests for the spec-orch command line."""

import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from spec_orchestrator import __version__
from spec_orchestrator.agents import AgentOptions, AgentResult
from spec_orchestrator.artifacts import ArtifactStore
from spec_orchestrator.cli import main
from spec_orchestrator.integrity import compute_fingerprint
from spec_orchestrator.models import Phase, ReviewStatus, ReviewSummary, TodoTask, WorkflowState
from spec_orchestrator.state_store import StateStore
from spec_orchestrator.vcs import VcsResult
from spec_orchestrator.workspace import WorkspaceManager


# =============================================================================
# Fixtures and doubles
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("SPEC_ORCH_"):
            monkeypatch.delenv(name)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "spec.json").write_text(json.dumps({"v": 1, "id": "000", "title": "Base"}))
    (tmp_path / "todo.json").write_text(json.dumps({
        "id": "000",
        "tasks": [{"id": "t1", "do": "write it", "verify": "pytest"}],
    }))
    reviewers = tmp_path / "reviewers"
    reviewers.mkdir()
    (reviewers / "security.md").write_text("Look for injection.")
    return tmp_path


def _inputs(project: Path) -> list[str]:
    return [
        "--spec", str(project / "spec.json"),
        "--todo", str(project / "todo.json"),
        "--cwd", str(project),
    ]


class FakeAgent:
    def __init__(self, name: str, output: str):
        self.name = name
        self.output = output

    async def run(self, prompt: str, options: AgentOptions) -> AgentResult:
        return AgentResult(output=self.output)


class FakeVcs:
    name = "git"

    def has_pending_changes(self) -> bool:
        return False

    def describe(self, message: str) -> VcsResult:
        return VcsResult(ok=True)

    def push_branch(self, branch: str) -> VcsResult:
        return VcsResult(ok=True)

    def track_remote_branch(self, branch: str) -> VcsResult:
        return VcsResult(ok=True)

    def is_missing_remote_branch(self, output: str) -> bool:
        return False


def _fake_agents(kind):
    if kind.value == "claude":
        return FakeAgent("claude", json.dumps({"status": "approved", "issues": [], "next": []}))
    return FakeAgent("codex", json.dumps({"taskId": "t1", "status": "done"}))


class TestMain:
    """Tests for the command group."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(main, ["--help"])
        for command in ("run", "status", "history", "resume", "stop", "fingerprint", "reviewers"):
            assert command in result.output


class TestRunCommand:
    """Tests for `spec-orch run`."""

    def test_run_to_approval_gate(self, project: Path):
        args = ["run", *_inputs(project), "--reviewers-dir", str(project / "reviewers"),
                "--review-agent", "claude", "--vcs", "git", "--run-id", "run-cli"]
        with patch("spec_orchestrator.cli.create_agent", side_effect=_fake_agents), \
                patch("spec_orchestrator.cli.create_vcs", return_value=FakeVcs()):
            result = CliRunner().invoke(main, args)

        assert result.exit_code == 0, result.output
        assert "Human gate" in result.output

        state = StateStore(WorkspaceManager(project), "000").load()
        assert state.done and not state.blocked
        assert state.run_id == "run-cli"
        artifacts = ArtifactStore(project / "reports")
        assert artifacts.read_report("t1").commit == "no-op"
        assert artifacts.read_human_gate() is not None

    def test_missing_spec_exits_with_error(self, tmp_path: Path):
        result = CliRunner().invoke(main, ["run", "--spec", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Spec file not found" in result.output

    def test_invalid_env_value_exits(self, project: Path, monkeypatch):
        monkeypatch.setenv("SPEC_ORCH_MAX_ITERATIONS", "many")
        result = CliRunner().invoke(main, ["run", *_inputs(project)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestStatusAndHistory:
    """Tests for `spec-orch status` and `spec-orch history`."""

    def test_status_without_run(self, project: Path):
        result = CliRunner().invoke(main, ["status", *_inputs(project)])
        assert result.exit_code == 0
        assert "No run recorded" in result.output

    def test_status_shows_gate(self, project: Path):
        store = StateStore(WorkspaceManager(project), "000")
        store.save(WorkflowState(run_id="run-1", phase=Phase.DONE, done=True,
                                 gate_reason="review timeout exceeded"), "review_timeout")
        ArtifactStore(project / "reports").write_human_gate("review timeout exceeded")

        result = CliRunner().invoke(main, ["status", *_inputs(project)])

        assert result.exit_code == 0
        assert "run-1" in result.output
        assert "review timeout exceeded" in result.output

    def test_status_shows_review_and_pending_remediation(self, project: Path):
        tasks = [TodoTask(id="r1-1", do="rename x"), TodoTask(id="r1-2", do="add a test")]
        StateStore(WorkspaceManager(project), "000").save(
            WorkflowState(phase=Phase.REVIEW_TASKS, remediation_tasks=tasks, review_task_index=1),
            "review_result",
        )
        artifacts = ArtifactStore(project / "reports")
        artifacts.write_review_summary(ReviewSummary(status=ReviewStatus.CHANGES_REQUESTED, issues=["x is vague"]))
        artifacts.write_review_todo(tasks)

        result = CliRunner().invoke(main, ["status", *_inputs(project)])

        assert result.exit_code == 0, result.output
        assert "changes_requested" in result.output
        assert "x is vague" in result.output
        assert "Remediation pending: 1" in result.output
        assert "r1-2" in result.output
        assert "r1-1" not in result.output

    def test_history_without_runs(self, project: Path):
        result = CliRunner().invoke(main, ["history", *_inputs(project)])
        assert "No runs recorded" in result.output

    def test_history_lists_runs_and_transitions(self, project: Path):
        from spec_orchestrator.models import RunRecord

        store = StateStore(WorkspaceManager(project), "000")
        store.start_run(RunRecord(run_id="run-7", spec_id="000"))
        store.finish_run("run-7", "completed", "done", 3)
        store.save(WorkflowState(), "advance")

        result = CliRunner().invoke(main, ["history", *_inputs(project)])

        assert result.exit_code == 0
        assert "run-7" in result.output
        assert "advance" in result.output


class TestResumeAndStop:
    """Tests for `spec-orch resume` and `spec-orch stop`."""

    def test_resume_refused_for_running_state(self, project: Path):
        StateStore(WorkspaceManager(project), "000").save(WorkflowState(), "advance")

        result = CliRunner().invoke(main, ["resume", *_inputs(project)])

        assert result.exit_code == 1
        assert "Cannot resume" in result.output

    def test_resume_reopens_blocked_run(self, project: Path):
        store = StateStore(WorkspaceManager(project), "000")
        store.save(WorkflowState(
            phase=Phase.DONE, done=True, blocked=True, halted_phase=Phase.TASKS,
            rate_limit_count=1, rate_limit_until=datetime.now() - timedelta(minutes=1),
        ), "rate_limit")

        result = CliRunner().invoke(main, ["resume", *_inputs(project)])

        assert result.exit_code == 0, result.output
        state = store.load()
        assert state.phase == Phase.TASKS
        assert not state.done
        assert state.rate_limit_count == 1

    def test_stop_writes_stop_file(self, project: Path):
        result = CliRunner().invoke(main, ["stop", "--cwd", str(project), "--reason", "lunch"])

        assert result.exit_code == 0
        stop_file = WorkspaceManager(project).stop_file
        assert stop_file.read_text().endswith("lunch")


class TestInspectionCommands:
    """Tests for `spec-orch fingerprint` and `spec-orch reviewers`."""

    def test_fingerprint_of_file(self, tmp_path: Path):
        workflow = tmp_path / "workflow.py"
        workflow.write_text("steps = []\n")

        result = CliRunner().invoke(main, ["fingerprint", str(workflow)])

        assert result.exit_code == 0
        assert result.output.strip() == compute_fingerprint(workflow)

    def test_fingerprint_default_is_installed_machine(self):
        result = CliRunner().invoke(main, ["fingerprint"])
        assert result.exit_code == 0
        assert len(result.output.strip()) == 64

    def test_reviewers_defaults(self):
        result = CliRunner().invoke(main, ["reviewers"])
        assert result.exit_code == 0
        assert "security" in result.output

    def test_reviewers_from_directory(self, project: Path):
        result = CliRunner().invoke(main, ["reviewers", "--reviewers-dir", str(project / "reviewers")])
        assert result.exit_code == 0
        assert "security" in result.output
        assert "quality" not in result.output
