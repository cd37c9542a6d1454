"""Commit and push the work behind a finished task.

Only a failure to set the commit message is fatal. Push failures are logged
and left for an operator to resolve out-of-band; the one recoverable case
(remote branch does not exist yet) is tracked and retried once.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from rich.console import Console

from .models import TaskReport, TaskStatus
from .protocols import VersionControl
from .vcs import last_line


console = Console()

NO_OP_COMMIT = "no-op"
NO_CHANGES_NOTE = "No working copy changes detected; skipped describe/push."


class CommitStatus(str, Enum):
    NO_OP = "no_op"
    COMMITTED = "committed"
    DESCRIBE_FAILED = "describe_failed"


@dataclass
class PushOutcome:
    """Result of pushing a branch, including the one-time tracking retry."""
    attempted: bool = False
    ok: bool = False
    tracked: bool = False
    output: str = ""


@dataclass
class CommitOutcome:
    """What happened to a done report's working copy changes."""
    status: CommitStatus
    report: TaskReport
    push: PushOutcome = field(default_factory=PushOutcome)
    warnings: list[str] = field(default_factory=list)

    @property
    def fatal(self) -> bool:
        return self.status == CommitStatus.DESCRIBE_FAILED


def compose_commit_message(
    task_id: str,
    report: TaskReport,
    spec_id: str = "",
    run_id: Optional[str] = None
) -> str:
    """Build a Conventional Commits message from the report's fields."""
    subject = f"feat(spec-{spec_id}): {task_id}"
    why = report.reasoning or report.root_cause or "No root cause provided."
    fix = report.fix or "No fix summary provided."
    if report.work:
        work = "\n".join(f"- {item}" for item in report.work)
    else:
        work = "- No work items reported."
    trailers = " ".join(t for t in [
        f"[spec:{spec_id}]" if spec_id else "",
        f"[todo:{task_id}]" if task_id else "",
        f"[run:{run_id}]" if run_id else "",
    ] if t)

    return "\n".join([
        subject,
        "",
        "Why:",
        why,
        "",
        "Fix:",
        fix,
        "",
        "Work:",
        work,
        "",
        trailers,
    ]).strip()


def push_with_recovery(vcs: VersionControl, branch: Optional[str]) -> PushOutcome:
    """Push ``branch``; track and retry once if the remote branch is missing."""
    if not branch:
        return PushOutcome()

    first = vcs.push_branch(branch)
    if first.ok:
        return PushOutcome(attempted=True, ok=True, output=first.output)

    if vcs.is_missing_remote_branch(first.output):
        console.print(f"[dim]Remote branch {branch} missing - tracking and retrying push[/dim]")
        vcs.track_remote_branch(branch)
        second = vcs.push_branch(branch)
        return PushOutcome(attempted=True, ok=second.ok, tracked=True, output=second.output)

    return PushOutcome(attempted=True, ok=False, output=first.output)


def commit_report(
    report: TaskReport,
    vcs: VersionControl,
    branch: Optional[str] = None,
    spec_id: str = "",
    run_id: Optional[str] = None
) -> CommitOutcome:
    """Describe and push the changes behind a ``done`` report.

    The input report is not modified; the outcome carries an updated copy.
    """
    report = report.model_copy(deep=True)

    if not vcs.has_pending_changes():
        report.commit = NO_OP_COMMIT
        report.work = [*report.work, NO_CHANGES_NOTE]
        return CommitOutcome(status=CommitStatus.NO_OP, report=report)

    message = report.commit or compose_commit_message(report.task_id, report, spec_id, run_id)
    report.commit = message

    described = vcs.describe(message)
    if not described.ok:
        report.status = TaskStatus.BLOCKED
        report.error = f"{vcs.name} describe failed: {described.output or 'unknown error'}"
        report.root_cause = "Failed to set commit message"
        report.reasoning = f"{vcs.name} describe must succeed before push."
        report.fix = f"Resolve the {vcs.name} error and retry."
        console.print(f"[red]Commit message could not be set for {report.task_id}:[/red] {last_line(described.output)}")
        return CommitOutcome(status=CommitStatus.DESCRIBE_FAILED, report=report)

    push = push_with_recovery(vcs, branch)
    warnings = []
    if push.attempted and not push.ok:
        warning = f"Failed to push {branch}: {push.output or 'unknown error'}"
        warnings.append(warning)
        console.print(f"[yellow][WARN] {warning}[/yellow]")

    return CommitOutcome(
        status=CommitStatus.COMMITTED,
        report=report,
        push=push,
        warnings=warnings,
    )
