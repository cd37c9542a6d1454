"""The task/review orchestration state machine.

``step(state, event, context)`` is a pure function: it never touches the
filesystem, the agents or version control. It returns the next state, the
effects the caller must execute (in order) and a reason for the transition.
The caller writes the effects first and then persists the state, so an
artifact is always durable before the index that depends on it advances.

Phases only move forward:

    tasks -> review -> (review-tasks -> review)* -> done

with early exits to ``done`` on a declared task failure, a commit failure, a
rate limit, a review timeout, or an integrity mismatch. Once ``done``, every
event except the pause-expiry guard is ignored, so a human gate is written at
most once per halt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Mapping, Optional, Union

from .codec import default_report, parse_report, parse_review
from .committer import CommitOutcome
from .integrity import fingerprint_matches
from .models import (
    Phase, Reviewer, ReviewResult, ReviewStatus, ReviewSummary, TaskKind, TaskReport,
    TaskStatus, TodoTask, UsageCategory, WorkflowState
)
from .rate_limit import backoff_message, is_rate_limit_error, pause_expired, resume_after
from .review import build_remediation_tasks, combine_reviews, missing_reviewers
from .usage import record_usage


GATE_APPROVED = "human review required before next run"
GATE_MAX_RETRIES = "reviewers requested changes; max retries reached"
GATE_REVIEW_TIMEOUT = "review timeout exceeded"
GATE_EMPTY_REMEDIATION = "changes requested but no remediation items generated"


@dataclass(frozen=True)
class MachineContext:
    """Inputs that are fixed for the whole run."""
    spec_id: str
    tasks: tuple[TodoTask, ...]
    reviewers: tuple[Reviewer, ...]
    review_max: int = 2
    review_timeout: Optional[timedelta] = timedelta(minutes=30)
    expected_fingerprint: Optional[str] = None
    actual_fingerprint: str = ""


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class Tick:
    """The driver asks what to do next.

    ``reviews`` holds the reviewer artifacts of the current round, read by
    the driver from the report directory.
    """
    now: datetime
    reviews: Mapping[str, ReviewResult] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskFinished:
    """An agent returned for the current todo or remediation task."""
    task_id: str
    output: str
    now: datetime
    diagnostic: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class CommitFinished:
    """The committer finished with the current task's done report."""
    task_id: str
    outcome: CommitOutcome


@dataclass(frozen=True)
class ReviewerFinished:
    """A reviewer agent returned.

    ``reported`` is False only when the call timed out: no artifact is written
    and the round stays open for that reviewer. Any other finished call, errored
    or not, is parsed and recorded.
    """
    reviewer_id: str
    round: int
    output: str
    now: datetime
    reported: bool = True
    diagnostic: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


Event = Union[Tick, TaskFinished, CommitFinished, ReviewerFinished]


# =============================================================================
# Effects
# =============================================================================

@dataclass(frozen=True)
class RunTask:
    task: TodoTask
    kind: TaskKind
    position: int
    total: int


@dataclass(frozen=True)
class DispatchReviewers:
    reviewers: tuple[Reviewer, ...]
    round: int


@dataclass(frozen=True)
class WriteReport:
    report: TaskReport


@dataclass(frozen=True)
class CommitWork:
    report: TaskReport


@dataclass(frozen=True)
class WriteReviewerResult:
    result: ReviewResult


@dataclass(frozen=True)
class WriteReviewSummary:
    summary: ReviewSummary


@dataclass(frozen=True)
class WriteReviewTodo:
    tasks: tuple[TodoTask, ...]


@dataclass(frozen=True)
class WriteHumanGate:
    reason: str


Effect = Union[
    RunTask, DispatchReviewers, WriteReport, CommitWork, WriteReviewerResult,
    WriteReviewSummary, WriteReviewTodo, WriteHumanGate,
]


@dataclass(frozen=True)
class Transition:
    """Result of one step. An empty ``reason`` means the state is unchanged."""
    state: WorkflowState
    effects: tuple[Effect, ...] = ()
    reason: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.reason)


# =============================================================================
# Helpers
# =============================================================================

def _update(state: WorkflowState, **changes) -> WorkflowState:
    return state.model_copy(update=changes, deep=True)


def _halt(
    state: WorkflowState,
    gate_reason: str,
    reason: str,
    effects: tuple[Effect, ...] = (),
    blocked: bool = False,
    failed: bool = False,
    **changes
) -> Transition:
    """Move to done and write the single human gate for this halt."""
    halted = _update(
        state,
        phase=Phase.DONE,
        done=True,
        blocked=state.blocked or blocked,
        failed=state.failed or failed,
        gate_reason=gate_reason,
        halted_phase=state.phase,
        **changes,
    )
    return Transition(halted, (*effects, WriteHumanGate(gate_reason)), reason)


def current_task(state: WorkflowState, context: MachineContext) -> Optional[tuple[TodoTask, TaskKind]]:
    """The task the current phase is waiting on, if any."""
    if state.phase == Phase.TASKS and state.task_index < len(context.tasks):
        return context.tasks[state.task_index], TaskKind.TODO
    if state.phase == Phase.REVIEW_TASKS and state.review_task_index < len(state.remediation_tasks):
        return state.remediation_tasks[state.review_task_index], TaskKind.REMEDIATION
    return None


def _rate_limit_changes(state: WorkflowState, now: datetime) -> dict:
    until = resume_after(state.rate_limit_count, now)
    changes = {"rate_limit_count": state.rate_limit_count + 1}
    if until is not None:
        changes["rate_limit_until"] = until
    return changes


# =============================================================================
# Step
# =============================================================================

def step(state: WorkflowState, event: Event, context: MachineContext) -> Transition:
    """Advance the workflow by one event."""
    if isinstance(event, Tick):
        return _on_tick(state, event, context)
    if state.done:
        return Transition(state)
    if isinstance(event, TaskFinished):
        return _on_task_finished(state, event, context)
    if isinstance(event, CommitFinished):
        return _on_commit_finished(state, event, context)
    if isinstance(event, ReviewerFinished):
        return _on_reviewer_finished(state, event, context)
    raise TypeError(f"Unknown event: {event!r}")


def _on_tick(state: WorkflowState, event: Tick, context: MachineContext) -> Transition:
    if pause_expired(state.rate_limit_until, event.now):
        return Transition(_update(state, rate_limit_until=None), (), "rate_limit_clear")

    if state.done:
        return Transition(state)

    if not fingerprint_matches(context.expected_fingerprint, context.actual_fingerprint):
        return _halt(
            state,
            f"workflow fingerprint mismatch (expected {context.expected_fingerprint}, "
            f"running {context.actual_fingerprint}); restore the workflow definition and resume",
            "workflow_sha_mismatch",
            blocked=True,
        )

    if state.phase == Phase.TASKS:
        return _tick_tasks(state, event, context)
    if state.phase == Phase.REVIEW:
        return _tick_review(state, event, context)
    if state.phase == Phase.REVIEW_TASKS:
        return _tick_review_tasks(state, event, context)
    return Transition(state)


def _tick_tasks(state: WorkflowState, event: Tick, context: MachineContext) -> Transition:
    total = len(context.tasks)
    if state.task_index >= total:
        if not context.reviewers:
            return _halt(state, GATE_APPROVED, "complete")
        return Transition(
            _update(state, phase=Phase.REVIEW, review_started_at=event.now),
            (),
            "review_start",
        )
    task = context.tasks[state.task_index]
    return Transition(state, (RunTask(task, TaskKind.TODO, state.task_index, total),))


def _tick_review(state: WorkflowState, event: Tick, context: MachineContext) -> Transition:
    round_number = state.review_round
    started_at = state.review_started_at
    reason = ""
    if started_at is None:
        state = _update(state, review_started_at=event.now)
        started_at = event.now
        reason = "review_started"

    results = {
        reviewer_id: result for reviewer_id, result in event.reviews.items()
        if result.round == round_number
    }
    missing = missing_reviewers(context.reviewers, results)
    if not missing:
        return _aggregate(state, results, context)

    if context.review_timeout and event.now - started_at > context.review_timeout:
        return _halt(state, GATE_REVIEW_TIMEOUT, "review_timeout", blocked=True)

    if state.rate_limit_until is not None and event.now < state.rate_limit_until:
        return Transition(state, (), reason)

    return Transition(state, (DispatchReviewers(tuple(missing), round_number),), reason)


def _aggregate(
    state: WorkflowState,
    results: Mapping[str, ReviewResult],
    context: MachineContext
) -> Transition:
    summary = combine_reviews(context.reviewers, results)
    write_summary = WriteReviewSummary(summary)

    if summary.status == ReviewStatus.APPROVED:
        return _halt(state, GATE_APPROVED, "review_done", (write_summary,))

    if state.review_retry >= context.review_max:
        return _halt(state, GATE_MAX_RETRIES, "review_done", (write_summary,))

    tasks = build_remediation_tasks(context.reviewers, results)
    if not tasks:
        return _halt(state, GATE_EMPTY_REMEDIATION, "review_tasks_empty", (write_summary,))

    next_state = _update(
        state,
        phase=Phase.REVIEW_TASKS,
        review_retry=state.review_retry + 1,
        review_task_index=0,
        remediation_tasks=tasks,
        review_started_at=None,
    )
    return Transition(
        next_state,
        (write_summary, WriteReviewTodo(tuple(tasks))),
        "review_task_start",
    )


def _tick_review_tasks(state: WorkflowState, event: Tick, context: MachineContext) -> Transition:
    tasks = state.remediation_tasks
    if not tasks:
        return _halt(state, GATE_EMPTY_REMEDIATION, "review_tasks_empty")
    if state.review_task_index >= len(tasks):
        return Transition(
            _update(state, phase=Phase.REVIEW, review_started_at=event.now),
            (),
            "review_restart",
        )
    task = tasks[state.review_task_index]
    return Transition(
        state,
        (RunTask(task, TaskKind.REMEDIATION, state.review_task_index, len(tasks)),),
    )


def _on_task_finished(state: WorkflowState, event: TaskFinished, context: MachineContext) -> Transition:
    current = current_task(state, context)
    if current is None or current[0].id != event.task_id:
        return Transition(state)
    task, kind = current

    if is_rate_limit_error(event.diagnostic or event.output):
        message = backoff_message(state.rate_limit_count, event.now)
        report = default_report(task.id, TaskStatus.BLOCKED)
        report.error = message
        report.root_cause = "Rate limit reached"
        report.reasoning = "Provider returned 429/usage_limit_reached during task execution."
        report.fix = "Wait for quota reset then resume the run."
        return _halt(
            state,
            message,
            "rate_limit",
            (WriteReport(report),),
            blocked=True,
            **_rate_limit_changes(state, event.now),
        )

    report = parse_report(task.id, event.output)
    usage = record_usage(state.usage, UsageCategory.TASK, event.input_tokens, event.output_tokens)
    state = _update(state, usage=usage)
    prefix = "review_task" if kind == TaskKind.REMEDIATION else "task"

    if report.status == TaskStatus.BLOCKED:
        detail = report.error or report.root_cause or "no details reported"
        return _halt(
            state, f"task {task.id} blocked: {detail}", f"{prefix}_blocked",
            (WriteReport(report),), blocked=True,
        )

    if report.status == TaskStatus.FAILED:
        detail = report.error or report.root_cause or "no structured report produced"
        return _halt(
            state, f"task {task.id} failed: {detail}", f"{prefix}_failed",
            (WriteReport(report),), failed=True,
        )

    return Transition(state, (WriteReport(report), CommitWork(report)), f"{prefix}_report")


def _on_commit_finished(state: WorkflowState, event: CommitFinished, context: MachineContext) -> Transition:
    current = current_task(state, context)
    if current is None or current[0].id != event.task_id:
        return Transition(state)
    _, kind = current
    outcome = event.outcome

    if outcome.fatal:
        return _halt(
            state,
            f"commit failed for task {event.task_id}: {outcome.report.error}",
            "commit_describe_failed",
            (WriteReport(outcome.report),),
            blocked=True,
        )

    if kind == TaskKind.REMEDIATION:
        advanced = _update(state, review_task_index=state.review_task_index + 1)
        reason = "review_task_advance"
    else:
        advanced = _update(state, task_index=state.task_index + 1)
        reason = "advance"
    return Transition(advanced, (WriteReport(outcome.report),), reason)


def _on_reviewer_finished(state: WorkflowState, event: ReviewerFinished, context: MachineContext) -> Transition:
    if state.phase != Phase.REVIEW or event.round != state.review_round:
        return Transition(state)
    if event.reviewer_id not in {r.id for r in context.reviewers}:
        return Transition(state)

    if is_rate_limit_error(event.diagnostic or event.output):
        message = backoff_message(state.rate_limit_count, event.now, " during review")
        return _halt(
            state,
            message,
            "rate_limit",
            blocked=True,
            **_rate_limit_changes(state, event.now),
        )

    if not event.reported:
        return Transition(state)

    review = parse_review(event.output, event.reviewer_id, event.round)
    usage = record_usage(state.usage, UsageCategory.REVIEW, event.input_tokens, event.output_tokens)
    return Transition(
        _update(state, usage=usage),
        (WriteReviewerResult(review),),
        "review_result",
    )
