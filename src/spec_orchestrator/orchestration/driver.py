"""Workflow driver - the effectful loop around the state machine.

Handles:
- Ticking the machine until it halts, goes idle, or hits the iteration cap
- Executing effects in order (agent calls, commits, artifact writes)
- Persisting state after the artifacts a transition depends on are written
- Reviewer fan-out with results fed back one at a time
- Run records and the JSONL run log
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from rich.console import Console

from ..agents import AgentOptions, AgentResult
from ..artifacts import ArtifactStore
from ..committer import commit_report
from ..errors import OrchestratorError
from ..integrity import compute_fingerprint, default_workflow_path
from ..machine import (
    CommitFinished, CommitWork, DispatchReviewers, Effect, Event, MachineContext,
    ReviewerFinished, RunTask, TaskFinished, Tick, Transition, WriteHumanGate,
    WriteReport, WriteReviewerResult, WriteReviewSummary, WriteReviewTodo, step
)
from ..models import (
    Phase, Reviewer, RunnerConfig, RunRecord, Spec, TaskKind, Todo, WorkflowState
)
from ..prompts import build_review_prompt, build_system_prompt, build_task_prompt
from ..protocols import AgentBackend, VersionControl
from ..rate_limit import classify_error
from ..run_logger import RunLogger
from ..state_store import StateStore
from ..workspace import WorkspaceManager
from .recovery import RecoveryManager


console = Console()


@dataclass
class RunOutcome:
    """How one ``run`` invocation ended."""
    state: WorkflowState
    iterations: int
    status: str  # halted, idle, stopped, max_iterations

    @property
    def finished(self) -> bool:
        return self.state.done


def _record_status(state: WorkflowState, status: str) -> str:
    if not state.done:
        return status
    return "halted" if state.blocked or state.failed else "completed"


def make_run_id(now: Optional[datetime] = None) -> str:
    return f"run-{(now or datetime.now()).strftime('%Y%m%d-%H%M%S')}"


class WorkflowDriver:
    """Runs a spec's workflow to completion or to the next human gate.

    Dependencies are injected for testability:
    - VersionControl: commits and pushes done tasks
    - AgentBackend (x2): task/remediation agent and reviewer agent
    - StateStore / ArtifactStore: durable state and human-facing artifacts
    - RecoveryManager: stop requests between ticks
    - WorkspaceManager: where the JSONL run log goes (when no RunLogger is given)
    """

    def __init__(
        self,
        config: RunnerConfig,
        spec: Spec,
        todo: Todo,
        reviewers: Sequence[Reviewer],
        vcs: VersionControl,
        task_agent: AgentBackend,
        review_agent: AgentBackend,
        store: StateStore,
        artifacts: ArtifactStore,
        recovery: Optional[RecoveryManager] = None,
        run_logger: Optional[RunLogger] = None,
        workspace: Optional[WorkspaceManager] = None,
        global_prompt: str = "",
        review_prompt: str = "",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.spec = spec
        self.todo = todo
        self.reviewers = list(reviewers)
        self.vcs = vcs
        self.task_agent = task_agent
        self.review_agent = review_agent
        self.store = store
        self.artifacts = artifacts
        self.recovery = recovery
        self.run_logger = run_logger
        self.workspace = workspace
        self.global_prompt = global_prompt
        self.review_prompt = review_prompt
        self.clock = clock

        self.run_id = config.run_id or ""
        self.context = self.build_context()
        self._system_prompt = ""

    def build_context(self) -> MachineContext:
        timeout = self.config.review_timeout_seconds
        workflow_path = Path(self.config.workflow_path) if self.config.workflow_path else None
        actual = compute_fingerprint(workflow_path) if self.config.workflow_sha else ""
        if self.config.workflow_sha and not actual:
            console.print(
                f"[yellow]Warning:[/yellow] workflow definition {workflow_path or default_workflow_path()} "
                "could not be read; fingerprint check skipped"
            )
        return MachineContext(
            spec_id=self.spec.id,
            tasks=tuple(self.todo.tasks),
            reviewers=tuple(self.reviewers),
            review_max=self.config.review_max,
            review_timeout=timedelta(seconds=timeout) if timeout > 0 else None,
            expected_fingerprint=self.config.workflow_sha,
            actual_fingerprint=actual,
        )

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> RunOutcome:
        """Tick the machine until it halts, idles, is stopped, or runs out of iterations.

        Raises:
            OrchestratorError: For process-level faults such as a missing
                agent binary. The run record is marked failed first.
        """
        state = self.store.load()
        if not self.run_id:
            self.run_id = state.run_id or make_run_id(self.clock())
        if state.run_id != self.run_id:
            state = self.store.save(state.model_copy(update={"run_id": self.run_id}), "run_start")
        self._system_prompt = build_system_prompt(self.spec, self.todo, self.run_id, self.config.branch)
        if self.run_logger is None and self.workspace is not None:
            self.run_logger = RunLogger(self.workspace, self.spec.id, self.run_id)

        self.store.start_run(RunRecord(
            run_id=self.run_id,
            spec_id=self.spec.id,
            description=self.spec.title,
        ))
        if self.run_logger:
            self.run_logger.log_run_start(
                config=self.config.model_dump(mode="json"),
                resumed_phase=state.phase.value,
            )

        iterations = 0
        status = "max_iterations"
        try:
            while iterations < self.config.max_iterations:
                if self.recovery and self.recovery.is_stop_requested():
                    status = "stopped"
                    break

                transition = step(state, self._tick(state), self.context)
                iterations += 1
                state = await self._apply(transition)

                if not transition.effects and not transition.changed:
                    status = "halted" if state.done else "idle"
                    break
        except OrchestratorError as e:
            self.store.finish_run(self.run_id, "failed", str(e), iterations)
            if self.run_logger:
                self.run_logger.log_error("orchestrator", str(e))
                self.run_logger.log_run_end("failed", str(e), iterations)
            raise

        if status == "stopped" and self.recovery:
            self.recovery.clear_stop_request()

        summary = state.gate_reason or f"{status} in phase {state.phase.value}"
        self.store.finish_run(self.run_id, _record_status(state, status), summary, iterations)
        if self.run_logger:
            self.run_logger.log_run_end(status, summary, iterations)
        return RunOutcome(state=state, iterations=iterations, status=status)

    def _tick(self, state: WorkflowState) -> Tick:
        reviews = {}
        if state.phase == Phase.REVIEW:
            reviews = self.artifacts.current_round_results(self.reviewers, state.review_round)
        return Tick(now=self.clock(), reviews=reviews)

    async def _apply(self, transition: Transition) -> WorkflowState:
        """Execute a transition's effects in order and persist its state.

        Write effects land before the state is saved. Effects that produce a
        follow-up event (agent calls, commits) save the state first and then
        feed the event back into the machine.
        """
        state = transition.state
        persisted = not transition.changed

        def persist() -> None:
            nonlocal state, persisted
            if not persisted:
                state = self.store.save(state, transition.reason)
                persisted = True
                self._log_transition(transition)

        for effect in transition.effects:
            if isinstance(effect, (RunTask, CommitWork, DispatchReviewers)):
                persist()
                state = await self._perform(state, effect)
                persisted = True
            else:
                self._write(effect)
        persist()
        return state

    async def _feed(self, state: WorkflowState, event: Event) -> WorkflowState:
        return await self._apply(step(state, event, self.context))

    # =========================================================================
    # Effects
    # =========================================================================

    def _write(self, effect: Effect) -> None:
        if isinstance(effect, WriteReport):
            self.artifacts.write_report(effect.report)
        elif isinstance(effect, WriteReviewerResult):
            self.artifacts.write_reviewer_result(effect.result)
            console.print(f"  [dim]Review {effect.result.reviewer}:[/dim] {effect.result.status.value}")
        elif isinstance(effect, WriteReviewSummary):
            self.artifacts.write_review_summary(effect.summary)
        elif isinstance(effect, WriteReviewTodo):
            self.artifacts.write_review_todo(list(effect.tasks))
            console.print(f"[yellow]Changes requested - {len(effect.tasks)} remediation task(s)[/yellow]")
        elif isinstance(effect, WriteHumanGate):
            self.artifacts.write_human_gate(effect.reason)
            if self.run_logger:
                self.run_logger.log_human_gate(effect.reason)
            console.print(f"[bold yellow]Human gate:[/bold yellow] {effect.reason}")
        else:
            raise TypeError(f"Unknown effect: {effect!r}")

    async def _perform(self, state: WorkflowState, effect: Effect) -> WorkflowState:
        if isinstance(effect, RunTask):
            return await self._run_task(state, effect)
        if isinstance(effect, CommitWork):
            return await self._commit(state, effect)
        if isinstance(effect, DispatchReviewers):
            return await self._dispatch_reviewers(state, effect)
        raise TypeError(f"Unknown effect: {effect!r}")

    async def _run_task(self, state: WorkflowState, effect: RunTask) -> WorkflowState:
        task = effect.task
        remediation = effect.kind == TaskKind.REMEDIATION
        label = "Review task" if remediation else "Task"
        console.print(f"[cyan]{label} {effect.position + 1}/{effect.total}:[/cyan] {task.id}")

        prompt = build_task_prompt(
            task,
            effect.position,
            effect.total,
            self._system_prompt,
            global_prompt=self.global_prompt,
            remediation=remediation,
            vcs_name=self.vcs.name,
            branch=self.config.branch,
        )
        options = AgentOptions(
            model=self.config.resolved_model(),
            timeout_seconds=self.config.task_timeout_seconds,
            cwd=self.config.cwd,
            label=task.id,
        )
        result = await self._call_agent(self.task_agent, prompt, options, effect.kind.value)
        return await self._feed(state, TaskFinished(
            task_id=task.id,
            output=result.output,
            now=self.clock(),
            diagnostic=result.diagnostic_text,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        ))

    async def _commit(self, state: WorkflowState, effect: CommitWork) -> WorkflowState:
        outcome = await asyncio.to_thread(
            commit_report,
            effect.report,
            self.vcs,
            self.config.branch,
            self.spec.id,
            self.run_id,
        )
        if self.run_logger:
            self.run_logger.log_commit(
                effect.report.task_id,
                outcome.status.value,
                outcome.push.ok,
                outcome.warnings,
            )
        return await self._feed(state, CommitFinished(task_id=effect.report.task_id, outcome=outcome))

    async def _dispatch_reviewers(self, state: WorkflowState, effect: DispatchReviewers) -> WorkflowState:
        console.print(
            f"[cyan]Review round {effect.round}:[/cyan] "
            f"{', '.join(r.id for r in effect.reviewers)}"
        )
        reports = self.artifacts.reports_digest()

        async def review(reviewer: Reviewer) -> AgentResult:
            prompt = build_review_prompt(reviewer, self._system_prompt, reports, self.review_prompt)
            options = AgentOptions(
                model=reviewer.model or self.config.resolved_review_model(),
                timeout_seconds=self.config.review_agent_timeout_seconds,
                cwd=self.config.cwd,
                label=reviewer.id,
            )
            return await self._call_agent(self.review_agent, prompt, options, "review")

        results = await asyncio.gather(*(review(r) for r in effect.reviewers))

        for reviewer, result in zip(effect.reviewers, results):
            if result.timed_out:
                console.print(f"  [yellow]Reviewer {reviewer.id} timed out; round stays open[/yellow]")
            elif result.error:
                console.print(f"  [yellow]Reviewer {reviewer.id} failed:[/yellow] {result.error}")
            state = await self._feed(state, ReviewerFinished(
                reviewer_id=reviewer.id,
                round=effect.round,
                output=result.output,
                now=self.clock(),
                reported=not result.timed_out,
                diagnostic=result.diagnostic_text,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            ))
        return state

    async def _call_agent(
        self,
        agent: AgentBackend,
        prompt: str,
        options: AgentOptions,
        kind: str
    ) -> AgentResult:
        """Run one agent call; OS-level failures become an errored result."""
        if self.run_logger:
            self.run_logger.log_prompt(options.label, kind, prompt, options.model)
        try:
            result = await agent.run(prompt, options)
        except OSError as e:
            result = AgentResult(
                error=f"{agent.name} could not be started: {e}",
                error_category=classify_error(str(e)),
                model=options.model,
            )

        if self.run_logger:
            duration = None
            if result.started_at and result.ended_at:
                duration = round((result.ended_at - result.started_at).total_seconds(), 2)
            self.run_logger.log_agent_result(
                options.label,
                result.output,
                timed_out=result.timed_out,
                error=result.error,
                error_category=result.error_category.value if result.error_category else None,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                duration_seconds=duration,
            )
        return result

    def _log_transition(self, transition: Transition) -> None:
        if self.run_logger:
            self.run_logger.log_transition(
                transition.reason,
                transition.state.phase.value,
                transition.state.done,
                [type(e).__name__ for e in transition.effects],
            )
