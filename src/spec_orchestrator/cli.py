"""CLI interface for the spec orchestrator."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .agents import create_agent
from .artifacts import ArtifactStore
from .config import load_config, load_reviewers, load_spec, load_todo
from .errors import OrchestratorError
from .integrity import compute_fingerprint, default_workflow_path
from .models import AgentKind, Phase, ReviewStatus, RunnerConfig, VcsKind, WorkflowState
from .orchestration import RecoveryManager, WorkflowDriver
from .prompts import load_prompt
from .state_store import StateStore
from .usage import format_tokens
from .vcs import create_vcs
from .workspace import WorkspaceManager

console = Console()

AGENT_CHOICES = [k.value for k in AgentKind]
VCS_CHOICES = [k.value for k in VcsKind]


def input_options(func):
    """Options shared by every command that works on a spec's run."""
    options = [
        click.option('--spec', 'spec_path', help='Spec JSON file [SPEC_ORCH_SPEC_PATH]'),
        click.option('--todo', 'todo_path', help='Todo JSON file [SPEC_ORCH_TODO_PATH]'),
        click.option('--report-dir', help='Artifact directory [SPEC_ORCH_REPORT_DIR]'),
        click.option('--state-dir', help='Workflow state directory [SPEC_ORCH_STATE_DIR]'),
        click.option('--cwd', help='Working copy for agents and VCS [SPEC_ORCH_CWD]'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load_config_or_exit(**overrides) -> RunnerConfig:
    try:
        return load_config(**overrides)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _project_path(config: RunnerConfig) -> Path:
    return Path(config.cwd) if config.cwd else Path.cwd()


def _open_store(config: RunnerConfig, spec_id: str) -> StateStore:
    workspace = WorkspaceManager(_project_path(config), config.state_dir)
    return StateStore(workspace, spec_id)


def _print_state(state: WorkflowState, task_total: int) -> None:
    table = Table(title=f"Run {state.run_id or '(not started)'}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    phase_colors = {
        Phase.TASKS: "white",
        Phase.REVIEW: "yellow",
        Phase.REVIEW_TASKS: "yellow",
        Phase.DONE: "green",
    }
    color = "red" if state.blocked or state.failed else phase_colors.get(state.phase, "white")
    table.add_row("Phase", f"[{color}]{state.phase.value}[/{color}]")
    table.add_row("Tasks", f"{min(state.task_index, task_total)}/{task_total}")
    table.add_row("Review round", str(state.review_round))
    if state.remediation_tasks:
        table.add_row(
            "Remediation",
            f"{state.review_task_index}/{len(state.remediation_tasks)}",
        )
    if state.blocked:
        table.add_row("Blocked", "[red]yes[/red]")
    if state.failed:
        table.add_row("Failed", "[red]yes[/red]")
    if state.gate_reason:
        table.add_row("Gate", state.gate_reason)
    if state.rate_limit_count:
        table.add_row("Rate limit hits", str(state.rate_limit_count))
    if state.rate_limit_until:
        table.add_row("Paused until", state.rate_limit_until.isoformat(timespec="seconds"))
    usage = state.usage
    table.add_row(
        "Tokens",
        f"{format_tokens(usage.overall.total_tokens)} "
        f"(task {format_tokens(usage.task.total_tokens)}, "
        f"review {format_tokens(usage.review.total_tokens)})",
    )
    table.add_row("Updated", state.updated_at.isoformat(timespec="seconds"))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def main():
    """Spec Orchestrator - drive coding agents through tasks and review."""
    pass


@main.command()
@input_options
@click.option('--agent', type=click.Choice(AGENT_CHOICES), help='Task agent backend [SPEC_ORCH_AGENT]')
@click.option('--review-agent', type=click.Choice(AGENT_CHOICES), help='Reviewer backend [SPEC_ORCH_REVIEW_AGENT]')
@click.option('--model', help='Model override [SPEC_ORCH_MODEL]')
@click.option('--task-timeout', 'task_timeout_seconds', type=int, help='Seconds per task call [SPEC_ORCH_TASK_TIMEOUT]')
@click.option('--review-agent-timeout', 'review_agent_timeout_seconds', type=int,
              help='Seconds per reviewer call [SPEC_ORCH_REVIEW_AGENT_TIMEOUT]')
@click.option('--max-iterations', type=int, help='Maximum ticks for this invocation [SPEC_ORCH_MAX_ITERATIONS]')
@click.option('--review-max', type=int, help='Rejected rounds before a human gate [SPEC_ORCH_REVIEW_MAX]')
@click.option('--review-timeout', 'review_timeout_seconds', type=int,
              help='Seconds per review round, 0 disables [SPEC_ORCH_REVIEW_TIMEOUT]')
@click.option('--workflow-sha', help='Expected workflow fingerprint [SPEC_ORCH_WORKFLOW_SHA]')
@click.option('--workflow-path', help='Workflow definition to fingerprint [SPEC_ORCH_WORKFLOW_PATH]')
@click.option('--vcs', type=click.Choice(VCS_CHOICES), help='Version control backend [SPEC_ORCH_VCS]')
@click.option('--branch', help='Branch/bookmark to push [SPEC_ORCH_BRANCH]')
@click.option('--run-id', help='Run identifier [SPEC_ORCH_RUN_ID]')
@click.option('--prompt', 'prompt_path', help='Global prompt file [SPEC_ORCH_PROMPT_PATH]')
@click.option('--review-prompt', 'review_prompt_path', help='Review prompt file [SPEC_ORCH_REVIEW_PROMPT_PATH]')
@click.option('--reviewers-dir', help='Directory of reviewer *.md prompts [SPEC_ORCH_REVIEWERS_DIR]')
@click.option('--review-models', 'review_models_file', help='Reviewer model overrides JSON [SPEC_ORCH_REVIEW_MODELS_FILE]')
def run(**options):
    """Run tasks and review until done or a human gate.

    Re-running continues from the persisted state: completed tasks are never
    executed again. Every option can also be set through the environment
    variable shown in its help text.
    """
    config = _load_config_or_exit(**options)

    try:
        spec = load_spec(config.spec_path)
        todo = load_todo(config.todo_path)
        reviewers = load_reviewers(config.reviewers_dir, config.review_models_file)
        task_agent = create_agent(config.agent)
        review_agent = create_agent(config.review_agent)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    project_path = _project_path(config)
    workspace = WorkspaceManager(project_path, config.state_dir)
    store = StateStore(workspace, spec.id)
    artifacts = ArtifactStore(project_path / config.report_dir)
    recovery = RecoveryManager(workspace)

    console.print(f"[bold]Spec:[/bold] {spec.id} - {spec.title}")
    console.print(f"[bold]Agent:[/bold] {config.agent.value} ({config.resolved_model()})")
    console.print(f"[bold]Reviewers:[/bold] {', '.join(r.id for r in reviewers)}")

    driver = WorkflowDriver(
        config=config,
        spec=spec,
        todo=todo,
        reviewers=reviewers,
        vcs=create_vcs(config.vcs, project_path),
        task_agent=task_agent,
        review_agent=review_agent,
        store=store,
        artifacts=artifacts,
        recovery=recovery,
        workspace=workspace,
        global_prompt=load_prompt(config.prompt_path),
        review_prompt=load_prompt(config.review_prompt_path),
    )

    recovery.setup_signal_handlers()
    try:
        outcome = asyncio.run(driver.run())
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        recovery.restore_signal_handlers()

    state = outcome.state
    _print_state(state, len(todo.tasks))
    if state.done:
        style = "red" if state.blocked or state.failed else "green"
        console.print(Panel(
            state.gate_reason or "done",
            title="Human gate",
            border_style=style,
        ))
    else:
        console.print(f"[yellow]Stopped ({outcome.status}) after {outcome.iterations} iteration(s).[/yellow]")


@main.command()
@input_options
def status(**options):
    """Show the persisted workflow state of a spec."""
    config = _load_config_or_exit(**options)
    try:
        spec = load_spec(config.spec_path)
        todo = load_todo(config.todo_path)
        store = _open_store(config, spec.id)
        if not store.exists():
            console.print(f"[yellow]No run recorded for {spec.id} yet. Run 'spec-orch run' to start.[/yellow]")
            return
        state = store.load()
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_state(state, len(todo.tasks))

    artifacts = ArtifactStore(_project_path(config) / config.report_dir)
    summary = artifacts.read_review_summary()
    if summary is not None:
        color = "green" if summary.status == ReviewStatus.APPROVED else "yellow"
        console.print(f"[bold]Last review:[/bold] [{color}]{summary.status.value}[/{color}]")
        for issue in summary.issues:
            console.print(f"  - {issue}")

    if state.phase == Phase.REVIEW_TASKS:
        pending = artifacts.read_review_todo()[state.review_task_index:]
        if pending:
            console.print(f"[bold]Remediation pending:[/bold] {len(pending)}")
            for task in pending:
                console.print(f"  - {task.id}: {task.do}")

    gate = artifacts.read_human_gate()
    if gate is not None:
        console.print(Panel(gate.reason, title="Human gate", border_style="yellow"))


@main.command()
@input_options
@click.option('--limit', default=20, help='Number of recent transitions to show')
def history(limit: int, **options):
    """Show run records and recent state transitions."""
    config = _load_config_or_exit(**options)
    try:
        spec = load_spec(config.spec_path)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    store = _open_store(config, spec.id)

    runs = store.runs()
    if not runs:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        return

    runs_table = Table(title=f"Runs: {spec.id}")
    runs_table.add_column("Run", style="cyan")
    runs_table.add_column("Started")
    runs_table.add_column("Ended")
    runs_table.add_column("Status")
    runs_table.add_column("Ticks", justify="right")
    runs_table.add_column("Summary")
    for record in runs:
        runs_table.add_row(
            record.run_id,
            record.started_at.isoformat(timespec="seconds"),
            record.ended_at.isoformat(timespec="seconds") if record.ended_at else "-",
            record.status,
            str(record.iterations),
            record.summary or "",
        )
    console.print(runs_table)

    transitions = store.transitions(limit=limit)
    if transitions:
        table = Table(title="Recent transitions")
        table.add_column("Time", style="dim")
        table.add_column("Reason", style="cyan")
        table.add_column("Phase")
        table.add_column("Task", justify="right")
        table.add_column("Round", justify="right")
        for t in transitions:
            table.add_row(
                t.timestamp.isoformat(timespec="seconds"),
                t.reason,
                t.phase.value,
                str(t.task_index),
                str(t.review_round),
            )
        console.print(table)


@main.command()
@input_options
def resume(**options):
    """Reopen a halted run at the phase it stopped in.

    Refused while a rate-limit pause is still active. Run 'spec-orch run'
    afterwards to continue.
    """
    config = _load_config_or_exit(**options)
    try:
        spec = load_spec(config.spec_path)
        workspace = WorkspaceManager(_project_path(config), config.state_dir)
        store = StateStore(workspace, spec.id)
        artifacts = ArtifactStore(_project_path(config) / config.report_dir)
        RecoveryManager(workspace).resume(store, artifacts)
    except OrchestratorError as e:
        console.print(f"[red]Cannot resume:[/red] {e}")
        sys.exit(1)


@main.command()
@click.option('--state-dir', help='Workflow state directory [SPEC_ORCH_STATE_DIR]')
@click.option('--cwd', help='Project directory [SPEC_ORCH_CWD]')
@click.option('--reason', default='User requested stop', help='Reason recorded in the stop file')
def stop(state_dir: Optional[str], cwd: Optional[str], reason: str):
    """Ask a running orchestrator to stop after its current step."""
    config = _load_config_or_exit(state_dir=state_dir, cwd=cwd)
    workspace = WorkspaceManager(_project_path(config), config.state_dir)
    stop_file = RecoveryManager(workspace).request_stop(reason)
    console.print(f"[green]Stop requested:[/green] {stop_file}")


@main.command()
@click.argument('path', required=False, type=click.Path(exists=True, dir_okay=False))
def fingerprint(path: Optional[str]):
    """Print the sha256 fingerprint of the workflow definition.

    Pass it back as --workflow-sha (or SPEC_ORCH_WORKFLOW_SHA) to refuse
    resuming under a changed workflow.
    """
    target = Path(path) if path else default_workflow_path()
    digest = compute_fingerprint(target)
    if not digest:
        console.print(f"[red]Could not read {target}[/red]")
        sys.exit(1)
    click.echo(digest)


@main.command()
@click.option('--reviewers-dir', help='Directory of reviewer *.md prompts [SPEC_ORCH_REVIEWERS_DIR]')
@click.option('--review-models', 'review_models_file', help='Reviewer model overrides JSON [SPEC_ORCH_REVIEW_MODELS_FILE]')
def reviewers(reviewers_dir: Optional[str], review_models_file: Optional[str]):
    """List the reviewers a run would use."""
    config = _load_config_or_exit(reviewers_dir=reviewers_dir, review_models_file=review_models_file)
    loaded = load_reviewers(config.reviewers_dir, config.review_models_file)

    table = Table(title="Reviewers")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Model")
    table.add_column("Prompt", justify="right")
    for reviewer in loaded:
        table.add_row(
            reviewer.id,
            reviewer.title,
            reviewer.model or f"[dim]{config.resolved_review_model()}[/dim]",
            f"{len(reviewer.prompt)} chars" if reviewer.prompt else "-",
        )
    console.print(table)


if __name__ == '__main__':
    main()
