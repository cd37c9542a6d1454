"""Data models for the spec orchestrator.

Uses Pydantic for validation. Artifacts written for humans and agents use the
camelCase field names of the report wire format; everything else is snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


ARTIFACT_VERSION = 1


class Phase(str, Enum):
    """Coarse stage of a run."""
    TASKS = "tasks"
    REVIEW = "review"
    REVIEW_TASKS = "review-tasks"
    DONE = "done"


class TaskStatus(str, Enum):
    """Outcome an agent declares for a task."""
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"


class ReviewStatus(str, Enum):
    """Verdict of a single reviewer, or of the combined round."""
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class TaskKind(str, Enum):
    """Which list a task invocation belongs to."""
    TODO = "todo"
    REMEDIATION = "remediation"


class UsageCategory(str, Enum):
    """Ledger bucket for agent token usage."""
    TASK = "task"
    REVIEW = "review"


class AgentKind(str, Enum):
    """Agent backends known to the registry."""
    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    CLAUDE_SDK = "claude-sdk"


class VcsKind(str, Enum):
    """Version-control backends."""
    JJ = "jj"
    GIT = "git"


class ErrorCategory(str, Enum):
    """Classification of agent failures, used for logging and halting decisions."""
    RATE_LIMIT = "rate_limit"    # provider quota / 429 - backoff ladder
    TIMEOUT = "timeout"          # agent call exceeded its timeout
    TRANSIENT = "transient"      # network, 5xx
    AUTH = "auth"                # invalid credentials
    BILLING = "billing"          # out of credits
    UNKNOWN = "unknown"


class LogEntryType(str, Enum):
    """Types of entries in a run's JSONL log."""
    RUN_START = "run_start"
    PROMPT = "prompt"
    AGENT_RESULT = "agent_result"
    TRANSITION = "transition"
    COMMIT = "commit"
    HUMAN_GATE = "human_gate"
    ERROR = "error"
    RUN_END = "run_end"


# =============================================================================
# Inputs
# =============================================================================

class _WireModel(BaseModel):
    """Base for models that round-trip through camelCase JSON files."""
    model_config = ConfigDict(populate_by_name=True)


class SpecRequirements(_WireModel):
    api: list[str] = Field(default_factory=list)
    behavior: list[str] = Field(default_factory=list)
    obs: list[str] = Field(default_factory=list)


class Spec(_WireModel):
    """Immutable description of the work to be done."""
    id: str
    title: str = ""
    goals: list[str] = Field(default_factory=list)
    non_goals: list[str] = Field(default_factory=list, alias="nonGoals")
    req: SpecRequirements = Field(default_factory=SpecRequirements)
    accept: list[str] = Field(default_factory=list)
    assume: list[str] = Field(default_factory=list)


class TodoTask(_WireModel):
    """A single ordered work item. Also used for remediation tasks."""
    id: str
    do: str
    verify: str = ""


class Todo(_WireModel):
    """Ordered task list for a spec."""
    id: str = ""
    tdd: bool = False
    dod: list[str] = Field(default_factory=list)
    tasks: list[TodoTask] = Field(default_factory=list)


class Reviewer(BaseModel):
    """Static reviewer configuration, fixed for a run."""
    id: str
    title: str
    prompt: str = ""
    model: Optional[str] = Field(
        default=None,
        description="Model override for this reviewer (None = runner default)"
    )


# =============================================================================
# Artifacts
# =============================================================================

class TaskReport(_WireModel):
    """Structured result of one task attempt."""
    v: int = ARTIFACT_VERSION
    task_id: str = Field(..., alias="taskId")
    status: TaskStatus = TaskStatus.FAILED
    work: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    tests: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    next: list[str] = Field(default_factory=list)
    root_cause: str = Field(default="", alias="rootCause")
    reasoning: str = ""
    fix: str = ""
    error: str = ""
    commit: str = ""


class ReviewResult(_WireModel):
    """One reviewer's verdict for one round."""
    v: int = ARTIFACT_VERSION
    reviewer: str = ""
    round: int = 1
    status: ReviewStatus = ReviewStatus.CHANGES_REQUESTED
    issues: list[str] = Field(default_factory=list)
    next: list[str] = Field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.status == ReviewStatus.APPROVED


class ReviewSummary(_WireModel):
    """Combined verdict over every reviewer of the current round."""
    v: int = ARTIFACT_VERSION
    status: ReviewStatus
    issues: list[str] = Field(default_factory=list)
    next: list[str] = Field(default_factory=list)


class HumanGate(_WireModel):
    """Terminal artifact: the run cannot proceed without a human."""
    v: int = ARTIFACT_VERSION
    status: str = "blocked"
    reason: str


# =============================================================================
# Workflow state
# =============================================================================

class UsageTotals(BaseModel):
    """Token counters for one ledger bucket."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> "UsageTotals":
        return UsageTotals(
            input_tokens=self.input_tokens + input_tokens,
            output_tokens=self.output_tokens + output_tokens,
            total_tokens=self.total_tokens + input_tokens + output_tokens,
        )


class UsageCounters(BaseModel):
    """Monotonic usage ledger persisted with the workflow state."""
    overall: UsageTotals = Field(default_factory=UsageTotals)
    task: UsageTotals = Field(default_factory=UsageTotals)
    review: UsageTotals = Field(default_factory=UsageTotals)


class WorkflowState(BaseModel):
    """Control variables of a run.

    Mutated only by ``machine.step`` and persisted after every transition.
    This is the only entity that must be consistent across a crash.
    """
    run_id: str = ""
    phase: Phase = Phase.TASKS
    done: bool = False
    blocked: bool = False
    failed: bool = False

    task_index: int = 0

    # Review gate
    review_retry: int = Field(default=0, description="Rejected rounds so far")
    review_task_index: int = 0
    remediation_tasks: list[TodoTask] = Field(default_factory=list)
    review_started_at: Optional[datetime] = None

    # Backoff
    rate_limit_count: int = 0
    rate_limit_until: Optional[datetime] = None
    halted_phase: Optional[Phase] = Field(
        default=None,
        description="Phase that was active when a rate limit paused the run"
    )

    gate_reason: Optional[str] = None
    usage: UsageCounters = Field(default_factory=UsageCounters)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def review_round(self) -> int:
        """1-based number of the current review round."""
        return self.review_retry + 1


class StateTransition(BaseModel):
    """One line of the state store's transition log."""
    timestamp: datetime = Field(default_factory=datetime.now)
    reason: str
    phase: Phase
    task_index: int
    review_round: int
    review_task_index: int
    done: bool


class RunRecord(BaseModel):
    """Start/finish record of one ``run`` invocation."""
    run_id: str
    spec_id: str
    description: str = ""
    started_at: datetime = Field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    status: str = "running"  # running, completed, halted, failed, idle, stopped, max_iterations
    summary: Optional[str] = None
    iterations: int = 0


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_MODELS = {
    AgentKind.CODEX: "gpt-5.2-codex",
    AgentKind.CLAUDE: "opus",
    AgentKind.OPENCODE: "opus",
    AgentKind.CLAUDE_SDK: "opus",
}


class RunnerConfig(BaseModel):
    """Configuration for a spec run."""
    # Inputs and outputs
    spec_path: str = Field(default="specs/000-base.min.json")
    todo_path: str = Field(default="specs/000-base.todo.min.json")
    report_dir: str = Field(default="reports")
    state_dir: str = Field(
        default=".spec-orch",
        description="Directory for workflow state, transition log and run logs"
    )
    cwd: Optional[str] = Field(
        default=None,
        description="Working copy the agents and VCS commands run in (None = current directory)"
    )

    # Agents
    agent: AgentKind = Field(default=AgentKind.CODEX)
    review_agent: AgentKind = Field(
        default=AgentKind.CODEX,
        description="Backend used for reviewers"
    )
    model: Optional[str] = Field(
        default=None,
        description="Model override; defaults depend on the agent kind"
    )
    task_timeout_seconds: int = Field(
        default=1800,  # 30 minutes
        description="Per-call timeout for task and remediation agents"
    )
    review_agent_timeout_seconds: int = Field(
        default=1800,
        description="Per-call timeout for reviewer agents"
    )

    # Loop bounds
    max_iterations: int = Field(default=100, description="Maximum ticks per invocation")
    review_max: int = Field(
        default=2,
        description="Rejected rounds allowed before handing off to a human"
    )
    review_timeout_seconds: int = Field(
        default=1800,
        description="Wall-clock limit for a review round (0 disables)"
    )

    # Integrity
    workflow_sha: Optional[str] = Field(
        default=None,
        description="Expected sha256 of the workflow definition"
    )
    workflow_path: Optional[str] = Field(
        default=None,
        description="Workflow definition to fingerprint (None = the installed state machine)"
    )

    # Version control
    vcs: VcsKind = Field(default=VcsKind.JJ)
    branch: Optional[str] = Field(default=None, description="Branch/bookmark to push")
    run_id: Optional[str] = Field(default=None, description="Run identifier for commit trailers")

    # Prompts and reviewers
    prompt_path: Optional[str] = None
    review_prompt_path: Optional[str] = None
    reviewers_dir: Optional[str] = None
    review_models_file: Optional[str] = None

    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.agent]

    def resolved_review_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.review_agent]
