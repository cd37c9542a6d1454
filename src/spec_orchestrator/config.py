"""Configuration loading: environment, input files and reviewers.

Every RunnerConfig field can be set through a ``SPEC_ORCH_*`` environment
variable; the CLI exposes the same knobs as options that take precedence.
"""

import json
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import ValidationError

from .errors import ConfigError
from .models import Reviewer, RunnerConfig, Spec, Todo


ENV_PREFIX = "SPEC_ORCH_"

# RunnerConfig field -> environment variable (without prefix)
ENV_FIELDS = {
    "spec_path": "SPEC_PATH",
    "todo_path": "TODO_PATH",
    "report_dir": "REPORT_DIR",
    "state_dir": "STATE_DIR",
    "cwd": "CWD",
    "agent": "AGENT",
    "review_agent": "REVIEW_AGENT",
    "model": "MODEL",
    "task_timeout_seconds": "TASK_TIMEOUT",
    "review_agent_timeout_seconds": "REVIEW_AGENT_TIMEOUT",
    "max_iterations": "MAX_ITERATIONS",
    "review_max": "REVIEW_MAX",
    "review_timeout_seconds": "REVIEW_TIMEOUT",
    "workflow_sha": "WORKFLOW_SHA",
    "workflow_path": "WORKFLOW_PATH",
    "vcs": "VCS",
    "branch": "BRANCH",
    "run_id": "RUN_ID",
    "prompt_path": "PROMPT_PATH",
    "review_prompt_path": "REVIEW_PROMPT_PATH",
    "reviewers_dir": "REVIEWERS_DIR",
    "review_models_file": "REVIEW_MODELS_FILE",
}

DEFAULT_REVIEWERS = (
    Reviewer(id="security", title="Security"),
    Reviewer(id="code-quality", title="Code Quality"),
    Reviewer(id="simplicity", title="Minimal Simplicity"),
    Reviewer(id="test-coverage", title="Test Coverage"),
    Reviewer(id="maintainability", title="Maintainability"),
)

# Keys accepted as the fallback entry of a review models file
_DEFAULT_MODEL_KEYS = ("_default", "default", "*")


def load_config(
    env: Optional[Mapping[str, str]] = None,
    **overrides
) -> RunnerConfig:
    """Build a RunnerConfig from environment variables plus explicit overrides.

    Overrides whose value is None are ignored, so unset CLI options don't
    mask the environment.

    Raises:
        ConfigError: If a value fails validation (e.g. a non-numeric timeout).
    """
    env = os.environ if env is None else env
    values: dict = {}
    for field_name, suffix in ENV_FIELDS.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip().lower() if field_name in ("agent", "review_agent", "vcs") else raw.strip()
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return RunnerConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _load_json(path: Path, what: str) -> dict:
    if not path.exists():
        raise ConfigError(f"{what} not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"{what} is not valid JSON ({path}): {e}") from e


def load_spec(path: str | Path) -> Spec:
    """Load the spec record.

    Raises:
        ConfigError: If the file is missing or not a valid spec.
    """
    data = _load_json(Path(path), "Spec file")
    try:
        return Spec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid spec {path}: {e}") from e


def load_todo(path: str | Path) -> Todo:
    """Load the todo record.

    Raises:
        ConfigError: If the file is missing, invalid, or repeats a task id.
    """
    data = _load_json(Path(path), "Todo file")
    try:
        todo = Todo.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid todo {path}: {e}") from e

    seen: set[str] = set()
    for task in todo.tasks:
        if task.id in seen:
            raise ConfigError(f"Duplicate task id in {path}: {task.id}")
        seen.add(task.id)
    return todo


def load_review_models(path: Optional[str]) -> dict[str, str]:
    """Per-reviewer model overrides, keyed by lower-cased reviewer id.

    A missing or malformed file means no overrides.
    """
    if not path:
        return {}
    models_path = Path(path)
    if not models_path.exists():
        return {}
    try:
        parsed = json.loads(models_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        print(f"[config] Warning: Could not load review models file {path}: {e}")
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {
        str(key).lower(): value
        for key, value in parsed.items()
        if isinstance(value, str)
    }


def load_reviewers(
    reviewers_dir: Optional[str] = None,
    review_models_file: Optional[str] = None
) -> list[Reviewer]:
    """Reviewers from a directory of markdown prompts, or the defaults.

    Each ``<name>.md`` file becomes a reviewer with id ``name`` (lower-cased),
    a title with dashes and underscores turned into spaces, and the file body
    as its review-focus prompt. Files are taken in name order.
    """
    reviewers: list[Reviewer] = []
    directory = Path(reviewers_dir) if reviewers_dir else None
    if directory is not None and directory.is_dir():
        for file in sorted(directory.iterdir()):
            if not file.is_file() or file.suffix.lower() != ".md":
                continue
            stem = file.stem
            reviewers.append(Reviewer(
                id=stem.lower(),
                title=stem.replace("-", " ").replace("_", " "),
                prompt=file.read_text(encoding="utf-8").strip(),
            ))
    if not reviewers:
        reviewers = [r.model_copy() for r in DEFAULT_REVIEWERS]

    models = load_review_models(review_models_file)
    fallback = next((models[k] for k in _DEFAULT_MODEL_KEYS if k in models), None)
    for reviewer in reviewers:
        reviewer.model = models.get(reviewer.id.lower(), fallback)
    return reviewers
