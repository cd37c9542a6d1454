"""Prompt assembly for task, remediation and reviewer invocations.

Prompts are plain line lists joined with newlines; empty lines from missing
optional parts (global prompt, run id, branch) are dropped.
"""

import json
from pathlib import Path
from typing import Optional

from .models import Reviewer, Spec, Todo, TodoTask


TASK_REPORT_SCHEMA = {
    "v": 1,
    "taskId": "<task id>",
    "status": "done | blocked | failed",
    "work": ["..."],
    "files": ["..."],
    "tests": ["..."],
    "issues": ["..."],
    "next": ["..."],
    "rootCause": "...",
    "reasoning": "...",
    "fix": "...",
    "error": "...",
    "commit": "...",
}

REVIEW_SCHEMA = {
    "v": 1,
    "status": "approved | changes_requested",
    "issues": ["..."],
    "next": ["..."],
}


def load_prompt(path: Optional[str]) -> str:
    """Read an optional prompt file; missing or unreadable files give ""."""
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def _join(lines: list[str]) -> str:
    return "\n".join(line for line in lines if line != "")


def _bullets(items: list[str]) -> list[str]:
    return [f"- {item}" for item in items]


def build_system_prompt(
    spec: Spec,
    todo: Todo,
    run_id: Optional[str] = None,
    branch: Optional[str] = None
) -> str:
    """Spec and definition-of-done context shared by every prompt."""
    return "\n".join([
        f"Spec ID: {spec.id}",
        f"Title: {spec.title}",
        *([f"Run ID: {run_id}"] if run_id else []),
        *([f"Branch: {branch}"] if branch else []),
        "",
        "Goals:",
        *_bullets(spec.goals),
        "",
        "Non-goals:",
        *_bullets(spec.non_goals),
        "",
        "API requirements:",
        *_bullets(spec.req.api),
        "",
        "Behavior requirements:",
        *_bullets(spec.req.behavior),
        "",
        "Observability requirements:",
        *_bullets(spec.req.obs),
        "",
        "Acceptance criteria:",
        *_bullets(spec.accept),
        "",
        "Assumptions:",
        *_bullets(spec.assume),
        "",
        f"TDD required: {'yes' if todo.tdd else 'no'}",
        "Definition of done:",
        *_bullets(todo.dod),
    ])


def _version_control_lines(vcs_name: str, branch: Optional[str]) -> list[str]:
    if vcs_name == "git":
        return [
            "Version control:",
            "- Use git. Leave your changes in the working tree; the orchestrator commits and pushes them.",
            "- The working tree may already include changes from earlier tasks in this run. Treat those as expected.",
        ]
    return [
        "Version control:",
        "- Use jj (not git).",
        "- The working copy may already include changes from earlier tasks in this run. Treat those as expected and continue unless they are clearly unrelated.",
        f"- Use this branch/bookmark for all pushes: {branch}" if branch
        else "- Use a single branch/bookmark for all pushes.",
        "- Commit messages must follow Conventional Commits (type(scope): subject) and include spec, todo and run context.",
        "- For root-cause fixes, include cause, reasoning and fix with the relevant error output.",
    ]


def build_task_prompt(
    task: TodoTask,
    position: int,
    total: int,
    system_prompt: str,
    global_prompt: str = "",
    remediation: bool = False,
    vcs_name: str = "jj",
    branch: Optional[str] = None
) -> str:
    """Prompt for one todo or remediation task.

    Args:
        position: 0-based index of the task in its list
        total: Length of the list
    """
    heading = "Review Task" if remediation else "Task"
    schema = dict(TASK_REPORT_SCHEMA, taskId=task.id)
    return _join([
        global_prompt,
        system_prompt,
        f"\n{heading} {position + 1}/{total}: {task.id}\n",
        "Do:",
        task.do,
        "",
        "Verify:",
        task.verify,
        "",
        *_version_control_lines(vcs_name, branch),
        "",
        "Output:",
        "Return a single JSON object that matches this schema:",
        json.dumps(schema, indent=2),
    ])


def build_review_prompt(
    reviewer: Reviewer,
    system_prompt: str,
    reports: str,
    review_prompt: str = ""
) -> str:
    """Prompt for one reviewer of one round."""
    return _join([
        review_prompt,
        reviewer.prompt,
        system_prompt,
        "",
        f"Reviewer: {reviewer.title}",
        "Review the implementation against the spec, todo, and task reports.",
        "Focus on correctness, tests, security, and strict spec compliance.",
        "",
        "Reports:",
        reports,
        "",
        "Output:",
        "Return a single JSON object that matches this schema:",
        json.dumps(REVIEW_SCHEMA, indent=2),
    ])
