"""Version-control backends.

Jujutsu (jj) is the default: the agent works in the pending change ``@`` and
the orchestrator only sets its description and pushes the bookmark. Git is
supported for plain repositories by staging everything and committing.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import VcsKind


@dataclass
class VcsResult:
    """Outcome of one version-control command."""
    ok: bool
    output: str = ""
    stdout: str = ""


@dataclass
class GitStatus:
    """Current git status."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]


class _CommandRunner:
    executable = ""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path)

    def _run(self, *args: str) -> VcsResult:
        """Run a VCS command, capturing stdout and stderr together."""
        try:
            result = subprocess.run(
                [self.executable, *args],
                cwd=self.project_path,
                capture_output=True,
                text=True,
                check=False
            )
        except FileNotFoundError as e:
            return VcsResult(ok=False, output=f"{self.executable} not found: {e}")
        output = f"{result.stdout or ''}{result.stderr or ''}".strip()
        return VcsResult(ok=result.returncode == 0, output=output, stdout=result.stdout or "")


class JujutsuManager(_CommandRunner):
    """Jujutsu operations for the working copy."""

    name = "jj"
    executable = "jj"

    REFUSED_NEW_BOOKMARK = "Refusing to create new remote bookmark"

    def has_pending_changes(self) -> bool:
        result = self._run("diff", "--stat")
        return result.ok and bool(result.output.strip())

    def describe(self, message: str) -> VcsResult:
        return self._run("describe", "-m", message)

    def push_branch(self, branch: str) -> VcsResult:
        return self._run("git", "push", "--bookmark", branch)

    def track_remote_branch(self, branch: str) -> VcsResult:
        return self._run("bookmark", "track", branch, "--remote=origin")

    def is_missing_remote_branch(self, output: str) -> bool:
        return self.REFUSED_NEW_BOOKMARK.lower() in (output or "").lower()


class GitManager(_CommandRunner):
    """Git operations for the working copy."""

    name = "git"
    executable = "git"

    def get_status(self) -> GitStatus:
        """Get current git status."""
        branch_result = self._run("branch", "--show-current")
        branch = branch_result.output.strip() if branch_result.ok else ""

        status_result = self._run("status", "--porcelain")
        lines = status_result.stdout.split("\n") if status_result.ok else []

        staged = []
        modified = []
        untracked = []

        for line in lines:
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]

            if status_code[0] in "MADRC":
                staged.append(filename)
            if status_code[1] in "MD":
                modified.append(filename)
            if status_code == "??":
                untracked.append(filename)

        return GitStatus(
            branch=branch or "main",
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
        )

    def has_pending_changes(self) -> bool:
        return self.get_status().has_changes

    def describe(self, message: str) -> VcsResult:
        staged = self._run("add", "-A")
        if not staged.ok:
            return staged
        return self._run("commit", "-m", message)

    def push_branch(self, branch: str) -> VcsResult:
        return self._run("push", "-u", "origin", branch)

    def track_remote_branch(self, branch: str) -> VcsResult:
        # push -u creates and tracks the remote branch itself
        return VcsResult(ok=True)

    def is_missing_remote_branch(self, output: str) -> bool:
        return False


def create_vcs(kind: VcsKind, project_path: Path):
    """Factory for the configured version-control backend."""
    if kind == VcsKind.GIT:
        return GitManager(project_path)
    return JujutsuManager(project_path)


def last_line(output: Optional[str]) -> str:
    """Last non-empty line of command output, for compact log messages."""
    lines = [line for line in (output or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""
