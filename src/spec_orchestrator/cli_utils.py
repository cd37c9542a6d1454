"""Utilities for finding external CLI tools.

Agent CLIs are usually installed through npm, which puts them in
platform-specific locations that are not always on PATH.
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Optional

from .errors import AgentUnavailableError


INSTALL_HINTS = {
    "claude": "npm install -g @anthropic-ai/claude-code",
    "codex": "npm install -g @openai/codex",
    "opencode": "npm install -g opencode-ai",
}


def find_executable(name: str) -> Optional[str]:
    """Find a CLI executable.

    Searches in order:
    1. PATH (via shutil.which)
    2. Windows-specific: .cmd extension, npm global locations
    3. Unix-specific: common installation directories

    Returns:
        Path to the executable, or None if not found.
    """
    found = shutil.which(name)
    if found:
        return found

    if sys.platform == "win32":
        found = shutil.which(f"{name}.cmd")
        if found:
            return found

        npm_paths = [
            Path(os.environ.get("APPDATA", "")) / "npm" / f"{name}.cmd",
            Path(os.environ.get("LOCALAPPDATA", "")) / "npm" / f"{name}.cmd",
            Path.home() / "AppData" / "Roaming" / "npm" / f"{name}.cmd",
        ]
        for p in npm_paths:
            if p.exists():
                return str(p)
    else:
        unix_paths = [
            Path.home() / ".npm-global" / "bin" / name,
            Path("/usr/local/bin") / name,
            Path.home() / ".local" / "bin" / name,
            Path.home() / ".bun" / "bin" / name,
            # nvm puts binaries in versioned directories, but also symlinks
            Path.home() / ".nvm" / "current" / "bin" / name,
        ]
        for p in unix_paths:
            if p.exists():
                return str(p)

    return None


def get_executable(name: str) -> str:
    """Get an executable path, raising if not found.

    Raises:
        AgentUnavailableError: If the CLI is not installed or not in PATH.
    """
    exe = find_executable(name)
    if exe is None:
        hint = INSTALL_HINTS.get(name)
        message = f"{name} CLI not found."
        if hint:
            message += f" Install with: {hint}"
        raise AgentUnavailableError(message)
    return exe
