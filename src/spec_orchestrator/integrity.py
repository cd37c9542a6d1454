"""Workflow definition fingerprinting.

A persisted run must not be resumed under a silently changed workflow. The
operator records the sha256 of the workflow definition when launching a run
and passes it back on every re-invocation; a mismatch halts immediately.
"""

import hashlib
from pathlib import Path
from typing import Optional


def default_workflow_path() -> Path:
    """The state machine module that defines the workflow."""
    from . import machine
    return Path(machine.__file__)


def compute_fingerprint(path: Optional[Path] = None) -> str:
    """sha256 hex digest of the workflow definition, or "" if unreadable."""
    target = Path(path) if path else default_workflow_path()
    try:
        data = target.read_bytes()
    except OSError:
        return ""
    return hashlib.sha256(data).hexdigest()


def fingerprint_matches(expected: Optional[str], actual: str) -> bool:
    """Compare fingerprints. No expectation (or nothing to hash) always matches."""
    if not expected or not actual:
        return True
    return expected.strip().lower() == actual.strip().lower()
