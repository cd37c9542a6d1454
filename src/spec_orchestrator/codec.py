"""Best-effort extraction of structured results from free-form agent output.

Agents are asked to end with a single JSON object, but their output usually
wraps it in prose, markdown fences or tool chatter. Extraction never raises:
anything that cannot be read becomes a pessimistic default (a failed report,
a changes_requested review).
"""

import json
import re
from typing import Any, Optional

from .models import (
    ARTIFACT_VERSION, ReviewResult, ReviewStatus, TaskReport, TaskStatus
)


# Greedy: first "{" to last "}" in the output
_PAYLOAD_PATTERN = re.compile(r"\{[\s\S]*\}")

_REPORT_LIST_FIELDS = ("work", "files", "tests", "issues", "next")
_REPORT_TEXT_FIELDS = {
    "rootCause": "root_cause",
    "reasoning": "reasoning",
    "fix": "fix",
    "error": "error",
    "commit": "commit",
}


def extract_json_payload(output: Optional[str]) -> Optional[dict[str, Any]]:
    """Find the JSON object embedded in agent output.

    Tries the widest brace span first. If that is not valid JSON (prose with
    stray braces around the payload), falls back to the last decodable object
    in the text.

    Returns:
        The decoded object, or None if no object could be decoded.
    """
    if not output:
        return None

    match = _PAYLOAD_PATTERN.search(output)
    if not match:
        return None

    try:
        parsed = json.loads(match.group(0))
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    found: Optional[dict[str, Any]] = None
    for start in (m.start() for m in re.finditer(r"\{", output)):
        try:
            obj, _ = decoder.raw_decode(output, start)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            found = obj
    return found


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return [str(value)]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value) if isinstance(value, (dict, list)) else str(value)


def default_report(task_id: str, status: TaskStatus = TaskStatus.FAILED) -> TaskReport:
    """Empty report with the given status."""
    return TaskReport(task_id=task_id, status=status)


def default_review(
    reviewer_id: str = "",
    round_number: int = 1,
    status: ReviewStatus = ReviewStatus.CHANGES_REQUESTED,
) -> ReviewResult:
    """Empty review with the given status."""
    return ReviewResult(reviewer=reviewer_id, round=round_number, status=status)


def parse_report(task_id: str, output: Optional[str]) -> TaskReport:
    """Build a TaskReport from agent output.

    Missing fields get empty defaults; an unknown or missing status becomes
    ``failed``. The report is always keyed by ``task_id``, whatever the agent
    wrote in its own ``taskId`` field.
    """
    payload = extract_json_payload(output)
    if payload is None:
        return default_report(task_id)

    raw_status = str(payload.get("status") or "").strip().lower()
    try:
        status = TaskStatus(raw_status)
    except ValueError:
        status = TaskStatus.FAILED

    fields: dict[str, Any] = {
        "v": ARTIFACT_VERSION,
        "task_id": task_id,
        "status": status,
    }
    for name in _REPORT_LIST_FIELDS:
        fields[name] = _string_list(payload.get(name))
    for wire_name, attr in _REPORT_TEXT_FIELDS.items():
        fields[attr] = _text(payload.get(wire_name))

    return TaskReport(**fields)


def parse_review(
    output: Optional[str],
    reviewer_id: str = "",
    round_number: int = 1,
) -> ReviewResult:
    """Build a ReviewResult from reviewer output.

    Anything short of an explicit ``approved`` is treated as
    ``changes_requested``.
    """
    payload = extract_json_payload(output)
    if payload is None:
        return default_review(reviewer_id, round_number)

    raw_status = str(payload.get("status") or "").strip().lower()
    status = (
        ReviewStatus.APPROVED if raw_status == ReviewStatus.APPROVED.value
        else ReviewStatus.CHANGES_REQUESTED
    )
    return ReviewResult(
        reviewer=reviewer_id,
        round=round_number,
        status=status,
        issues=_string_list(payload.get("issues")),
        next=_string_list(payload.get("next")),
    )
