"""Token usage ledger.

Counts input/output tokens per agent invocation into three buckets (overall,
task, review). Counters only ever grow and live on the WorkflowState so they
survive restarts.
"""

import re
from typing import Optional

from .models import UsageCategory, UsageCounters


_INPUT_PATTERN = re.compile(r'"input_tokens"\s*:\s*(\d+)')
_OUTPUT_PATTERN = re.compile(r'"output_tokens"\s*:\s*(\d+)')


def record_usage(
    counters: UsageCounters,
    category: UsageCategory,
    input_tokens: int = 0,
    output_tokens: int = 0
) -> UsageCounters:
    """Return counters with one invocation's usage added.

    Zero-token invocations leave the counters untouched.
    """
    input_tokens = max(int(input_tokens or 0), 0)
    output_tokens = max(int(output_tokens or 0), 0)
    if input_tokens == 0 and output_tokens == 0:
        return counters

    overall = counters.overall.add(input_tokens, output_tokens)
    task = counters.task
    review = counters.review
    if category == UsageCategory.TASK:
        task = task.add(input_tokens, output_tokens)
    else:
        review = review.add(input_tokens, output_tokens)
    return UsageCounters(overall=overall, task=task, review=review)


def parse_usage(output: Optional[str]) -> tuple[int, int]:
    """Best-effort token counts from JSON-emitting agent CLIs.

    Sums every ``"input_tokens"``/``"output_tokens"`` value found, which
    covers both single-result JSON and JSONL event streams with one usage
    block per turn.

    Returns:
        (input_tokens, output_tokens); zeros if nothing was found.
    """
    if not output:
        return 0, 0
    input_tokens = sum(int(m) for m in _INPUT_PATTERN.findall(output))
    output_tokens = sum(int(m) for m in _OUTPUT_PATTERN.findall(output))
    return input_tokens, output_tokens


def format_tokens(count: int) -> str:
    """Format token count for display.

    Args:
        count: Token count

    Returns:
        Formatted string (e.g., "1.2K" or "1.5M")
    """
    if count < 1000:
        return str(count)
    elif count < 1_000_000:
        return f"{count / 1000:.1f}K"
    else:
        return f"{count / 1_000_000:.2f}M"
