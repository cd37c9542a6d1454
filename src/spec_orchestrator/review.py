"""Review gate helpers: combining verdicts and deriving remediation work."""

from typing import Iterable, Mapping

from .models import Reviewer, ReviewResult, ReviewStatus, ReviewSummary, TodoTask


REMEDIATION_VERIFY = "Update code/tests and verify relevant tests pass."


def missing_reviewers(
    reviewers: Iterable[Reviewer],
    results: Mapping[str, ReviewResult]
) -> list[Reviewer]:
    """Reviewers without a result for the current round, in configured order."""
    return [r for r in reviewers if r.id not in results]


def combine_reviews(
    reviewers: Iterable[Reviewer],
    results: Mapping[str, ReviewResult]
) -> ReviewSummary:
    """Approved iff every configured reviewer approved.

    A reviewer without a result counts as not approving.
    """
    ordered = [results.get(r.id) for r in reviewers]
    approved = bool(ordered) and all(r is not None and r.approved for r in ordered)
    present = [r for r in ordered if r is not None]
    return ReviewSummary(
        status=ReviewStatus.APPROVED if approved else ReviewStatus.CHANGES_REQUESTED,
        issues=[issue for r in present for issue in r.issues],
        next=[item for r in present for item in r.next],
    )


def build_remediation_tasks(
    reviewers: Iterable[Reviewer],
    results: Mapping[str, ReviewResult]
) -> list[TodoTask]:
    """One task per issue and next-action of every rejecting reviewer.

    Order is reviewer order, then issues before next-actions in the order the
    reviewer listed them.
    """
    tasks: list[TodoTask] = []
    for reviewer in reviewers:
        result = results.get(reviewer.id)
        if result is None or result.approved:
            continue
        items = [item for item in [*result.issues, *result.next] if item and item.strip()]
        for number, item in enumerate(items, start=1):
            tasks.append(TodoTask(
                id=f"review-{reviewer.id}-{number}",
                do=f"[{reviewer.title}] {item}",
                verify=REMEDIATION_VERIFY,
            ))
    return tasks
