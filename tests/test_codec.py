"""Tests for extracting reports and reviews from agent output."""

import pytest

from spec_orchestrator.codec import (
    default_report,
    default_review,
    extract_json_payload,
    parse_report,
    parse_review,
)
from spec_orchestrator.models import ReviewStatus, TaskStatus


class TestExtractJsonPayload:
    """Tests for extract_json_payload."""

    def test_plain_object(self):
        assert extract_json_payload('{"status": "done"}') == {"status": "done"}

    def test_object_wrapped_in_prose_and_fences(self):
        output = 'All good.\n```json\n{"status": "done", "work": ["a"]}\n```\nBye'
        assert extract_json_payload(output) == {"status": "done", "work": ["a"]}

    def test_no_braces_returns_none(self):
        assert extract_json_payload("no json here") is None

    def test_empty_output_returns_none(self):
        assert extract_json_payload("") is None
        assert extract_json_payload(None) is None

    def test_falls_back_to_last_object_when_span_is_invalid(self):
        """Stray braces in prose break the widest span; the last object still decodes."""
        output = 'I used {curly} braces. {"status": "blocked"}'
        assert extract_json_payload(output) == {"status": "blocked"}

    def test_truncated_object_returns_none(self):
        assert extract_json_payload('{"status": "done", "work": [') is None


class TestParseReport:
    """Tests for parse_report."""

    def test_full_report(self):
        output = """
        {"v": 1, "taskId": "t1", "status": "done", "work": ["w"], "files": ["f.py"],
         "tests": ["pytest"], "issues": [], "next": [], "rootCause": "rc",
         "reasoning": "r", "fix": "fx", "error": "", "commit": "feat: x"}
        """
        report = parse_report("t1", output)

        assert report.status == TaskStatus.DONE
        assert report.work == ["w"]
        assert report.files == ["f.py"]
        assert report.root_cause == "rc"
        assert report.commit == "feat: x"

    def test_report_is_keyed_by_expected_task_id(self):
        """The agent's own taskId never redirects the report."""
        report = parse_report("t2", '{"taskId": "something-else", "status": "done"}')
        assert report.task_id == "t2"

    def test_unparseable_output_gives_failed_default(self):
        report = parse_report("t1", "I could not finish, sorry")

        assert report.task_id == "t1"
        assert report.status == TaskStatus.FAILED
        assert report.work == []
        assert report.error == ""

    def test_unknown_status_is_failed(self):
        assert parse_report("t1", '{"status": "mostly-done"}').status == TaskStatus.FAILED

    def test_status_is_case_insensitive(self):
        assert parse_report("t1", '{"status": "BLOCKED"}').status == TaskStatus.BLOCKED

    def test_string_fields_are_normalized_to_lists(self):
        report = parse_report("t1", '{"status": "done", "work": "one item", "files": null}')
        assert report.work == ["one item"]
        assert report.files == []

    def test_serializes_with_camel_case_keys(self):
        report = parse_report("t1", '{"status": "done", "rootCause": "x"}')
        payload = report.model_dump(mode="json", by_alias=True)
        assert payload["taskId"] == "t1"
        assert payload["rootCause"] == "x"


class TestParseReview:
    """Tests for parse_review."""

    def test_approved(self):
        review = parse_review('{"status": "approved", "issues": [], "next": []}', "security", 1)

        assert review.status == ReviewStatus.APPROVED
        assert review.reviewer == "security"
        assert review.round == 1
        assert review.approved

    def test_changes_requested_keeps_items(self):
        review = parse_review(
            '{"status": "changes_requested", "issues": ["bug"], "next": ["fix it"]}',
            "quality",
            2,
        )
        assert review.status == ReviewStatus.CHANGES_REQUESTED
        assert review.issues == ["bug"]
        assert review.next == ["fix it"]
        assert review.round == 2

    def test_malformed_review_requests_changes_with_empty_lists(self):
        review = parse_review("looks fine to me", "security", 1)

        assert review.status == ReviewStatus.CHANGES_REQUESTED
        assert review.issues == []
        assert review.next == []

    @pytest.mark.parametrize("status", ["approve", "ok", "", "APPROVED-ish"])
    def test_anything_but_approved_requests_changes(self, status):
        review = parse_review(f'{{"status": "{status}"}}', "r", 1)
        assert review.status == ReviewStatus.CHANGES_REQUESTED


class TestDefaults:
    """Tests for default report and review helpers."""

    def test_default_report_is_failed(self):
        report = default_report("t9")
        assert report.task_id == "t9"
        assert report.status == TaskStatus.FAILED

    def test_default_review_requests_changes(self):
        review = default_review("security", 3)
        assert review.status == ReviewStatus.CHANGES_REQUESTED
        assert review.round == 3
