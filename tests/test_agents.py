"""Tests for agent backends and the registry."""

import asyncio
import json
import sys
from unittest.mock import patch

import pytest

from spec_orchestrator.agents import (
    AgentOptions,
    AgentResult,
    BaseAgent,
    ClaudeCliAgent,
    ClaudeSdkAgent,
    CliAgent,
    CodexCliAgent,
    OpenCodeCliAgent,
    create_agent,
)
from spec_orchestrator.errors import AgentUnavailableError
from spec_orchestrator.models import AgentKind, ErrorCategory
from spec_orchestrator.protocols import AgentBackend


# =============================================================================
# Test doubles
# =============================================================================

class SlowAgent(BaseAgent):
    """Agent that sleeps longer than any reasonable test timeout."""

    name = "slow"

    async def _invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        await asyncio.sleep(10)
        return AgentResult(output="too late")


class EchoAgent(BaseAgent):
    name = "echo"

    async def _invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        return AgentResult(output=prompt.upper())


class PythonCliAgent(CliAgent):
    """Runs the current interpreter as if it were an agent CLI."""

    name = "python"
    executable = "python"

    def __init__(self, code: str):
        self.code = code

    def build_args(self, prompt: str, options: AgentOptions) -> list[str]:
        return ["-c", self.code, prompt]


def _options(**fields) -> AgentOptions:
    return AgentOptions(model="test-model", **fields)


class TestRegistry:
    """Tests for create_agent."""

    @pytest.mark.parametrize("kind,expected", [
        ("claude", ClaudeCliAgent),
        ("codex", CodexCliAgent),
        ("opencode", OpenCodeCliAgent),
        ("claude-sdk", ClaudeSdkAgent),
        (AgentKind.CODEX, CodexCliAgent),
        ("CODEX", CodexCliAgent),
    ])
    def test_known_kinds(self, kind, expected):
        assert isinstance(create_agent(kind), expected)

    def test_unknown_kind(self):
        with pytest.raises(AgentUnavailableError, match="Unknown agent kind 'gemini'"):
            create_agent("gemini")

    def test_backends_satisfy_protocol(self):
        assert isinstance(create_agent("codex"), AgentBackend)


class TestBaseAgent:
    """Tests for timeout handling and timing."""

    @pytest.mark.asyncio
    async def test_result_is_stamped(self):
        result = await EchoAgent().run("hello", _options())

        assert result.output == "HELLO"
        assert result.model == "test-model"
        assert result.started_at is not None
        assert result.ended_at >= result.started_at
        assert result.ok

    @pytest.mark.asyncio
    async def test_timeout_is_a_result(self):
        result = await SlowAgent().run("p", _options(timeout_seconds=1))

        assert result.timed_out
        assert not result.ok
        assert result.output == ""
        assert result.error_category == ErrorCategory.TIMEOUT
        assert "timed out after 1s" in result.error


class TestAgentResult:
    """Tests for AgentResult helpers."""

    def test_diagnostic_text_joins_message_stderr_and_error(self):
        result = AgentResult(output="out", stderr="err", error="boom")
        assert result.diagnostic_text == "out\nerr\nboom"

    def test_diagnostic_text_leaves_out_event_stream(self):
        stream = '{"type": "item.completed", "item": {"aggregated_output": "HTTP 429"}}'
        result = AgentResult(output="done", raw_output=stream)
        assert "429" not in result.diagnostic_text

    def test_diagnostic_text_skips_empty_parts(self):
        assert AgentResult(output="out").diagnostic_text == "out"


class TestCliArguments:
    """Tests for the CLI backends' argument building and output parsing."""

    def test_claude_args(self):
        args = ClaudeCliAgent().build_args("do it", _options())
        assert args[:2] == ["-p", "do it"]
        assert "--model" in args and "test-model" in args
        assert "--output-format" in args

    def test_claude_extracts_result_field(self):
        agent = ClaudeCliAgent()
        assert agent.extract_message(json.dumps({"result": "final"})) == "final"
        assert agent.extract_message("plain text") == "plain text"

    def test_codex_args_end_with_prompt(self):
        args = CodexCliAgent().build_args("do it", _options())
        assert args[0] == "exec"
        assert "--json" in args
        assert args[-1] == "do it"

    def test_codex_keeps_last_agent_message(self):
        stdout = "\n".join([
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "first"}}),
            "warning: not json",
            json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "second"}}),
        ])
        assert CodexCliAgent().extract_message(stdout) == "second"

    def test_codex_without_messages_returns_stdout(self):
        assert CodexCliAgent().extract_message("no events") == "no events"

    def test_opencode_args(self):
        assert OpenCodeCliAgent().build_args("p", _options()) == ["run", "--model", "test-model", "p"]


class TestCliAgentProcess:
    """Tests that run a real subprocess through CliAgent."""

    @pytest.mark.asyncio
    async def test_stdout_becomes_output(self):
        agent = PythonCliAgent("import sys; print('got ' + sys.argv[1])")
        with patch("spec_orchestrator.agents.get_executable", return_value=sys.executable):
            result = await agent.run("prompt", _options())

        assert result.ok
        assert result.output.strip() == "got prompt"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_an_error(self):
        code = "import sys; sys.stderr.write('error: usage_limit_reached\\n'); sys.exit(3)"
        agent = PythonCliAgent(code)
        with patch("spec_orchestrator.agents.get_executable", return_value=sys.executable):
            result = await agent.run("prompt", _options())

        assert not result.ok
        assert "exited with code 3" in result.error
        assert result.error_category == ErrorCategory.RATE_LIMIT
        assert "usage_limit_reached" in result.diagnostic_text
        assert result.stderr.strip() == "error: usage_limit_reached"

    @pytest.mark.asyncio
    async def test_missing_executable_raises(self):
        with patch("spec_orchestrator.cli_utils.find_executable", return_value=None):
            with pytest.raises(AgentUnavailableError, match="codex CLI not found"):
                await CodexCliAgent().run("prompt", _options())
