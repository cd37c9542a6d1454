"""Agent backends.

Every backend offers one capability: run a prompt and return free-text
output. The orchestrator never branches on the agent kind; it asks the
registry for a backend and calls ``run``.

Architecture:
- BaseAgent: timeout handling and timing shared by all backends
- CliAgent: subprocess-based backends (claude, codex, opencode)
- ClaudeSdkAgent: Claude Agent SDK backend (API credits)
- create_agent(): registry lookup by configuration string
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .cli_utils import get_executable
from .errors import AgentUnavailableError
from .models import AgentKind, ErrorCategory
from .rate_limit import classify_error
from .usage import parse_usage


class AgentOptions(BaseModel):
    """Per-invocation settings."""
    model: str
    timeout_seconds: int = Field(default=1800, description="0 disables the timeout")
    cwd: Optional[str] = None
    label: str = Field(default="", description="Task or reviewer id, for log lines")


class AgentResult(BaseModel):
    """Output of one agent invocation."""
    output: str = Field(default="", description="Agent's final message text")
    raw_output: str = Field(default="", description="Everything the process printed")
    stderr: str = Field(default="", description="Diagnostics the process printed to stderr")
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    timed_out: bool = False
    model: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out

    @property
    def diagnostic_text(self) -> str:
        """Text scanned for provider errors.

        Excludes ``raw_output``, whose event stream echoes tool and command output.
        """
        return "\n".join(t for t in (self.output, self.stderr, self.error or "") if t)


# =============================================================================
# Base Agent
# =============================================================================

class BaseAgent(ABC):
    """Abstract base class for agent backends.

    Applies the per-call timeout and records timing; subclasses implement
    the actual invocation.
    """

    name = "base"

    async def run(self, prompt: str, options: AgentOptions) -> AgentResult:
        """Run the agent with the given prompt.

        A timeout is not an exception: it comes back as a result with
        ``timed_out`` set so the caller can decide what it means.
        """
        started_at = datetime.now()
        timeout = options.timeout_seconds

        try:
            coro = self._invoke(prompt, options)
            if timeout > 0:
                result = await asyncio.wait_for(coro, timeout=timeout)
            else:
                result = await coro
        except asyncio.TimeoutError:
            result = AgentResult(
                error=f"{self.name} timed out after {timeout}s",
                error_category=ErrorCategory.TIMEOUT,
                timed_out=True,
            )

        result.model = options.model
        result.started_at = started_at
        result.ended_at = datetime.now()
        return result

    @abstractmethod
    async def _invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        """Execute the agent - implemented by subclasses."""


# =============================================================================
# CLI Agents
# =============================================================================

class CliAgent(BaseAgent):
    """Agent that runs an external CLI once per prompt."""

    executable = ""

    @abstractmethod
    def build_args(self, prompt: str, options: AgentOptions) -> list[str]:
        """Command-line arguments after the executable."""

    def extract_message(self, stdout: str) -> str:
        """Pull the agent's final message out of the CLI's stdout."""
        return stdout

    async def _invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        exe = get_executable(self.executable)
        cwd = Path(options.cwd) if options.cwd else None

        process = await asyncio.create_subprocess_exec(
            exe,
            *self.build_args(prompt, options),
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            # Timeout or shutdown: don't leave the agent running
            process.kill()
            await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        raw_output = "\n".join(part for part in (stdout, stderr) if part)
        input_tokens, output_tokens = parse_usage(stdout)

        result = AgentResult(
            output=self.extract_message(stdout),
            raw_output=raw_output,
            stderr=stderr,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        if process.returncode != 0:
            tail = stderr.strip().splitlines()[-1:] or stdout.strip().splitlines()[-1:]
            result.error = f"{self.name} exited with code {process.returncode}: {' '.join(tail)}"
            result.error_category = classify_error(result.diagnostic_text)
        return result


class ClaudeCliAgent(CliAgent):
    """Claude Code CLI (``claude -p``), billed to the Claude subscription."""

    name = AgentKind.CLAUDE.value
    executable = "claude"

    def build_args(self, prompt: str, options: AgentOptions) -> list[str]:
        return [
            "-p", prompt,
            "--model", options.model,
            "--output-format", "json",
            "--dangerously-skip-permissions",
        ]

    def extract_message(self, stdout: str) -> str:
        # --output-format json wraps the final message in {"result": "..."}
        try:
            envelope = json.loads(stdout)
        except (json.JSONDecodeError, ValueError):
            return stdout
        if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
            return envelope["result"]
        return stdout


class CodexCliAgent(CliAgent):
    """OpenAI Codex CLI (``codex exec --json``)."""

    name = AgentKind.CODEX.value
    executable = "codex"

    REASONING_EFFORT = "medium"

    def build_args(self, prompt: str, options: AgentOptions) -> list[str]:
        return [
            "exec",
            "--json",
            "--model", options.model,
            "--skip-git-repo-check",
            "--dangerously-bypass-approvals-and-sandbox",
            "-c", f'model_reasoning_effort="{self.REASONING_EFFORT}"',
            prompt,
        ]

    def extract_message(self, stdout: str) -> str:
        # --json emits JSONL events; keep the text of the last agent message
        messages = []
        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            item = event.get("item") if isinstance(event, dict) else None
            if isinstance(item, dict) and item.get("type") in ("agent_message", "assistant_message"):
                text = item.get("text")
                if isinstance(text, str):
                    messages.append(text)
        return messages[-1] if messages else stdout


class OpenCodeCliAgent(CliAgent):
    """OpenCode CLI (``opencode run``)."""

    name = AgentKind.OPENCODE.value
    executable = "opencode"

    def build_args(self, prompt: str, options: AgentOptions) -> list[str]:
        return ["run", "--model", options.model, prompt]


# =============================================================================
# SDK Agent
# =============================================================================

class ClaudeSdkAgent(BaseAgent):
    """Claude Agent SDK backend.

    Uses API credits for billing. Collects assistant text and the final
    result message; usage comes from the SDK rather than output parsing.
    """

    name = AgentKind.CLAUDE_SDK.value

    async def _invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
        except ImportError as e:
            raise AgentUnavailableError(
                "claude-agent-sdk is not installed. Install with: pip install 'spec-orchestrator[sdk]'"
            ) from e

        sdk_options = ClaudeAgentOptions(
            model=options.model,
            permission_mode="bypassPermissions",
            cwd=options.cwd,
        )

        texts: list[str] = []
        final_text: Optional[str] = None
        input_tokens = 0
        output_tokens = 0
        error: Optional[str] = None

        async for message in query(prompt=prompt, options=sdk_options):
            msg_type = type(message).__name__
            if msg_type == "AssistantMessage":
                for block in getattr(message, "content", None) or []:
                    text = getattr(block, "text", None)
                    if text:
                        texts.append(text)
            elif msg_type == "ResultMessage":
                final_text = getattr(message, "result", None)
                usage = getattr(message, "usage", None) or {}
                input_tokens += int(usage.get("input_tokens", 0) or 0)
                output_tokens += int(usage.get("output_tokens", 0) or 0)
                if getattr(message, "is_error", False):
                    error = f"Agent returned error: {final_text or 'unknown error'}"

        output = final_text or "\n".join(texts)
        return AgentResult(
            output=output,
            raw_output="\n".join(texts),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error=error,
            error_category=classify_error(error) if error else None,
        )


# =============================================================================
# Registry
# =============================================================================

AGENT_REGISTRY: dict[AgentKind, type[BaseAgent]] = {
    AgentKind.CLAUDE: ClaudeCliAgent,
    AgentKind.CODEX: CodexCliAgent,
    AgentKind.OPENCODE: OpenCodeCliAgent,
    AgentKind.CLAUDE_SDK: ClaudeSdkAgent,
}


def create_agent(kind: AgentKind | str) -> BaseAgent:
    """Create the backend registered for ``kind``.

    Raises:
        AgentUnavailableError: If no backend is registered under that name.
    """
    try:
        agent_kind = AgentKind(str(kind.value if isinstance(kind, AgentKind) else kind).lower())
    except ValueError as e:
        known = ", ".join(k.value for k in AGENT_REGISTRY)
        raise AgentUnavailableError(f"Unknown agent kind '{kind}'. Known: {known}") from e
    return AGENT_REGISTRY[agent_kind]()
