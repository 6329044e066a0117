"""Tests for the claude CLI runner, driven against fake CLI scripts."""

import json
import stat
import time
from pathlib import Path

import pytest

from agent_relay.errors import (
	AgentTimeoutError,
	RateLimitedError,
	TransientAgentError,
	UnauthorizedError,
	UnrecoverableAgentError,
)
from agent_relay.registry import AgentDefinition
from agent_relay.runner import ClaudeCliRunner, SessionContext, classify_failure

AGENT = AgentDefinition(
	name="coder",
	description="Writes code",
	estimated_cost=0.05,
	model_hint="sonnet",
	tools=("Read", "Edit"),
	system_prompt="You write code.",
)


def fake_cli(tmp_path: Path, body: str) -> str:
	"""Write an executable shell script standing in for the CLI."""
	script = tmp_path / "fake-claude"
	script.write_text(f"#!/bin/sh\n{body}\n")
	script.chmod(script.stat().st_mode | stat.S_IEXEC)
	return str(script)


def json_cli(tmp_path: Path, payload: dict) -> str:
	"""CLI that records its argv and stdin, then prints a JSON payload."""
	(tmp_path / "payload.json").write_text(json.dumps(payload))
	return fake_cli(
		tmp_path,
		f'echo "$@" >> "{tmp_path}/argv.log"\n'
		f'cat > "{tmp_path}/stdin.txt"\n'
		f'cat "{tmp_path}/payload.json"',
	)


class TestBuildCommand:
	"""CLI arguments."""

	def test_full_command(self, tmp_path):
		session = SessionContext(working_dir=tmp_path, session_id="s-1")
		cmd = ClaudeCliRunner().build_command(AGENT, session)

		assert cmd[:4] == ["claude", "--print", "--output-format", "json"]
		assert cmd[cmd.index("--model") + 1] == "sonnet"
		assert cmd[cmd.index("--allowedTools") + 1] == "Read,Edit"
		assert cmd[cmd.index("--append-system-prompt") + 1] == "You write code."
		assert cmd[-2:] == ["--session-id", "s-1"]

	def test_started_session_resumes(self, tmp_path):
		session = SessionContext(working_dir=tmp_path, session_id="s-1", started=True)
		cmd = ClaudeCliRunner().build_command(AGENT, session)
		assert cmd[-2:] == ["--resume", "s-1"]

	def test_minimal_agent(self):
		agent = AgentDefinition(name="plain", description="plain")
		assert ClaudeCliRunner(executable="cc").build_command(agent, None) == [
			"cc", "--print", "--output-format", "json",
		]


class TestInvoke:
	"""Subprocess invocation and output parsing."""

	@pytest.mark.asyncio
	async def test_json_output(self, tmp_path):
		executable = json_cli(tmp_path, {
			"result": "Done.\nNEXT: COMPLETE",
			"total_cost_usd": 0.12,
			"duration_ms": 2500,
			"session_id": "abc",
			"structured_output": {"next": "COMPLETE"},
		})
		runner = ClaudeCliRunner(executable=executable)
		session = SessionContext(working_dir=tmp_path, session_id="s-9")

		response = await runner.invoke(AGENT, "Do the thing", session)

		assert response.content == "Done.\nNEXT: COMPLETE"
		assert response.usage.cost == 0.12
		assert response.usage.duration == 2.5
		assert response.structured == {"next": "COMPLETE"}
		assert response.session_id == "abc"
		assert (tmp_path / "stdin.txt").read_text() == "Do the thing"

		# The second turn resumes the same session
		assert session.started
		await runner.invoke(AGENT, "Again", session)
		calls = (tmp_path / "argv.log").read_text().splitlines()
		assert calls[0].endswith("--session-id s-9")
		assert calls[1].endswith("--resume s-9")

	@pytest.mark.asyncio
	async def test_plain_text_output_uses_estimate(self, tmp_path):
		runner = ClaudeCliRunner(executable=fake_cli(tmp_path, "cat > /dev/null\necho 'plain answer'"))

		response = await runner.invoke(AGENT, "hi")

		assert response.content.strip() == "plain answer"
		assert response.usage.cost == 0.05

	@pytest.mark.asyncio
	async def test_is_error_payload_classified(self, tmp_path):
		runner = ClaudeCliRunner(executable=json_cli(tmp_path, {"is_error": True, "result": "API Error: 429 rate limit"}))
		with pytest.raises(RateLimitedError) as info:
			await runner.invoke(AGENT, "hi")
		assert info.value.agent == "coder"

	@pytest.mark.asyncio
	async def test_nonzero_exit_classified(self, tmp_path):
		runner = ClaudeCliRunner(executable=fake_cli(tmp_path, "cat > /dev/null\necho 'Invalid API key' >&2\nexit 1"))
		with pytest.raises(UnauthorizedError):
			await runner.invoke(AGENT, "hi")

	@pytest.mark.asyncio
	async def test_session_not_started_after_failure(self, tmp_path):
		runner = ClaudeCliRunner(executable=fake_cli(tmp_path, "cat > /dev/null\nexit 3"))
		session = SessionContext(working_dir=tmp_path)
		with pytest.raises(UnrecoverableAgentError):
			await runner.invoke(AGENT, "hi", session)
		assert not session.started

	@pytest.mark.asyncio
	async def test_timeout_terminates_process(self, tmp_path):
		runner = ClaudeCliRunner(
			timeout=0.3,
			grace_period=2,
			executable=fake_cli(tmp_path, "exec sleep 30"),
		)
		start = time.monotonic()
		with pytest.raises(AgentTimeoutError) as info:
			await runner.invoke(AGENT, "hi")
		assert time.monotonic() - start < 10
		assert info.value.retryable

	@pytest.mark.asyncio
	async def test_missing_executable(self, tmp_path):
		runner = ClaudeCliRunner(executable=str(tmp_path / "does-not-exist"))
		with pytest.raises(UnrecoverableAgentError, match="not found"):
			await runner.invoke(AGENT, "hi")


class TestClassifyFailure:
	"""Error text to error kind."""

	@pytest.mark.parametrize("message,expected", [
		("Error: rate limit exceeded", RateLimitedError),
		("HTTP 429 Too Many Requests", RateLimitedError),
		("Claude usage limit reached", RateLimitedError),
		("401 Unauthorized", UnauthorizedError),
		("Not logged in. Please run /login", UnauthorizedError),
		("API overloaded (529)", TransientAgentError),
		("ECONNRESET while streaming", TransientAgentError),
		("HTTP 403 Forbidden", UnauthorizedError),
		("Invalid request: prompt too long", UnrecoverableAgentError),
		("Tool call failed after 14290ms", UnrecoverableAgentError),
		("Schema error in field 4013: expected string", UnrecoverableAgentError),
		("Exit status 15030", UnrecoverableAgentError),
	])
	def test_classification(self, message, expected):
		error = classify_failure(message, agent="coder")
		assert type(error) is expected
		assert error.agent == "coder"
		assert str(error) == message
