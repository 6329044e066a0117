"""
Agent Runner - invokes one agent with a prompt inside a session.

The orchestrator talks to models only through the AgentRunner protocol.
ClaudeCliRunner drives the ``claude`` CLI as a subprocess and maps its
failures onto the invocation error taxonomy.
"""

import asyncio
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from .errors import (
	AgentInvocationError,
	AgentTimeoutError,
	RateLimitedError,
	TransientAgentError,
	UnauthorizedError,
	UnrecoverableAgentError,
)
from .registry import AgentDefinition

logger = logging.getLogger(__name__)


@dataclass
class Usage:
	"""Cost and wall time of one invocation."""
	cost: float = 0.0
	duration: float = 0.0


@dataclass
class AgentResponse:
	"""What an agent produced."""
	content: str
	usage: Usage = field(default_factory=Usage)
	side_effects: str = ""
	structured: Optional[dict] = None
	session_id: Optional[str] = None


@dataclass
class SessionContext:
	"""Where and under which conversation session an agent runs."""
	working_dir: Path
	session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
	started: bool = False
	env: dict[str, str] = field(default_factory=dict)


class AgentRunner(Protocol):
	"""Invoke an agent. Implementations raise AgentInvocationError subclasses."""

	async def invoke(
		self,
		agent: AgentDefinition,
		prompt: str,
		session: Optional[SessionContext] = None,
	) -> AgentResponse: ...


_RATE_LIMIT_RE = re.compile(r"rate.?limit|\b429\b|too many requests|usage limit", re.IGNORECASE)
_AUTH_RE = re.compile(r"unauthori[sz]ed|\b40[13]\b|invalid api key|authentication|not logged in", re.IGNORECASE)
_TRANSIENT_RE = re.compile(
	r"overloaded|\b5(?:29|03|02)\b|timed? ?out|econnreset|econnrefused|network|connection",
	re.IGNORECASE,
)


def classify_failure(message: str, agent: Optional[str] = None) -> AgentInvocationError:
	"""Map CLI error text onto the invocation error taxonomy."""
	if _RATE_LIMIT_RE.search(message):
		return RateLimitedError(message, agent=agent)
	if _AUTH_RE.search(message):
		return UnauthorizedError(message, agent=agent)
	if _TRANSIENT_RE.search(message):
		return TransientAgentError(message, agent=agent)
	return UnrecoverableAgentError(message, agent=agent)


class ClaudeCliRunner:
	"""
	Runs agents through the claude CLI in print mode with JSON output.

	Args:
		timeout: Per-invocation timeout in seconds
		grace_period: Seconds between terminate and kill after a timeout
		executable: CLI binary name or path
	"""

	def __init__(self, timeout: float = 300.0, grace_period: float = 10.0, executable: str = "claude"):
		self.timeout = timeout
		self.grace_period = grace_period
		self.executable = executable

	def build_command(self, agent: AgentDefinition, session: Optional[SessionContext]) -> list[str]:
		cmd = [self.executable, "--print", "--output-format", "json"]
		if agent.model_hint:
			cmd += ["--model", agent.model_hint]
		if agent.tools:
			cmd += ["--allowedTools", ",".join(agent.tools)]
		if agent.system_prompt:
			cmd += ["--append-system-prompt", agent.system_prompt]
		if session is not None:
			if session.started:
				cmd += ["--resume", session.session_id]
			else:
				cmd += ["--session-id", session.session_id]
		return cmd

	async def invoke(
		self,
		agent: AgentDefinition,
		prompt: str,
		session: Optional[SessionContext] = None,
	) -> AgentResponse:
		"""
		Run one agent turn.

		Raises:
			AgentTimeoutError: No result within the timeout (process terminated)
			RateLimitedError, UnauthorizedError, TransientAgentError,
			UnrecoverableAgentError: Classified CLI failures
		"""
		cmd = self.build_command(agent, session)
		cwd = str(session.working_dir) if session else None
		env = None
		if session and session.env:
			env = {**os.environ, **session.env}

		start = time.monotonic()
		try:
			process = await asyncio.create_subprocess_exec(
				*cmd,
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=cwd,
				env=env,
			)
		except FileNotFoundError:
			raise UnrecoverableAgentError(f"{self.executable} CLI not found", agent=agent.name)

		try:
			stdout, stderr = await asyncio.wait_for(
				process.communicate(input=prompt.encode()),
				timeout=self.timeout,
			)
		except asyncio.TimeoutError:
			await self._terminate(process)
			raise AgentTimeoutError(
				f"Agent {agent.name} timed out after {self.timeout}s", agent=agent.name,
			)
		except asyncio.CancelledError:
			await self._terminate(process)
			raise

		duration = time.monotonic() - start
		out_text = stdout.decode(errors="replace")
		err_text = stderr.decode(errors="replace")

		if process.returncode != 0:
			message = err_text.strip() or out_text.strip() or f"exit code {process.returncode}"
			logger.warning(f"Agent {agent.name} failed (rc={process.returncode}): {message[:200]}")
			raise classify_failure(message, agent=agent.name)

		if session is not None:
			session.started = True
		return self._parse_output(agent, out_text, duration)

	async def _terminate(self, process: asyncio.subprocess.Process) -> None:
		"""SIGTERM, wait the grace period, then SIGKILL."""
		if process.returncode is not None:
			return
		try:
			process.terminate()
		except ProcessLookupError:
			return
		try:
			await asyncio.wait_for(process.wait(), timeout=self.grace_period)
		except asyncio.TimeoutError:
			logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
			try:
				process.kill()
			except ProcessLookupError:
				return
			await process.wait()

	def _parse_output(self, agent: AgentDefinition, output: str, duration: float) -> AgentResponse:
		try:
			data = json.loads(output)
		except json.JSONDecodeError:
			return AgentResponse(content=output, usage=Usage(cost=agent.estimated_cost, duration=duration))

		if not isinstance(data, dict):
			return AgentResponse(content=output, usage=Usage(cost=agent.estimated_cost, duration=duration))

		if data.get("is_error"):
			raise classify_failure(str(data.get("result") or data.get("subtype") or "agent error"), agent=agent.name)

		cost = data.get("total_cost_usd", data.get("cost_usd"))
		reported = data.get("duration_ms")
		structured = data.get("structured_output")
		return AgentResponse(
			content=str(data.get("result", "")),
			usage=Usage(
				cost=float(cost) if cost is not None else agent.estimated_cost,
				duration=reported / 1000 if isinstance(reported, (int, float)) else duration,
			),
			structured=structured if isinstance(structured, dict) else None,
			session_id=data.get("session_id"),
		)
