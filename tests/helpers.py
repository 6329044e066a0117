"""Shared test fixtures and helpers for agent-relay tests."""

import asyncio
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from agent_relay.registry import AgentDefinition, AgentRegistry, SideEffectScope
from agent_relay.runner import AgentResponse, SessionContext, Usage


def init_git_repo(path: Path) -> None:
	"""Create a real git repo on branch main with an initial commit."""
	path.mkdir(parents=True, exist_ok=True)
	subprocess.run(["git", "init", "-b", "main"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=str(path), capture_output=True)
	subprocess.run(["git", "config", "user.name", "Test"], cwd=str(path), capture_output=True)
	(path / "README.md").write_text("# Test\n")
	subprocess.run(["git", "add", "README.md"], cwd=str(path), capture_output=True, check=True)
	subprocess.run(["git", "commit", "-m", "init"], cwd=str(path), capture_output=True, check=True)


def git(path: Path, *args: str) -> str:
	"""Run git synchronously and return stdout."""
	result = subprocess.run(["git", *args], cwd=str(path), capture_output=True, text=True, check=True)
	return result.stdout.strip()


def make_agent(name: str, capabilities: tuple[str, ...] = (), read_only: bool = False, cost: float = 0.01) -> AgentDefinition:
	return AgentDefinition(
		name=name,
		description=f"The {name} agent",
		capabilities=capabilities or (name,),
		scope=SideEffectScope.READ_ONLY if read_only else SideEffectScope.FULL,
		estimated_cost=cost,
	)


def make_registry(*names: str) -> AgentRegistry:
	"""Registry holding plain agents with the given names."""
	return AgentRegistry(make_agent(name) for name in names)


ScriptItem = Union[str, AgentResponse, Exception, Callable]
Responder = Callable[[str, str, Optional[SessionContext]], ScriptItem]


class ScriptedRunner:
	"""
	AgentRunner returning scripted outputs.

	Args:
		script: Either a dict of agent name -> list of items consumed in
			order, or a responder callable (agent_name, prompt, session).
			Items are strings, AgentResponses, exceptions (raised) or
			callables taking (agent_name, prompt, session) and returning
			one of the other item types.
		default: Output once an agent's list is exhausted
		cost: Reported cost per invocation
	"""

	def __init__(
		self,
		script: Union[dict[str, list[ScriptItem]], Responder, None] = None,
		default: str = "Done.\nNEXT: COMPLETE\nREASON: finished",
		cost: float = 0.01,
	):
		self.script = script if script is not None else {}
		self.default = default
		self.cost = cost
		self.calls: list[tuple[str, str, Optional[SessionContext]]] = []

	@property
	def agents_called(self) -> list[str]:
		return [name for name, _, _ in self.calls]

	def _next_item(self, name: str, prompt: str, session: Optional[SessionContext]) -> ScriptItem:
		if callable(self.script):
			return self.script(name, prompt, session)
		queue = self.script.get(name)
		if queue:
			return queue.pop(0)
		return self.default

	async def invoke(
		self,
		agent: AgentDefinition,
		prompt: str,
		session: Optional[SessionContext] = None,
	) -> AgentResponse:
		self.calls.append((agent.name, prompt, session))
		item = self._next_item(agent.name, prompt, session)
		if callable(item) and not isinstance(item, (str, AgentResponse, Exception)):
			item = item(agent.name, prompt, session)
		if isinstance(item, Exception):
			raise item
		if isinstance(item, AgentResponse):
			return item
		return AgentResponse(content=item, usage=Usage(cost=self.cost, duration=0.01))


def writes_file(relative: str, text: str, output: str = "Wrote it.\nNEXT: COMPLETE\nREASON: done") -> Callable:
	"""Script item that writes a file in the session's working dir, then answers."""

	def respond(name: str, prompt: str, session: Optional[SessionContext]) -> str:
		target = Path(session.working_dir) / relative
		target.parent.mkdir(parents=True, exist_ok=True)
		target.write_text(text)
		return output

	return respond


class BlockingRunner:
	"""
	AgentRunner whose invocations never return until cancelled.

	Args:
		answers: Scripted items per agent served before that agent blocks
	"""

	def __init__(self, answers: Optional[dict[str, list[ScriptItem]]] = None):
		self.answers = answers or {}
		self.started = asyncio.Event()
		self.invoked: list[str] = []

	async def invoke(
		self,
		agent: AgentDefinition,
		prompt: str,
		session: Optional[SessionContext] = None,
	) -> AgentResponse:
		queue = self.answers.get(agent.name)
		if queue:
			return await ScriptedRunner({agent.name: [queue.pop(0)]}).invoke(agent, prompt, session)
		self.invoked.append(agent.name)
		self.started.set()
		await asyncio.Event().wait()


def start_worker_process(ignore_sigterm: bool = False) -> subprocess.Popen:
	"""
	Start a sleeping Python process standing in for a background worker.

	A daemon thread waits on it so it is reaped as soon as it exits and
	its pid stops existing.
	"""
	code = "import signal, time\n"
	if ignore_sigterm:
		code += "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
	code += "print('ready', flush=True)\ntime.sleep(60)\n"
	proc = subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE, text=True)
	proc.stdout.readline()
	threading.Thread(target=proc.wait, daemon=True).start()
	return proc


def dead_pid() -> int:
	"""PID of a process that has already exited."""
	proc = subprocess.Popen([sys.executable, "-c", "pass"])
	proc.wait()
	return proc.pid
