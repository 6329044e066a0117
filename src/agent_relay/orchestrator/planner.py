"""
Task Planner - chooses the ordered agent sequence for a task.

Two strategies:
- model: ask a planning agent for a JSON plan, validated against the registry
- heuristic: keyword classification onto canonical sequences

Model planning that fails for any reason (invocation error, unparseable
output, unknown agents) falls back to heuristics. A plan never names an
agent that is not registered.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import AgentInvocationError, PlanningFailure
from ..registry import AgentDefinition, AgentRegistry, SideEffectScope
from ..runner import AgentRunner, SessionContext
from ..standard_agents import DEFAULT_SEQUENCES

logger = logging.getLogger(__name__)

PLANNER_AGENT = AgentDefinition(
	name="planner",
	description="Selects the agents needed for a task",
	capabilities=("planning",),
	scope=SideEffectScope.READ_ONLY,
	estimated_cost=0.005,
	model_hint="haiku",
	tools=("Read", "Glob", "Grep"),
)

SECURITY_KEYWORDS = ("auth", "security", "password", "token", "credential", "permission", "vulnerab")
DOCS_KEYWORDS = ("document", "readme", "docstring", "comment")
PERFORMANCE_KEYWORDS = ("optimi", "performance", "speed up", "slow", "latency", "memory usage")
ANALYSIS_KEYWORDS = (
	"analyze", "analyse", "review", "assess", "evaluate", "audit", "investigate", "explain", "understand",
)
IMPLEMENTATION_VERBS = ("implement", "fix", "add", "create", "build", "change", "update", "refactor", "write", "remove")
QUICKFIX_KEYWORDS = ("typo", "simple", "quick", "small", "minor", "one-line")
COMPLEX_KEYWORDS = ("refactor", "redesign", "migrate", "rewrite", "architecture", "overhaul")


class ExecutionPlan(BaseModel):
	"""Ordered agent sequence chosen for a task."""
	agents: list[str]
	rationale: str = ""
	estimated_cost: float = 0.0
	task_type: str = "implementation"
	complexity: str = "medium"
	strategy: str = "heuristic"
	skipped: dict[str, str] = Field(default_factory=dict)


def extract_json_object(response: str, required_key: Optional[str] = None) -> Optional[dict]:
	"""Pull the first JSON object out of model output (fenced block or raw)."""
	json_match = re.search(r"```json\s*(.*?)\s*```", response, re.DOTALL)
	if json_match:
		json_str = json_match.group(1)
	else:
		pattern = r"\{[\s\S]*\}" if required_key is None else rf"\{{[\s\S]*\"{re.escape(required_key)}\"[\s\S]*\}}"
		json_match = re.search(pattern, response)
		if not json_match:
			return None
		json_str = json_match.group(0)

	try:
		data = json.loads(json_str)
	except json.JSONDecodeError as e:
		logger.debug(f"Failed to parse JSON from model output: {e}")
		return None
	if not isinstance(data, dict):
		return None
	if required_key is not None and required_key not in data:
		return None
	return data


def _has_any(text: str, words: tuple[str, ...]) -> bool:
	return any(re.search(rf"\b{re.escape(w)}", text) for w in words)


class TaskPlanner:
	"""
	Builds an ExecutionPlan for a task description.

	Args:
		registry: Agents a plan may name
		runner: Needed for the model strategy only
		strategy: "model" or "heuristic"
	"""

	def __init__(
		self,
		registry: AgentRegistry,
		runner: Optional[AgentRunner] = None,
		strategy: str = "heuristic",
	):
		self.registry = registry
		self.runner = runner
		self.strategy = strategy

	async def plan(self, task: str, project_path: Optional[Path] = None) -> ExecutionPlan:
		"""Plan with the configured strategy, falling back to heuristics."""
		if self.strategy == "model" and self.runner is not None:
			try:
				plan = await self.plan_with_model(task, project_path)
				logger.info(f"Model plan: {' -> '.join(plan.agents)}")
				return plan
			except PlanningFailure as e:
				logger.warning(f"Model planning failed, using heuristics: {e}")

		plan = self.plan_with_heuristics(task)
		logger.info(f"Heuristic plan ({plan.task_type}): {' -> '.join(plan.agents)}")
		return plan

	async def plan_with_model(self, task: str, project_path: Optional[Path] = None) -> ExecutionPlan:
		"""
		Ask the planning agent for a JSON plan.

		Raises:
			PlanningFailure: No runner, invocation failure, unparseable or invalid plan
		"""
		if self.runner is None:
			raise PlanningFailure("No agent runner configured for model planning")

		session = SessionContext(working_dir=project_path) if project_path else None
		try:
			response = await self.runner.invoke(PLANNER_AGENT, self._build_prompt(task), session)
		except AgentInvocationError as e:
			raise PlanningFailure(f"Planning agent failed: {e}") from e

		data = extract_json_object(response.content, "agents")
		if data is None:
			raise PlanningFailure("No JSON plan in planning agent output")

		agents = [str(a).strip().lower() for a in data.get("agents") or []]
		if not agents:
			raise PlanningFailure("Planning agent returned an empty sequence")

		missing = self.registry.validate_sequence(agents)
		if missing:
			raise PlanningFailure(f"Plan names unregistered agents: {', '.join(missing)}")

		return ExecutionPlan(
			agents=agents,
			rationale=str(data.get("reasoning") or data.get("rationale") or ""),
			estimated_cost=self.registry.estimate_cost(agents),
			task_type=str(data.get("taskType") or data.get("task_type") or "implementation"),
			complexity=str(data.get("complexity") or "medium"),
			strategy="model",
			skipped=self.explain_skips(agents, str(data.get("skipReason") or data.get("skip_reason") or "")),
		)

	def _build_prompt(self, task: str) -> str:
		lines = [
			"# Plan Agent Sequence",
			"",
			"Choose the smallest ordered sequence of agents that can complete the task.",
			"Skip agents that add no value (e.g. no architect for a typo fix).",
			"",
			"## Task",
			task,
			"",
			"## Available Agents",
			self.registry.summary(),
			"",
			"## Output Format",
			"Respond with JSON only:",
			"```json",
			"{",
			'  "taskType": "analysis|implementation|fix|documentation|security|performance|testing",',
			'  "agents": ["agent-name", "..."],',
			'  "reasoning": "why this sequence",',
			'  "complexity": "simple|medium|complex",',
			'  "skipReason": "why other agents were skipped"',
			"}",
			"```",
		]
		return "\n".join(lines)

	def plan_with_heuristics(self, task: str) -> ExecutionPlan:
		"""Classify the task by keywords and map it to a canonical sequence."""
		text = task.lower()
		implements = _has_any(text, IMPLEMENTATION_VERBS)

		if _has_any(text, ANALYSIS_KEYWORDS) and not implements:
			task_type, sequence = "analysis", "analysis"
			rationale = "Read-only analysis: no implementation needed"
		elif _has_any(text, SECURITY_KEYWORDS):
			task_type, sequence = "security", "secure"
			rationale = "Security-sensitive change: audit before and after implementation"
		elif _has_any(text, ("fix",)) and _has_any(text, QUICKFIX_KEYWORDS):
			task_type, sequence = "fix", "quickfix"
			rationale = "Small fix: implement directly, then review"
		elif _has_any(text, DOCS_KEYWORDS):
			task_type, sequence = "documentation", "docs"
			rationale = "Documentation task"
		elif _has_any(text, ("test",)) and not _has_any(text, ("fix",)):
			task_type, sequence = "testing", "testing"
			rationale = "Testing task"
		elif _has_any(text, PERFORMANCE_KEYWORDS):
			task_type, sequence = "performance", "performance"
			rationale = "Performance work: profile before and after changes"
		elif _has_any(text, ("fix", "bug")):
			task_type, sequence = "fix", "full"
			rationale = "Bug fix: analyze, implement, review"
		else:
			task_type, sequence = "implementation", "full"
			rationale = "General implementation"

		agents = [a for a in DEFAULT_SEQUENCES[sequence] if self.registry.has(a)]
		if not agents:
			agents = self._fallback_sequence()

		return ExecutionPlan(
			agents=agents,
			rationale=rationale,
			estimated_cost=self.registry.estimate_cost(agents),
			task_type=task_type,
			complexity=self.estimate_complexity(task),
			strategy="heuristic",
			skipped=self.explain_skips(agents),
		)

	def _fallback_sequence(self) -> list[str]:
		"""Implementer then reviewer by capability, else the first registered agent."""
		sequence = []
		for capability in ("implementation", "review"):
			found = self.registry.find_by_capability(capability)
			if found:
				sequence.append(found[0].name)
		if not sequence:
			names = self.registry.names()
			if not names:
				raise PlanningFailure("Registry is empty")
			sequence = names[:1]
		return sequence

	@staticmethod
	def estimate_complexity(task: str) -> str:
		text = task.lower()
		if _has_any(text, COMPLEX_KEYWORDS) or len(text.split()) > 60:
			return "complex"
		if _has_any(text, QUICKFIX_KEYWORDS) or len(text.split()) < 10:
			return "simple"
		return "medium"

	def explain_skips(self, agents: list[str], reason: str = "") -> dict[str, str]:
		"""Why each registered agent is absent from the plan."""
		skipped = {}
		for definition in self.registry.list_all():
			if definition.name in agents:
				continue
			skipped[definition.name] = reason or f"Not needed ({definition.description.lower()})"
		return skipped
