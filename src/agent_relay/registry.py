"""
Agent Registry - catalog of available agent definitions.

Responsibilities:
- Register agent definitions under unique names
- Look up agents by name or capability tag
- Validate planned sequences against the catalog
- Sum estimated costs for a sequence

A registry is an explicit object handed to every component that needs
it; there is no process-wide instance.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from .errors import AgentNotFoundError, DuplicateAgentError

logger = logging.getLogger(__name__)


class SideEffectScope(str, Enum):
	"""What an agent is allowed to change."""
	READ_ONLY = "read_only"
	FULL = "full"


@dataclass(frozen=True)
class AgentDefinition:
	"""Immutable description of one agent role."""
	name: str
	description: str
	capabilities: tuple[str, ...] = ()
	scope: SideEffectScope = SideEffectScope.READ_ONLY
	estimated_cost: float = 0.0
	model_hint: Optional[str] = None
	tools: tuple[str, ...] = ()
	system_prompt: str = ""
	metadata: dict = field(default_factory=dict, compare=False, hash=False)

	@property
	def read_only(self) -> bool:
		return self.scope == SideEffectScope.READ_ONLY

	def has_capability(self, capability: str) -> bool:
		return capability.lower() in (c.lower() for c in self.capabilities)


class AgentRegistry:
	"""
	Name-indexed catalog of agent definitions.

	Usage:
		registry = AgentRegistry()
		registry.register(AgentDefinition(name="coder", description="..."))
		registry.validate_sequence(["coder", "reviewer"])  # -> ["reviewer"]
	"""

	def __init__(self, agents: Optional[Iterable[AgentDefinition]] = None):
		self._agents: dict[str, AgentDefinition] = {}
		for agent in agents or ():
			self.register(agent)

	def register(self, agent: AgentDefinition) -> None:
		"""Register an agent definition. Names are unique."""
		if agent.name in self._agents:
			raise DuplicateAgentError(f"Agent already registered: {agent.name}")
		self._agents[agent.name] = agent
		logger.debug(f"Registered agent {agent.name} ({agent.scope.value})")

	def get(self, name: str) -> AgentDefinition:
		"""Get an agent by name, raising AgentNotFoundError when absent."""
		agent = self._agents.get(name)
		if agent is None:
			raise AgentNotFoundError(f"Unknown agent: {name}")
		return agent

	def has(self, name: str) -> bool:
		return name in self._agents

	def names(self) -> list[str]:
		return list(self._agents)

	def list_all(self) -> list[AgentDefinition]:
		return list(self._agents.values())

	def find_by_capability(self, capability: str) -> list[AgentDefinition]:
		"""Agents whose capability tags include the given tag (case-insensitive)."""
		return [a for a in self._agents.values() if a.has_capability(capability)]

	def validate_sequence(self, names: Iterable[str]) -> list[str]:
		"""
		Check a planned sequence against the registry.

		Returns:
			Names not present in the registry, in order of first appearance.
			An empty list means the sequence is valid.
		"""
		missing: list[str] = []
		for name in names:
			if name not in self._agents and name not in missing:
				missing.append(name)
		return missing

	def estimate_cost(self, names: Iterable[str]) -> float:
		"""Sum of per-agent estimated costs. Unknown names raise AgentNotFoundError."""
		return round(sum(self.get(name).estimated_cost for name in names), 4)

	def summary(self) -> str:
		"""One line per agent, used in planning prompts."""
		lines = []
		for agent in self._agents.values():
			caps = ", ".join(agent.capabilities)
			access = "read-only" if agent.read_only else "full access"
			lines.append(f"- {agent.name}: {agent.description} [{caps}] ({access})")
		return "\n".join(lines)

	def __contains__(self, name: object) -> bool:
		return name in self._agents

	def __len__(self) -> int:
		return len(self._agents)
