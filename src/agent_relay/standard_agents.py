"""Standard agent set and canonical agent sequences."""

from .registry import AgentDefinition, AgentRegistry, SideEffectScope

READ_TOOLS = ("Read", "Glob", "Grep")
WRITE_TOOLS = ("Read", "Write", "Edit", "Bash", "Glob", "Grep")

STANDARD_AGENTS: tuple[AgentDefinition, ...] = (
	AgentDefinition(
		name="architect",
		description="Analyzes requirements and designs the solution",
		capabilities=("analysis", "planning", "architecture", "design"),
		scope=SideEffectScope.READ_ONLY,
		estimated_cost=0.01,
		model_hint="haiku",
		tools=READ_TOOLS,
		system_prompt=(
			"You are the architect. Analyze the task and the codebase, then produce "
			"a concrete design: files to change, approach, risks. Do not modify files."
		),
	),
	AgentDefinition(
		name="coder",
		description="Implements changes in the codebase",
		capabilities=("implementation", "coding", "testing", "debugging", "refactoring"),
		scope=SideEffectScope.FULL,
		estimated_cost=0.04,
		model_hint="sonnet",
		tools=WRITE_TOOLS,
		system_prompt=(
			"You are the coder. Implement the requested change with minimal, focused "
			"edits. If the design is unclear, ask specific questions."
		),
	),
	AgentDefinition(
		name="reviewer",
		description="Reviews changes for correctness and quality",
		capabilities=("review", "quality-assurance", "validation", "feedback"),
		scope=SideEffectScope.READ_ONLY,
		estimated_cost=0.01,
		model_hint="haiku",
		tools=READ_TOOLS + ("Bash",),
		system_prompt=(
			"You are the reviewer. Check the implementation for bugs, missing cases "
			"and style problems. Say 'approved' only when nothing needs to change."
		),
	),
	AgentDefinition(
		name="security",
		description="Audits changes for security vulnerabilities",
		capabilities=("security", "audit", "vulnerability-analysis"),
		scope=SideEffectScope.READ_ONLY,
		estimated_cost=0.015,
		model_hint="sonnet",
		tools=READ_TOOLS,
		system_prompt=(
			"You are the security auditor. Look for injection, authentication, "
			"secret-handling and authorization flaws."
		),
	),
	AgentDefinition(
		name="documenter",
		description="Writes and updates documentation",
		capabilities=("documentation", "writing", "explanation"),
		scope=SideEffectScope.FULL,
		estimated_cost=0.025,
		model_hint="haiku",
		tools=("Read", "Write", "Edit", "Glob", "Grep"),
		system_prompt="You are the documenter. Write clear, accurate documentation.",
	),
	AgentDefinition(
		name="tester",
		description="Writes and runs tests",
		capabilities=("testing", "test-writing", "verification"),
		scope=SideEffectScope.FULL,
		estimated_cost=0.03,
		model_hint="sonnet",
		tools=WRITE_TOOLS,
		system_prompt="You are the tester. Add tests that cover the change and run them.",
	),
	AgentDefinition(
		name="performance",
		description="Profiles and recommends performance improvements",
		capabilities=("performance", "profiling", "optimization"),
		scope=SideEffectScope.READ_ONLY,
		estimated_cost=0.02,
		model_hint="sonnet",
		tools=READ_TOOLS + ("Bash",),
		system_prompt="You are the performance analyst. Identify bottlenecks and measure.",
	),
)

DEFAULT_SEQUENCES: dict[str, list[str]] = {
	"full": ["architect", "coder", "reviewer"],
	"analysis": ["architect", "reviewer"],
	"quickfix": ["coder", "reviewer"],
	"secure": ["architect", "security", "coder", "security", "reviewer"],
	"docs": ["architect", "documenter", "reviewer"],
	"testing": ["architect", "tester", "reviewer"],
	"performance": ["architect", "performance", "coder", "performance", "reviewer"],
}


def register_standard_agents(registry: AgentRegistry) -> AgentRegistry:
	"""Register every standard agent not already present."""
	for agent in STANDARD_AGENTS:
		if not registry.has(agent.name):
			registry.register(agent)
	return registry


def create_standard_registry() -> AgentRegistry:
	return register_standard_agents(AgentRegistry())
