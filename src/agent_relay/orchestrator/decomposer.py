"""
Task Decomposer - splits a task into independent parallel subtasks.

Steps:
1. Extract candidate subtasks (analysis agent JSON, or heuristics over
   enumerated items) with target files and ordering dependencies
2. Estimate complexity; small tasks stay sequential
3. Build the file conflict graph and the dependency graph
4. Merge conflicting subtasks, and subtasks linked by dependencies, into
   single units; reject dependency cycles

An accepted decomposition contains between ``min_parts`` and
``max_parts`` units, no two of which share a target file or depend on
each other.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import AgentInvocationError, DecompositionRejected
from ..registry import AgentRegistry
from ..runner import AgentRunner, SessionContext
from .planner import COMPLEX_KEYWORDS, extract_json_object

logger = logging.getLogger(__name__)

_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$", re.MULTILINE)
_FILE_RE = re.compile(
	r"(?<![\w/.-])((?:[\w.-]+/)*[\w-]+\.(?:py|pyi|js|jsx|ts|tsx|go|rs|java|kt|rb|php|c|h|cc|cpp|hpp|cs|swift"
	r"|md|rst|txt|json|ya?ml|toml|ini|cfg|css|scss|html|sql|sh))\b"
)
_DEP_RE = re.compile(r"\b(?:after|depends on|once|requires|following)\s+(?:step|part|item|task)\s*#?(\d+)", re.IGNORECASE)


class Subtask(BaseModel):
	"""A unit of work that can run in its own sandbox."""
	index: int
	description: str
	files: list[str] = Field(default_factory=list)
	depends_on: list[int] = Field(default_factory=list)
	role: str = "coder"
	members: list[int] = Field(default_factory=list)


class DecompositionResult(BaseModel):
	"""Whether and how a task runs in parallel."""
	accepted: bool
	reason: str
	complexity: int = 0
	strategy: str = "heuristic"
	subtasks: list[Subtask] = Field(default_factory=list)


def normalize_path(path: str) -> str:
	return path.strip().strip("`'\"").lower().removeprefix("./")


def _role_for(text: str) -> str:
	lowered = text.lower()
	if re.search(r"\btests?\b", lowered):
		return "tester"
	if re.search(r"\b(document|docs|readme)", lowered):
		return "documenter"
	return "coder"


class _UnionFind:
	def __init__(self, size: int):
		self.parent = list(range(size))

	def find(self, i: int) -> int:
		while self.parent[i] != i:
			self.parent[i] = self.parent[self.parent[i]]
			i = self.parent[i]
		return i

	def union(self, a: int, b: int) -> None:
		ra, rb = self.find(a), self.find(b)
		if ra != rb:
			self.parent[max(ra, rb)] = min(ra, rb)


class TaskDecomposer:
	"""
	Decides whether a task can be parallelized and produces its subtasks.

	Args:
		runner: Optional runner for model-assisted extraction
		registry: Registry holding the analysis agent
		complexity_threshold: Minimum complexity (1-10) worth parallelizing
		min_parts: Fewest independent units for a parallel plan
		max_parts: Most independent units for a parallel plan
		analyst: Agent asked to extract subtasks
	"""

	def __init__(
		self,
		runner: Optional[AgentRunner] = None,
		registry: Optional[AgentRegistry] = None,
		complexity_threshold: int = 3,
		min_parts: int = 2,
		max_parts: int = 5,
		analyst: str = "architect",
	):
		self.runner = runner
		self.registry = registry
		self.complexity_threshold = complexity_threshold
		self.min_parts = min_parts
		self.max_parts = max_parts
		self.analyst = analyst

	async def analyze(self, task: str, project_path: Optional[Path] = None) -> DecompositionResult:
		"""
		Decide whether the task runs in parallel.

		Returns:
			Accepted result with independent subtasks, or a rejection with the reason
		"""
		extracted = await self._extract_with_model(task, project_path)
		if extracted is not None:
			complexity, subtasks = extracted
			strategy = "model"
		else:
			subtasks = self.extract_subtasks(task)
			complexity = self.estimate_complexity(task, subtasks)
			strategy = "heuristic"

		def reject(reason: str) -> DecompositionResult:
			logger.info(f"Decomposition rejected: {reason}")
			return DecompositionResult(
				accepted=False, reason=reason, complexity=complexity, strategy=strategy, subtasks=subtasks,
			)

		if complexity < self.complexity_threshold:
			return reject(f"Complexity {complexity} below threshold {self.complexity_threshold}")
		if len(subtasks) < self.min_parts:
			return reject(f"Only {len(subtasks)} part(s) found")

		try:
			partitions = self.partition(subtasks)
		except DecompositionRejected as e:
			return reject(str(e))

		logger.info(f"Decomposed into {len(partitions)} parallel subtasks (complexity {complexity})")
		return DecompositionResult(
			accepted=True,
			reason=f"{len(partitions)} independent subtasks",
			complexity=complexity,
			strategy=strategy,
			subtasks=partitions,
		)

	async def _extract_with_model(self, task: str, project_path: Optional[Path]) -> Optional[tuple[int, list[Subtask]]]:
		if self.runner is None or self.registry is None or not self.registry.has(self.analyst):
			return None

		prompt = "\n".join([
			"# Analyze Task for Parallel Execution",
			"",
			"Decide whether this task splits into independent parts that can be",
			"implemented concurrently on separate branches.",
			"",
			"## Task",
			task,
			"",
			"## Output Format",
			"Respond with JSON only:",
			"```json",
			"{",
			'  "complexity": 1-10,',
			'  "parts": [',
			'    {"description": "...", "role": "coder|tester|documenter",',
			'     "files": ["path/to/file.py"], "dependencies": [0-based indices of parts it needs first]}',
			"  ]",
			"}",
			"```",
		])
		session = SessionContext(working_dir=project_path) if project_path else None
		try:
			response = await self.runner.invoke(self.registry.get(self.analyst), prompt, session)
		except AgentInvocationError as e:
			logger.warning(f"Decomposition analysis failed, using heuristics: {e}")
			return None

		data = extract_json_object(response.content, "parts")
		if data is None:
			logger.warning("No JSON decomposition in analysis output, using heuristics")
			return None

		subtasks = []
		for i, part in enumerate(data.get("parts") or []):
			if not isinstance(part, dict) or not part.get("description"):
				continue
			deps = [int(d) for d in part.get("dependencies") or [] if str(d).isdigit()]
			subtasks.append(Subtask(
				index=i,
				description=str(part["description"]),
				files=[str(f) for f in part.get("files") or []],
				depends_on=deps,
				role=str(part.get("role") or _role_for(str(part["description"]))),
				members=[i],
			))
		try:
			complexity = int(data.get("complexity", 0))
		except (TypeError, ValueError):
			complexity = self.estimate_complexity(task, subtasks)
		return max(1, min(10, complexity)), subtasks

	def extract_subtasks(self, task: str) -> list[Subtask]:
		"""Heuristic extraction: enumerated items, else semicolon-separated clauses."""
		items = _ITEM_RE.findall(task)
		if len(items) < 2:
			items = [part.strip() for part in task.split(";") if part.strip()]

		subtasks = []
		for i, text in enumerate(items):
			deps = {int(n) - 1 for n in _DEP_RE.findall(text) if 0 < int(n) <= len(items) and int(n) - 1 != i}
			if i > 0 and re.match(r"\s*then\b", text, re.IGNORECASE):
				deps.add(i - 1)
			subtasks.append(Subtask(
				index=i,
				description=text,
				files=sorted(set(_FILE_RE.findall(text))),
				depends_on=sorted(deps),
				role=_role_for(text),
				members=[i],
			))
		return subtasks

	@staticmethod
	def estimate_complexity(task: str, subtasks: list[Subtask]) -> int:
		"""Rough 1-10 score from part count, length, file spread and keywords."""
		words = len(task.split())
		files = {normalize_path(f) for s in subtasks for f in s.files}
		score = 1
		score += min(4, len(subtasks)) if len(subtasks) > 1 else 0
		score += 2 if words > 40 else 1 if words > 15 else 0
		score += 1 if len(files) >= 3 else 0
		score += 2 if any(k in task.lower() for k in COMPLEX_KEYWORDS) else 0
		return max(1, min(10, score))

	@staticmethod
	def build_conflict_graph(subtasks: list[Subtask]) -> dict[int, set[int]]:
		"""Edges between subtasks (by position) that share a normalized target file."""
		graph: dict[int, set[int]] = {i: set() for i in range(len(subtasks))}
		files = [{normalize_path(f) for f in s.files} for s in subtasks]
		for i in range(len(subtasks)):
			for j in range(i + 1, len(subtasks)):
				if files[i] & files[j]:
					graph[i].add(j)
					graph[j].add(i)
		return graph

	@staticmethod
	def build_dependency_graph(subtasks: list[Subtask]) -> dict[int, set[int]]:
		"""Directed edges i -> j meaning subtask i must run after subtask j."""
		position = {s.index: i for i, s in enumerate(subtasks)}
		graph: dict[int, set[int]] = {i: set() for i in range(len(subtasks))}
		for i, subtask in enumerate(subtasks):
			for dep in subtask.depends_on:
				j = position.get(dep)
				if j is not None and j != i:
					graph[i].add(j)
		return graph

	def partition(self, subtasks: list[Subtask]) -> list[Subtask]:
		"""
		Merge subtasks into independent units.

		Raises:
			DecompositionRejected: Dependency cycle between units, or a unit
				count outside min_parts..max_parts
		"""
		conflicts = self.build_conflict_graph(subtasks)
		dependencies = self.build_dependency_graph(subtasks)

		groups = _UnionFind(len(subtasks))
		for i, neighbours in conflicts.items():
			for j in neighbours:
				groups.union(i, j)

		group_edges: dict[int, set[int]] = {}
		for i, deps in dependencies.items():
			for j in deps:
				gi, gj = groups.find(i), groups.find(j)
				if gi != gj:
					group_edges.setdefault(gi, set()).add(gj)

		cycle = _find_cycle(group_edges)
		if cycle:
			raise DecompositionRejected(
				"Dependency cycle between subtasks " + " -> ".join(str(subtasks[g].index) for g in cycle)
			)

		# Dependent units cannot run concurrently; fold them together
		for gi, targets in group_edges.items():
			for gj in targets:
				groups.union(gi, gj)

		members: dict[int, list[int]] = {}
		for i in range(len(subtasks)):
			members.setdefault(groups.find(i), []).append(i)

		units = [
			self._merge(subtasks, _topological(positions, dependencies), n)
			for n, positions in enumerate(sorted(members.values(), key=min))
		]

		if len(units) < self.min_parts:
			raise DecompositionRejected(f"Only {len(units)} independent unit(s) after resolving conflicts")
		if len(units) > self.max_parts:
			raise DecompositionRejected(f"{len(units)} units exceeds the maximum of {self.max_parts}")
		return units

	@staticmethod
	def _merge(subtasks: list[Subtask], positions: list[int], index: int) -> Subtask:
		parts = [subtasks[p] for p in positions]
		if len(parts) == 1:
			only = parts[0]
			return only.model_copy(update={"index": index, "depends_on": [], "members": [only.index]})

		files: list[str] = []
		for part in parts:
			for f in part.files:
				if normalize_path(f) not in {normalize_path(x) for x in files}:
					files.append(f)
		roles = {p.role for p in parts}
		description = "Complete these related changes in order:\n" + "\n".join(
			f"{n}. {p.description}" for n, p in enumerate(parts, 1)
		)
		return Subtask(
			index=index,
			description=description,
			files=files,
			depends_on=[],
			role=roles.pop() if len(roles) == 1 else "coder",
			members=[p.index for p in parts],
		)


def _find_cycle(edges: dict[int, set[int]]) -> Optional[list[int]]:
	"""Return one cycle in a directed graph, or None."""
	WHITE, GREY, BLACK = 0, 1, 2
	color: dict[int, int] = {}
	stack: list[int] = []

	def visit(node: int) -> Optional[list[int]]:
		color[node] = GREY
		stack.append(node)
		for nxt in sorted(edges.get(node, ())):
			state = color.get(nxt, WHITE)
			if state == GREY:
				return stack[stack.index(nxt):] + [nxt]
			if state == WHITE:
				found = visit(nxt)
				if found:
					return found
		stack.pop()
		color[node] = BLACK
		return None

	for node in sorted(edges):
		if color.get(node, WHITE) == WHITE:
			found = visit(node)
			if found:
				return found
	return None


def _topological(positions: list[int], dependencies: dict[int, set[int]]) -> list[int]:
	"""Order positions so dependencies come first; ties keep submission order."""
	remaining = sorted(positions)
	ordered: list[int] = []
	while remaining:
		for p in remaining:
			if not (dependencies.get(p, set()) & set(remaining)):
				break
		else:
			# Cycle inside a conflict group; keep submission order
			ordered.extend(remaining)
			break
		ordered.append(p)
		remaining.remove(p)
	return ordered
