"""Tests for task decomposition into parallel subtasks."""

import pytest

from agent_relay.errors import DecompositionRejected, UnrecoverableAgentError
from agent_relay.orchestrator.decomposer import Subtask, TaskDecomposer, normalize_path
from agent_relay.standard_agents import create_standard_registry

from .helpers import ScriptedRunner

REPORTS_TASK = """Refactor the reporting module:
1. Add PDF export in reports/pdf.py
2. Add CSV export in reports/csv_export.py and reports/utils.py
3. Add a totals row in reports/totals.py and reports/utils.py
"""


class TestHeuristicDecomposition:
	"""Enumerated items, file conflicts and dependencies."""

	@pytest.mark.asyncio
	async def test_shared_file_merges_subtasks(self):
		"""Two items touching the same file become one unit."""
		result = await TaskDecomposer().analyze(REPORTS_TASK)

		assert result.accepted
		assert result.strategy == "heuristic"
		assert len(result.subtasks) == 2
		first, second = result.subtasks
		assert first.members == [0]
		assert first.files == ["reports/pdf.py"]
		assert second.members == [1, 2]
		assert "reports/utils.py" in second.files
		assert second.description.startswith("Complete these related changes in order:")

	@pytest.mark.asyncio
	async def test_units_share_no_files(self):
		result = await TaskDecomposer().analyze(REPORTS_TASK)
		seen: set[str] = set()
		for unit in result.subtasks:
			files = {normalize_path(f) for f in unit.files}
			assert not files & seen
			seen |= files

	@pytest.mark.asyncio
	async def test_small_task_stays_sequential(self):
		result = await TaskDecomposer().analyze("Fix a typo")
		assert not result.accepted
		assert "Complexity" in result.reason

	@pytest.mark.asyncio
	async def test_everything_conflicts(self):
		"""A task whose parts all touch one file is rejected."""
		task = "1. Update api.py handlers\n2. Update api.py routes\n3. Update api.py error codes"
		result = await TaskDecomposer().analyze(task)
		assert not result.accepted
		assert "1 independent unit" in result.reason

	@pytest.mark.asyncio
	async def test_dependency_cycle_rejected(self):
		task = (
			"1. Build the parser in parser.py after step 2\n"
			"2. Build the lexer in lexer.py after step 1\n"
			"3. Write the guide in guide.md"
		)
		result = await TaskDecomposer().analyze(task)
		assert not result.accepted
		assert "cycle" in result.reason.lower()

	@pytest.mark.asyncio
	async def test_dependent_items_run_together(self):
		task = (
			"1. Create the schema in models.py\n"
			"2. Then add the API in api.py\n"
			"3. Write user docs in guide.md"
		)
		result = await TaskDecomposer().analyze(task)

		assert result.accepted
		assert [u.members for u in result.subtasks] == [[0, 1], [2]]
		assert result.subtasks[1].role == "documenter"
		assert all(u.depends_on == [] for u in result.subtasks)

	@pytest.mark.asyncio
	async def test_too_many_units(self):
		task = "\n".join(f"{n}. Edit module{n}.py" for n in range(1, 7))
		result = await TaskDecomposer(max_parts=5).analyze(task)
		assert not result.accepted
		assert "maximum" in result.reason

	def test_extract_subtasks(self):
		subtasks = TaskDecomposer().extract_subtasks("Add tests in test_api.py; then update api.py")
		assert [s.description for s in subtasks] == ["Add tests in test_api.py", "then update api.py"]
		assert subtasks[0].role == "tester"
		assert subtasks[0].files == ["test_api.py"]
		assert subtasks[1].depends_on == [0]


class TestGraphs:
	"""Conflict and dependency graphs."""

	def test_conflict_graph_normalizes_paths(self):
		subtasks = [
			Subtask(index=0, description="a", files=["./src/Utils.py"]),
			Subtask(index=1, description="b", files=["src/utils.py"]),
			Subtask(index=2, description="c", files=["src/other.py"]),
		]
		graph = TaskDecomposer.build_conflict_graph(subtasks)
		assert graph == {0: {1}, 1: {0}, 2: set()}

	def test_dependency_graph(self):
		subtasks = [
			Subtask(index=0, description="a"),
			Subtask(index=1, description="b", depends_on=[0]),
			Subtask(index=2, description="c", depends_on=[7]),
		]
		graph = TaskDecomposer.build_dependency_graph(subtasks)
		assert graph == {0: set(), 1: {0}, 2: set()}

	def test_partition_rejects_cycle(self):
		subtasks = [
			Subtask(index=0, description="a", files=["a.py"], depends_on=[1]),
			Subtask(index=1, description="b", files=["b.py"], depends_on=[0]),
			Subtask(index=2, description="c", files=["c.py"]),
		]
		with pytest.raises(DecompositionRejected):
			TaskDecomposer().partition(subtasks)

	def test_normalize_path(self):
		assert normalize_path(" ./Src/App.PY ") == "src/app.py"
		assert normalize_path("`a.py`") == "a.py"


class TestModelDecomposition:
	"""Analysis agent extraction."""

	@pytest.mark.asyncio
	async def test_model_parts_used(self):
		runner = ScriptedRunner({"architect": [
			'{"complexity": 6, "parts": ['
			'{"description": "Add export", "files": ["export.py"]}, '
			'{"description": "Add tests for import", "files": ["test_import.py"], "role": "tester"}'
			']}'
		]})
		decomposer = TaskDecomposer(runner, create_standard_registry())

		result = await decomposer.analyze("Add export and import features")

		assert result.accepted
		assert result.strategy == "model"
		assert result.complexity == 6
		assert [u.role for u in result.subtasks] == ["coder", "tester"]

	@pytest.mark.asyncio
	async def test_model_failure_falls_back_to_heuristics(self):
		runner = ScriptedRunner({"architect": [UnrecoverableAgentError("boom")]})
		decomposer = TaskDecomposer(runner, create_standard_registry())

		result = await decomposer.analyze(REPORTS_TASK)

		assert result.strategy == "heuristic"
		assert result.accepted
