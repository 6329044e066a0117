"""
Parallel Execution Manager - fan-out/fan-in over independent subtasks.

Each subtask gets its own sandbox, branch, conversation log and
executor. Concurrency is bounded by a semaphore. A failing subtask is
recorded without disturbing its siblings. Results are only aggregated
after every subtask has finished.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..consensus import ConsensusDetector
from ..conversation import ConversationLog
from ..errors import RelayError
from ..registry import AgentRegistry
from ..runner import AgentRunner, SessionContext
from ..sandbox import SandboxProvisioner, SandboxSpec
from ..state.models import ErrorDetail, SubtaskSummary
from ..vcs import GitRepository
from .decomposer import Subtask
from .executor import DynamicExecutor, ExecutionResult, ExecutorSettings
from .planner import TaskPlanner

logger = logging.getLogger(__name__)


class SubtaskStatus(str, Enum):
	"""Outcome of one subtask."""
	COMPLETED = "completed"
	PARTIAL = "partial"
	FAILED = "failed"
	CANCELLED = "cancelled"


@dataclass
class SubtaskResult:
	"""Result of running one subtask in its sandbox."""
	subtask: Subtask
	subtask_id: str
	branch: str
	status: SubtaskStatus
	execution: Optional[ExecutionResult] = None
	error: Optional[ErrorDetail] = None
	committed: bool = False
	duration: float = 0.0

	@property
	def succeeded(self) -> bool:
		return self.status == SubtaskStatus.COMPLETED

	@property
	def cost(self) -> float:
		return self.execution.total_cost if self.execution else 0.0

	def to_summary(self, merged: bool = False, conflicting_paths: Optional[list[str]] = None) -> SubtaskSummary:
		return SubtaskSummary(
			id=self.subtask_id,
			description=self.subtask.description,
			branch=self.branch,
			status=self.status.value,
			agents=self.execution.agent_sequence if self.execution else [],
			cost=self.cost,
			duration=round(self.duration, 2),
			merged=merged,
			conflicting_paths=conflicting_paths or [],
			error=self.error,
		)


@dataclass
class ParallelReport:
	"""All subtask results, in submission order."""
	results: list[SubtaskResult] = field(default_factory=list)
	cancelled: bool = False

	@property
	def succeeded(self) -> list[SubtaskResult]:
		return [r for r in self.results if r.succeeded]

	@property
	def failed(self) -> list[SubtaskResult]:
		return [r for r in self.results if r.status == SubtaskStatus.FAILED]

	@property
	def total_cost(self) -> float:
		return round(sum(r.cost for r in self.results), 6)


class ParallelExecutionManager:
	"""
	Runs independent subtasks concurrently in isolated sandboxes.

	Args:
		registry: Agents available to subtask executors
		runner: Agent invocation boundary
		provisioner: Creates one sandbox per subtask
		planner: Plans each subtask's agent sequence
		settings: Executor bounds applied to every subtask
		max_concurrency: Subtasks allowed to run at once
		consensus_factory: Builds a consensus detector per subtask
	"""

	def __init__(
		self,
		registry: AgentRegistry,
		runner: AgentRunner,
		provisioner: SandboxProvisioner,
		planner: TaskPlanner,
		settings: Optional[ExecutorSettings] = None,
		max_concurrency: int = 10,
		consensus_factory: Optional[Callable[[], ConsensusDetector]] = None,
	):
		self.registry = registry
		self.runner = runner
		self.provisioner = provisioner
		self.planner = planner
		self.settings = settings or ExecutorSettings()
		self.max_concurrency = max_concurrency
		self.consensus_factory = consensus_factory

		self._active: list[asyncio.Task] = []
		self._cancel_requested = False

	async def execute(
		self,
		task_id: str,
		subtasks: list[Subtask],
		base_branch: str,
		on_subtask_complete: Optional[Callable[[SubtaskResult], Awaitable[None]]] = None,
	) -> ParallelReport:
		"""
		Execute all subtasks and wait for every one of them.

		Args:
			task_id: Parent task; subtask ids are "<task_id>-part<N>"
			subtasks: Mutually independent subtasks
			base_branch: Branch every subtask branch is cut from
			on_subtask_complete: Optional callback after each subtask finishes

		Returns:
			ParallelReport with results in submission order
		"""
		if not subtasks:
			return ParallelReport()

		self._cancel_requested = False
		semaphore = asyncio.Semaphore(self.max_concurrency)
		results: dict[int, SubtaskResult] = {}
		results_lock = asyncio.Lock()

		async def process(n: int, subtask: Subtask) -> None:
			subtask_id = f"{task_id}-part{n}"
			branch = f"{base_branch}-part{n}"
			try:
				async with semaphore:
					result = await self._run_subtask(subtask_id, branch, base_branch, subtask)
			except asyncio.CancelledError:
				results[n] = SubtaskResult(
					subtask=subtask, subtask_id=subtask_id, branch=branch,
					status=SubtaskStatus.CANCELLED,
				)
				raise
			except Exception as e:
				logger.warning(f"Subtask {subtask_id} failed: {e}")
				detail = e.to_detail() if isinstance(e, RelayError) else {"kind": "internal", "message": str(e)}
				result = SubtaskResult(
					subtask=subtask,
					subtask_id=subtask_id,
					branch=branch,
					status=SubtaskStatus.FAILED,
					error=ErrorDetail(**detail),
				)

			async with results_lock:
				results[n] = result

			if on_subtask_complete:
				try:
					await on_subtask_complete(result)
				except Exception as e:
					logger.warning(f"on_subtask_complete callback failed for {subtask_id}: {e}")

		# Fan out
		tasks = [asyncio.create_task(process(n, s)) for n, s in enumerate(subtasks, 1)]
		self._active = tasks
		cancelled = False
		try:
			await asyncio.gather(*tasks)
		except asyncio.CancelledError:
			# Subtasks already unwinding are left alone so sandbox cleanup can finish
			for t in tasks:
				if not t.done() and not t.cancelling():
					t.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)
			if not self._cancel_requested:
				raise
			cancelled = True
		finally:
			self._active = []

		# Fan in; subtasks cancelled before they started have no entry yet
		for n, subtask in enumerate(subtasks, 1):
			if n not in results:
				results[n] = SubtaskResult(
					subtask=subtask, subtask_id=f"{task_id}-part{n}", branch=f"{base_branch}-part{n}",
					status=SubtaskStatus.CANCELLED,
				)
		ordered = [results[n] for n in sorted(results)]
		logger.info(
			f"Parallel execution of {task_id}: "
			f"{sum(r.succeeded for r in ordered)}/{len(ordered)} subtasks completed"
		)
		return ParallelReport(results=ordered, cancelled=cancelled)

	async def _run_subtask(self, subtask_id: str, branch: str, base_branch: str, subtask: Subtask) -> SubtaskResult:
		start = time.monotonic()
		handle = await self.provisioner.create(SandboxSpec(name=subtask_id, branch=branch, base=base_branch))
		try:
			plan = await self.planner.plan(subtask.description, handle.path)
			executor = DynamicExecutor(
				self.registry,
				self.runner,
				settings=self.settings,
				consensus=self.consensus_factory() if self.consensus_factory else None,
				log=ConversationLog(subtask_id),
				session=SessionContext(working_dir=handle.path),
			)
			execution = await executor.run(plan, subtask.description)
			committed = await GitRepository(handle.path).commit(f"{subtask_id}: {subtask.description[:60]}")
		finally:
			await self.provisioner.destroy(handle)

		if execution.succeeded:
			status = SubtaskStatus.COMPLETED
		elif execution.partial:
			status = SubtaskStatus.PARTIAL
		else:
			status = SubtaskStatus.FAILED
		return SubtaskResult(
			subtask=subtask,
			subtask_id=subtask_id,
			branch=branch,
			status=status,
			execution=execution,
			error=execution.error,
			committed=committed,
			duration=time.monotonic() - start,
		)

	def cancel_all(self) -> int:
		"""Cancel every running subtask; execute() returns with the partial report."""
		self._cancel_requested = True
		count = 0
		for task in self._active:
			if not task.done():
				task.cancel()
				count += 1
		if count:
			logger.info(f"Cancelled {count} running subtasks")
		return count
