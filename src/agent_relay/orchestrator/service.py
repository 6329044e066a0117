"""
Orchestrator - entry point for submitting and managing tasks.

Responsibilities:
- Create task records and run them under supervision
- Choose sequential or parallel execution (decomposition decides in auto mode)
- Sequential: plan, sandbox on the task branch, handoff execution, commit
- Parallel: integration branch, concurrent subtasks, sequential merge
- Status, listing, cancellation, retry and liveness reaping

Usage:
	orchestrator = await create_orchestrator(project_path=Path("~/code/app"))
	task_id = await orchestrator.submit_task("Fix a typo in an error message")
	record = await orchestrator.get_status(task_id)
"""

import asyncio
import logging
import os
import socket
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..config import Config, get_config
from ..consensus import ConsensusDetector
from ..conversation import ConversationLog
from ..errors import InvalidTransitionError, RelayError, RemoteHostError, TaskNotFoundError, VcsError
from ..registry import AgentRegistry
from ..remote import GitHubHost
from ..runner import AgentRunner, ClaudeCliRunner, SessionContext
from ..sandbox import SandboxProvisioner, SandboxSpec, WorktreeProvisioner
from ..standard_agents import create_standard_registry
from ..state.manager import TaskStateManager
from ..state.models import (
	RETRYABLE_STATUSES,
	ErrorDetail,
	ExecutionMode,
	Progress,
	TaskRecord,
	TaskStatus,
	TraceStep,
)
from ..state.store import TaskStore
from ..state.supervisor import TaskSupervisor, local_pid, process_alive, terminate_process
from ..vcs import GitRepository, slugify
from .decomposer import Subtask, TaskDecomposer
from .executor import DynamicExecutor, ExecutionState, ExecutorSettings
from .merger import BranchMerger, format_conflicts
from .parallel import ParallelExecutionManager, SubtaskResult
from .planner import TaskPlanner

logger = logging.getLogger(__name__)


def task_branch(task_id: str) -> str:
	return f"relay/{task_id}"


class _ProgressTracker:
	"""Writes the trace so far and progress to the record after every step."""

	def __init__(self, state: TaskStateManager, task_id: str, plan: list[str]):
		self.state = state
		self.task_id = task_id
		self.plan = plan
		self.completed: list[str] = []
		self.cost = 0.0
		self.trace: list[TraceStep] = []

	async def on_step(self, step: TraceStep) -> None:
		self.completed.append(step.agent)
		self.trace.append(step)
		self.cost += step.cost
		current = step.target
		await self.state.update(
			self.task_id,
			trace=list(self.trace),
			current_agent=current,
			completed_agents=list(self.completed),
			cost=round(self.cost, 6),
			progress=self.state.progress_for(self.plan, self.completed, current),
		)


class Orchestrator:
	"""
	Submits, runs and manages tasks for one project repository.

	Args:
		config: Orchestration settings
		registry: Agents available to plans
		runner: Agent invocation boundary
		state: Task state manager
		project_path: Git repository the tasks change
		provisioner: Sandbox provisioner (git worktrees by default)
		remote: Optional code host for change requests
		consensus_factory: Builds a consensus detector per executor run
		project: Project name recorded on tasks (defaults to the directory name)
	"""

	def __init__(
		self,
		config: Config,
		registry: AgentRegistry,
		runner: AgentRunner,
		state: TaskStateManager,
		project_path: Path,
		provisioner: Optional[SandboxProvisioner] = None,
		remote: Optional[GitHubHost] = None,
		consensus_factory: Optional[Callable[[], ConsensusDetector]] = None,
		project: Optional[str] = None,
	):
		self.config = config
		self.registry = registry
		self.runner = runner
		self.state = state
		self.project_path = Path(project_path)
		self.project = project or self.project_path.name
		self.remote = remote
		self.consensus_factory = consensus_factory

		self.settings: ExecutorSettings = config.executor_settings()
		self.planner = TaskPlanner(registry, runner, strategy=config.planner_strategy)
		self.decomposer = TaskDecomposer(
			runner,
			registry,
			complexity_threshold=config.complexity_threshold,
			max_parts=config.max_subtasks,
		)
		self.supervisor = TaskSupervisor(state, config.heartbeat_interval, config.cancel_timeout)
		self.repo = GitRepository(self.project_path)
		self.provisioner = provisioner or WorktreeProvisioner(
			self.project_path, config.sandbox_root / slugify(self.project),
		)

	# Submission

	async def create_task(
		self,
		description: str,
		project: Optional[str] = None,
		mode: ExecutionMode = ExecutionMode.AUTO,
		max_iterations: Optional[int] = None,
		base_branch: Optional[str] = None,
		open_change_request: bool = False,
		retry_of: Optional[str] = None,
	) -> TaskRecord:
		"""Persist a pending task record without running it."""
		if not description.strip():
			raise ValueError("Task description must not be empty")
		if max_iterations is not None and max_iterations < 1:
			raise ValueError("max_iterations must be at least 1")
		record = TaskRecord(
			id="",
			project=project or self.project,
			description=description.strip(),
			mode=ExecutionMode(mode),
			max_iterations=max_iterations,
			base_branch=base_branch,
			open_change_request=open_change_request,
			retry_of=retry_of,
		)
		return await self.state.create(record)

	async def submit_task(
		self,
		description: str,
		project: Optional[str] = None,
		mode: ExecutionMode = ExecutionMode.AUTO,
		max_iterations: Optional[int] = None,
		background: bool = False,
		base_branch: Optional[str] = None,
		open_change_request: bool = False,
		retry_of: Optional[str] = None,
	) -> str:
		"""
		Create a task and run it.

		Args:
			description: What to change
			project: Project name recorded on the task
			mode: sequential, parallel or auto
			max_iterations: Handoff ceiling for this task (config default when None)
			background: Return immediately while the task runs under supervision
			base_branch: Branch the task branch is cut from
			open_change_request: Open a pull request when the task completes
			retry_of: Task this one retries

		Returns:
			The new task id
		"""
		record = await self.create_task(
			description,
			project=project,
			mode=mode,
			max_iterations=max_iterations,
			base_branch=base_branch,
			open_change_request=open_change_request,
			retry_of=retry_of,
		)
		await self.supervisor.start(record.id, lambda: self._execute(record.id))
		if not background:
			await self.supervisor.wait(record.id)
		return record.id

	async def run_task(self, task_id: str) -> TaskRecord:
		"""Run an existing pending task to completion (background worker entry)."""
		record = await self.state.require(task_id)
		if record.status != TaskStatus.PENDING:
			raise InvalidTransitionError(f"Task {task_id} is {record.status.value}, expected pending")
		await self.supervisor.start(task_id, lambda: self._execute(task_id))
		await self.supervisor.wait(task_id)
		return await self.state.require(task_id)

	async def assign_worker(self, task_id: str, pid: int) -> None:
		"""Record the worker process a pending task was handed to, so a worker that dies before starting is reaped."""
		try:
			await self.state.update(
				task_id,
				owner=f"{socket.gethostname()}:{pid}",
				heartbeat_at=datetime.now().isoformat(),
			)
		except InvalidTransitionError:
			logger.info(f"Worker {pid} already finished task {task_id}")

	async def wait(self, task_id: str) -> TaskRecord:
		await self.supervisor.wait(task_id)
		return await self.state.require(task_id)

	# Execution

	async def _execute(self, task_id: str) -> None:
		try:
			record = await self.state.update(task_id, status=TaskStatus.RUNNING)
			await self.state.load_historical_averages()
			base = record.base_branch or self.config.base_branch
			settings = self.settings
			if record.max_iterations:
				settings = replace(settings, max_iterations=record.max_iterations)

			subtasks: Optional[list[Subtask]] = None
			if record.mode != ExecutionMode.SEQUENTIAL:
				analysis = await self.decomposer.analyze(record.description, self.project_path)
				if analysis.accepted:
					subtasks = analysis.subtasks
				elif record.mode == ExecutionMode.PARALLEL:
					logger.warning(f"Task {task_id} cannot run in parallel ({analysis.reason}); running sequentially")

			if subtasks:
				await self._run_parallel(record, subtasks, base, settings)
			else:
				await self._run_sequential(record, base, settings)
		except asyncio.CancelledError:
			logger.info(f"Task {task_id} cancelled")
			await self._finalize(task_id, status=TaskStatus.CANCELLED, current_agent=None)
			raise
		except RelayError as e:
			logger.error(f"Task {task_id} failed: {e}")
			await self._finalize(task_id, status=TaskStatus.FAILED, error=ErrorDetail(**e.to_detail()))
		except Exception as e:
			logger.exception(f"Task {task_id} crashed")
			await self._finalize(
				task_id,
				status=TaskStatus.FAILED,
				error=ErrorDetail(kind="internal", message=str(e)),
			)

	async def _run_sequential(self, record: TaskRecord, base: str, settings: ExecutorSettings) -> None:
		plan = await self.planner.plan(record.description, self.project_path)
		first = plan.agents[0]
		await self.state.update(
			record.id,
			resolved_mode=ExecutionMode.SEQUENTIAL,
			plan=plan.agents,
			current_agent=first,
			progress=self.state.progress_for(plan.agents, [], first),
		)

		branch = task_branch(record.id)
		tracker = _ProgressTracker(self.state, record.id, plan.agents)
		handle = await self.provisioner.create(SandboxSpec(name=record.id, branch=branch, base=base))
		try:
			executor = DynamicExecutor(
				self.registry,
				self.runner,
				settings=settings,
				consensus=self.consensus_factory() if self.consensus_factory else None,
				log=ConversationLog(record.id),
				session=SessionContext(working_dir=handle.path),
				on_step=tracker.on_step,
			)
			result = await executor.run(plan, record.description)
			committed = await GitRepository(handle.path).commit(
				f"relay: {record.description[:60]}\n\nTask {record.id} ({result.state.value})"
			)
		finally:
			await self.provisioner.destroy(handle)

		url = None
		if result.succeeded and committed and record.open_change_request:
			url = await self._open_change_request(record, branch, base, result.final_output)

		await self._finalize(
			record.id,
			status=TaskStatus.FAILED if result.state == ExecutionState.FAILED else TaskStatus.COMPLETED,
			outcome=result.state.value,
			partial=result.partial,
			output=result.final_output,
			trace=result.trace,
			cost=result.total_cost,
			error=result.error,
			branch=branch,
			change_request_url=url,
			current_agent=None,
		)

	async def _run_parallel(
		self,
		record: TaskRecord,
		subtasks: list[Subtask],
		base: str,
		settings: ExecutorSettings,
	) -> None:
		integration = task_branch(record.id)
		await self.state.update(
			record.id,
			resolved_mode=ExecutionMode.PARALLEL,
			plan=[f"part{n}" for n in range(1, len(subtasks) + 1)],
			progress=Progress(percent=0),
		)

		finished: list[SubtaskResult] = []

		async def on_subtask_complete(result: SubtaskResult) -> None:
			finished.append(result)
			await self.state.update(
				record.id,
				completed_agents=[r.subtask_id for r in finished],
				subtasks=[r.to_summary() for r in finished],
				progress=Progress(percent=min(95, int(len(finished) / len(subtasks) * 90))),
			)

		handle = await self.provisioner.create(
			SandboxSpec(name=f"{record.id}-integration", branch=integration, base=base),
		)
		try:
			manager = ParallelExecutionManager(
				self.registry,
				self.runner,
				self.provisioner,
				self.planner,
				settings=settings,
				max_concurrency=self.config.max_concurrent_subtasks,
				consensus_factory=self.consensus_factory,
			)
			report = await manager.execute(record.id, subtasks, integration, on_subtask_complete)
			merger = BranchMerger(GitRepository(handle.path))
			merge_report = await merger.merge_all(integration, report.results)
			if self.config.cleanup_merged_branches:
				await merger.cleanup_branches(merge_report, report.results)
		finally:
			await self.provisioner.destroy(handle)

		summaries = []
		for result in report.results:
			conflict = merge_report.conflict_for(result.subtask_id)
			summary = result.to_summary(
				merged=result.subtask_id in merge_report.merged,
				conflicting_paths=conflict.paths if conflict else [],
			)
			merge_error = merge_report.errors.get(result.subtask_id)
			if merge_error:
				summary.error = ErrorDetail(kind="merge_failed", message=merge_error)
			summaries.append(summary)

		output = f"Merged {len(merge_report.merged)}/{len(report.results)} subtasks into {integration}."
		if merge_report.conflicts or merge_report.errors:
			output += "\n\n" + format_conflicts(merge_report)

		if merge_report.merged:
			status, error = TaskStatus.COMPLETED, None
		else:
			status = TaskStatus.FAILED
			error = ErrorDetail(kind="parallel_failed", message="No subtask could be completed and merged", retryable=True)

		url = None
		if status == TaskStatus.COMPLETED and merge_report.clean and record.open_change_request:
			url = await self._open_change_request(record, integration, base, output)

		await self._finalize(
			record.id,
			status=status,
			outcome="merged" if merge_report.clean else "partially_merged",
			partial=not merge_report.clean,
			output=output,
			subtasks=summaries,
			cost=report.total_cost,
			error=error,
			branch=integration,
			change_request_url=url,
		)

	async def _open_change_request(self, record: TaskRecord, branch: str, base: str, body: str) -> Optional[str]:
		if self.remote is None:
			logger.info(f"No remote host configured; skipping change request for {record.id}")
			return None
		try:
			await self.repo.push(branch)
			change = await self.remote.create_change_request(
				head=branch,
				base=base,
				title=f"relay: {record.description[:60]}",
				body=body[:4000],
			)
		except (RemoteHostError, VcsError) as e:
			logger.warning(f"Could not open change request for {record.id}: {e}")
			return None
		return change.url

	async def _finalize(self, task_id: str, **fields) -> Optional[TaskRecord]:
		try:
			return await self.state.update(task_id, **fields)
		except InvalidTransitionError as e:
			logger.info(f"Task {task_id} already final: {e}")
			return None

	# Queries and control

	async def get_status(self, task_id: str) -> TaskRecord:
		"""Current record, including progress and ETA."""
		record = await self.state.get(task_id)
		if record is None:
			raise TaskNotFoundError(f"Task not found: {task_id}")
		return record

	async def list_tasks(
		self,
		project: Optional[str] = None,
		status: Optional[TaskStatus] = None,
		limit: int = 100,
	) -> list[TaskRecord]:
		return await self.state.list_tasks(project=project, status=status, limit=limit)

	async def cancel(self, task_id: str) -> TaskRecord:
		"""
		Stop a task. Cancelling a terminal task is a no-op.

		Work running in this process is cancelled and awaited. Work owned by
		another process is asked to stop through the record; a worker on this
		host that is still running after the cancel timeout gets SIGTERM, then
		SIGKILL after the kill grace period. The record ends cancelled either way.
		"""
		record = await self.get_status(task_id)
		if record.is_terminal:
			return record

		if self.supervisor.owns(task_id):
			await self.supervisor.cancel(task_id)
		elif record.status == TaskStatus.RUNNING:
			await self.state.update(task_id, cancel_requested=True)
			record = await self._wait_terminal(task_id, self.config.cancel_timeout)
			if not record.is_terminal:
				await self._stop_worker(record)

		record = await self.get_status(task_id)
		if not record.is_terminal:
			try:
				record = await self.state.update(task_id, status=TaskStatus.CANCELLED, current_agent=None)
			except InvalidTransitionError:
				record = await self.get_status(task_id)
		logger.info(f"Task {task_id} is {record.status.value}")
		return record

	async def _stop_worker(self, record: TaskRecord) -> None:
		"""Terminate the worker process that ignored the cancel request, when it runs on this host."""
		pid = local_pid(record.owner)
		if pid is None or pid == os.getpid():
			logger.warning(f"Task {record.id} owner {record.owner} cannot be signalled from here")
			return
		if await terminate_process(pid, self.config.kill_grace_period):
			await self._wait_terminal(record.id, self.config.kill_grace_period, poll=0.1)

	async def _wait_terminal(self, task_id: str, timeout: float, poll: float = 0.5) -> TaskRecord:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		while True:
			record = await self.get_status(task_id)
			if record.is_terminal or loop.time() >= deadline:
				return record
			await asyncio.sleep(poll)

	async def retry(self, task_id: str, background: bool = False) -> str:
		"""
		Resubmit a failed or cancelled task as a new task.

		Returns:
			The new task id
		"""
		record = await self.get_status(task_id)
		if record.status not in RETRYABLE_STATUSES:
			raise InvalidTransitionError(
				f"Task {task_id} is {record.status.value}; only failed or cancelled tasks can be retried"
			)
		logger.info(f"Retrying task {task_id}")
		return await self.submit_task(
			record.description,
			project=record.project,
			mode=record.mode,
			max_iterations=record.max_iterations,
			background=background,
			base_branch=record.base_branch,
			open_change_request=record.open_change_request,
			retry_of=record.id,
		)

	async def diff(self, task_id: str) -> str:
		"""Diff of the task branch against its base."""
		record = await self.get_status(task_id)
		if not record.branch:
			return ""
		return await self.repo.diff(record.base_branch or self.config.base_branch, record.branch)

	async def _probe(self, record: TaskRecord) -> bool:
		if record.owner == self.supervisor.owner_id:
			return self.supervisor.owns(record.id)
		pid = local_pid(record.owner)
		if pid is not None and not process_alive(pid):
			return False
		return self.state.heartbeat_alive(record)

	async def sync_liveness(self) -> list[str]:
		"""Fail running tasks whose supervising process is gone."""
		return await self.state.sync_liveness(probe=self._probe)

	async def close(self) -> None:
		await self.supervisor.shutdown()
		await self.state.store.close()


async def create_orchestrator(
	config: Optional[Config] = None,
	project_path: Optional[Path] = None,
	runner: Optional[AgentRunner] = None,
	registry: Optional[AgentRegistry] = None,
	provisioner: Optional[SandboxProvisioner] = None,
) -> Orchestrator:
	"""Wire an orchestrator from configuration."""
	config = config or get_config()
	store = TaskStore(config.tasks_db_path)
	await store.init()
	state = TaskStateManager(store, liveness_timeout=config.liveness_timeout)
	remote = GitHubHost(config.github_repo) if config.github_repo else None
	return Orchestrator(
		config=config,
		registry=registry or create_standard_registry(),
		runner=runner or ClaudeCliRunner(timeout=config.agent_timeout, grace_period=config.kill_grace_period),
		state=state,
		project_path=(project_path or Path.cwd()).expanduser().resolve(),
		provisioner=provisioner,
		remote=remote,
	)
