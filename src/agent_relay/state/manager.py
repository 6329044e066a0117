"""
Task State Manager - lifecycle rules over the task store.

Responsibilities:
- Create and read task records
- Apply each update as one store transaction and enforce the status lifecycle
- Reap running records whose supervising process is gone
- Compute progress and ETA from the planned agent sequence
- Explicit age-based cleanup of terminal records

Terminal records are final. Repeating the terminal status is a no-op;
any other change is rejected.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from ..errors import InvalidTransitionError, ProcessDeathError, TaskNotFoundError
from .models import (
	ALLOWED_TRANSITIONS,
	TERMINAL_STATUSES,
	ErrorDetail,
	Progress,
	TaskEvent,
	TaskRecord,
	TaskStatus,
)
from .store import TaskStore

logger = logging.getLogger(__name__)

STAGE_WEIGHTS = {
	"architect": 20,
	"coder": 50,
	"reviewer": 20,
	"tester": 10,
}
DEFAULT_STAGE_WEIGHT = 10

DEFAULT_AVERAGE_DURATIONS = {
	"architect": 30.0,
	"coder": 100.0,
	"reviewer": 20.0,
	"tester": 30.0,
	"security": 25.0,
}
DEFAULT_AVERAGE_DURATION = 30.0

UPDATABLE_FIELDS = frozenset(TaskRecord.model_fields) - {"id", "created_at"}

LivenessProbe = Callable[[TaskRecord], Awaitable[bool]]


def new_task_id() -> str:
	return uuid.uuid4().hex[:12]


def calculate_progress(plan: list[str], completed: list[str], current: Optional[str]) -> int:
	"""
	Percent complete from stage weights of the planned agents.

	Completed planned agents count fully, the current agent counts half.
	Agents outside the plan do not move the percentage.
	"""
	if not plan:
		return 0
	weights = [STAGE_WEIGHTS.get(agent, DEFAULT_STAGE_WEIGHT) for agent in plan]
	total = sum(weights)
	remaining = list(completed)
	done = 0.0
	current_counted = False
	for agent, weight in zip(plan, weights):
		if agent in remaining:
			remaining.remove(agent)
			done += weight
		elif agent == current and not current_counted:
			done += weight / 2
			current_counted = True
	return min(99, int(done / total * 100))


def estimate_eta(
	plan: list[str],
	completed: list[str],
	current: Optional[str],
	averages: Optional[dict[str, float]] = None,
) -> float:
	"""Seconds remaining: averages of planned agents not yet done, current at half."""
	averages = averages or DEFAULT_AVERAGE_DURATIONS
	remaining = list(completed)
	eta = 0.0
	current_counted = False
	for agent in plan:
		if agent in remaining:
			remaining.remove(agent)
			continue
		average = averages.get(agent, DEFAULT_AVERAGE_DURATION)
		if agent == current and not current_counted:
			eta += average / 2
			current_counted = True
		else:
			eta += average
	return round(eta, 1)


class TaskStateManager:
	"""
	Serialized, lifecycle-checked access to task records.

	Args:
		store: Durable record store
		liveness_timeout: Seconds without a heartbeat before a running record is considered dead
	"""

	def __init__(self, store: TaskStore, liveness_timeout: float = 90.0):
		self.store = store
		self.liveness_timeout = liveness_timeout
		self._averages: dict[str, float] = dict(DEFAULT_AVERAGE_DURATIONS)

	async def create(self, record: TaskRecord) -> TaskRecord:
		"""Persist a new record (pending unless stated otherwise)."""
		if not record.id:
			record.id = new_task_id()

		def insert(existing: Optional[TaskRecord]) -> tuple[TaskRecord, TaskEvent]:
			if existing is not None:
				raise InvalidTransitionError(f"Task {record.id} already exists")
			return record, TaskEvent(task_id=record.id, status=record.status, detail="created")

		await self.store.modify(record.id, insert)
		logger.info(f"Created task {record.id} ({record.mode.value}) for {record.project}")
		return record

	async def get(self, task_id: str) -> Optional[TaskRecord]:
		return await self.store.get(task_id)

	async def require(self, task_id: str) -> TaskRecord:
		record = await self.store.get(task_id)
		if record is None:
			raise TaskNotFoundError(f"Task not found: {task_id}")
		return record

	async def list_tasks(
		self,
		project: Optional[str] = None,
		status: Optional[TaskStatus] = None,
		limit: int = 100,
	) -> list[TaskRecord]:
		return await self.store.list_records(project=project, status=status, limit=limit)

	async def update(self, task_id: str, **changes) -> TaskRecord:
		"""
		Apply field changes to a record.

		The read, the lifecycle checks and the write happen in one store
		transaction, so writers in other processes cannot lose each other's
		changes.

		Args:
			task_id: Record to change
			**changes: TaskRecord fields to overwrite

		Returns:
			The stored record after the update

		Raises:
			TaskNotFoundError: No such record
			InvalidTransitionError: Status change not allowed, or any change to a
				terminal record other than repeating its status
		"""
		invalid = set(changes) - UPDATABLE_FIELDS
		if invalid:
			raise ValueError(f"Invalid fields for update: {sorted(invalid)}")

		new_status = changes.get("status")
		if new_status is not None:
			new_status = TaskStatus(new_status)
			changes["status"] = new_status
		previous: list[TaskStatus] = []

		def apply(record: Optional[TaskRecord]) -> tuple[TaskRecord, Optional[TaskEvent]]:
			if record is None:
				raise TaskNotFoundError(f"Task not found: {task_id}")

			if record.is_terminal:
				if set(changes) <= {"status"} and new_status in (None, record.status):
					logger.debug(f"Ignoring repeated update of terminal task {task_id}")
					return record, None
				raise InvalidTransitionError(
					f"Task {task_id} is {record.status.value}; no further changes allowed"
				)

			status_changed = new_status is not None and new_status != record.status
			if status_changed and new_status not in ALLOWED_TRANSITIONS.get(record.status, frozenset()):
				raise InvalidTransitionError(
					f"Task {task_id}: {record.status.value} -> {new_status.value} not allowed"
				)

			now = datetime.now().isoformat()
			fields = {**changes, "updated_at": now}
			if status_changed and new_status == TaskStatus.RUNNING and not record.started_at:
				fields.setdefault("started_at", now)
			if status_changed and new_status in TERMINAL_STATUSES:
				fields.setdefault("completed_at", now)
				if new_status == TaskStatus.COMPLETED:
					fields.setdefault("progress", Progress(percent=100, eta_seconds=0.0))

			try:
				updated = TaskRecord.model_validate({**record.model_dump(), **fields})
			except ValidationError as e:
				raise ValueError(f"Invalid update for task {task_id}: {e}") from e

			if not status_changed:
				return updated, None
			previous.append(record.status)
			detail = updated.error.message if updated.error and new_status == TaskStatus.FAILED else ""
			return updated, TaskEvent(task_id=task_id, status=new_status, detail=detail)

		updated = await self.store.modify(task_id, apply)
		if previous:
			logger.info(f"Task {task_id}: {previous[0].value} -> {updated.status.value}")
		return updated

	async def events(self, task_id: str) -> list[TaskEvent]:
		return await self.store.get_events(task_id)

	def heartbeat_alive(self, record: TaskRecord) -> bool:
		"""A running record is alive while its heartbeat is fresh."""
		stamp = record.heartbeat_at or record.started_at or record.updated_at
		try:
			last = datetime.fromisoformat(stamp)
		except (TypeError, ValueError):
			return False
		return datetime.now() - last < timedelta(seconds=self.liveness_timeout)

	async def sync_liveness(self, probe: Optional[LivenessProbe] = None) -> list[str]:
		"""
		Mark records whose supervisor is gone as failed.

		Running records are checked, and so are pending records already handed
		to a worker (owner set) whose worker never started them.

		Args:
			probe: Optional async liveness check; defaults to heartbeat freshness

		Returns:
			IDs of records transitioned to failed by this call
		"""
		records = await self.list_tasks(status=TaskStatus.RUNNING, limit=10000)
		records += [r for r in await self.list_tasks(status=TaskStatus.PENDING, limit=10000) if r.owner]
		reaped = []
		for record in records:
			alive = await probe(record) if probe else self.heartbeat_alive(record)
			if alive:
				continue
			error = ProcessDeathError(
				f"Supervising process {record.owner or 'unknown'} stopped responding"
			)
			try:
				await self.update(
					record.id,
					status=TaskStatus.FAILED,
					error=ErrorDetail(**error.to_detail()),
				)
			except InvalidTransitionError:
				# Finished between the listing and the update
				continue
			logger.warning(f"Task {record.id} marked failed: supervisor gone")
			reaped.append(record.id)
		return reaped

	async def load_historical_averages(self, sample: int = 200) -> dict[str, float]:
		"""Per-agent mean durations from completed task traces, over the defaults."""
		totals: dict[str, list[float]] = {}
		for record in await self.list_tasks(status=TaskStatus.COMPLETED, limit=sample):
			for step in record.trace:
				if step.duration > 0:
					totals.setdefault(step.agent, []).append(step.duration)
		averages = dict(DEFAULT_AVERAGE_DURATIONS)
		for agent, durations in totals.items():
			averages[agent] = sum(durations) / len(durations)
		self._averages = averages
		return averages

	def progress_for(self, plan: list[str], completed: list[str], current: Optional[str]) -> Progress:
		return Progress(
			percent=calculate_progress(plan, completed, current),
			eta_seconds=estimate_eta(plan, completed, current, self._averages),
		)

	async def cleanup(self, days: int = 7) -> int:
		"""Delete terminal records not updated in the last N days."""
		cutoff = (datetime.now() - timedelta(days=days)).isoformat()
		deleted = await self.store.delete_before(cutoff, list(TERMINAL_STATUSES))
		if deleted:
			logger.info(f"Deleted {deleted} task records older than {days} days")
		return deleted
