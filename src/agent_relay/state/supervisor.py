"""
Supervisor - runs task work as supervised asyncio tasks with heartbeats.

Responsibilities:
- Own the asyncio.Task executing each task's work
- Stamp the record's heartbeat while the work runs
- Honour cancellation requests written by other processes
- Cancel work and wait for it to unwind
- Signal worker processes on this host that ignore a cancel request
"""

import asyncio
import logging
import os
import signal
import socket
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..errors import InvalidTransitionError, TaskNotFoundError
from .manager import TaskStateManager

logger = logging.getLogger(__name__)


def owner_id() -> str:
	return f"{socket.gethostname()}:{os.getpid()}"


def local_pid(owner: Optional[str]) -> Optional[int]:
	"""PID from a "host:pid" owner when the host is this machine."""
	if not owner or ":" not in owner:
		return None
	host, _, pid = owner.rpartition(":")
	if host != socket.gethostname() or not pid.isdigit():
		return None
	return int(pid)


def process_alive(pid: int) -> bool:
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		return True
	return True


async def terminate_process(pid: int, grace_period: float, poll: float = 0.1) -> bool:
	"""
	SIGTERM a process, then SIGKILL it if it is still there after grace_period.

	Returns:
		False when the process was already gone
	"""
	try:
		os.kill(pid, signal.SIGTERM)
	except ProcessLookupError:
		return False
	logger.info(f"Sent SIGTERM to worker {pid}")

	loop = asyncio.get_running_loop()
	deadline = loop.time() + grace_period
	while loop.time() < deadline:
		if not process_alive(pid):
			return True
		await asyncio.sleep(poll)

	try:
		os.kill(pid, signal.SIGKILL)
	except ProcessLookupError:
		logger.debug(f"Worker {pid} exited just before SIGKILL")
	else:
		logger.warning(f"Worker {pid} ignored SIGTERM for {grace_period}s; sent SIGKILL")
	return True


class TaskSupervisor:
	"""
	Supervises task work within one process.

	Args:
		state: Task state manager holding the records
		heartbeat_interval: Seconds between heartbeat writes
		cancel_timeout: Seconds to wait for cancelled work to unwind
	"""

	def __init__(
		self,
		state: TaskStateManager,
		heartbeat_interval: float = 15.0,
		cancel_timeout: float = 30.0,
	):
		self.state = state
		self.heartbeat_interval = heartbeat_interval
		self.cancel_timeout = cancel_timeout
		self.owner_id = owner_id()

		self._tasks: dict[str, asyncio.Task] = {}
		self._heartbeats: dict[str, asyncio.Task] = {}
		self._lock = asyncio.Lock()

	def owns(self, task_id: str) -> bool:
		task = self._tasks.get(task_id)
		return task is not None and not task.done()

	async def start(self, task_id: str, work: Callable[[], Awaitable[None]]) -> asyncio.Task:
		"""
		Start supervised work for a task.

		Args:
			task_id: Task whose record receives heartbeats
			work: Coroutine factory doing the actual execution

		Returns:
			The asyncio.Task running the work
		"""
		async with self._lock:
			if self.owns(task_id):
				raise InvalidTransitionError(f"Task {task_id} is already supervised")

			await self.state.update(
				task_id,
				owner=self.owner_id,
				heartbeat_at=datetime.now().isoformat(),
			)
			task = asyncio.create_task(self._run(task_id, work), name=f"relay-task-{task_id}")
			self._tasks[task_id] = task
			self._heartbeats[task_id] = asyncio.create_task(
				self._heartbeat(task_id), name=f"relay-heartbeat-{task_id}",
			)
			logger.info(f"Started supervision for task {task_id}")
			return task

	async def _run(self, task_id: str, work: Callable[[], Awaitable[None]]) -> None:
		try:
			await work()
		finally:
			heartbeat = self._heartbeats.pop(task_id, None)
			if heartbeat:
				heartbeat.cancel()
				try:
					await heartbeat
				except asyncio.CancelledError:
					pass

	async def _heartbeat(self, task_id: str) -> None:
		"""Refresh the heartbeat and watch for external cancel requests."""
		while True:
			await asyncio.sleep(self.heartbeat_interval)
			try:
				record = await self.state.update(task_id, heartbeat_at=datetime.now().isoformat())
			except (InvalidTransitionError, TaskNotFoundError):
				return
			if record.cancel_requested:
				logger.info(f"Cancel requested for task {task_id}")
				task = self._tasks.get(task_id)
				if task and not task.done():
					task.cancel()
				return

	async def wait(self, task_id: str) -> None:
		"""Wait for supervised work to finish. Cancellation of the work is not re-raised."""
		task = self._tasks.get(task_id)
		if task is None:
			return
		try:
			await task
		except asyncio.CancelledError:
			if not task.cancelled():
				raise
		finally:
			if task.done():
				self._tasks.pop(task_id, None)

	def interrupt(self, task_id: str) -> bool:
		"""Cancel supervised work without waiting (safe to call from a signal handler)."""
		task = self._tasks.get(task_id)
		if task is None or task.done():
			return False
		logger.info(f"Interrupting task {task_id}")
		task.cancel()
		return True

	async def cancel(self, task_id: str) -> bool:
		"""
		Cancel supervised work and wait for it to unwind.

		Returns:
			False when this supervisor does not own the task
		"""
		task = self._tasks.get(task_id)
		if task is None or task.done():
			return False

		task.cancel()
		done, _ = await asyncio.wait({task}, timeout=self.cancel_timeout)
		if not done:
			logger.warning(f"Task {task_id} did not stop within {self.cancel_timeout}s")
		else:
			self._tasks.pop(task_id, None)
		logger.info(f"Cancelled supervised task {task_id}")
		return True

	async def shutdown(self) -> None:
		"""Cancel everything still running."""
		for task_id in list(self._tasks):
			await self.cancel(task_id)

	def active(self) -> list[str]:
		return [task_id for task_id, task in self._tasks.items() if not task.done()]
