"""
Task Store - SQLite-backed durable task records.

Features:
- One JSON document per task, indexed by project and status
- Status-change journal (task_events)
- Read-modify-write of one record inside a single write transaction
- Age-based cleanup of terminal records
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import aiosqlite

from .models import TaskEvent, TaskRecord, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore:
	"""
	SQLite-backed task record storage.

	Usage:
		store = TaskStore("data/tasks.db")
		await store.init()
		await store.save(record)
		record = await store.get(record.id)
	"""

	def __init__(self, db_path: str | Path):
		"""Initialize the task store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None
		self._write_lock = asyncio.Lock()

	async def init(self):
		"""Initialize the database schema."""
		self._db = await aiosqlite.connect(str(self.db_path), timeout=30)
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS tasks (
				id TEXT PRIMARY KEY,
				project TEXT NOT NULL,
				status TEXT NOT NULL,
				data TEXT NOT NULL,
				created_at TEXT NOT NULL,
				updated_at TEXT NOT NULL
			)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)
		""")

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS task_events (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				task_id TEXT NOT NULL,
				status TEXT NOT NULL,
				detail TEXT,
				created_at TEXT NOT NULL
			)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id)
		""")

		await self._db.commit()
		logger.info(f"Task store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if not self._db:
			await self.init()
		return self._db

	async def save(self, record: TaskRecord) -> None:
		"""Insert or replace a record."""
		db = await self._conn()
		async with self._write_lock:
			await self._write_record(db, record)
			await db.commit()

	async def _write_record(self, db: aiosqlite.Connection, record: TaskRecord) -> None:
		await db.execute(
			"""
			INSERT OR REPLACE INTO tasks (id, project, status, data, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?)
			""",
			(
				record.id,
				record.project,
				record.status.value,
				record.model_dump_json(),
				record.created_at,
				record.updated_at,
			)
		)

	async def modify(
		self,
		task_id: str,
		apply: Callable[[Optional[TaskRecord]], tuple[TaskRecord, Optional[TaskEvent]]],
	) -> TaskRecord:
		"""
		Read, change and write one record in a single write transaction.

		BEGIN IMMEDIATE takes the database write lock before the read, so a
		concurrent writer in another process cannot interleave and have its
		change overwritten.

		Args:
			task_id: Record to change
			apply: Receives the stored record (None when missing) and returns the
				record to store plus an optional event. Returning the stored record
				itself writes nothing. Exceptions roll the transaction back.

		Returns:
			The record returned by apply
		"""
		db = await self._conn()
		async with self._write_lock:
			await db.execute("BEGIN IMMEDIATE")
			try:
				cursor = await db.execute("SELECT data FROM tasks WHERE id = ?", (task_id,))
				row = await cursor.fetchone()
				current = TaskRecord.model_validate_json(row["data"]) if row else None
				updated, event = apply(current)
				if updated is not current:
					await self._write_record(db, updated)
				if event is not None:
					await self._write_event(db, event)
			except BaseException:
				await db.rollback()
				raise
			await db.commit()
		return updated

	async def get(self, task_id: str) -> Optional[TaskRecord]:
		db = await self._conn()
		cursor = await db.execute("SELECT data FROM tasks WHERE id = ?", (task_id,))
		row = await cursor.fetchone()
		if not row:
			return None
		return TaskRecord.model_validate_json(row["data"])

	async def list_records(
		self,
		project: Optional[str] = None,
		status: Optional[TaskStatus] = None,
		limit: int = 100,
	) -> list[TaskRecord]:
		"""List records, newest first, optionally filtered."""
		db = await self._conn()
		conditions = []
		params: list = []

		if project:
			conditions.append("project = ?")
			params.append(project)

		if status:
			conditions.append("status = ?")
			params.append(status.value)

		where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
		params.append(limit)

		cursor = await db.execute(
			f"SELECT data FROM tasks {where} ORDER BY created_at DESC LIMIT ?",
			params,
		)
		rows = await cursor.fetchall()
		return [TaskRecord.model_validate_json(row["data"]) for row in rows]

	async def delete_before(self, cutoff: str, statuses: list[TaskStatus]) -> int:
		"""Delete records in the given statuses last updated before cutoff."""
		db = await self._conn()
		placeholders = ", ".join("?" for _ in statuses)
		params = [s.value for s in statuses]
		async with self._write_lock:
			cursor = await db.execute(
				f"SELECT id FROM tasks WHERE updated_at < ? AND status IN ({placeholders})",
				[cutoff, *params],
			)
			ids = [row["id"] for row in await cursor.fetchall()]
			if not ids:
				return 0
			id_placeholders = ", ".join("?" for _ in ids)
			await db.execute(f"DELETE FROM tasks WHERE id IN ({id_placeholders})", ids)
			await db.execute(f"DELETE FROM task_events WHERE task_id IN ({id_placeholders})", ids)
			await db.commit()
		return len(ids)

	async def append_event(self, event: TaskEvent) -> None:
		db = await self._conn()
		async with self._write_lock:
			await self._write_event(db, event)
			await db.commit()

	async def _write_event(self, db: aiosqlite.Connection, event: TaskEvent) -> None:
		await db.execute(
			"INSERT INTO task_events (task_id, status, detail, created_at) VALUES (?, ?, ?, ?)",
			(event.task_id, event.status.value, event.detail, event.created_at),
		)

	async def get_events(self, task_id: str) -> list[TaskEvent]:
		db = await self._conn()
		cursor = await db.execute(
			"SELECT task_id, status, detail, created_at FROM task_events WHERE task_id = ? ORDER BY id",
			(task_id,),
		)
		rows = await cursor.fetchall()
		return [
			TaskEvent(
				task_id=row["task_id"],
				status=TaskStatus(row["status"]),
				detail=row["detail"] or "",
				created_at=row["created_at"],
			)
			for row in rows
		]
