"""
Pydantic models for durable task state.

Task records are persisted as JSON documents; every field survives a
store round trip unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
	"""Lifecycle status of a task record."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
	TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
	TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
}

RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


class ExecutionMode(str, Enum):
	"""How a task is executed."""
	SEQUENTIAL = "sequential"
	PARALLEL = "parallel"
	AUTO = "auto"


class StepKind(str, Enum):
	"""Why an agent was invoked."""
	HANDOFF = "handoff"
	RETRY = "retry"
	CLARIFICATION = "clarification"
	DIALOGUE = "dialogue"
	REVIEW = "review"


class TraceStep(BaseModel):
	"""One agent invocation and the decision it produced."""
	index: int
	agent: str
	kind: StepKind = StepKind.HANDOFF
	decision: str = "unparsable"
	target: Optional[str] = None
	reason: str = ""
	cost: float = 0.0
	duration: float = 0.0
	started_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	error: Optional[str] = None


class ErrorDetail(BaseModel):
	"""Why a task or subtask failed."""
	kind: str
	message: str
	retryable: bool = False


class Progress(BaseModel):
	percent: int = 0
	eta_seconds: Optional[float] = None


class SubtaskSummary(BaseModel):
	"""Outcome of one parallel subtask, recorded after all subtasks finish."""
	id: str
	description: str
	branch: str
	status: str
	agents: list[str] = Field(default_factory=list)
	cost: float = 0.0
	duration: float = 0.0
	merged: bool = False
	conflicting_paths: list[str] = Field(default_factory=list)
	error: Optional[ErrorDetail] = None


class TaskRecord(BaseModel):
	"""Durable record of one submitted task."""
	id: str
	project: str
	description: str
	mode: ExecutionMode = ExecutionMode.AUTO
	resolved_mode: Optional[ExecutionMode] = None
	status: TaskStatus = TaskStatus.PENDING

	# Options
	max_iterations: Optional[int] = None
	base_branch: Optional[str] = None
	open_change_request: bool = False
	retry_of: Optional[str] = None

	# Supervision
	owner: Optional[str] = None
	heartbeat_at: Optional[str] = None
	cancel_requested: bool = False

	# Progress
	plan: list[str] = Field(default_factory=list)
	current_agent: Optional[str] = None
	completed_agents: list[str] = Field(default_factory=list)
	progress: Progress = Field(default_factory=Progress)
	cost: float = 0.0

	# Outcome
	outcome: Optional[str] = None
	partial: bool = False
	output: str = ""
	error: Optional[ErrorDetail] = None
	trace: list[TraceStep] = Field(default_factory=list)
	subtasks: list[SubtaskSummary] = Field(default_factory=list)
	branch: Optional[str] = None
	change_request_url: Optional[str] = None

	created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	started_at: Optional[str] = None
	completed_at: Optional[str] = None

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES


class TaskEvent(BaseModel):
	"""Journal entry written on every status change."""
	task_id: str
	status: TaskStatus
	detail: str = ""
	created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
