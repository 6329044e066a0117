"""Durable task state: records, store, lifecycle manager and supervisor."""

from .manager import TaskStateManager, calculate_progress, estimate_eta
from .models import (
	ErrorDetail,
	ExecutionMode,
	Progress,
	StepKind,
	SubtaskSummary,
	TaskRecord,
	TaskStatus,
	TraceStep,
)
from .store import TaskStore
from .supervisor import TaskSupervisor

__all__ = [
	"ErrorDetail",
	"ExecutionMode",
	"Progress",
	"StepKind",
	"SubtaskSummary",
	"TaskRecord",
	"TaskStateManager",
	"TaskStatus",
	"TaskStore",
	"TaskSupervisor",
	"TraceStep",
	"calculate_progress",
	"estimate_eta",
]
