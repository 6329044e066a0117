"""Orchestration - planning, handoff execution, decomposition, parallel runs and merging."""

from .decomposer import DecompositionResult, Subtask, TaskDecomposer
from .executor import (
	DynamicExecutor,
	ExecutionResult,
	ExecutionState,
	ExecutorSettings,
	LoopMode,
)
from .merger import BranchMerger, MergeConflict, MergeReport, format_conflicts
from .parallel import ParallelExecutionManager, ParallelReport, SubtaskResult, SubtaskStatus
from .planner import ExecutionPlan, TaskPlanner
from .service import Orchestrator, create_orchestrator, task_branch

__all__ = [
	"BranchMerger",
	"DecompositionResult",
	"DynamicExecutor",
	"ExecutionPlan",
	"ExecutionResult",
	"ExecutionState",
	"ExecutorSettings",
	"LoopMode",
	"MergeConflict",
	"MergeReport",
	"Orchestrator",
	"ParallelExecutionManager",
	"ParallelReport",
	"Subtask",
	"SubtaskResult",
	"SubtaskStatus",
	"TaskDecomposer",
	"TaskPlanner",
	"create_orchestrator",
	"format_conflicts",
	"task_branch",
]
