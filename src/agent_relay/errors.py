"""
Error taxonomy shared across the orchestrator.

Every error carries a short ``kind`` string. Failed task records store
the kind, message and retryable flag so a user can decide whether to
retry.
"""

from typing import Optional


class RelayError(Exception):
	"""Base class for all orchestrator errors."""

	kind = "error"
	retryable = False

	def to_detail(self) -> dict:
		"""Serializable summary stored on failed task records."""
		return {"kind": self.kind, "message": str(self), "retryable": self.retryable}


# Registry

class DuplicateAgentError(RelayError):
	"""Raised when an agent name is registered twice."""
	kind = "duplicate_agent"


class AgentNotFoundError(RelayError):
	"""Raised when an agent name is not in the registry."""
	kind = "agent_not_found"


# Agent invocation

class AgentInvocationError(RelayError):
	"""A single agent invocation failed."""

	kind = "invocation_failed"

	def __init__(self, message: str, agent: Optional[str] = None, retryable: Optional[bool] = None):
		super().__init__(message)
		self.agent = agent
		if retryable is not None:
			self.retryable = retryable


class AgentTimeoutError(AgentInvocationError):
	kind = "timeout"
	retryable = True


class RateLimitedError(AgentInvocationError):
	kind = "rate_limited"
	retryable = True


class TransientAgentError(AgentInvocationError):
	kind = "transient"
	retryable = True


class UnauthorizedError(AgentInvocationError):
	kind = "unauthorized"
	retryable = False


class UnrecoverableAgentError(AgentInvocationError):
	kind = "unrecoverable"
	retryable = False


# Orchestration

class PlanningFailure(RelayError):
	"""Model-assisted planning produced no usable plan."""
	kind = "planning_failure"


class DecisionParseFailure(RelayError):
	"""An agent's output carried no usable handoff decision."""
	kind = "decision_parse_failure"
	retryable = True


class DecompositionRejected(RelayError):
	"""A task cannot be split into independent parallel subtasks."""
	kind = "decomposition_rejected"


# Task state

class TaskNotFoundError(RelayError):
	kind = "task_not_found"


class InvalidTransitionError(RelayError):
	"""Raised when a task record update violates the status lifecycle."""
	kind = "invalid_transition"


# Collaborators

class SandboxError(RelayError):
	kind = "sandbox"
	retryable = True


class VcsError(RelayError):
	kind = "vcs"


class RemoteHostError(RelayError):
	kind = "remote"


class RemoteNotFoundError(RemoteHostError):
	kind = "remote_not_found"


class RemoteAuthError(RemoteHostError):
	kind = "remote_auth"


class RemoteRateLimitedError(RemoteHostError):
	kind = "remote_rate_limited"
	retryable = True


class ProcessDeathError(RelayError):
	"""The process supervising a running task stopped responding."""
	kind = "process_death"
	retryable = True
