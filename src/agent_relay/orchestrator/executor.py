"""
Dynamic Executor - runs a task as a chain of agent handoffs.

Each agent ends its turn by naming the next agent or declaring the task
complete. The executor follows those decisions, bounded by:
- an iteration ceiling on handoff transitions
- loop detection (repeated back-and-forth, or per-agent visit totals)
- a review round ceiling for implementer/reviewer fix loops

Clarification, peer dialogue and review are bounded inner loops hung off
the implementer and reviewer turns; their invocations are traced but are
not handoff transitions.

Invocation failures are retried with exponential backoff when retryable.
Every run ends in a well-formed ExecutionResult; only cancellation
propagates.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from ..consensus import ConsensusDetector, PhraseConsensus
from ..conversation import ConversationLog
from ..decision import DECISION_INSTRUCTIONS, Complete, HandoffDecision, Next, Unparsable, parse_decision
from ..errors import AgentInvocationError, AgentNotFoundError, DecisionParseFailure, RelayError
from ..registry import AgentRegistry
from ..runner import AgentResponse, AgentRunner, SessionContext
from ..state.models import ErrorDetail, StepKind, TraceStep
from .planner import ExecutionPlan

logger = logging.getLogger(__name__)


class LoopMode(str, Enum):
	"""How repeated handoffs are detected."""
	PINGPONG = "pingpong"
	TOTAL = "total"


class ExecutionState(str, Enum):
	"""Terminal state of one executor run."""
	COMPLETED = "completed"
	LOOP_ABORTED = "loop_aborted"
	REVIEW_EXHAUSTED = "review_exhausted"
	FAILED = "failed"


PARTIAL_STATES = frozenset({ExecutionState.LOOP_ABORTED, ExecutionState.REVIEW_EXHAUSTED})


@dataclass
class ExecutorSettings:
	"""Bounds and role names for one executor."""
	max_iterations: int = 10
	repeat_threshold: int = 4
	loop_mode: LoopMode = LoopMode.PINGPONG
	max_review_rounds: int = 3
	max_dialogue_rounds: int = 2
	# "retry" re-invokes the same agent once, "plan" hands to the next
	# planned agent, anything else names a fallback agent
	decision_fallback: str = "retry"
	max_invoke_attempts: int = 3
	backoff_base: float = 2.0
	backoff_max: float = 60.0
	implementer: str = "coder"
	reviewer: str = "reviewer"
	clarifier: str = "architect"


class ExecutionResult(BaseModel):
	"""Outcome of one executor run."""
	state: ExecutionState
	reason: str = ""
	trace: list[TraceStep] = Field(default_factory=list)
	transitions: int = 0
	visits: dict[str, int] = Field(default_factory=dict)
	total_cost: float = 0.0
	total_duration: float = 0.0
	final_agent: Optional[str] = None
	final_output: str = ""
	error: Optional[ErrorDetail] = None

	@property
	def partial(self) -> bool:
		return self.state in PARTIAL_STATES

	@property
	def succeeded(self) -> bool:
		return self.state == ExecutionState.COMPLETED

	@property
	def agent_sequence(self) -> list[str]:
		return [step.agent for step in self.trace]

	def summary(self) -> dict:
		return {
			"state": self.state.value,
			"reason": self.reason,
			"agents": self.agent_sequence,
			"visits": dict(self.visits),
			"transitions": self.transitions,
			"total_cost": round(self.total_cost, 4),
			"total_duration": round(self.total_duration, 1),
		}


StepCallback = Callable[[TraceStep], Awaitable[None]]


class _Terminate(Exception):
	"""Internal: stop the run with the given state."""

	def __init__(self, state: ExecutionState, reason: str, error: Optional[RelayError] = None):
		super().__init__(reason)
		self.state = state
		self.reason = reason
		self.error = error


class DynamicExecutor:
	"""
	Runs one task through agent handoffs.

	One executor instance serves one run: it owns its conversation log,
	visit records and trace.

	Args:
		registry: Agents that may be invoked
		runner: Agent invocation boundary
		settings: Bounds and role names
		consensus: Predicates for clarification, dialogue and review loops
		log: Conversation log to append to (a fresh one when omitted)
		session: Working directory and model session shared by the run
		on_step: Awaited after every traced invocation
	"""

	def __init__(
		self,
		registry: AgentRegistry,
		runner: AgentRunner,
		settings: Optional[ExecutorSettings] = None,
		consensus: Optional[ConsensusDetector] = None,
		log: Optional[ConversationLog] = None,
		session: Optional[SessionContext] = None,
		on_step: Optional[StepCallback] = None,
	):
		self.registry = registry
		self.runner = runner
		self.settings = settings or ExecutorSettings()
		self.consensus = consensus or PhraseConsensus(
			implementer=self.settings.implementer,
			reviewer=self.settings.reviewer,
		)
		self.log = log if log is not None else ConversationLog()
		self.session = session
		self.on_step = on_step

		self._trace: list[TraceStep] = []
		self._visits: dict[str, int] = {}
		self._transitions = 0
		self._last_pair: Optional[tuple[str, str]] = None
		self._streak = 0
		self._parse_failures = 0
		self._review_rounds = 0
		self._clarified = False
		self._last_output = ""

	async def run(self, plan: Union[ExecutionPlan, list[str]], task: str) -> ExecutionResult:
		"""
		Execute the task starting from the first planned agent.

		Args:
			plan: Planned agent sequence (the first agent starts; later order is advisory)
			task: Task description given to every agent

		Returns:
			ExecutionResult with state, trace and cost
		"""
		agents = plan.agents if isinstance(plan, ExecutionPlan) else list(plan)
		if not agents:
			return self._result(ExecutionState.FAILED, "Empty plan", error=AgentNotFoundError("Plan has no agents"))

		current = agents[0]
		if not self.registry.has(current):
			return self._result(
				ExecutionState.FAILED,
				f"First agent not registered: {current}",
				error=AgentNotFoundError(f"Unknown agent: {current}"),
			)

		self._visits[current] = 1
		self.log.add("system", f"Task: {task}")
		kind = StepKind.HANDOFF
		extra = ""

		try:
			while True:
				if self._transitions >= self.settings.max_iterations:
					raise _Terminate(
						ExecutionState.LOOP_ABORTED,
						f"Iteration ceiling of {self.settings.max_iterations} transitions reached",
					)

				response, step = await self._invoke(current, task, agents, kind, extra)
				response, step = await self._after_turn(current, task, agents, response, step)
				decision = self._decision_of(response)
				self._transitions += 1

				if isinstance(decision, Complete):
					logger.info(f"{current} declared the task complete")
					return self._result(ExecutionState.COMPLETED, decision.reason or "Completed", final_agent=current)

				if isinstance(decision, Next) and self.registry.has(decision.agent):
					self._parse_failures = 0
					self._enter(current, decision.agent)
					current, kind, extra = decision.agent, StepKind.HANDOFF, ""
					continue

				current, kind, extra = self._fallback(current, agents, decision)
		except _Terminate as t:
			logger.warning(f"Execution ended: {t.state.value} ({t.reason})")
			return self._result(t.state, t.reason, error=t.error, final_agent=current)
		except AgentInvocationError as e:
			logger.error(f"Agent {e.agent or current} failed: {e}")
			return self._result(ExecutionState.FAILED, str(e), error=e, final_agent=current)

	def _decision_of(self, response: AgentResponse) -> HandoffDecision:
		return parse_decision(response.content, response.structured)

	def _enter(self, source: str, target: str) -> None:
		"""Record a handoff transition and apply loop detection."""
		self._visits[target] = self._visits.get(target, 0) + 1

		pair = (source, target)
		if self._last_pair is not None and pair == (self._last_pair[1], self._last_pair[0]):
			self._streak += 1
		else:
			self._streak = 1
		self._last_pair = pair

		threshold = self.settings.repeat_threshold
		if self.settings.loop_mode == LoopMode.PINGPONG and self._streak >= threshold:
			raise _Terminate(
				ExecutionState.LOOP_ABORTED,
				f"Handoff loop between {source} and {target} repeated {self._streak} times",
			)
		if self.settings.loop_mode == LoopMode.TOTAL and self._visits[target] > threshold:
			raise _Terminate(
				ExecutionState.LOOP_ABORTED,
				f"Agent {target} visited {self._visits[target]} times (threshold {threshold})",
			)

	def _fallback(self, current: str, agents: list[str], decision: HandoffDecision) -> tuple[str, StepKind, str]:
		"""Route an unusable decision: retry the agent once, or hand to a fallback agent."""
		if isinstance(decision, Next):
			detail = f"named unregistered agent '{decision.agent}'"
		else:
			detail = decision.detail if isinstance(decision, Unparsable) else "no decision"

		self._parse_failures += 1
		if self._parse_failures > 1:
			raise _Terminate(
				ExecutionState.FAILED,
				f"No usable handoff decision from {current}: {detail}",
				DecisionParseFailure(f"{current}: {detail}"),
			)
		logger.warning(f"Unusable decision from {current}: {detail}")

		mode = self.settings.decision_fallback
		target: Optional[str] = None
		if mode == "plan":
			later = agents[agents.index(current) + 1:] if current in agents else []
			target = later[0] if later else None
		elif mode != "retry" and self.registry.has(mode) and mode != current:
			target = mode

		if target is not None:
			self._enter(current, target)
			return target, StepKind.HANDOFF, ""

		reminder = (
			f"Your previous response had no usable handoff decision ({detail}). "
			"Finish your work and end with the required NEXT/REASON block."
		)
		return current, StepKind.RETRY, reminder

	async def _after_turn(
		self,
		agent: str,
		task: str,
		agents: list[str],
		response: AgentResponse,
		step: TraceStep,
	) -> tuple[AgentResponse, TraceStep]:
		"""Run the clarification, dialogue and review loops hung off a turn."""
		s = self.settings
		if agent == s.implementer:
			return await self._clarify(task, agents, response, step)
		if agent == s.reviewer and self.registry.has(s.implementer):
			response, step = await self._dialogue(task, agents, response, step)
			return await self._review_loop(task, agents, response, step)
		return response, step

	async def _clarify(self, task, agents, response, step):
		s = self.settings
		if (
			self._clarified
			or not self.registry.has(s.clarifier)
			or s.clarifier == s.implementer
			or not self.consensus.has_open_questions(self.log)
			or self.consensus.is_ready_to_implement(self.log)
		):
			return response, step

		self._clarified = True
		logger.info(f"{s.implementer} has open questions; asking {s.clarifier}")
		await self._invoke(
			s.clarifier, task, agents, StepKind.CLARIFICATION,
			f"The {s.implementer} asked questions in the latest message. Answer them "
			f"precisely. The {s.implementer} will continue afterwards.",
		)
		return await self._invoke(
			s.implementer, task, agents, StepKind.CLARIFICATION,
			f"The {s.clarifier} answered your questions above. Continue the implementation.",
		)

	async def _dialogue(self, task, agents, response, step):
		rounds = 0
		while rounds < self.settings.max_dialogue_rounds:
			request = self.consensus.needs_direct_dialogue(self.log)
			if request is None or not (self.registry.has(request.initiator) and self.registry.has(request.responder)):
				break
			rounds += 1
			logger.info(f"Dialogue round {rounds}: {request.initiator} <-> {request.responder}")
			await self._invoke(
				request.responder, task, agents, StepKind.DIALOGUE,
				f"The {request.initiator} raised questions or concerns about your work "
				f"in the latest message. Answer them directly.",
			)
			response, step = await self._invoke(
				request.initiator, task, agents, StepKind.DIALOGUE,
				f"The {request.responder} responded to your concerns above. Give your "
				f"updated assessment.",
			)
		return response, step

	async def _review_loop(self, task, agents, response, step):
		s = self.settings
		self._review_rounds += 1
		while not self.consensus.is_approved(self.log) and self.consensus.has_unresolved_issues(self.log):
			if self._review_rounds >= s.max_review_rounds:
				raise _Terminate(
					ExecutionState.REVIEW_EXHAUSTED,
					f"Review not approved after {self._review_rounds} rounds",
				)
			logger.info(f"Review round {self._review_rounds} found issues; {s.implementer} revising")
			await self._invoke(
				s.implementer, task, agents, StepKind.REVIEW,
				f"The {s.reviewer} found issues in the latest review. Fix all of them.",
			)
			response, step = await self._invoke(
				s.reviewer, task, agents, StepKind.REVIEW,
				f"The {s.implementer} revised the work to address your review. Review it again.",
			)
			self._review_rounds += 1
		return response, step

	async def _invoke(
		self,
		agent_name: str,
		task: str,
		agents: list[str],
		kind: StepKind,
		extra: str = "",
	) -> tuple[AgentResponse, TraceStep]:
		"""Invoke one agent with retries, log its message and trace the step."""
		definition = self.registry.get(agent_name)
		prompt = self.build_prompt(agent_name, task, agents, extra)
		attempts = max(1, self.settings.max_invoke_attempts)

		for attempt in range(1, attempts + 1):
			start = time.monotonic()
			try:
				response = await self.runner.invoke(definition, prompt, self.session)
				break
			except AgentInvocationError as e:
				e.agent = e.agent or agent_name
				if not e.retryable or attempt == attempts:
					self._trace.append(TraceStep(
						index=len(self._trace),
						agent=agent_name,
						kind=kind,
						duration=time.monotonic() - start,
						error=f"{e.kind}: {e}",
					))
					raise
				delay = min(self.settings.backoff_max, self.settings.backoff_base * 2 ** (attempt - 1))
				logger.warning(
					f"Agent {agent_name} attempt {attempt}/{attempts} failed ({e.kind}); retrying in {delay:.1f}s"
				)
				await asyncio.sleep(delay)

		self.log.add(agent_name, response.content, kind=kind.value)
		self._last_output = response.content
		decision = self._decision_of(response)
		step = TraceStep(
			index=len(self._trace),
			agent=agent_name,
			kind=kind,
			decision=decision.kind,
			target=decision.agent if isinstance(decision, Next) else None,
			reason=getattr(decision, "reason", "") or getattr(decision, "detail", ""),
			cost=response.usage.cost,
			duration=response.usage.duration,
		)
		self._trace.append(step)
		logger.info(
			f"{agent_name} ({kind.value}) -> {decision.kind}"
			f"{' ' + step.target if step.target else ''} "
			f"[${step.cost:.4f}, {step.duration:.1f}s]"
		)

		if self.on_step:
			try:
				await self.on_step(step)
			except Exception as e:
				logger.warning(f"on_step callback failed for {agent_name}: {e}")
		return response, step

	def build_prompt(self, agent_name: str, task: str, agents: list[str], extra: str = "") -> str:
		definition = self.registry.get(agent_name)
		previous = self.log.condensed_view(limit=8)
		handoff_targets = "\n".join(
			f"- {a.name}: {a.description}" for a in self.registry.list_all() if a.name != agent_name
		)
		lines = [
			f"# Role: {agent_name}",
			definition.description,
			"",
			"## Task",
			task,
			"",
			"## Planned Sequence",
			" -> ".join(agents) + "  (guidance only; you choose the next agent)",
			"",
			"## Previous Work",
			previous or "None yet. You are the first agent.",
		]
		if extra:
			lines += ["", "## Instructions", extra]
		if definition.read_only:
			lines += ["", "You have read-only access. Do not modify files."]
		lines += [
			"",
			"## Available Agents",
			handoff_targets or "(none)",
			"",
			DECISION_INSTRUCTIONS,
		]
		return "\n".join(lines)

	def _result(
		self,
		state: ExecutionState,
		reason: str,
		error: Optional[RelayError] = None,
		final_agent: Optional[str] = None,
	) -> ExecutionResult:
		return ExecutionResult(
			state=state,
			reason=reason,
			trace=list(self._trace),
			transitions=self._transitions,
			visits=dict(self._visits),
			total_cost=round(sum(s.cost for s in self._trace), 6),
			total_duration=sum(s.duration for s in self._trace),
			final_agent=final_agent,
			final_output=self._last_output,
			error=ErrorDetail(**error.to_detail()) if error else None,
		)
