"""Tests for the dynamic handoff executor."""

import pytest

from agent_relay.conversation import ConversationLog
from agent_relay.errors import TransientAgentError, UnauthorizedError
from agent_relay.orchestrator.executor import (
	DynamicExecutor,
	ExecutionResult,
	ExecutionState,
	ExecutorSettings,
	LoopMode,
)
from agent_relay.orchestrator.planner import ExecutionPlan
from agent_relay.runner import AgentResponse
from agent_relay.standard_agents import create_standard_registry
from agent_relay.state.models import StepKind

from .helpers import ScriptedRunner, make_registry


def cycle(*order: str):
	"""Responder where each agent hands to the next one in a fixed cycle."""
	following = {a: order[(i + 1) % len(order)] for i, a in enumerate(order)}

	def respond(name, prompt, session):
		return f"Worked on it.\nNEXT: {following[name]}\nREASON: your turn"

	return respond


class TestHandoffs:
	"""Following agent decisions to completion."""

	@pytest.mark.asyncio
	async def test_completes_when_agent_declares_complete(self):
		runner = ScriptedRunner({
			"coder": ["Implemented.\nNEXT: reviewer\nREASON: please review"],
			"reviewer": ["Approved.\nNEXT: COMPLETE\nREASON: all good"],
		})
		executor = DynamicExecutor(make_registry("coder", "reviewer"), runner)

		result = await executor.run(["coder", "reviewer"], "Fix a typo")

		assert result.state == ExecutionState.COMPLETED
		assert result.succeeded
		assert not result.partial
		assert result.agent_sequence == ["coder", "reviewer"]
		assert result.transitions == 2
		assert result.final_agent == "reviewer"
		assert result.final_output.startswith("Approved")
		assert result.total_cost == pytest.approx(0.02)

	@pytest.mark.asyncio
	async def test_agents_choose_next_regardless_of_plan(self):
		"""The plan only picks the first agent."""
		runner = ScriptedRunner({
			"a": ["NEXT: c"],
			"c": ["NEXT: COMPLETE"],
		})
		result = await DynamicExecutor(make_registry("a", "b", "c"), runner).run(["a", "b"], "task")

		assert result.agent_sequence == ["a", "c"]
		assert result.visits == {"a": 1, "c": 1}

	@pytest.mark.asyncio
	async def test_structured_decision(self):
		runner = ScriptedRunner({"a": [AgentResponse(content="done", structured={"next": "complete"})]})
		result = await DynamicExecutor(make_registry("a"), runner).run(["a"], "task")
		assert result.state == ExecutionState.COMPLETED

	@pytest.mark.asyncio
	async def test_accepts_execution_plan(self):
		runner = ScriptedRunner()
		plan = ExecutionPlan(agents=["a"])
		result = await DynamicExecutor(make_registry("a"), runner).run(plan, "task")
		assert result.state == ExecutionState.COMPLETED

	@pytest.mark.asyncio
	async def test_empty_plan_fails(self):
		result = await DynamicExecutor(make_registry("a"), ScriptedRunner()).run([], "task")
		assert result.state == ExecutionState.FAILED
		assert result.error.kind == "agent_not_found"

	@pytest.mark.asyncio
	async def test_unregistered_first_agent_fails(self):
		runner = ScriptedRunner()
		result = await DynamicExecutor(make_registry("a"), runner).run(["ghost"], "task")
		assert result.state == ExecutionState.FAILED
		assert runner.calls == []

	@pytest.mark.asyncio
	async def test_messages_are_logged(self):
		log = ConversationLog("t1")
		runner = ScriptedRunner({"a": ["NEXT: b"], "b": ["NEXT: COMPLETE"]})
		await DynamicExecutor(make_registry("a", "b"), runner, log=log).run(["a"], "Do the thing")

		assert [m.role for m in log] == ["system", "a", "b"]
		assert "Do the thing" in log.messages[0].content

	@pytest.mark.asyncio
	async def test_prompt_carries_previous_work(self):
		runner = ScriptedRunner({"a": ["Designed X.\nNEXT: b"], "b": ["NEXT: COMPLETE"]})
		await DynamicExecutor(make_registry("a", "b"), runner).run(["a", "b"], "Build X")

		_, prompt, _ = runner.calls[1]
		assert "Build X" in prompt
		assert "### a -> NEXT: b" in prompt
		assert "NEXT:" in prompt

	@pytest.mark.asyncio
	async def test_on_step_called_and_failures_ignored(self):
		seen = []

		async def on_step(step):
			seen.append(step.agent)
			raise RuntimeError("callback broke")

		runner = ScriptedRunner({"a": ["NEXT: b"], "b": ["NEXT: COMPLETE"]})
		result = await DynamicExecutor(make_registry("a", "b"), runner, on_step=on_step).run(["a"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert seen == ["a", "b"]


class TestLoopBounds:
	"""Iteration ceiling and loop detection."""

	@pytest.mark.asyncio
	async def test_default_iteration_ceiling(self):
		"""Without an explicit bound a run stops after 10 transitions."""
		runner = ScriptedRunner(cycle("a", "b", "c"))
		result = await DynamicExecutor(make_registry("a", "b", "c"), runner).run(["a"], "task")

		assert result.state == ExecutionState.LOOP_ABORTED
		assert result.partial
		assert result.transitions == 10
		assert len(result.trace) == 10
		assert "ceiling" in result.reason

	@pytest.mark.asyncio
	async def test_custom_iteration_ceiling(self):
		runner = ScriptedRunner(cycle("a", "b", "c"))
		settings = ExecutorSettings(max_iterations=3)
		result = await DynamicExecutor(make_registry("a", "b", "c"), runner, settings).run(["a"], "task")

		assert result.transitions == 3
		assert runner.agents_called == ["a", "b", "c"]

	@pytest.mark.asyncio
	async def test_pingpong_aborts_after_threshold(self):
		"""A -> B -> A -> B with threshold 4 stops after exactly four transitions."""
		runner = ScriptedRunner(cycle("a", "b"))
		settings = ExecutorSettings(repeat_threshold=4, loop_mode=LoopMode.PINGPONG)
		result = await DynamicExecutor(make_registry("a", "b"), runner, settings).run(["a", "b"], "task")

		assert result.state == ExecutionState.LOOP_ABORTED
		assert result.transitions == 4
		assert len(result.trace) == 4
		assert runner.agents_called == ["a", "b", "a", "b"]
		assert "loop" in result.reason.lower()

	@pytest.mark.asyncio
	async def test_total_mode_counts_visits(self):
		"""Total mode aborts once an agent is entered more than the threshold."""
		runner = ScriptedRunner(cycle("a", "b"))
		settings = ExecutorSettings(repeat_threshold=3, loop_mode=LoopMode.TOTAL)
		result = await DynamicExecutor(make_registry("a", "b"), runner, settings).run(["a"], "task")

		assert result.state == ExecutionState.LOOP_ABORTED
		assert result.transitions == 6
		assert result.visits["a"] == 4
		assert "visited" in result.reason

	@pytest.mark.asyncio
	async def test_pingpong_ignores_longer_cycles(self):
		"""A three-agent cycle never forms a reversal streak."""
		runner = ScriptedRunner(cycle("a", "b", "c"))
		settings = ExecutorSettings(repeat_threshold=2, max_iterations=6)
		result = await DynamicExecutor(make_registry("a", "b", "c"), runner, settings).run(["a"], "task")

		assert "ceiling" in result.reason
		assert result.transitions == 6


class TestUnusableDecisions:
	"""Missing or invalid handoff decisions."""

	@pytest.mark.asyncio
	async def test_retry_once_then_fail(self):
		runner = ScriptedRunner({"a": ["I did stuff.", "I did more stuff."]})
		result = await DynamicExecutor(make_registry("a"), runner).run(["a"], "task")

		assert result.state == ExecutionState.FAILED
		assert result.error.kind == "decision_parse_failure"
		assert [s.kind for s in result.trace] == [StepKind.HANDOFF, StepKind.RETRY]
		assert "no usable handoff decision" in runner.calls[1][1]

	@pytest.mark.asyncio
	async def test_retry_recovers(self):
		runner = ScriptedRunner({"a": ["I did stuff.", "Now done.\nNEXT: COMPLETE"]})
		result = await DynamicExecutor(make_registry("a"), runner).run(["a"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert result.transitions == 2

	@pytest.mark.asyncio
	async def test_unregistered_target_is_unusable(self):
		runner = ScriptedRunner({"a": ["NEXT: wizard", "NEXT: wizard"]})
		result = await DynamicExecutor(make_registry("a"), runner).run(["a"], "task")

		assert result.state == ExecutionState.FAILED
		assert "wizard" in result.reason

	@pytest.mark.asyncio
	async def test_plan_fallback(self):
		"""With the plan fallback, an unusable decision hands to the next planned agent."""
		runner = ScriptedRunner({"a": ["no decision"], "b": ["NEXT: COMPLETE"]})
		settings = ExecutorSettings(decision_fallback="plan")
		result = await DynamicExecutor(make_registry("a", "b"), runner, settings).run(["a", "b"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert result.agent_sequence == ["a", "b"]

	@pytest.mark.asyncio
	async def test_named_fallback_agent(self):
		runner = ScriptedRunner({"a": ["no decision"], "fixer": ["NEXT: COMPLETE"]})
		settings = ExecutorSettings(decision_fallback="fixer")
		result = await DynamicExecutor(make_registry("a", "fixer"), runner, settings).run(["a"], "task")

		assert result.agent_sequence == ["a", "fixer"]


class TestInnerLoops:
	"""Clarification, dialogue and review loops."""

	@pytest.mark.asyncio
	async def test_review_loop_until_approved(self):
		runner = ScriptedRunner({
			"coder": ["Implemented.\nNEXT: reviewer", "Fixed the bug.\nNEXT: reviewer"],
			"reviewer": ["There is a bug in the parser.\nNEXT: coder", "Approved.\nNEXT: COMPLETE"],
		})
		result = await DynamicExecutor(make_registry("coder", "reviewer"), runner).run(["coder", "reviewer"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert [s.kind for s in result.trace] == [
			StepKind.HANDOFF, StepKind.HANDOFF, StepKind.REVIEW, StepKind.REVIEW,
		]
		# Review rounds are not handoff transitions
		assert result.transitions == 2

	@pytest.mark.asyncio
	async def test_review_rounds_exhausted(self):
		def respond(name, prompt, session):
			if name == "coder":
				return "Implemented.\nNEXT: reviewer"
			return "There is a bug in the parser.\nNEXT: coder"

		settings = ExecutorSettings(max_review_rounds=2)
		executor = DynamicExecutor(make_registry("coder", "reviewer"), ScriptedRunner(respond), settings)
		result = await executor.run(["coder", "reviewer"], "task")

		assert result.state == ExecutionState.REVIEW_EXHAUSTED
		assert result.partial
		assert result.agent_sequence == ["coder", "reviewer", "coder", "reviewer"]

	@pytest.mark.asyncio
	async def test_clarification(self):
		runner = ScriptedRunner({
			"coder": ["Should the cache be per user?\nNEXT: architect", "Implemented.\nNEXT: COMPLETE"],
			"architect": ["Yes, per user.\nNEXT: coder"],
		})
		registry = make_registry("architect", "coder", "reviewer")
		result = await DynamicExecutor(registry, runner).run(["coder"], "Add a cache")

		assert result.state == ExecutionState.COMPLETED
		assert result.agent_sequence == ["coder", "architect", "coder"]
		assert [s.kind for s in result.trace[1:]] == [StepKind.CLARIFICATION, StepKind.CLARIFICATION]
		assert result.transitions == 1

	@pytest.mark.asyncio
	async def test_direct_dialogue(self):
		runner = ScriptedRunner({
			"coder": ["Implemented.\nNEXT: reviewer", "The old flag keeps old clients working.\nNEXT: reviewer"],
			"reviewer": ["@coder why did you keep the old flag?\nNEXT: coder", "Makes sense. Approved.\nNEXT: COMPLETE"],
		})
		result = await DynamicExecutor(make_registry("coder", "reviewer"), runner).run(["coder", "reviewer"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert [s.kind for s in result.trace] == [
			StepKind.HANDOFF, StepKind.HANDOFF, StepKind.DIALOGUE, StepKind.DIALOGUE,
		]


class TestInvocationFailures:
	"""Retry with backoff and error classification."""

	@pytest.mark.asyncio
	async def test_transient_failure_retried(self):
		runner = ScriptedRunner({"a": [TransientAgentError("API overloaded"), "NEXT: COMPLETE"]})
		settings = ExecutorSettings(backoff_base=0)
		result = await DynamicExecutor(make_registry("a"), runner, settings).run(["a"], "task")

		assert result.state == ExecutionState.COMPLETED
		assert runner.agents_called == ["a", "a"]
		assert len(result.trace) == 1

	@pytest.mark.asyncio
	async def test_non_retryable_failure(self):
		runner = ScriptedRunner({"a": [UnauthorizedError("invalid api key")]})
		result = await DynamicExecutor(make_registry("a"), runner).run(["a"], "task")

		assert result.state == ExecutionState.FAILED
		assert result.error.kind == "unauthorized"
		assert not result.error.retryable
		assert runner.agents_called == ["a"]
		assert result.trace[0].error.startswith("unauthorized")

	@pytest.mark.asyncio
	async def test_retries_exhausted(self):
		runner = ScriptedRunner({"a": [TransientAgentError("503"), TransientAgentError("503")]})
		settings = ExecutorSettings(max_invoke_attempts=2, backoff_base=0)
		result = await DynamicExecutor(make_registry("a"), runner, settings).run(["a"], "task")

		assert result.state == ExecutionState.FAILED
		assert result.error.kind == "transient"
		assert result.error.retryable
		assert runner.agents_called == ["a", "a"]


def test_build_prompt_marks_read_only_agents():
	executor = DynamicExecutor(create_standard_registry(), ScriptedRunner())
	prompt = executor.build_prompt("reviewer", "Fix a typo", ["coder", "reviewer"])

	assert "# Role: reviewer" in prompt
	assert "Fix a typo" in prompt
	assert "read-only" in prompt
	assert "- coder:" in prompt
	assert "NEXT: [agent-name] | COMPLETE" in prompt


def test_result_summary():
	result = ExecutionResult(state=ExecutionState.LOOP_ABORTED, reason="loop", total_cost=0.123456)
	summary = result.summary()
	assert summary["state"] == "loop_aborted"
	assert summary["total_cost"] == 0.1235
	assert result.partial
	assert not result.succeeded
