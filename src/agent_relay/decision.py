"""
Handoff decisions extracted from agent output.

An agent ends its turn by naming the next agent or declaring the task
complete. Two channels are accepted, in order:

1. A structured object, either supplied by the runner or embedded in the
   output as JSON: {"next": "<agent>|complete", "reason": "..."}
2. Trailing text tags: "NEXT: <agent> | COMPLETE" and "REASON: ...".

Output carrying neither yields Unparsable; the absence of a tag is never
read as completion.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional, Union

COMPLETE_TOKENS = {"complete", "completed", "done", "finish", "finished"}

_NEXT_RE = re.compile(r"NEXT:\s*([^\n|]+)", re.IGNORECASE)
_REASON_RE = re.compile(r"REASON:\s*([^\n]+)", re.IGNORECASE)
_JSON_BLOCK_RE = re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{[^{}]*\"next\"[^{}]*\}", re.DOTALL)


@dataclass(frozen=True)
class Next:
	"""Hand off to the named agent."""
	agent: str
	reason: str = ""
	kind = "next"


@dataclass(frozen=True)
class Complete:
	"""The task is finished."""
	reason: str = ""
	kind = "complete"


@dataclass(frozen=True)
class Unparsable:
	"""No usable decision was found."""
	detail: str = ""
	kind = "unparsable"


HandoffDecision = Union[Next, Complete, Unparsable]


def _from_mapping(data: dict) -> Optional[HandoffDecision]:
	target = data.get("next") or data.get("next_agent")
	if not isinstance(target, str) or not target.strip():
		return None
	reason = str(data.get("reason") or "").strip()
	return _from_target(target, reason)


def _from_target(target: str, reason: str) -> HandoffDecision:
	token = target.strip().strip("[]`*\"'.,;:").strip()
	if token.lower() in COMPLETE_TOKENS:
		return Complete(reason=reason)
	if not token or " " in token:
		return Unparsable(detail=f"Malformed NEXT target: {target.strip()!r}")
	return Next(agent=token.lower(), reason=reason)


def _structured_in_text(content: str) -> Optional[HandoffDecision]:
	candidates = _JSON_BLOCK_RE.findall(content) or _JSON_OBJECT_RE.findall(content)
	for raw in reversed(candidates):
		try:
			data = json.loads(raw)
		except json.JSONDecodeError:
			continue
		if isinstance(data, dict):
			decision = _from_mapping(data)
			if decision is not None:
				return decision
	return None


def parse_decision(content: str, structured: Optional[dict] = None) -> HandoffDecision:
	"""
	Decode the handoff decision from an agent's output.

	Args:
		content: Raw text produced by the agent
		structured: Optional structured payload reported by the runner

	Returns:
		Next, Complete or Unparsable
	"""
	if structured:
		decision = _from_mapping(structured)
		if decision is not None:
			return decision

	content = content or ""
	decision = _structured_in_text(content)
	if decision is not None:
		return decision

	next_matches = _NEXT_RE.findall(content)
	if not next_matches:
		return Unparsable(detail="No NEXT tag or structured decision in output")

	reason_matches = _REASON_RE.findall(content)
	reason = reason_matches[-1].strip() if reason_matches else ""
	return _from_target(next_matches[-1], reason)


def format_decision(decision: HandoffDecision) -> str:
	"""Compact token used in condensed conversation views and traces."""
	if isinstance(decision, Next):
		return f"NEXT: {decision.agent}" + (f" ({decision.reason})" if decision.reason else "")
	if isinstance(decision, Complete):
		return "COMPLETE" + (f" ({decision.reason})" if decision.reason else "")
	return "UNPARSABLE"


DECISION_INSTRUCTIONS = """## Handoff Decision (required)

End your response with exactly these two lines:

NEXT: [agent-name] | COMPLETE
REASON: [brief explanation]

Use COMPLETE only when the whole task is finished. You may instead end with a
JSON object: {"next": "<agent-name or complete>", "reason": "..."}"""
