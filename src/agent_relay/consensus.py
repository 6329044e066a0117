"""
Consensus predicates over a conversation log.

The executor consults a ConsensusDetector to decide when to branch into
clarification, peer dialogue or another review round. PhraseConsensus is
the default detector: case-insensitive phrase matching on the latest
relevant messages. Phrase matching is approximate, so the detector is an
interface that other strategies (a classifier call, structured review
verdicts) can replace.
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .conversation import ConversationLog, Message

READY_PHRASES = (
	"ready to implement",
	"ready to proceed",
	"ready to start",
	"everything is clear",
	"all clear",
	"no further questions",
	"looks good to me",
)

APPROVAL_PHRASES = (
	"approved",
	"lgtm",
	"looks good to me",
	"no issues",
	"passes all criteria",
	"excellent work",
	"ready to merge",
	"implementation is correct",
)

NEGATED_APPROVAL_PHRASES = (
	"not approved",
	"cannot approve",
	"can't approve",
	"not yet approved",
)

ISSUE_PHRASES = (
	"issue",
	"problem",
	"bug",
	"incorrect",
	"missing",
	"needs to be fixed",
	"must fix",
	"should fix",
	"error",
	"doesn't work",
	"fails",
	"revision needed",
)

QUESTION_PHRASES = ("question", "clarify", "clarification")

CONCERN_PHRASES = (
	"concern",
	"unclear",
	"not sure",
	"could you",
	"can you explain",
	"why did you",
	"question about",
)


@dataclass(frozen=True)
class DialogueRequest:
	"""One agent wants to talk to another directly."""
	initiator: str
	responder: str
	reason: str


class ConsensusDetector(Protocol):
	"""Predicates the executor branches on."""

	def is_ready_to_implement(self, log: ConversationLog) -> bool: ...

	def is_approved(self, log: ConversationLog) -> bool: ...

	def has_unresolved_issues(self, log: ConversationLog) -> bool: ...

	def has_open_questions(self, log: ConversationLog) -> bool: ...

	def needs_direct_dialogue(self, log: ConversationLog) -> Optional[DialogueRequest]: ...


def _body(message: Optional[Message]) -> str:
	"""Message text without the trailing decision tags."""
	if message is None:
		return ""
	lines = [
		line for line in message.content.splitlines()
		if not re.match(r"\s*(NEXT|REASON):", line, re.IGNORECASE)
	]
	return "\n".join(lines).lower()


def _contains_any(text: str, phrases: tuple[str, ...]) -> bool:
	return any(phrase in text for phrase in phrases)


class PhraseConsensus:
	"""
	Phrase-matching consensus detector.

	Args:
		implementer: Role whose questions trigger clarification
		reviewer: Role whose verdicts drive the review loop
		window: How many recent messages count as "latest"
	"""

	def __init__(self, implementer: str = "coder", reviewer: str = "reviewer", window: int = 3):
		self.implementer = implementer
		self.reviewer = reviewer
		self.window = window

	def _recent_text(self, log: ConversationLog) -> str:
		return "\n".join(_body(m) for m in log.recent(self.window))

	def is_ready_to_implement(self, log: ConversationLog) -> bool:
		return _contains_any(self._recent_text(log), READY_PHRASES)

	def is_approved(self, log: ConversationLog) -> bool:
		"""The latest reviewer message approves the work."""
		text = _body(log.last(self.reviewer))
		if not text or _contains_any(text, NEGATED_APPROVAL_PHRASES):
			return False
		return _contains_any(text, APPROVAL_PHRASES)

	def has_unresolved_issues(self, log: ConversationLog) -> bool:
		"""The latest reviewer message reports problems and does not approve."""
		text = _body(log.last(self.reviewer))
		if not text or self.is_approved(log):
			return False
		return _contains_any(text, ISSUE_PHRASES)

	def has_open_questions(self, log: ConversationLog) -> bool:
		"""The latest implementer message asks something."""
		text = _body(log.last(self.implementer))
		if not text:
			return False
		if any(line.rstrip().endswith("?") for line in text.splitlines()):
			return True
		return _contains_any(text, QUESTION_PHRASES)

	def needs_direct_dialogue(self, log: ConversationLog) -> Optional[DialogueRequest]:
		"""The reviewer addresses the implementer with a concern or question."""
		latest = log.last()
		if latest is None or latest.role != self.reviewer or self.is_approved(log):
			return None
		text = _body(latest)
		addressed = (
			f"@{self.implementer}" in text
			or re.search(rf"\b{re.escape(self.implementer)}\b[^\n]*\?", text) is not None
		)
		if addressed or _contains_any(text, CONCERN_PHRASES):
			return DialogueRequest(
				initiator=self.reviewer,
				responder=self.implementer,
				reason="reviewer raised questions for the implementer",
			)
		return None
