"""
Conversation Log - append-only record of agent messages for one task.

Each executor owns its own log; parallel subtasks never share one.
Appending is the only mutation. Readers get copies.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .decision import format_decision, parse_decision


@dataclass(frozen=True)
class Message:
	"""One agent (or system) contribution to the conversation."""
	role: str
	content: str
	timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
	metadata: dict = field(default_factory=dict, compare=False, hash=False)


class ConversationLog:
	"""Ordered, append-only message sequence with read-only views."""

	def __init__(self, task_id: Optional[str] = None):
		self.task_id = task_id
		self._messages: list[Message] = []

	def add(self, role: str, content: str, **metadata) -> Message:
		"""Append a message and return it."""
		message = Message(role=role, content=content, metadata=dict(metadata))
		self._messages.append(message)
		return message

	@property
	def messages(self) -> tuple[Message, ...]:
		return tuple(self._messages)

	def by_role(self, role: str) -> list[Message]:
		return [m for m in self._messages if m.role == role]

	def last(self, role: Optional[str] = None) -> Optional[Message]:
		"""Most recent message, optionally restricted to one role."""
		for message in reversed(self._messages):
			if role is None or message.role == role:
				return message
		return None

	def recent(self, n: int) -> list[Message]:
		if n <= 0:
			return []
		return self._messages[-n:]

	def condensed_view(self, max_chars: int = 600, limit: Optional[int] = None) -> str:
		"""
		Summary suitable for prompting the next agent.

		Each message is reduced to its role, its handoff decision token and a
		truncated body.

		Args:
			max_chars: Per-message body limit
			limit: Only include the most recent N messages

		Returns:
			Markdown text, empty when the log is empty
		"""
		messages = self._messages if limit is None else self.recent(limit)
		sections = []
		for message in messages:
			body = message.content.strip()
			if len(body) > max_chars:
				body = body[:max_chars].rstrip() + "\n[...truncated]"
			decision = format_decision(parse_decision(message.content))
			sections.append(f"### {message.role} -> {decision}\n{body}")
		return "\n\n".join(sections)

	def stats(self) -> dict:
		"""Message counts per role and total characters."""
		per_role: dict[str, int] = {}
		for message in self._messages:
			per_role[message.role] = per_role.get(message.role, 0) + 1
		return {
			"total_messages": len(self._messages),
			"by_role": per_role,
			"total_chars": sum(len(m.content) for m in self._messages),
		}

	def __len__(self) -> int:
		return len(self._messages)

	def __iter__(self):
		return iter(tuple(self._messages))
