"""Shared utilities for visualizer views."""

from datetime import datetime
from typing import Optional

STATUS_STYLES = {
	"pending": "dim",
	"running": "yellow",
	"completed": "green",
	"failed": "red",
	"cancelled": "magenta",
	"partial": "yellow",
}


def format_duration(seconds: Optional[float]) -> str:
	"""Format a duration for display. e.g. '1.2s', '45ms', '2m 3s'."""
	if seconds is None:
		return "-"
	if seconds < 0.001:
		return "<1ms"
	if seconds < 1.0:
		return f"{seconds * 1000:.0f}ms"
	if seconds < 60.0:
		return f"{seconds:.1f}s"
	minutes = int(seconds // 60)
	secs = seconds % 60
	return f"{minutes}m {secs:.0f}s"


def format_timestamp(iso_str: Optional[str]) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	if not iso_str:
		return "-"
	try:
		dt = datetime.fromisoformat(iso_str)
		total_secs = int((datetime.now() - dt).total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		return f"{total_secs // 86400}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def status_markup(status: str, partial: bool = False) -> str:
	"""Rich markup for a task status."""
	label = f"{status} (partial)" if partial else status
	style = STATUS_STYLES.get("partial" if partial else status, "white")
	return f"[{style}]{label}[/{style}]"


def truncate(text: str, max_len: int = 60) -> str:
	text = " ".join(text.split())
	if len(text) <= max_len:
		return text
	return text[:max_len - 3] + "..."
