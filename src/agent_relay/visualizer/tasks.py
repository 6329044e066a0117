"""Rich views for task records and the agent registry."""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..registry import AgentRegistry
from ..state.models import TaskRecord
from .utils import format_duration, format_timestamp, status_markup, truncate


def render_task_list(records: list[TaskRecord], console: Optional[Console] = None) -> None:
	"""Render a table of tasks, newest first."""
	console = console or Console()

	if not records:
		console.print("[dim]No tasks found.[/dim]")
		return

	table = Table(title="Tasks")
	table.add_column("ID", style="cyan")
	table.add_column("Status")
	table.add_column("Mode")
	table.add_column("Progress", justify="right")
	table.add_column("Agent")
	table.add_column("Cost", justify="right")
	table.add_column("Created")
	table.add_column("Description")

	for record in records:
		mode = (record.resolved_mode or record.mode).value
		table.add_row(
			record.id,
			status_markup(record.status.value, record.partial),
			mode,
			f"{record.progress.percent}%",
			record.current_agent or "-",
			f"${record.cost:.3f}",
			format_timestamp(record.created_at),
			escape(truncate(record.description, 50)),
		)

	console.print(table)


def render_task_detail(record: TaskRecord, console: Optional[Console] = None) -> None:
	"""Render one task: summary panel, then trace or subtasks."""
	console = console or Console()

	lines = [
		f"[bold]Description:[/bold] {escape(record.description)}",
		f"[bold]Project:[/bold] {record.project}",
		f"[bold]Status:[/bold] {status_markup(record.status.value, record.partial)}",
		f"[bold]Mode:[/bold] {(record.resolved_mode or record.mode).value}",
	]
	if record.plan:
		lines.append(f"[bold]Plan:[/bold] {' -> '.join(record.plan)}")
	if record.status.value == "running":
		lines.append(f"[bold]Current agent:[/bold] {record.current_agent or '-'}")
		lines.append(
			f"[bold]Progress:[/bold] {record.progress.percent}% "
			f"(ETA {format_duration(record.progress.eta_seconds)})"
		)
	lines.append(f"[bold]Cost:[/bold] ${record.cost:.4f}")
	if record.outcome:
		lines.append(f"[bold]Outcome:[/bold] {record.outcome}")
	if record.branch:
		lines.append(f"[bold]Branch:[/bold] {record.branch}")
	if record.change_request_url:
		lines.append(f"[bold]Pull request:[/bold] {record.change_request_url}")
	if record.retry_of:
		lines.append(f"[bold]Retry of:[/bold] {record.retry_of}")
	if record.error:
		lines.append("")
		retry_hint = " (retryable)" if record.error.retryable else ""
		lines.append(f"[red][bold]Error:[/bold] {record.error.kind}: {escape(record.error.message)}{retry_hint}[/red]")

	console.print(Panel("\n".join(lines), title=f"Task: {record.id}", border_style="cyan"))

	if record.trace:
		table = Table(title="Trace")
		table.add_column("#", justify="right")
		table.add_column("Agent", style="cyan")
		table.add_column("Kind")
		table.add_column("Decision")
		table.add_column("Duration", justify="right")
		table.add_column("Cost", justify="right")
		for step in record.trace:
			decision = step.decision + (f" -> {step.target}" if step.target else "")
			if step.error:
				decision = f"[red]{escape(truncate(step.error, 40))}[/red]"
			table.add_row(
				str(step.index + 1),
				step.agent,
				step.kind.value,
				decision,
				format_duration(step.duration),
				f"${step.cost:.4f}",
			)
		console.print(table)

	if record.subtasks:
		table = Table(title="Subtasks")
		table.add_column("ID", style="cyan")
		table.add_column("Status")
		table.add_column("Merged")
		table.add_column("Agents")
		table.add_column("Description")
		for sub in record.subtasks:
			merged = "[green]yes[/green]" if sub.merged else (
				f"[red]conflict: {', '.join(sub.conflicting_paths)}[/red]" if sub.conflicting_paths else "no"
			)
			table.add_row(
				sub.id,
				status_markup(sub.status),
				merged,
				" -> ".join(sub.agents) or "-",
				escape(truncate(sub.description, 50)),
			)
		console.print(table)

	if record.output and record.is_terminal:
		output = record.output if len(record.output) <= 2000 else record.output[:2000] + "\n[...truncated]"
		console.print(Panel(escape(output), title="Output", border_style="dim"))


def render_agents(registry: AgentRegistry, console: Optional[Console] = None) -> None:
	"""Render the registered agents."""
	console = console or Console()

	table = Table(title="Agents")
	table.add_column("Name", style="cyan")
	table.add_column("Access")
	table.add_column("Model")
	table.add_column("Est. cost", justify="right")
	table.add_column("Capabilities")

	for agent in registry.list_all():
		table.add_row(
			agent.name,
			"read-only" if agent.read_only else "[yellow]full[/yellow]",
			agent.model_hint or "-",
			f"${agent.estimated_cost:.3f}",
			", ".join(agent.capabilities),
		)

	console.print(table)
