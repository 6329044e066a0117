"""CLI for agent-relay: submit, status, list, cancel, retry, sync, agents, cleanup, diff and doctor."""

import argparse
import asyncio
import logging
import platform
import shutil
import signal
import subprocess
import sys
from importlib.metadata import version as pkg_version
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape

from .config import load_config
from .errors import InvalidTransitionError, RelayError
from .logging_config import setup_logging
from .orchestrator.service import Orchestrator, create_orchestrator
from .standard_agents import DEFAULT_SEQUENCES, create_standard_registry
from .state.models import RETRYABLE_STATUSES, ExecutionMode, TaskStatus
from .visualizer import render_agents, render_task_detail, render_task_list

logger = logging.getLogger(__name__)

console = Console()


def _project_path(args: argparse.Namespace) -> Path:
	return Path(args.project_path or Path.cwd()).expanduser().resolve()


async def _with_orchestrator(args: argparse.Namespace, action):
	"""Create an orchestrator for the selected project, run action, close it."""
	orchestrator = await create_orchestrator(config=load_config(), project_path=_project_path(args))
	try:
		return await action(orchestrator)
	finally:
		await orchestrator.close()


def _spawn_worker(project_path: Path, task_id: str) -> int:
	"""Start a detached process that runs a pending task."""
	proc = subprocess.Popen(
		[sys.executable, "-m", "agent_relay.cli", "--project-path", str(project_path), "run-task", task_id],
		stdin=subprocess.DEVNULL,
		stdout=subprocess.DEVNULL,
		stderr=subprocess.DEVNULL,
		start_new_session=True,
	)
	logger.info(f"Spawned worker pid {proc.pid} for task {task_id}")
	return proc.pid


def cmd_submit(args: argparse.Namespace) -> None:
	"""Submit a task and either wait for it or hand it to a background worker."""

	async def action(orchestrator: Orchestrator):
		if args.background:
			record = await orchestrator.create_task(
				args.description,
				mode=ExecutionMode(args.mode),
				max_iterations=args.max_iterations,
				base_branch=args.base_branch,
				open_change_request=args.pr,
			)
			pid = _spawn_worker(orchestrator.project_path, record.id)
			await orchestrator.assign_worker(record.id, pid)
			return record
		task_id = await orchestrator.submit_task(
			args.description,
			mode=ExecutionMode(args.mode),
			max_iterations=args.max_iterations,
			base_branch=args.base_branch,
			open_change_request=args.pr,
		)
		return await orchestrator.get_status(task_id)

	record = asyncio.run(_with_orchestrator(args, action))
	if args.background:
		console.print(f"Task [cyan]{record.id}[/cyan] submitted in the background.")
		console.print(f"Check it with: agent-relay status {record.id}")
	else:
		render_task_detail(record, console)


def cmd_run_task(args: argparse.Namespace) -> None:
	"""Internal: run a pending task in this process (background worker). SIGTERM cancels the task."""

	async def action(orchestrator: Orchestrator):
		loop = asyncio.get_running_loop()
		loop.add_signal_handler(signal.SIGTERM, orchestrator.supervisor.interrupt, args.task_id)
		try:
			return await orchestrator.run_task(args.task_id)
		finally:
			loop.remove_signal_handler(signal.SIGTERM)

	record = asyncio.run(_with_orchestrator(args, action))
	logger.info(f"Task {record.id} finished: {record.status.value}")


def cmd_status(args: argparse.Namespace) -> None:
	"""Show one task, after reaping tasks whose worker died."""

	async def action(orchestrator: Orchestrator):
		await orchestrator.sync_liveness()
		return await orchestrator.get_status(args.task_id)

	render_task_detail(asyncio.run(_with_orchestrator(args, action)), console)


def cmd_list(args: argparse.Namespace) -> None:
	"""List tasks, newest first."""
	status = TaskStatus(args.status) if args.status else None

	async def action(orchestrator: Orchestrator):
		await orchestrator.sync_liveness()
		return await orchestrator.list_tasks(project=args.project, status=status, limit=args.limit)

	render_task_list(asyncio.run(_with_orchestrator(args, action)), console)


def cmd_cancel(args: argparse.Namespace) -> None:
	"""Cancel a task. Terminal tasks are left as they are."""
	record = asyncio.run(_with_orchestrator(args, lambda o: o.cancel(args.task_id)))
	console.print(f"Task [cyan]{record.id}[/cyan] is {record.status.value}.")


def cmd_retry(args: argparse.Namespace) -> None:
	"""Resubmit a failed or cancelled task as a new task."""

	async def action(orchestrator: Orchestrator):
		if args.background:
			old = await orchestrator.get_status(args.task_id)
			if old.status not in RETRYABLE_STATUSES:
				raise InvalidTransitionError(
					f"Task {old.id} is {old.status.value}; only failed or cancelled tasks can be retried",
				)
			record = await orchestrator.create_task(
				old.description,
				project=old.project,
				mode=old.mode,
				max_iterations=old.max_iterations,
				base_branch=old.base_branch,
				open_change_request=old.open_change_request,
				retry_of=old.id,
			)
			pid = _spawn_worker(orchestrator.project_path, record.id)
			await orchestrator.assign_worker(record.id, pid)
			return record
		new_id = await orchestrator.retry(args.task_id)
		return await orchestrator.get_status(new_id)

	record = asyncio.run(_with_orchestrator(args, action))
	if args.background:
		console.print(f"Retry of {args.task_id} submitted as [cyan]{record.id}[/cyan].")
	else:
		render_task_detail(record, console)


def cmd_sync(args: argparse.Namespace) -> None:
	"""Fail running tasks whose supervising process is gone."""
	reaped = asyncio.run(_with_orchestrator(args, lambda o: o.sync_liveness()))
	if reaped:
		console.print(f"Marked {len(reaped)} task(s) failed: {', '.join(reaped)}")
	else:
		console.print("All running tasks are alive.")


def cmd_agents(args: argparse.Namespace) -> None:
	"""Show the standard agents and sequences."""
	render_agents(create_standard_registry(), console)
	console.print()
	for name, sequence in DEFAULT_SEQUENCES.items():
		console.print(f"  [bold]{name:12s}[/bold] {' -> '.join(sequence)}")


def cmd_cleanup(args: argparse.Namespace) -> None:
	"""Delete old terminal task records."""
	deleted = asyncio.run(_with_orchestrator(args, lambda o: o.state.cleanup(days=args.days)))
	console.print(f"Deleted {deleted} task record(s) older than {args.days} days.")


def cmd_diff(args: argparse.Namespace) -> None:
	"""Print the diff of a task branch against its base."""
	diff = asyncio.run(_with_orchestrator(args, lambda o: o.diff(args.task_id)))
	print(diff or "No changes.")


def cmd_doctor(args: argparse.Namespace) -> None:
	"""Health check - verify installation, binaries and configuration."""
	print("agent-relay doctor")
	print(f"{'=' * 40}")

	config = load_config()
	issues: list[str] = []

	py_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
	print(f"  Python:       {py_ver}")
	print(f"  Platform:     {platform.system()} {platform.machine()}")
	print()

	print("  Core deps:")
	for dep in ["aiosqlite", "pydantic", "platformdirs", "python-dotenv", "rich", "PyGithub"]:
		try:
			print(f"    {dep:22s} {pkg_version(dep)}")
		except Exception:
			print(f"    {dep:22s} NOT INSTALLED")
			issues.append(f"{dep} package not installed")
	print()

	print("  Binaries:")
	for binary in ["git", "claude"]:
		found = shutil.which(binary)
		print(f"    {binary:22s} {found or 'NOT FOUND'}")
		if not found:
			issues.append(f"{binary} not found on PATH")
	print()

	print("  Config:")
	toml_path = config.config_dir / "config.toml"
	print(f"    config.toml:         {'found' if toml_path.exists() else 'not found (optional)'}")
	print(f"    tasks db:            {config.tasks_db_path}")
	print(f"    sandboxes:           {config.sandbox_root}")
	print(f"    github repo:         {config.github_repo or 'not configured'}")
	print()

	if issues:
		print(f"  {len(issues)} issue(s) found:")
		for issue in issues:
			print(f"    - {issue}")
		sys.exit(1)
	else:
		print("  All checks passed.")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="agent-relay",
		description="Multi-agent orchestrator for software changes",
	)
	parser.add_argument("--project-path", type=str, default=None, help="Git repository to work on (default: cwd)")
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	submit_parser = subparsers.add_parser("submit", help="Submit a task")
	submit_parser.add_argument("description", help="What to change")
	submit_parser.add_argument(
		"--mode", choices=[m.value for m in ExecutionMode], default=ExecutionMode.AUTO.value,
		help="Execution mode (default: auto)",
	)
	submit_parser.add_argument("--max-iterations", type=int, default=None, help="Handoff ceiling for this task")
	submit_parser.add_argument("--background", action="store_true", help="Return immediately")
	submit_parser.add_argument("--base-branch", type=str, default=None, help="Branch to start from")
	submit_parser.add_argument("--pr", action="store_true", help="Open a pull request on success")
	submit_parser.set_defaults(func=cmd_submit)

	status_parser = subparsers.add_parser("status", help="Show a task")
	status_parser.add_argument("task_id")
	status_parser.set_defaults(func=cmd_status)

	list_parser = subparsers.add_parser("list", help="List tasks")
	list_parser.add_argument("--project", type=str, default=None, help="Filter by project")
	list_parser.add_argument("--status", choices=[s.value for s in TaskStatus], default=None)
	list_parser.add_argument("--limit", type=int, default=50, help="Max results")
	list_parser.set_defaults(func=cmd_list)

	cancel_parser = subparsers.add_parser("cancel", help="Cancel a task")
	cancel_parser.add_argument("task_id")
	cancel_parser.set_defaults(func=cmd_cancel)

	retry_parser = subparsers.add_parser("retry", help="Retry a failed or cancelled task")
	retry_parser.add_argument("task_id")
	retry_parser.add_argument("--background", action="store_true", help="Return immediately")
	retry_parser.set_defaults(func=cmd_retry)

	sync_parser = subparsers.add_parser("sync", help="Fail tasks whose worker died")
	sync_parser.set_defaults(func=cmd_sync)

	agents_parser = subparsers.add_parser("agents", help="Show available agents")
	agents_parser.set_defaults(func=cmd_agents)

	cleanup_parser = subparsers.add_parser("cleanup", help="Delete old finished tasks")
	cleanup_parser.add_argument("--days", type=int, default=7, help="Age in days (default: 7)")
	cleanup_parser.set_defaults(func=cmd_cleanup)

	diff_parser = subparsers.add_parser("diff", help="Show a task's changes")
	diff_parser.add_argument("task_id")
	diff_parser.set_defaults(func=cmd_diff)

	doctor_parser = subparsers.add_parser("doctor", help="Health check")
	doctor_parser.set_defaults(func=cmd_doctor)

	run_parser = subparsers.add_parser("run-task", help=argparse.SUPPRESS)
	run_parser.add_argument("task_id")
	run_parser.set_defaults(func=cmd_run_task)

	return parser


def main() -> None:
	"""CLI entry point."""
	load_dotenv()
	parser = build_parser()
	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	log_dir = load_config().log_dir if args.command == "run-task" else None
	setup_logging(level=args.log_level, log_dir=log_dir)

	try:
		args.func(args)
	except RelayError as e:
		console.print(f"[red]Error:[/red] {escape(str(e))}")
		sys.exit(1)
	except ValueError as e:
		console.print(f"[red]Error:[/red] {escape(str(e))}")
		sys.exit(2)


if __name__ == "__main__":
	main()
