"""Tests for the CLI module."""

import sys
from unittest.mock import patch

import pytest

from agent_relay.cli import build_parser, cmd_agents, main

from .helpers import init_git_repo


@pytest.fixture
def relay_env(tmp_path, monkeypatch):
	"""Point config and data at temp dirs and return a git repo path."""
	monkeypatch.setenv("AGENT_RELAY_CONFIG_DIR", str(tmp_path / "config"))
	monkeypatch.setenv("AGENT_RELAY_DATA_DIR", str(tmp_path / "data"))
	monkeypatch.chdir(tmp_path)
	repo = tmp_path / "repo"
	init_git_repo(repo)
	return repo


def run_main(*argv: str) -> int:
	with patch.object(sys, "argv", ["agent-relay", *argv]):
		try:
			main()
		except SystemExit as e:
			return e.code
	return 0


class TestParser:
	"""Argument parsing."""

	def test_submit_defaults(self):
		args = build_parser().parse_args(["submit", "Fix a typo"])
		assert args.command == "submit"
		assert args.description == "Fix a typo"
		assert args.mode == "auto"
		assert args.max_iterations is None
		assert not args.background
		assert not args.pr

	def test_submit_options(self):
		args = build_parser().parse_args([
			"--project-path", "/tmp/app",
			"submit", "Add export",
			"--mode", "parallel", "--max-iterations", "5", "--background",
			"--base-branch", "develop", "--pr",
		])
		assert args.project_path == "/tmp/app"
		assert args.mode == "parallel"
		assert args.max_iterations == 5
		assert args.background
		assert args.base_branch == "develop"
		assert args.pr

	def test_invalid_mode_rejected(self):
		with pytest.raises(SystemExit):
			build_parser().parse_args(["submit", "x", "--mode", "sideways"])

	def test_list_options(self):
		args = build_parser().parse_args(["list", "--status", "failed", "--limit", "5"])
		assert args.status == "failed"
		assert args.limit == 5
		assert args.project is None

	def test_cleanup_default_days(self):
		assert build_parser().parse_args(["cleanup"]).days == 7

	@pytest.mark.parametrize("command", ["status", "cancel", "retry", "diff", "run-task"])
	def test_task_id_commands(self, command):
		args = build_parser().parse_args([command, "abc123"])
		assert args.task_id == "abc123"
		assert callable(args.func)


class TestMain:
	"""Commands run through main()."""

	def test_no_command_prints_help(self, capsys):
		assert run_main() == 1
		assert "agent-relay" in capsys.readouterr().out

	def test_status_of_unknown_task(self, relay_env, capsys):
		code = run_main("--project-path", str(relay_env), "status", "missing")

		assert code == 1
		assert "Task not found: missing" in capsys.readouterr().out

	def test_list_empty(self, relay_env, capsys):
		assert run_main("--project-path", str(relay_env), "list") == 0
		assert "No tasks found." in capsys.readouterr().out

	def test_cleanup(self, relay_env, capsys):
		assert run_main("--project-path", str(relay_env), "cleanup", "--days", "3") == 0
		assert "Deleted 0 task record(s) older than 3 days." in capsys.readouterr().out

	def test_sync(self, relay_env, capsys):
		assert run_main("--project-path", str(relay_env), "sync") == 0
		assert "All running tasks are alive." in capsys.readouterr().out

	def test_blank_submit_is_usage_error(self, relay_env, capsys):
		assert run_main("--project-path", str(relay_env), "submit", "  ") == 2
		assert "must not be empty" in capsys.readouterr().out


def test_agents_command(capsys):
	cmd_agents(build_parser().parse_args(["agents"]))
	out = capsys.readouterr().out
	for name in ("architect", "coder", "reviewer", "security"):
		assert name in out
	assert "quickfix" in out
