"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import platformdirs

APP_NAME = "agent-relay"
APP_AUTHOR = "agent-relay"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	tasks_db_path: Path = field(init=False)
	sandbox_root: Path = field(init=False)
	log_dir: Path = field(init=False)

	# User-configurable
	base_branch: str = "main"
	github_repo: Optional[str] = None

	# Planning
	planner_strategy: str = "heuristic"
	complexity_threshold: int = 3
	max_subtasks: int = 5

	# Handoff execution
	max_iterations: int = 10
	repeat_threshold: int = 4
	loop_mode: str = "pingpong"
	max_review_rounds: int = 3
	max_dialogue_rounds: int = 2
	decision_fallback: str = "retry"

	# Agent invocation
	agent_timeout: float = 300.0
	kill_grace_period: float = 10.0
	max_invoke_attempts: int = 3
	backoff_base: float = 2.0
	backoff_max: float = 60.0

	# Parallel execution
	max_concurrent_subtasks: int = 10
	cleanup_merged_branches: bool = True

	# Background supervision
	heartbeat_interval: float = 15.0
	liveness_timeout: float = 90.0
	cancel_timeout: float = 30.0

	def __post_init__(self) -> None:
		self.tasks_db_path = self.data_dir / "tasks.db"
		self.sandbox_root = self.data_dir / "sandboxes"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.sandbox_root.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)

	def executor_settings(self):
		"""Project the handoff and invocation settings onto ExecutorSettings."""
		from .orchestrator.executor import ExecutorSettings, LoopMode

		return ExecutorSettings(
			max_iterations=self.max_iterations,
			repeat_threshold=self.repeat_threshold,
			loop_mode=LoopMode(self.loop_mode),
			max_review_rounds=self.max_review_rounds,
			max_dialogue_rounds=self.max_dialogue_rounds,
			decision_fallback=self.decision_fallback,
			max_invoke_attempts=self.max_invoke_attempts,
			backoff_base=self.backoff_base,
			backoff_max=self.backoff_max,
		)


PATH_FIELDS = {"config_dir", "data_dir"}

_ENV_PATHS = {
	"AGENT_RELAY_CONFIG_DIR": "config_dir",
	"AGENT_RELAY_DATA_DIR": "data_dir",
}

_ENV_VALUES = {
	"AGENT_RELAY_BASE_BRANCH": ("base_branch", str),
	"AGENT_RELAY_GITHUB_REPO": ("github_repo", str),
	"AGENT_RELAY_PLANNER": ("planner_strategy", str),
	"AGENT_RELAY_MAX_ITERATIONS": ("max_iterations", int),
	"AGENT_RELAY_REPEAT_THRESHOLD": ("repeat_threshold", int),
	"AGENT_RELAY_LOOP_MODE": ("loop_mode", str),
	"AGENT_RELAY_MAX_REVIEW_ROUNDS": ("max_review_rounds", int),
	"AGENT_RELAY_AGENT_TIMEOUT": ("agent_timeout", float),
	"AGENT_RELAY_MAX_CONCURRENT": ("max_concurrent_subtasks", int),
	"AGENT_RELAY_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
	"AGENT_RELAY_LIVENESS_TIMEOUT": ("liveness_timeout", float),
}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply AGENT_RELAY_* environment variable overrides."""
	for env_key, attr in _ENV_PATHS.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))
	for env_key, (attr, cast) in _ENV_VALUES.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, cast(val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key):
			if key in PATH_FIELDS:
				setattr(config, key, Path(os.path.expanduser(val)))
			else:
				setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config_dir = os.getenv("AGENT_RELAY_CONFIG_DIR")
	if config_dir:
		config.config_dir = Path(config_dir)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
