"""Centralized logging configuration for agent-relay."""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Agent stderr and GitHub errors can echo credentials back into log messages
SECRET_PATTERNS = [
	(re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"), "[REDACTED_API_KEY]"),
	(re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}"), "[REDACTED_TOKEN]"),
	(re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}"), "[REDACTED_TOKEN]"),
	(re.compile(r"(?i)(authorization:\s*(?:bearer|token)\s+)\S+"), r"\1[REDACTED_AUTH]"),
]


class RedactingFilter(logging.Filter):
	"""Replace API keys and tokens in the rendered message."""

	def filter(self, record: logging.LogRecord) -> bool:
		message = record.getMessage()
		redacted = message
		for pattern, replacement in SECRET_PATTERNS:
			redacted = pattern.sub(replacement, redacted)
		if redacted != message:
			record.msg = redacted
			record.args = None
		return True


def setup_logging(
	name: str = "agent_relay",
	level: Optional[str] = None,
	log_dir: Optional[Path] = None,
) -> logging.Logger:
	"""
	Configure the package logger once per process.

	Args:
		name: Logger name (package root so every module logger inherits it)
		level: DEBUG, INFO, WARNING or ERROR. Falls back to AGENT_RELAY_LOG_LEVEL, then INFO.
		log_dir: Directory for the rotating log file. Console only when None.

	Returns:
		The configured logger
	"""
	level = level or os.getenv("AGENT_RELAY_LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(name)
	logger.setLevel(log_level)

	if logger.handlers:
		return logger

	redactor = RedactingFilter()

	# stderr keeps command output on stdout clean
	console = logging.StreamHandler(sys.stderr)
	console.setLevel(log_level)
	console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))
	console.addFilter(redactor)
	logger.addHandler(console)

	if log_dir is not None:
		log_path = Path(log_dir)
		log_path.mkdir(parents=True, exist_ok=True)
		file_handler = RotatingFileHandler(
			log_path / f"{name}.log",
			maxBytes=10 * 1024 * 1024,  # 10 MB
			backupCount=5,
		)
		# Background workers log everything to file
		file_handler.setLevel(logging.DEBUG)
		file_handler.setFormatter(logging.Formatter(
			"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		))
		file_handler.addFilter(redactor)
		logger.addHandler(file_handler)

	return logger
